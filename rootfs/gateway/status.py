"""
Status publishing for Gateways and HTTPRoutes.

Gateway status is shared by two writers. The gateway reconciler applies
gateway conditions, listener conditions and supported kinds under its own
field manager; the route reconciler applies listener attached-route counts
under another. Each apply only names the fields its writer computes, plus
the listener fields the schema requires, so neither writer resets what the
other one owns.

Route parent status belongs to the route reconciler alone and is written
with a read-modify-write guarded by resourceVersion.
"""
import logging

from django.conf import settings

from gateway import conditions
from gateway.objects import HTTPROUTE_KIND, HTTPRoute, ParentReference
from scheduler.exceptions import KubeHTTPException, is_conflict

logger = logging.getLogger(__name__)

GATEWAY_FIELD_MANAGER = 'varnish-gateway-controller'
ROUTE_FIELD_MANAGER = 'varnish-httproute-controller'

GATEWAY_API_VERSION = 'gateway.networking.k8s.io/v1'


def supported_kinds(listener):
    """
    Return the route kinds ``listener`` supports and whether any requested
    kind was rejected.
    """
    if not listener.kinds:
        return [HTTPROUTE_KIND], False
    kinds = [kind for kind in listener.kinds if kind == HTTPROUTE_KIND]
    return kinds, len(kinds) != len(listener.kinds)


def addresses(service):
    if not service:
        return []
    ingress = ((service.get('status') or {}).get('loadBalancer') or {}).get('ingress') or []
    result = []
    for entry in ingress:
        if entry.get('ip'):
            result.append({'type': 'IPAddress', 'value': entry['ip']})
        elif entry.get('hostname'):
            result.append({'type': 'Hostname', 'value': entry['hostname']})
    return result


def apply_document(kind, namespace, name, status):
    metadata = {'name': name}
    if namespace is not None:
        metadata['namespace'] = namespace
    return {
        'apiVersion': GATEWAY_API_VERSION,
        'kind': kind,
        'metadata': metadata,
        'status': status,
    }


class StatusSynchronizer(object):

    def __init__(self, scheduler, attachment, tls_validator):
        self.scheduler = scheduler
        self.attachment = attachment
        self.tls = tls_validator

    # gateway writer

    def listener_conditions(self, gateway, listener):
        generation = gateway.generation
        _, invalid_kinds = supported_kinds(listener)
        accepted = conditions.condition(
            conditions.ACCEPTED, True, conditions.REASON_ACCEPTED, 'Listener accepted', generation)
        programmed = conditions.condition(
            conditions.PROGRAMMED, True, conditions.REASON_PROGRAMMED, 'Listener programmed', generation)
        if invalid_kinds:
            resolved = conditions.condition(
                conditions.RESOLVED_REFS, False, conditions.REASON_INVALID_ROUTE_KINDS,
                'One or more route kinds are not supported', generation)
        elif listener.is_https:
            resolved = self.tls.validate(gateway, listener)
        else:
            resolved = conditions.condition(
                conditions.RESOLVED_REFS, True, conditions.REASON_RESOLVED_REFS,
                'References resolved', generation)
        if resolved['status'] == conditions.FALSE:
            programmed = conditions.condition(
                conditions.PROGRAMMED, False, conditions.REASON_INVALID,
                'Listener has unresolved references', generation)
        existing = gateway.listener_status(listener.name).get('conditions')
        return conditions.merge(existing, [accepted, programmed, resolved])

    def listener_statuses(self, gateway, counts):
        statuses = []
        for listener in gateway.listeners:
            kinds, _ = supported_kinds(listener)
            statuses.append({
                'name': listener.name,
                'supportedKinds': [kind.as_dict() for kind in kinds],
                'attachedRoutes': counts.get(listener.name, 0),
                'conditions': self.listener_conditions(gateway, listener),
            })
        return statuses

    def gateway_conditions(self, gateway, error=None):
        generation = gateway.generation
        if error is None:
            desired = [
                conditions.condition(conditions.ACCEPTED, True, conditions.REASON_ACCEPTED,
                                     'Gateway accepted by controller', generation),
                conditions.condition(conditions.PROGRAMMED, True, conditions.REASON_PROGRAMMED,
                                     'Gateway configuration programmed', generation),
            ]
        else:
            message = str(error)
            desired = [
                conditions.condition(conditions.ACCEPTED, False, conditions.REASON_INVALID,
                                     message, generation),
                conditions.condition(conditions.PROGRAMMED, False, conditions.REASON_INVALID,
                                     message, generation),
            ]
        return conditions.merge(gateway.status.get('conditions'), desired)

    def publish_gateway(self, gateway, error=None):
        """
        Apply gateway and listener status.

        ``error`` marks the gateway as not accepted and not programmed with
        the error text as message.
        """
        counts = self.attachment.attached_route_counts(gateway)
        service = self.scheduler.services.find(gateway.namespace, gateway.name)
        status = {
            'addresses': addresses(service),
            'conditions': self.gateway_conditions(gateway, error),
            'listeners': self.listener_statuses(gateway, counts),
        }
        document = apply_document('Gateway', gateway.namespace, gateway.name, status)
        return self.scheduler.gateways.apply_status(
            gateway.namespace, gateway.name, document, GATEWAY_FIELD_MANAGER)

    # route writer

    def publish_attached_routes(self, gateway, counts=None):
        """Apply the attached route count of every listener of ``gateway``."""
        if not gateway.listeners:
            return None
        if counts is None:
            counts = self.attachment.attached_route_counts(gateway)
        listeners = []
        for listener in gateway.listeners:
            kinds, _ = supported_kinds(listener)
            listeners.append({
                'name': listener.name,
                'attachedRoutes': counts.get(listener.name, 0),
                'supportedKinds': [kind.as_dict() for kind in kinds],
            })
        document = apply_document('Gateway', gateway.namespace, gateway.name, {'listeners': listeners})
        return self.scheduler.gateways.apply_status(
            gateway.namespace, gateway.name, document, ROUTE_FIELD_MANAGER)

    def route_parents(self, obj, computed):
        controller = settings.GATEWAY_CONTROLLER_NAME
        namespace = obj['metadata']['namespace']
        existing = (obj.get('status') or {}).get('parents') or []
        parents, written = [], set()
        for entry in existing:
            if entry.get('controllerName') != controller:
                parents.append(entry)
                continue
            identity = ParentReference.from_dict(entry.get('parentRef') or {}, namespace).identity
            if identity not in computed or identity in written:
                # parent gone, or no longer handled by this controller
                continue
            ref, desired = computed[identity]
            parents.append({
                'parentRef': ref.as_dict(),
                'controllerName': controller,
                'conditions': conditions.merge(entry.get('conditions'), desired),
            })
            written.add(identity)
        for identity, (ref, desired) in computed.items():
            if identity in written:
                continue
            parents.append({
                'parentRef': ref.as_dict(),
                'controllerName': controller,
                'conditions': conditions.merge(None, desired),
            })
            written.add(identity)
        return parents

    def publish_route_parents(self, namespace, name, computed):
        """
        Write route parent status.

        ``computed`` maps parent identity to ``(ParentReference, conditions)``
        for every parent this controller handled. Entries of this controller
        for any other parent are pruned; entries of other controllers are left
        alone. The route is re-read on every attempt and the write is retried
        on conflict.
        """
        retries = settings.GATEWAY_STATUS_RETRIES
        for attempt in range(1, retries + 1):
            obj = self.scheduler.httproutes.find(namespace, name)
            if obj is None:
                return None
            route = HTTPRoute(obj)
            parents = self.route_parents(obj, computed)
            existing = route.status.get('parents') or []
            if parents == existing:
                return obj
            status = dict(route.status)
            status['parents'] = parents
            obj['status'] = status
            try:
                return self.scheduler.httproutes.update_status(namespace, name, obj).json()
            except KubeHTTPException as e:
                if not is_conflict(e) or attempt == retries:
                    raise
                logger.debug('[%s]: status conflict, retrying (%d/%d)', route.key, attempt, retries)
        return None
