import hashlib
import logging
from collections import OrderedDict

from django.conf import settings

from gateway import builder, conditions, routing
from gateway.attachment import AttachmentResolver, route_hostnames_for_gateway
from gateway.exceptions import ExpectedRace
from gateway.grants import Reference, ReferenceAuthorizer
from gateway.objects import CORE_GROUP, GATEWAY_GROUP, Gateway, HTTPRoute
from gateway.reconcilers.base import DONE, Reconciler, Result
from gateway.status import StatusSynchronizer
from gateway.tls import TLSValidator
from scheduler.exceptions import KubeException, is_not_found


def backend_reference(route, backend):
    return Reference(GATEWAY_GROUP, 'HTTPRoute', route.namespace,
                     CORE_GROUP, 'Service', backend.namespace, backend.name)


class HTTPRouteReconciler(Reconciler):
    """
    Owns route parent status, listener attached route counts and the
    ``routing.json`` key of every managed Gateway's VCL ConfigMap.

    Parent references are processed one by one and a failing reference does
    not stop the others. Whatever status was computed is always written.
    """
    name = 'httproute'

    def __init__(self, scheduler):
        super().__init__(scheduler)
        self.authorizer = ReferenceAuthorizer(scheduler)
        self.attachment = AttachmentResolver(scheduler)
        self.status = StatusSynchronizer(
            scheduler, self.attachment, TLSValidator(scheduler, self.authorizer))
        # ConfigMap key -> digest of the last routing.json written, only used
        # to keep unchanged rewrites out of the INFO log
        self.routing_digests = {}

    def reconcile(self, request):
        obj = self.scheduler.httproutes.find(request.namespace, request.name)
        if obj is None:
            self.log(request, 'route deleted, refreshing attached routes', logging.DEBUG)
            self.refresh_gateways(request)
            return DONE
        route = HTTPRoute(obj)
        if not route.parent_refs:
            self.log(request, 'route has no parentRefs, skipping', logging.DEBUG)
            return DONE

        computed = OrderedDict()
        requeue, failure = False, None
        for ref in route.parent_refs:
            try:
                outcome = self.process_parent(request, route, ref)
            except KubeException as e:
                self.log(request, 'failed to process parentRef {}: {}'.format(ref.name, e),
                         logging.ERROR)
                failure = failure or e
                outcome = self.parent_conditions(
                    route, False, conditions.REASON_PENDING,
                    'Failed to process Gateway {}: {}'.format(ref.name, e)), False
            if outcome is None:
                continue
            parent_conditions, race = outcome
            computed[ref.identity] = (ref, parent_conditions)
            requeue = requeue or race

        self.status.publish_route_parents(request.namespace, request.name, computed)
        if failure is not None:
            raise failure
        if requeue:
            self.log(request, 'requeuing, waiting on a dependent object', logging.INFO)
            return Result(requeue_after=settings.GATEWAY_REQUEUE_AFTER)
        return DONE

    def parent_conditions(self, route, accepted, reason, message,
                          resolved_message='References resolved'):
        generation = route.generation
        return [
            conditions.condition(conditions.ACCEPTED, accepted, reason, message, generation),
            conditions.condition(conditions.RESOLVED_REFS, True, conditions.REASON_RESOLVED_REFS,
                                 resolved_message, generation),
        ]

    def process_parent(self, request, route, ref):
        """
        Return ``(conditions, requeue)`` for one parent reference, or None
        when the reference is not handled by this controller.
        """
        if not ref.is_gateway:
            self.log(request, 'parentRef {} is not a Gateway, skipping'.format(ref.name),
                     logging.DEBUG)
            return None
        obj = self.scheduler.gateways.find(ref.namespace, ref.name)
        if obj is None:
            return self.parent_conditions(
                route, False, conditions.REASON_NO_MATCHING_PARENT,
                'Gateway {} not found'.format(ref.name)), False
        gateway = Gateway(obj)
        if gateway.class_name != settings.GATEWAY_CLASS_NAME:
            self.log(request, 'Gateway {} uses class {}, skipping'.format(
                gateway.key, gateway.class_name), logging.DEBUG)
            return None

        attachment = self.attachment.resolve(route, gateway, ref)
        if not attachment:
            self.log(request, 'not attached to Gateway {}: {}'.format(gateway.key, attachment.message))
            self.refresh_attached_routes(request, gateway)
            resolved_message = 'References resolved'
            if attachment.reason != conditions.REASON_NO_MATCHING_PARENT:
                resolved_message = 'All references resolved'
            return self.parent_conditions(
                route, False, attachment.reason, attachment.message, resolved_message), False

        routes = self.attachment.attached_routes(gateway)
        self.refresh_attached_routes(request, gateway, routes)
        try:
            self.update_routing(request, gateway, routes)
        except ExpectedRace as e:
            return self.parent_conditions(
                route, False, conditions.REASON_PENDING,
                'Failed to update ConfigMap: {}'.format(e)), True

        generation = route.generation
        accepted = conditions.condition(
            conditions.ACCEPTED, True, conditions.REASON_ACCEPTED, 'Route accepted', generation)
        resolved = self.validate_backends(route)
        race = resolved['status'] == conditions.FALSE and \
            resolved['reason'] == conditions.REASON_BACKEND_NOT_FOUND
        return [accepted, resolved], race

    def update_routing(self, request, gateway, routes):
        """
        Write ``routing.json`` for ``gateway`` from its attached routes.

        Only the routing key is patched, ``main.vcl`` belongs to the gateway
        reconciler. Raises ExpectedRace when the ConfigMap does not exist yet.
        """
        name = builder.vcl_configmap_name(gateway)
        if self.scheduler.configmaps.find(gateway.namespace, name) is None:
            raise ExpectedRace('ConfigMap {}/{} not yet created'.format(gateway.namespace, name))

        pairs = [(route, route_hostnames_for_gateway(route, gateway)) for route in routes]
        entries = routing.collect(pairs, gateway.namespace)
        document = routing.dumps(routing.serialize(routing.group_by_host(entries)))
        try:
            self.scheduler.configmaps.patch(gateway.namespace, name, {'data': {builder.ROUTING_KEY: document}})
        except KubeException as e:
            if is_not_found(e):
                raise ExpectedRace('ConfigMap {}/{} not yet created'.format(gateway.namespace, name))
            raise

        key = '{}/{}'.format(gateway.namespace, name)
        digest = hashlib.sha256(document.encode('utf-8')).hexdigest()
        previous = self.routing_digests.get(key)
        self.routing_digests[key] = digest
        message = 'routing for Gateway {}: {} routes, {} backends'.format(
            gateway.key, len(routes), len(entries))
        if previous != digest:
            self.log(request, 'updated ' + message)
        else:
            self.log(request, 'unchanged ' + message, logging.DEBUG)

    def validate_backends(self, route):
        generation = route.generation

        def unresolved(reason, message):
            return conditions.condition(conditions.RESOLVED_REFS, False, reason, message, generation)

        for backend in route.backend_refs:
            if backend.kind != 'Service':
                return unresolved(conditions.REASON_INVALID_KIND,
                                  'BackendRef kind "{}" is not supported'.format(backend.kind))
            if backend.group != CORE_GROUP:
                return unresolved(conditions.REASON_INVALID_KIND,
                                  'BackendRef group "{}" is not supported'.format(backend.group))
            reference = backend_reference(route, backend)
            if reference.crosses_namespace and not self.authorizer.is_allowed(reference):
                return unresolved(
                    conditions.REASON_REF_NOT_PERMITTED,
                    'Cross-namespace backendRef {}/{} not allowed by any ReferenceGrant'.format(
                        backend.namespace, backend.name))
            # any failure other than a 404 propagates and the route is retried
            if self.scheduler.services.find(backend.namespace, backend.name) is None:
                return unresolved(
                    conditions.REASON_BACKEND_NOT_FOUND,
                    'Service "{}" not found in namespace "{}"'.format(backend.name, backend.namespace))
        return conditions.condition(conditions.RESOLVED_REFS, True, conditions.REASON_RESOLVED_REFS,
                                    'All references resolved', generation)

    def refresh_gateways(self, request):
        """Recompute attached route counts on every managed Gateway."""
        try:
            gateways = [Gateway(obj) for obj in self.scheduler.gateways.items()]
            routes = [HTTPRoute(obj) for obj in self.scheduler.httproutes.items()]
        except KubeException as e:
            self.log(request, 'failed to list objects for attached route refresh: {}'.format(e),
                     logging.ERROR)
            return
        for gateway in gateways:
            if gateway.class_name != settings.GATEWAY_CLASS_NAME:
                continue
            self.refresh_attached_routes(request, gateway, routes)

    def refresh_attached_routes(self, request, gateway, routes=None):
        try:
            self.status.publish_attached_routes(
                gateway, self.attachment.attached_route_counts(gateway, routes))
        except KubeException as e:
            self.log(request, 'failed to refresh attached routes of Gateway {}: {}'.format(
                gateway.key, e), logging.ERROR)
