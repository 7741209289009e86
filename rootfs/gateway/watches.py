"""
Watch fan-out.

Each ``Watch`` names a resource to list and watch and a mapper turning one
changed object into the Requests to reconcile. Mappers for secondary objects
re-list the primaries and filter them; there is no reverse index.
"""
from django.conf import settings

from gateway import builder
from gateway.objects import Gateway, HTTPRoute
from gateway.parameters import PARAMETERS_GROUP, PARAMETERS_KIND
from gateway.reconcilers.base import Request
from gateway.tls import SECRET_TYPE_TLS


def generation_changed(old, new):
    """
    True when ``new`` differs from ``old`` in a way the reconciler cares
    about: spec generation or the deletion marker. Status-only updates do
    not pass.
    """
    if old is None or new is None:
        return True

    def state(obj):
        metadata = obj['metadata']
        return metadata.get('generation'), bool(metadata.get('deletionTimestamp'))

    return state(old) != state(new)


class Watch(object):

    def __init__(self, resource, mapper, predicate=None, labels=None):
        self.resource = resource
        self.mapper = mapper
        self.predicate = predicate
        self.labels = labels

    def __repr__(self):
        return 'Watch({})'.format(self.resource)


def own_request(scheduler, obj):
    return [Request.from_object(obj)]


def managed_gateways(scheduler):
    return [Gateway(obj) for obj in scheduler.gateways.items()
            if (obj.get('spec') or {}).get('gatewayClassName') == settings.GATEWAY_CLASS_NAME]


def gateway_requests(gateways):
    requests = []
    for gateway in gateways:
        request = Request(gateway.namespace, gateway.name)
        if request not in requests:
            requests.append(request)
    return requests


def owner_gateway(obj):
    """The Gateway a managed child belongs to, from its labels."""
    labels = obj['metadata'].get('labels') or {}
    if labels.get(builder.MANAGED_BY_LABEL) != builder.MANAGED_BY:
        return None
    name = labels.get(builder.GATEWAY_NAME_LABEL)
    namespace = labels.get(builder.GATEWAY_NAMESPACE_LABEL)
    if not name or not namespace:
        return None
    return Request(namespace, name)


# gateway controller

def child_to_gateway(scheduler, obj):
    owner = owner_gateway(obj)
    return [owner] if owner is not None else []


def route_to_gateways(scheduler, obj):
    route = HTTPRoute(obj)
    targets = set((ref.namespace, ref.name) for ref in route.parent_refs if ref.is_gateway)
    return gateway_requests(
        gateway for gateway in managed_gateways(scheduler)
        if (gateway.namespace, gateway.name) in targets)


def gateways_of_parameters(scheduler, name):
    classes = set()
    for gateway_class in scheduler.gatewayclasses.items():
        ref = (gateway_class.get('spec') or {}).get('parametersRef') or {}
        if ref.get('group') == PARAMETERS_GROUP and ref.get('kind') == PARAMETERS_KIND \
                and ref.get('name') == name:
            classes.add(gateway_class['metadata']['name'])
    return gateway_requests(
        gateway for gateway in managed_gateways(scheduler) if gateway.class_name in classes)


def parameters_to_gateways(scheduler, obj):
    return gateways_of_parameters(scheduler, obj['metadata']['name'])


def configmap_to_gateways(scheduler, obj):
    owner = owner_gateway(obj)
    if owner is not None:
        return [owner]
    metadata = obj['metadata']
    requests = []
    for params in scheduler.gatewayclassparameters.items():
        ref = (params.get('spec') or {}).get('userVCLConfigMapRef') or {}
        if ref.get('name') == metadata['name'] and ref.get('namespace') == metadata.get('namespace'):
            for request in gateways_of_parameters(scheduler, params['metadata']['name']):
                if request not in requests:
                    requests.append(request)
    return requests


def secret_to_gateways(scheduler, obj):
    owner = owner_gateway(obj)
    if owner is not None:
        return [owner]
    if obj.get('type') != SECRET_TYPE_TLS:
        return []
    metadata = obj['metadata']
    key = (metadata.get('namespace'), metadata['name'])
    return gateway_requests(
        gateway for gateway in managed_gateways(scheduler)
        if any((ref.namespace, ref.name) == key
               for listener in gateway.listeners if listener.tls is not None
               for ref in listener.tls.certificate_refs))


def grant_namespaces(grant, kind, target_kind):
    """Source namespaces of ``kind`` when ``grant`` has a ``target_kind`` target."""
    spec = grant.get('spec') or {}
    if not any(entry.get('kind') == target_kind for entry in spec.get('to') or []):
        return set()
    return set(entry.get('namespace') for entry in spec.get('from') or []
               if entry.get('kind') == kind)


def grant_to_gateways(scheduler, obj):
    namespaces = grant_namespaces(obj, 'Gateway', 'Secret')
    if not namespaces:
        return []
    target = obj['metadata']['namespace']
    return gateway_requests(
        gateway for gateway in managed_gateways(scheduler)
        if gateway.namespace in namespaces and any(
            ref.namespace == target
            for listener in gateway.listeners if listener.tls is not None
            for ref in listener.tls.certificate_refs))


def gateway_watches():
    managed = {builder.MANAGED_BY_LABEL: builder.MANAGED_BY}
    return [
        Watch('gateways', own_request, predicate=generation_changed),
        Watch('deployments', child_to_gateway, labels=managed),
        Watch('services', child_to_gateway, labels=managed),
        Watch('serviceaccounts', child_to_gateway, labels=managed),
        Watch('configmaps', configmap_to_gateways),
        Watch('secrets', secret_to_gateways),
        Watch('httproutes', route_to_gateways, predicate=generation_changed),
        Watch('gatewayclassparameters', parameters_to_gateways),
        Watch('referencegrants', grant_to_gateways),
    ]


# httproute controller

def routes_matching(scheduler, test):
    return [Request(route.namespace, route.name)
            for route in (HTTPRoute(obj) for obj in scheduler.httproutes.items())
            if test(route)]


def gateway_to_routes(scheduler, obj):
    gateway = Gateway(obj)
    return routes_matching(scheduler, lambda route: route.references(gateway))


def service_to_routes(scheduler, obj):
    metadata = obj['metadata']
    key = (metadata.get('namespace'), metadata['name'])
    return routes_matching(scheduler, lambda route: any(
        backend.is_service and (backend.namespace, backend.name) == key
        for backend in route.backend_refs))


def grant_to_routes(scheduler, obj):
    namespaces = grant_namespaces(obj, 'HTTPRoute', 'Service')
    if not namespaces:
        return []
    target = obj['metadata']['namespace']
    return routes_matching(scheduler, lambda route: route.namespace in namespaces and any(
        backend.namespace == target for backend in route.backend_refs))


def httproute_watches():
    return [
        Watch('httproutes', own_request, predicate=generation_changed),
        Watch('gateways', gateway_to_routes, predicate=generation_changed),
        Watch('services', service_to_routes),
        Watch('referencegrants', grant_to_routes),
    ]


def gatewayclass_watches():
    return [Watch('gatewayclasses', own_request, predicate=generation_changed)]
