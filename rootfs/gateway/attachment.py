"""
Route to listener attachment.

Decides whether an HTTPRoute may bind to a Gateway's listeners, which
hostnames the binding is effective for, and how many routes each listener
carries.
"""
import logging

from gateway import conditions
from gateway.objects import ANY_HOSTNAME, FROM_ALL, FROM_SAME, FROM_SELECTOR, HTTPRoute
from scheduler.exceptions import KubeException

logger = logging.getLogger(__name__)


def effective_hostname(route_hostname, listener_hostname):
    """
    The hostname a route/listener hostname pair is effective for.

    Returns the more specific side of the intersection, ANY_HOSTNAME when
    neither side restricts, or None when the two never intersect.

    >>> effective_hostname('api.example.com', '*.example.com')
    'api.example.com'
    >>> effective_hostname('*.example.com', 'example.com')
    'example.com'
    >>> effective_hostname('api.example.org', '*.example.com') is None
    True
    """
    if listener_hostname is ANY_HOSTNAME:
        return route_hostname
    if route_hostname is ANY_HOSTNAME:
        return listener_hostname
    if route_hostname == listener_hostname:
        return route_hostname
    if listener_hostname.startswith('*.') and route_hostname.endswith(listener_hostname[1:]):
        return route_hostname
    if route_hostname.startswith('*.'):
        if listener_hostname.endswith(route_hostname[1:]):
            return listener_hostname
        if listener_hostname == route_hostname[2:]:
            return listener_hostname
    return None


def hostnames_intersect(route_hostnames, listener_hostname):
    if route_hostnames is ANY_HOSTNAME or listener_hostname is ANY_HOSTNAME:
        return True
    return any(effective_hostname(h, listener_hostname) is not None for h in route_hostnames)


def effective_hostnames(route, listeners):
    """
    Effective hostnames of ``route`` across ``listeners``.

    Returns ANY_HOSTNAME for a catch-all, otherwise an ordered list without
    duplicates, empty when nothing intersects.
    """
    result = []
    route_hostnames = [ANY_HOSTNAME] if route.hostnames is ANY_HOSTNAME else route.hostnames
    for route_hostname in route_hostnames:
        for listener in listeners:
            hostname = effective_hostname(route_hostname, listener.hostname)
            if hostname is ANY_HOSTNAME:
                return ANY_HOSTNAME
            if hostname is not None and hostname not in result:
                result.append(hostname)
    return result


def section_listeners(gateway, section):
    if section is None:
        return list(gateway.listeners)
    return [listener for listener in gateway.listeners if listener.name == section]


def route_hostnames_for_gateway(route, gateway):
    """
    Union of the effective hostnames of every parent reference of ``route``
    that targets ``gateway``.

    A single catch-all reference makes the whole route a catch-all.
    """
    result = []
    for ref in route.refs_to(gateway):
        hostnames = effective_hostnames(route, section_listeners(gateway, ref.section))
        if hostnames is ANY_HOSTNAME:
            return ANY_HOSTNAME
        for hostname in hostnames:
            if hostname not in result:
                result.append(hostname)
    return result


def route_attaches_to_listener(route, listener, gateway):
    for ref in route.refs_to(gateway):
        if ref.section is not None and ref.section != listener.name:
            continue
        if hostnames_intersect(route.hostnames, listener.hostname):
            return True
    return False


def count_routes_for_listener(routes, listener, gateway):
    return sum(1 for route in routes if route_attaches_to_listener(route, listener, gateway))


def selector_matches(selector, labels):
    """
    Match ``labels`` against a metav1.LabelSelector.

    Raises ValueError for a selector that cannot be parsed.
    """
    for key, value in (selector.get('matchLabels') or {}).items():
        if labels.get(key) != value:
            return False
    for expression in selector.get('matchExpressions') or []:
        key = expression.get('key')
        operator = expression.get('operator')
        values = expression.get('values') or []
        if not key:
            raise ValueError('label selector requirement without a key')
        if operator == 'In':
            if not values:
                raise ValueError('operator In requires values for key {}'.format(key))
            if labels.get(key) not in values:
                return False
        elif operator == 'NotIn':
            if not values:
                raise ValueError('operator NotIn requires values for key {}'.format(key))
            if key in labels and labels[key] in values:
                return False
        elif operator == 'Exists':
            if key not in labels:
                return False
        elif operator == 'DoesNotExist':
            if key in labels:
                return False
        else:
            raise ValueError('unknown label selector operator {!r}'.format(operator))
    return True


class Attachment(object):

    def __init__(self, allowed, reason=conditions.REASON_ACCEPTED, message='Route accepted'):
        self.allowed = allowed
        self.reason = reason
        self.message = message

    def __bool__(self):
        return self.allowed

    def __repr__(self):
        return 'Attachment({}, {!r})'.format(self.allowed, self.reason)


class AttachmentResolver(object):

    def __init__(self, scheduler):
        self.scheduler = scheduler

    def namespace_allowed(self, route, gateway, listener):
        if listener.namespaces_from == FROM_ALL:
            return True
        if listener.namespaces_from == FROM_SAME:
            return route.namespace == gateway.namespace
        if listener.namespaces_from == FROM_SELECTOR:
            if listener.selector is None:
                return False
            try:
                namespace = self.scheduler.ns.get(None, route.namespace).json()
                labels = namespace['metadata'].get('labels') or {}
                return selector_matches(listener.selector, labels)
            except (KubeException, ValueError) as e:
                logger.warning('skipping listener %s of Gateway %s for route %s: %s',
                               listener.name, gateway.key, route.key, e)
                return False
        logger.warning('unknown allowedRoutes.namespaces.from %r on listener %s of Gateway %s',
                       listener.namespaces_from, listener.name, gateway.key)
        return False

    def allowed_by_listeners(self, route, gateway, listeners=None):
        if listeners is None:
            listeners = gateway.listeners
        if not listeners:
            return Attachment(False, conditions.REASON_NOT_ALLOWED_BY_LISTENERS,
                              'Gateway has no listeners')
        namespace_allowed = False
        for listener in listeners:
            if not self.namespace_allowed(route, gateway, listener):
                continue
            namespace_allowed = True
            if hostnames_intersect(route.hostnames, listener.hostname):
                return Attachment(True)
        if namespace_allowed:
            return Attachment(
                False, conditions.REASON_NO_MATCHING_LISTENER_HOSTNAME,
                'No matching listener hostname on Gateway {}/{}'.format(gateway.namespace, gateway.name))
        return Attachment(
            False, conditions.REASON_NOT_ALLOWED_BY_LISTENERS,
            'Route not allowed by any listener on Gateway {}/{}'.format(gateway.namespace, gateway.name))

    def resolve(self, route, gateway, parent_ref):
        """Decide whether ``parent_ref`` of ``route`` may attach to ``gateway``."""
        if parent_ref.section is not None and gateway.listener(parent_ref.section) is None:
            return Attachment(
                False, conditions.REASON_NO_MATCHING_PARENT,
                'No listener named "{}" on Gateway {}'.format(parent_ref.section, gateway.name))
        return self.allowed_by_listeners(
            route, gateway, section_listeners(gateway, parent_ref.section))

    def attached_routes(self, gateway, routes=None):
        """
        Routes referencing ``gateway`` that at least one of its listeners accepts.
        """
        if routes is None:
            routes = [HTTPRoute(obj) for obj in self.scheduler.httproutes.items()]
        return [route for route in routes
                if route.references(gateway) and self.allowed_by_listeners(route, gateway)]

    def attached_route_counts(self, gateway, routes=None):
        attached = self.attached_routes(gateway, routes)
        return {listener.name: count_routes_for_listener(attached, listener, gateway)
                for listener in gateway.listeners}
