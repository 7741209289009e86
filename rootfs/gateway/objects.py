"""
Resolved views over raw Gateway API objects.

Every optional field is defaulted once, here, when an object is first read
from the API. The rest of the operator works with these values and never
re-derives a default at the point of use.
"""
GATEWAY_GROUP = 'gateway.networking.k8s.io'
CORE_GROUP = ''

FROM_SAME = 'Same'
FROM_ALL = 'All'
FROM_SELECTOR = 'Selector'

TLS_TERMINATE = 'Terminate'
TLS_PASSTHROUGH = 'Passthrough'

PROTOCOL_HTTPS = 'HTTPS'


class AnyHostname(object):
    """No hostname restriction. Matches every hostname on the other side."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return 'ANY_HOSTNAME'

    def __bool__(self):
        return True


ANY_HOSTNAME = AnyHostname()


def object_key(obj):
    metadata = obj['metadata']
    if metadata.get('namespace'):
        return '{}/{}'.format(metadata['namespace'], metadata['name'])
    return metadata['name']


class RouteGroupKind(object):

    def __init__(self, group, kind):
        self.group = group
        self.kind = kind

    @classmethod
    def from_dict(cls, data):
        group = data.get('group')
        return cls(GATEWAY_GROUP if group is None else group, data['kind'])

    def as_dict(self):
        return {'group': self.group, 'kind': self.kind}

    def __eq__(self, other):
        return isinstance(other, RouteGroupKind) and \
            (self.group, self.kind) == (other.group, other.kind)

    def __hash__(self):
        return hash((self.group, self.kind))

    def __repr__(self):
        return 'RouteGroupKind({!r}, {!r})'.format(self.group, self.kind)


HTTPROUTE_KIND = RouteGroupKind(GATEWAY_GROUP, 'HTTPRoute')


class SecretObjectReference(object):
    """A certificate or other object reference with its namespace resolved."""

    def __init__(self, group, kind, name, namespace):
        self.group = group
        self.kind = kind
        self.name = name
        self.namespace = namespace

    @classmethod
    def from_dict(cls, data, default_namespace):
        return cls(
            data.get('group') or CORE_GROUP,
            data.get('kind') or 'Secret',
            data['name'],
            data.get('namespace') or default_namespace,
        )

    def __repr__(self):
        return 'SecretObjectReference({}/{} {}/{})'.format(
            self.group, self.kind, self.namespace, self.name)


class ListenerTLS(object):

    def __init__(self, mode, certificate_refs):
        self.mode = mode
        self.certificate_refs = certificate_refs

    @property
    def terminates(self):
        return self.mode == TLS_TERMINATE


class Listener(object):

    def __init__(self, name, protocol, port, hostname=ANY_HOSTNAME, tls=None,
                 namespaces_from=FROM_SAME, selector=None, kinds=None):
        self.name = name
        self.protocol = protocol
        self.port = port
        self.hostname = hostname
        self.tls = tls
        self.namespaces_from = namespaces_from
        self.selector = selector
        # route kinds exactly as requested, empty means the protocol default
        self.kinds = kinds or []

    @classmethod
    def from_dict(cls, data, gateway_namespace):
        tls = None
        if data.get('tls') is not None:
            raw = data['tls']
            tls = ListenerTLS(
                raw.get('mode') or TLS_TERMINATE,
                [SecretObjectReference.from_dict(ref, gateway_namespace)
                 for ref in raw.get('certificateRefs') or []],
            )
        allowed = data.get('allowedRoutes') or {}
        namespaces = allowed.get('namespaces') or {}
        return cls(
            data['name'],
            data.get('protocol', 'HTTP'),
            data.get('port'),
            hostname=data.get('hostname') or ANY_HOSTNAME,
            tls=tls,
            namespaces_from=namespaces.get('from') or FROM_SAME,
            selector=namespaces.get('selector'),
            kinds=[RouteGroupKind.from_dict(k) for k in allowed.get('kinds') or []],
        )

    @property
    def is_https(self):
        return self.protocol == PROTOCOL_HTTPS

    @property
    def terminates_tls(self):
        return self.is_https and self.tls is not None and self.tls.terminates


class Gateway(object):

    def __init__(self, obj):
        metadata = obj['metadata']
        spec = obj.get('spec') or {}
        self.raw = obj
        self.namespace = metadata['namespace']
        self.name = metadata['name']
        self.generation = metadata.get('generation', 0)
        self.class_name = spec.get('gatewayClassName')
        self.deleting = bool(metadata.get('deletionTimestamp'))
        self.finalizers = list(metadata.get('finalizers') or [])
        self.listeners = [Listener.from_dict(listener, self.namespace)
                          for listener in spec.get('listeners') or []]
        self.status = obj.get('status') or {}

    @property
    def key(self):
        return '{}/{}'.format(self.namespace, self.name)

    @property
    def uid(self):
        return self.raw['metadata'].get('uid')

    def listener(self, name):
        for listener in self.listeners:
            if listener.name == name:
                return listener
        return None

    def listener_status(self, name):
        for entry in self.status.get('listeners') or []:
            if entry.get('name') == name:
                return entry
        return {}


class ParentReference(object):

    def __init__(self, group, kind, namespace, name, section=None, port=None):
        self.group = group
        self.kind = kind
        self.namespace = namespace
        self.name = name
        self.section = section
        self.port = port

    @classmethod
    def from_dict(cls, data, route_namespace):
        group = data.get('group')
        return cls(
            GATEWAY_GROUP if group is None else group,
            data.get('kind') or 'Gateway',
            data.get('namespace') or route_namespace,
            data['name'],
            data.get('sectionName'),
            data.get('port'),
        )

    @property
    def is_gateway(self):
        return self.group == GATEWAY_GROUP and self.kind == 'Gateway'

    def targets(self, gateway):
        return self.is_gateway and \
            self.namespace == gateway.namespace and self.name == gateway.name

    @property
    def identity(self):
        return (self.group, self.kind, self.namespace, self.name, self.section)

    def as_dict(self):
        data = {
            'group': self.group,
            'kind': self.kind,
            'namespace': self.namespace,
            'name': self.name,
        }
        if self.section is not None:
            data['sectionName'] = self.section
        if self.port is not None:
            data['port'] = self.port
        return data


class BackendReference(object):

    def __init__(self, group, kind, namespace, name, port=None, weight=None):
        self.group = group
        self.kind = kind
        self.namespace = namespace
        self.name = name
        self.port = port
        self.weight = weight

    @classmethod
    def from_dict(cls, data, route_namespace):
        return cls(
            data.get('group') or CORE_GROUP,
            data.get('kind') or 'Service',
            data.get('namespace') or route_namespace,
            data.get('name', ''),
            data.get('port'),
            data.get('weight'),
        )

    @property
    def is_service(self):
        return self.group == CORE_GROUP and self.kind == 'Service'


class HTTPRoute(object):

    def __init__(self, obj):
        metadata = obj['metadata']
        spec = obj.get('spec') or {}
        self.raw = obj
        self.namespace = metadata['namespace']
        self.name = metadata['name']
        self.generation = metadata.get('generation', 0)
        hostnames = spec.get('hostnames') or []
        self.hostnames = tuple(hostnames) if hostnames else ANY_HOSTNAME
        self.parent_refs = [ParentReference.from_dict(ref, self.namespace)
                            for ref in spec.get('parentRefs') or []]
        self.rules = spec.get('rules') or []
        self.status = obj.get('status') or {}

    @property
    def key(self):
        return '{}/{}'.format(self.namespace, self.name)

    @property
    def backend_refs(self):
        refs = []
        for rule in self.rules:
            for ref in rule.get('backendRefs') or []:
                refs.append(BackendReference.from_dict(ref, self.namespace))
        return refs

    def refs_to(self, gateway):
        return [ref for ref in self.parent_refs if ref.targets(gateway)]

    def references(self, gateway):
        return any(ref.targets(gateway) for ref in self.parent_refs)
