"""
Desired infrastructure for one Gateway.

``build`` turns a Gateway plus its resolved configuration into the ordered
list of child objects the gateway reconciler creates or updates. Each child
carries a kind tag, and the tag alone selects how an existing object is
brought up to date.
"""
import base64
import secrets

from gateway import routing
from gateway.infra import INFRA_HASH_ANNOTATION, needs_restart
from gateway.utils import dict_diff

MANAGED_BY_LABEL = 'app.kubernetes.io/managed-by'
MANAGED_BY = 'varnish-gateway-operator'
GATEWAY_NAME_LABEL = 'gateway.networking.k8s.io/gateway-name'
GATEWAY_NAMESPACE_LABEL = 'gateway.networking.k8s.io/gateway-namespace'

FINALIZER = 'gateway.varnish-software.com/finalizer'

VCL_KEY = 'main.vcl'
ROUTING_KEY = 'routing.json'

VARNISH_HTTP_PORT = 8080
VARNISH_HTTPS_PORT = 8443
HEALTH_PORT = 8081
ADMIN_PORT = 6082

VOLUME_VCL_CONFIG = 'vcl-config'
VOLUME_VARNISH_RUN = 'varnish-run'
VOLUME_TLS = 'tls-certs'
VOLUME_ADMIN_SECRET = 'admin-secret'

# child kind tags
VCL_CONFIG = 'vcl-config'
ADMIN_SECRET = 'admin-secret'
TLS_SECRET = 'tls-secret'
SERVICE_ACCOUNT = 'service-account'
CLUSTER_ROLE_BINDING = 'cluster-role-binding'
DEPLOYMENT = 'deployment'
SERVICE = 'service'


def vcl_configmap_name(gateway):
    return '{}-vcl'.format(gateway.name)


def admin_secret_name(gateway):
    return '{}-secret'.format(gateway.name)


def tls_secret_name(gateway):
    return '{}-tls'.format(gateway.name)


def service_account_name(gateway):
    return '{}-chaperone'.format(gateway.name)


def cluster_role_binding_name(gateway):
    return '{}-{}-chaperone'.format(gateway.namespace, gateway.name)


def labels(gateway):
    return {
        MANAGED_BY_LABEL: MANAGED_BY,
        GATEWAY_NAME_LABEL: gateway.name,
        GATEWAY_NAMESPACE_LABEL: gateway.namespace,
    }


def owner_references(gateway):
    return [{
        'apiVersion': 'gateway.networking.k8s.io/v1',
        'kind': 'Gateway',
        'name': gateway.name,
        'uid': gateway.uid,
        'controller': True,
        'blockOwnerDeletion': True,
    }]


class ResolvedConfig(object):
    """Everything ``build`` needs beyond the Gateway itself."""

    def __init__(self, image, vcl, parameters, tls_bundle=None, pull_secrets=None,
                 infra_hash='', cluster_role='varnish-gateway-chaperone'):
        self.image = image
        self.vcl = vcl
        self.parameters = parameters
        self.tls_bundle = tls_bundle or {}
        self.pull_secrets = list(pull_secrets or [])
        self.infra_hash = infra_hash
        self.cluster_role = cluster_role

    @property
    def has_tls(self):
        return bool(self.tls_bundle)


class Child(object):

    def __init__(self, kind, resource, manifest):
        self.kind = kind
        # plural name of the scheduler resource serving this kind
        self.resource = resource
        self.manifest = manifest

    @property
    def name(self):
        return self.manifest['metadata']['name']

    @property
    def namespace(self):
        return self.manifest['metadata'].get('namespace')

    def update(self, existing):
        """
        Merge patch bringing ``existing`` to the desired state, or None when
        nothing this kind tracks differs.
        """
        return UPDATE_RULES[self.kind](existing, self.manifest)

    def __repr__(self):
        return 'Child({}, {})'.format(self.kind, self.name)


def update_vcl_config(existing, desired):
    # routing.json belongs to the route reconciler
    current = (existing.get('data') or {}).get(VCL_KEY)
    if current == desired['data'][VCL_KEY]:
        return None
    return {'data': {VCL_KEY: desired['data'][VCL_KEY]}}


def update_tls_secret(existing, desired):
    current = existing.get('data') or {}
    diff = dict_diff(desired['data'], current)
    if not diff:
        return None
    data = dict(desired['data'])
    for key in diff.get('deleted', {}):
        data[key] = None
    return {'data': data}


def update_deployment(existing, desired):
    if not needs_restart(existing, desired):
        return None
    return {'spec': {
        'strategy': desired['spec']['strategy'],
        'template': desired['spec']['template'],
    }}


def update_service(existing, desired):
    spec = existing.get('spec') or {}
    wanted = desired['spec']
    if spec.get('ports') == wanted['ports'] and spec.get('selector') == wanted['selector']:
        return None
    return {'spec': {'ports': wanted['ports'], 'selector': wanted['selector']}}


def create_only(existing, desired):
    return None


UPDATE_RULES = {
    VCL_CONFIG: update_vcl_config,
    ADMIN_SECRET: create_only,
    TLS_SECRET: update_tls_secret,
    SERVICE_ACCOUNT: create_only,
    CLUSTER_ROLE_BINDING: create_only,
    DEPLOYMENT: update_deployment,
    SERVICE: update_service,
}


def metadata(gateway, name, namespaced=True, owned=True):
    meta = {'name': name, 'labels': labels(gateway)}
    if namespaced:
        meta['namespace'] = gateway.namespace
    if owned:
        meta['ownerReferences'] = owner_references(gateway)
    return meta


def build_vcl_configmap(gateway, config):
    return {
        'apiVersion': 'v1',
        'kind': 'ConfigMap',
        'metadata': metadata(gateway, vcl_configmap_name(gateway)),
        'data': {
            VCL_KEY: config.vcl,
            ROUTING_KEY: routing.dumps(routing.serialize({})),
        },
    }


def build_admin_secret(gateway, config):
    return {
        'apiVersion': 'v1',
        'kind': 'Secret',
        'metadata': metadata(gateway, admin_secret_name(gateway)),
        'type': 'Opaque',
        'stringData': {'secret': secrets.token_hex(32)},
    }


def build_tls_secret(gateway, config):
    return {
        'apiVersion': 'v1',
        'kind': 'Secret',
        'metadata': metadata(gateway, tls_secret_name(gateway)),
        'type': 'Opaque',
        'data': {key: base64.b64encode(value).decode('ascii')
                 for key, value in sorted(config.tls_bundle.items())},
    }


def build_service_account(gateway, config):
    return {
        'apiVersion': 'v1',
        'kind': 'ServiceAccount',
        'metadata': metadata(gateway, service_account_name(gateway)),
    }


def build_cluster_role_binding(gateway, config):
    # cluster scoped, so no owner reference; deleted on finalization
    return {
        'apiVersion': 'rbac.authorization.k8s.io/v1',
        'kind': 'ClusterRoleBinding',
        'metadata': metadata(gateway, cluster_role_binding_name(gateway),
                             namespaced=False, owned=False),
        'roleRef': {
            'apiGroup': 'rbac.authorization.k8s.io',
            'kind': 'ClusterRole',
            'name': config.cluster_role,
        },
        'subjects': [{
            'kind': 'ServiceAccount',
            'name': service_account_name(gateway),
            'namespace': gateway.namespace,
        }],
    }


def gateway_container(gateway, config):
    listen = ':{},http'.format(VARNISH_HTTP_PORT)
    ports = [
        {'name': 'http', 'containerPort': VARNISH_HTTP_PORT, 'protocol': 'TCP'},
        {'name': 'health', 'containerPort': HEALTH_PORT, 'protocol': 'TCP'},
    ]
    mounts = [
        {'name': VOLUME_VCL_CONFIG, 'mountPath': '/etc/varnish'},
        {'name': VOLUME_VARNISH_RUN, 'mountPath': '/var/run/varnish'},
        {'name': VOLUME_ADMIN_SECRET, 'mountPath': '/etc/varnish-secret', 'readOnly': True},
    ]
    env = [
        {'name': 'NAMESPACE', 'valueFrom': {'fieldRef': {'fieldPath': 'metadata.namespace'}}},
        {'name': 'VARNISH_ADMIN_PORT', 'value': str(ADMIN_PORT)},
        {'name': 'VARNISH_SECRET_PATH', 'value': '/etc/varnish-secret/secret'},
        {'name': 'VARNISH_HTTP_ADDR', 'value': 'localhost:{}'.format(VARNISH_HTTP_PORT)},
        {'name': 'VARNISH_STORAGE', 'value': 'malloc,256m'},
        {'name': 'VCL_PATH', 'value': '/etc/varnish/{}'.format(VCL_KEY)},
        {'name': 'ROUTING_CONFIG_PATH', 'value': '/etc/varnish/{}'.format(ROUTING_KEY)},
        {'name': 'GHOST_CONFIG_PATH', 'value': routing.GHOST_CONFIG_PATH},
        {'name': 'WORK_DIR', 'value': '/var/run/varnish'},
        {'name': 'HEALTH_ADDR', 'value': ':{}'.format(HEALTH_PORT)},
    ]
    if config.has_tls:
        listen += ',:{},https'.format(VARNISH_HTTPS_PORT)
        ports.append({'name': 'https', 'containerPort': VARNISH_HTTPS_PORT, 'protocol': 'TCP'})
        mounts.append({'name': VOLUME_TLS, 'mountPath': '/etc/varnish/tls', 'readOnly': True})
        env.append({'name': 'TLS_CERT_DIR', 'value': '/etc/varnish/tls'})
    env.insert(4, {'name': 'VARNISH_LISTEN', 'value': listen})
    return {
        'name': 'varnish-gateway',
        'image': config.image,
        'args': list(config.parameters.extra_args),
        'env': env,
        'ports': ports,
        'volumeMounts': mounts + list(config.parameters.extra_volume_mounts),
        'lifecycle': {'preStop': {'httpGet': {'path': '/drain', 'port': HEALTH_PORT, 'scheme': 'HTTP'}}},
        'readinessProbe': {
            'httpGet': {'path': '/health', 'port': HEALTH_PORT, 'scheme': 'HTTP'},
            'initialDelaySeconds': 5,
            'periodSeconds': 10,
        },
        'livenessProbe': {
            'tcpSocket': {'port': VARNISH_HTTP_PORT},
            'initialDelaySeconds': 10,
            'periodSeconds': 15,
        },
    }


def logging_container(config):
    options = config.parameters.logging
    args = ['-n', '/var/run/varnish']
    if options['mode'] == 'varnishncsa' and options.get('format'):
        args += ['-F', options['format']]
    args += list(options.get('extraArgs') or [])
    return {
        'name': options['mode'],
        'image': options.get('image') or config.image,
        'command': [options['mode']],
        'args': args,
        'volumeMounts': [{'name': VOLUME_VARNISH_RUN, 'mountPath': '/var/run/varnish'}],
    }


def build_deployment(gateway, config):
    selector = labels(gateway)
    containers = [gateway_container(gateway, config)]
    if config.parameters.logging:
        containers.append(logging_container(config))
    volumes = [
        {'name': VOLUME_VCL_CONFIG, 'configMap': {'name': vcl_configmap_name(gateway)}},
        {'name': VOLUME_VARNISH_RUN, 'emptyDir': {}},
        {'name': VOLUME_ADMIN_SECRET, 'secret': {'secretName': admin_secret_name(gateway)}},
    ]
    if config.has_tls:
        volumes.append({'name': VOLUME_TLS, 'secret': {'secretName': tls_secret_name(gateway)}})
    pod_spec = {
        'serviceAccountName': service_account_name(gateway),
        'terminationGracePeriodSeconds': 30,
        'containers': containers,
        'volumes': volumes + list(config.parameters.extra_volumes),
    }
    if config.pull_secrets:
        pod_spec['imagePullSecrets'] = [{'name': name} for name in config.pull_secrets]
    if config.parameters.extra_init_containers:
        pod_spec['initContainers'] = list(config.parameters.extra_init_containers)
    return {
        'apiVersion': 'apps/v1',
        'kind': 'Deployment',
        'metadata': metadata(gateway, gateway.name),
        'spec': {
            'replicas': 1,
            'selector': {'matchLabels': selector},
            'strategy': {
                'type': 'RollingUpdate',
                'rollingUpdate': {'maxUnavailable': 0, 'maxSurge': 1},
            },
            'template': {
                'metadata': {
                    'labels': selector,
                    'annotations': {INFRA_HASH_ANNOTATION: config.infra_hash},
                },
                'spec': pod_spec,
            },
        },
    }


def service_ports(gateway):
    ports, seen = [], set()
    for listener in gateway.listeners:
        if listener.port in seen:
            continue
        seen.add(listener.port)
        target = VARNISH_HTTPS_PORT if listener.terminates_tls else VARNISH_HTTP_PORT
        ports.append({
            'name': listener.name,
            'port': listener.port,
            'targetPort': target,
            'protocol': 'TCP',
        })
    if not ports:
        ports = [{'name': 'http', 'port': 80, 'targetPort': VARNISH_HTTP_PORT, 'protocol': 'TCP'}]
    return ports


def build_service(gateway, config):
    return {
        'apiVersion': 'v1',
        'kind': 'Service',
        'metadata': metadata(gateway, gateway.name),
        'spec': {
            'type': 'LoadBalancer',
            'selector': labels(gateway),
            'ports': service_ports(gateway),
        },
    }


def build(gateway, config):
    """Ordered child objects for ``gateway``."""
    children = [
        Child(VCL_CONFIG, 'configmaps', build_vcl_configmap(gateway, config)),
        Child(ADMIN_SECRET, 'secrets', build_admin_secret(gateway, config)),
    ]
    if config.has_tls:
        children.append(Child(TLS_SECRET, 'secrets', build_tls_secret(gateway, config)))
    children += [
        Child(SERVICE_ACCOUNT, 'serviceaccounts', build_service_account(gateway, config)),
        Child(CLUSTER_ROLE_BINDING, 'clusterrolebindings', build_cluster_role_binding(gateway, config)),
        Child(DEPLOYMENT, 'deployments', build_deployment(gateway, config)),
        Child(SERVICE, 'services', build_service(gateway, config)),
    ]
    return children


def obsolete(gateway, config):
    """
    ``(resource, namespace, name)`` of children an earlier configuration
    created that ``config`` no longer asks for.
    """
    stale = []
    if not config.has_tls:
        stale.append(('secrets', gateway.namespace, tls_secret_name(gateway)))
    return stale
