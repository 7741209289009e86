"""
GatewayClassParameters lookup.

Follows Gateway -> GatewayClass -> GatewayClassParameters -> ConfigMap.
Every link may be missing; a missing link only means the gateway runs
without user VCL or extra varnishd settings.
"""
import logging

from gateway.exceptions import InvalidParameters
from gateway.utils import validate_json

logger = logging.getLogger(__name__)

PARAMETERS_GROUP = 'gateway.varnish-software.com'
PARAMETERS_KIND = 'GatewayClassParameters'
DEFAULT_USER_VCL_KEY = 'user.vcl'

# varnishd flags the operator sets itself
PROTECTED_ARGS = ('-M', '-S', '-F', '-f', '-n')

SCHEMA = {
    "type": "object",
    "properties": {
        "userVCLConfigMapRef": {
            "type": "object",
            "properties": {
                "name": {"type": "string", "minLength": 1},
                "namespace": {"type": "string", "minLength": 1},
                "key": {"type": "string"},
            },
            "required": ["name", "namespace"],
        },
        "varnishdExtraArgs": {
            "type": "array",
            "items": {"type": "string"},
        },
        "logging": {
            "type": "object",
            "properties": {
                "mode": {"type": "string", "enum": ["varnishlog", "varnishncsa"]},
                "format": {"type": "string"},
                "extraArgs": {"type": "array", "items": {"type": "string"}},
                "image": {"type": "string"},
            },
            "required": ["mode"],
        },
        "extraVolumes": {"type": "array", "items": {"type": "object"}},
        "extraVolumeMounts": {"type": "array", "items": {"type": "object"}},
        "extraInitContainers": {"type": "array", "items": {"type": "object"}},
    },
}


class Parameters(object):

    def __init__(self, spec=None, user_vcl=''):
        spec = spec or {}
        self.extra_args = list(spec.get('varnishdExtraArgs') or [])
        self.logging = spec.get('logging')
        self.extra_volumes = list(spec.get('extraVolumes') or [])
        self.extra_volume_mounts = list(spec.get('extraVolumeMounts') or [])
        self.extra_init_containers = list(spec.get('extraInitContainers') or [])
        self.user_vcl = user_vcl


def validate(spec):
    validate_json(spec, SCHEMA, raise_exception=InvalidParameters)
    for arg in spec.get('varnishdExtraArgs') or []:
        if arg in PROTECTED_ARGS:
            raise InvalidParameters(
                'varnishdExtraArgs may not set {}, it is managed by the operator'.format(arg))
    return spec


class ParametersResolver(object):

    def __init__(self, scheduler):
        self.scheduler = scheduler

    def gateway_class(self, gateway):
        return self.scheduler.gatewayclasses.find(None, gateway.class_name)

    def parameters_name(self, gateway_class):
        ref = (gateway_class.get('spec') or {}).get('parametersRef')
        if not ref:
            return None
        if ref.get('group') != PARAMETERS_GROUP or ref.get('kind') != PARAMETERS_KIND:
            logger.info('GatewayClass %s references unsupported parameters %s/%s, ignoring',
                        gateway_class['metadata']['name'], ref.get('group'), ref.get('kind'))
            return None
        return ref.get('name')

    def user_vcl(self, ref):
        if not ref:
            return ''
        configmap = self.scheduler.configmaps.find(ref['namespace'], ref['name'])
        if configmap is None:
            logger.warning('user VCL ConfigMap %s/%s not found', ref['namespace'], ref['name'])
            return ''
        key = ref.get('key') or DEFAULT_USER_VCL_KEY
        data = configmap.get('data') or {}
        if key not in data:
            logger.warning('user VCL ConfigMap %s/%s has no key %s', ref['namespace'], ref['name'], key)
            return ''
        return data[key]

    def resolve(self, gateway):
        """
        Parameters for ``gateway``.

        Raises InvalidParameters when the referenced GatewayClassParameters
        exist but are invalid.
        """
        gateway_class = self.gateway_class(gateway)
        if gateway_class is None:
            logger.info('GatewayClass %s of Gateway %s not found', gateway.class_name, gateway.key)
            return Parameters()
        name = self.parameters_name(gateway_class)
        if name is None:
            return Parameters()
        params = self.scheduler.gatewayclassparameters.find(None, name)
        if params is None:
            logger.warning('GatewayClassParameters %s not found', name)
            return Parameters()
        spec = validate(params.get('spec') or {})
        return Parameters(spec, self.user_vcl(spec.get('userVCLConfigMapRef')))
