"""
Django settings for the Varnish gateway operator.
"""
import os.path
import uuid

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

# operator version
VERSION = os.environ.get('VERSION', uuid.uuid1().hex[:8])

# A boolean that turns on/off debug mode.
# https://docs.djangoproject.com/en/4.2/ref/settings/#debug
DEBUG = os.environ.get('GATEWAY_DEBUG', 'false').lower() == "true"

SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'varnish-gateway-operator')

# Local time zone for this installation.
TIME_ZONE = os.environ.get('TZ', 'UTC')
USE_TZ = True

INSTALLED_APPS = (
    'gateway',
)

# the operator keeps all of its state in the Kubernetes API
DATABASES = {}

CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
    }
}

# LOGGING CONFIGURATION
# Send info+ to the console, with reconcile messages prefixed by the object key
LOG_LEVEL = os.environ.get('GATEWAY_LOG_LEVEL', 'INFO').upper()
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'root': {'level': 'DEBUG' if DEBUG else 'WARN'},
    'formatters': {
        'verbose': {
            'format': '%(levelname)s %(asctime)s %(module)s %(process)d %(thread)d %(message)s'
        },
        'simple': {
            'format': '%(levelname)s %(asctime)s %(name)s %(message)s'
        },
    },
    'handlers': {
        'null': {
            'level': 'DEBUG',
            'class': 'logging.NullHandler',
        },
        'console': {
            'level': 'DEBUG',
            'class': 'logging.StreamHandler',
            'formatter': 'verbose' if DEBUG else 'simple'
        }
    },
    'loggers': {
        'django': {
            'handlers': ['console'],
            'level': 'WARNING',
            'propagate': False,
        },
        'gateway': {
            'handlers': ['console'],
            'level': LOG_LEVEL,
            'propagate': False,
        },
        'scheduler': {
            'handlers': ['console'],
            'level': LOG_LEVEL,
            'propagate': False,
        },
    }
}
TEST_RUNNER = 'gateway.tests.SilentDjangoTestSuiteRunner'

# kubernetes API access
SCHEDULER_MODULE = 'scheduler'
SCHEDULER_URL = "https://{}:{}".format(
    os.environ.get('KUBERNETES_SERVICE_HOST', 'kubernetes.default'),
    os.environ.get('KUBERNETES_SERVICE_PORT', '443'),
)

K8S_API_VERIFY_TLS = os.environ.get('K8S_API_VERIFY_TLS', 'true').lower() == "true"

# the GatewayClass this operator serves and the controllerName it answers to
GATEWAY_CLASS_NAME = os.environ.get('GATEWAY_CLASS_NAME', 'varnish')
GATEWAY_CONTROLLER_NAME = 'varnish-software.com/gateway'

# images for the data plane
GATEWAY_IMAGE = os.environ.get('GATEWAY_IMAGE', 'ghcr.io/varnish/gateway:latest')
IMAGE_PULL_SECRETS = [
    s.strip() for s in os.environ.get('IMAGE_PULL_SECRETS', '').split(',') if s.strip()
]
# ClusterRole bound to every gateway's chaperone service account
GATEWAY_CHAPERONE_CLUSTER_ROLE = os.environ.get(
    'GATEWAY_CHAPERONE_CLUSTER_ROLE', 'varnish-gateway-chaperone')

# reconcile loop tuning, in seconds
GATEWAY_REQUEUE_AFTER = float(os.environ.get('GATEWAY_REQUEUE_AFTER', 2))
GATEWAY_BACKOFF_BASE = float(os.environ.get('GATEWAY_BACKOFF_BASE', 0.005))
GATEWAY_BACKOFF_MAX = float(os.environ.get('GATEWAY_BACKOFF_MAX', 300))
GATEWAY_WATCH_TIMEOUT = int(os.environ.get('GATEWAY_WATCH_TIMEOUT', 300))
GATEWAY_STATUS_RETRIES = int(os.environ.get('GATEWAY_STATUS_RETRIES', 5))
