from gateway.settings.production import *  # noqa

# A boolean that turns on/off debug mode.
DEBUG = True

# scheduler for testing
SCHEDULER_MODULE = 'scheduler.mock'
SCHEDULER_URL = 'http://test-scheduler.example.com'

GATEWAY_IMAGE = 'ghcr.io/varnish/gateway:test'
IMAGE_PULL_SECRETS = []

GATEWAY_REQUEUE_AFTER = 0.01
GATEWAY_BACKOFF_BASE = 0.001
GATEWAY_BACKOFF_MAX = 0.05
GATEWAY_WATCH_TIMEOUT = 1
