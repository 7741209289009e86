import importlib
import logging

import jsonschema
from django.conf import settings

logger = logging.getLogger(__name__)


def get_scheduler():
    """Return a client for the configured scheduler module."""
    module = importlib.import_module(settings.SCHEDULER_MODULE)
    return module.SchedulerClient(settings.SCHEDULER_URL, settings.K8S_API_VERIFY_TLS)


def validate_json(value, schema, raise_exception=ValueError):
    if value is not None:
        try:
            jsonschema.validate(value, schema)
        except jsonschema.ValidationError as e:
            raise raise_exception("could not validate {}: {}".format(value, e.message))
    return value


def dict_diff(dict1, dict2):
    """
    Returns the added, changed, and deleted items in dict1 compared with dict2.

    Used to report which data keys of a child object drifted from the
    desired state.

    >>> dict_diff({'main.vcl': 'a'}, {'main.vcl': 'a'})
    {}
    >>> dict_diff({'main.vcl': 'b', 'routing.json': '{}'}, {'main.vcl': 'a'})
    {'added': {'routing.json': '{}'}, 'changed': {'main.vcl': 'b'}}
    """
    diff = {}
    set1, set2 = set(dict1), set(dict2)
    diff['added'] = {k: dict1[k] for k in (set1 - set2)}
    diff['changed'] = {
        k: dict1[k] for k in (set1 & set2) if dict1[k] != dict2[k]
    }
    diff['deleted'] = {k: dict2[k] for k in (set2 - set1)}
    return {k: diff[k] for k in diff if diff[k]}
