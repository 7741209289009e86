"""
Condition vocabulary and merging.

Type, reason and message strings are compared byte for byte by conformance
tooling and must not be reworded.
"""
from datetime import datetime, timezone

from scheduler import KubeHTTPClient

# condition types
ACCEPTED = 'Accepted'
PROGRAMMED = 'Programmed'
RESOLVED_REFS = 'ResolvedRefs'

# gateway and listener reasons
REASON_ACCEPTED = 'Accepted'
REASON_PROGRAMMED = 'Programmed'
REASON_INVALID = 'Invalid'
REASON_PENDING = 'Pending'
REASON_RESOLVED_REFS = 'ResolvedRefs'
REASON_INVALID_CERTIFICATE_REF = 'InvalidCertificateRef'
REASON_INVALID_ROUTE_KINDS = 'InvalidRouteKinds'
REASON_REF_NOT_PERMITTED = 'RefNotPermitted'

# route reasons
REASON_NOT_ALLOWED_BY_LISTENERS = 'NotAllowedByListeners'
REASON_NO_MATCHING_LISTENER_HOSTNAME = 'NoMatchingListenerHostname'
REASON_NO_MATCHING_PARENT = 'NoMatchingParent'
REASON_INVALID_KIND = 'InvalidKind'
REASON_BACKEND_NOT_FOUND = 'BackendNotFound'

TRUE = 'True'
FALSE = 'False'


def now():
    return KubeHTTPClient.format_date(datetime.now(timezone.utc))


def condition(type, status, reason, message, generation=0):
    return {
        'type': type,
        'status': TRUE if status else FALSE,
        'reason': reason,
        'message': message,
        'observedGeneration': generation,
        'lastTransitionTime': now(),
    }


def find(conditions, type):
    for existing in conditions or []:
        if existing.get('type') == type:
            return existing
    return None


def is_true(conditions, type):
    existing = find(conditions, type)
    return existing is not None and existing.get('status') == TRUE


def merge(existing, desired):
    """
    Merge freshly computed conditions into the existing list.

    A condition whose status did not change keeps its previous
    lastTransitionTime, even when reason or message differ. Conditions of
    types not in ``desired`` are kept as they are, and at most one condition
    per type survives.
    """
    merged = []
    seen = set()
    for new in desired:
        if new['type'] in seen:
            continue
        seen.add(new['type'])
        new = dict(new)
        old = find(existing, new['type'])
        if old is not None and old.get('status') == new['status'] and old.get('lastTransitionTime'):
            new['lastTransitionTime'] = old['lastTransitionTime']
        merged.append(new)
    for old in existing or []:
        if old.get('type') not in seen:
            seen.add(old.get('type'))
            merged.append(old)
    return merged
