import logging

logger = logging.getLogger(__name__)


class Reference(object):
    """One cross-namespace reference, from a source object to a target object."""

    def __init__(self, from_group, from_kind, from_namespace,
                 to_group, to_kind, to_namespace, to_name):
        self.from_group = from_group
        self.from_kind = from_kind
        self.from_namespace = from_namespace
        self.to_group = to_group
        self.to_kind = to_kind
        self.to_namespace = to_namespace
        self.to_name = to_name

    @property
    def crosses_namespace(self):
        return self.from_namespace != self.to_namespace

    def __repr__(self):
        return '{}/{} in {} -> {}/{} {}/{}'.format(
            self.from_group, self.from_kind, self.from_namespace,
            self.to_group, self.to_kind, self.to_namespace, self.to_name)


def grant_allows(grant, reference):
    """
    True when one ReferenceGrant authorizes ``reference``.

    At least one ``from`` entry must match group, kind and namespace exactly,
    and at least one ``to`` entry must match group and kind with its name
    either unset or equal to the target name.
    """
    spec = grant.get('spec') or {}
    from_match = any(
        (entry.get('group', ''), entry.get('kind'), entry.get('namespace')) ==
        (reference.from_group, reference.from_kind, reference.from_namespace)
        for entry in spec.get('from') or []
    )
    if not from_match:
        return False
    for entry in spec.get('to') or []:
        if (entry.get('group', ''), entry.get('kind')) != (reference.to_group, reference.to_kind):
            continue
        if not entry.get('name') or entry['name'] == reference.to_name:
            return True
    return False


class ReferenceAuthorizer(object):
    """
    Decides cross-namespace references against ReferenceGrants.

    Grants are only read from the target namespace. Without a matching grant
    the reference is denied.
    """

    def __init__(self, scheduler):
        self.scheduler = scheduler

    def is_allowed(self, reference):
        if not reference.crosses_namespace:
            return True
        grants = self.scheduler.referencegrants.items(reference.to_namespace)
        for grant in grants:
            if grant_allows(grant, reference):
                logger.debug('reference %s allowed by ReferenceGrant %s',
                             reference, grant['metadata']['name'])
                return True
        return False
