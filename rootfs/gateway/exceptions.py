class GatewayException(Exception):
    pass


class ExpectedRace(GatewayException):
    """
    An object owned by a sibling reconciler does not exist yet.

    Its creation triggers a watch event of its own, so the reconcile is
    retried after a short fixed delay instead of the failure backoff.
    """


class InvalidParameters(GatewayException):
    """GatewayClassParameters that fail validation."""
