import logging

logger = logging.getLogger(__name__)


class Request(object):
    """The namespace/name of one object to reconcile."""

    def __init__(self, namespace, name):
        self.namespace = namespace
        self.name = name

    @classmethod
    def from_object(cls, obj):
        metadata = obj['metadata']
        return cls(metadata.get('namespace'), metadata['name'])

    @property
    def key(self):
        if self.namespace:
            return '{}/{}'.format(self.namespace, self.name)
        return self.name

    def __eq__(self, other):
        return isinstance(other, Request) and self.key == other.key

    def __hash__(self):
        return hash(self.key)

    def __repr__(self):
        return 'Request({})'.format(self.key)


class Result(object):

    def __init__(self, requeue=False, requeue_after=None):
        self.requeue = requeue
        self.requeue_after = requeue_after

    def __eq__(self, other):
        return isinstance(other, Result) and \
            (self.requeue, self.requeue_after) == (other.requeue, other.requeue_after)

    def __repr__(self):
        return 'Result(requeue={}, requeue_after={})'.format(self.requeue, self.requeue_after)


DONE = Result()


class Reconciler(object):
    """
    Converges one kind of object.

    ``reconcile`` is called with a Request and returns a Result; raising
    requeues the request with backoff.
    """
    name = None

    def __init__(self, scheduler):
        self.scheduler = scheduler

    def log(self, request, message, level=logging.INFO):
        """Logs a message in the context of the object being reconciled.

        This prefixes log messages with the namespace/name key of the object
        so every line emitted while converging it can be found together.
        """
        logger.log(level, "[{}]: {}".format(request.key, message))

    def reconcile(self, request):
        raise NotImplementedError
