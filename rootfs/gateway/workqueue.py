"""
Controller runtime: a rate limited work queue, the worker draining it and
the list-then-watch threads feeding it. Watch streams are decoded by the
official kubernetes client's ``watch.Watch``.
"""
import heapq
import itertools
import logging
import threading
import time
from collections import deque

from django.conf import settings
from kubernetes import watch as kube_watch
from kubernetes.client import ApiException

from gateway.exceptions import GatewayException
from scheduler.exceptions import KubeException, is_gone

logger = logging.getLogger(__name__)


class WorkQueue(object):
    """
    A de-duplicating queue of reconcile requests.

    An item is never handed to two workers at once: an item added while it
    is being processed is marked dirty and queued again once ``done`` is
    called for it. Delayed items wait in a heap until they are due.
    """

    def __init__(self, backoff_base=None, backoff_max=None):
        self.backoff_base = settings.GATEWAY_BACKOFF_BASE if backoff_base is None else backoff_base
        self.backoff_max = settings.GATEWAY_BACKOFF_MAX if backoff_max is None else backoff_max
        self.cond = threading.Condition()
        self.queue = deque()
        self.dirty = set()
        self.processing = set()
        self.waiting = []
        self.sequence = itertools.count()
        self.failures = {}
        self.shutting_down = False

    def __len__(self):
        with self.cond:
            return len(self.queue)

    def add(self, item):
        with self.cond:
            if self.shutting_down or item in self.dirty:
                return
            self.dirty.add(item)
            if item not in self.processing:
                self.queue.append(item)
                self.cond.notify()

    def add_after(self, item, delay):
        if delay <= 0:
            return self.add(item)
        with self.cond:
            if self.shutting_down:
                return
            heapq.heappush(self.waiting, (time.monotonic() + delay, next(self.sequence), item))
            self.cond.notify()

    def backoff(self, item):
        failures = self.failures.get(item, 0)
        return min(self.backoff_base * (2 ** failures), self.backoff_max)

    def add_rate_limited(self, item):
        with self.cond:
            delay = self.backoff(item)
            self.failures[item] = self.failures.get(item, 0) + 1
        self.add_after(item, delay)

    def forget(self, item):
        with self.cond:
            self.failures.pop(item, None)

    def num_requeues(self, item):
        with self.cond:
            return self.failures.get(item, 0)

    def _promote(self):
        now = time.monotonic()
        while self.waiting and self.waiting[0][0] <= now:
            _, _, item = heapq.heappop(self.waiting)
            if item in self.dirty:
                continue
            self.dirty.add(item)
            if item not in self.processing:
                self.queue.append(item)

    def get(self, timeout=None):
        """
        Block until an item is ready and return it, or None on timeout or
        shutdown.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self.cond:
            while True:
                self._promote()
                if self.queue:
                    item = self.queue.popleft()
                    self.processing.add(item)
                    self.dirty.discard(item)
                    return item
                if self.shutting_down:
                    return None
                wait = None
                if self.waiting:
                    wait = max(self.waiting[0][0] - time.monotonic(), 0)
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self.cond.wait(wait)

    def done(self, item):
        with self.cond:
            self.processing.discard(item)
            if item in self.dirty:
                self.queue.append(item)
                self.cond.notify()

    def shutdown(self):
        with self.cond:
            self.shutting_down = True
            self.cond.notify_all()


class Controller(object):
    """Feeds queued requests to one reconciler, one at a time."""

    def __init__(self, reconciler, queue=None):
        self.reconciler = reconciler
        self.queue = queue if queue is not None else WorkQueue()

    @property
    def name(self):
        return self.reconciler.name

    def process_next(self, timeout=None):
        request = self.queue.get(timeout)
        if request is None:
            return False
        try:
            result = self.reconciler.reconcile(request)
        except (KubeException, GatewayException) as e:
            delay = self.queue.backoff(request)
            logger.error('[%s]: %s reconcile failed, retrying in %.3fs: %s',
                         request.key, self.name, delay, e)
            self.queue.add_rate_limited(request)
        except Exception:
            logger.exception('[%s]: %s reconcile crashed', request.key, self.name)
            self.queue.add_rate_limited(request)
        else:
            if result.requeue_after:
                self.queue.forget(request)
                self.queue.add_after(request, result.requeue_after)
            elif result.requeue:
                self.queue.add_rate_limited(request)
            else:
                self.queue.forget(request)
        finally:
            self.queue.done(request)
        return True

    def run(self, stopping):
        logger.info('starting %s controller', self.name)
        while not stopping.is_set():
            self.process_next(timeout=0.5)
        logger.info('stopped %s controller', self.name)


def expired(err):
    """True when a watch asked for a resourceVersion the server no longer keeps."""
    if isinstance(err, ApiException):
        return err.status == 410
    return is_gone(err)


class Watcher(object):
    """
    Lists then watches one resource and enqueues mapped requests.

    Events are read with ``kubernetes.watch.Watch``, resuming from the last
    seen resourceVersion. An expired resourceVersion starts over with a fresh
    list. Any other failure, including a stream cut off mid-read, is logged
    and retried with exponential backoff; the watcher only returns once
    ``stopping`` is set.
    """

    def __init__(self, scheduler, watch, queue, timeout=None):
        self.scheduler = scheduler
        self.watch = watch
        self.queue = queue
        self.timeout = settings.GATEWAY_WATCH_TIMEOUT if timeout is None else timeout
        self.resource = getattr(scheduler, watch.resource)
        # last seen object per key, for predicates
        self.seen = {}
        self.resource_version = None
        self.active = None
        self.lock = threading.Lock()

    def key(self, obj):
        metadata = obj['metadata']
        return (metadata.get('namespace'), metadata['name'])

    def handle(self, event_type, obj):
        key = self.key(obj)
        old = self.seen.get(key)
        if event_type == 'DELETED':
            self.seen.pop(key, None)
        else:
            self.seen[key] = obj
        if event_type != 'DELETED' and self.watch.predicate is not None \
                and not self.watch.predicate(old, obj):
            return
        for request in self.watch.mapper(self.scheduler, obj):
            self.queue.add(request)

    def list(self):
        response = self.resource.get(None, labels=self.watch.labels)
        data = response.json()
        current = {}
        for obj in data.get('items') or []:
            current[self.key(obj)] = obj
            self.handle('ADDED', obj)
        for key in set(self.seen) - set(current):
            obj = self.seen[key]
            self.handle('DELETED', obj)
        self.resource_version = data['metadata'].get('resourceVersion')

    def sync(self):
        """Consume one watch stream, returning the number of events seen."""
        stream = kube_watch.Watch(return_type='object')
        with self.lock:
            self.active = stream
        count = 0
        try:
            for event in stream.stream(self.resource.stream, None,
                                       labels=self.watch.labels,
                                       resource_version=self.resource_version,
                                       timeout_seconds=max(1, int(self.timeout))):
                obj = event['raw_object']
                self.resource_version = obj['metadata'].get('resourceVersion', self.resource_version)
                count += 1
                self.handle(event['type'], obj)
        finally:
            stream.stop()
            with self.lock:
                if self.active is stream:
                    self.active = None
        return count

    def stop(self):
        """Interrupt the open watch stream, if any."""
        with self.lock:
            stream = self.active
        if stream is not None:
            stream.stop()

    def run(self, stopping):
        failures = 0
        while not stopping.is_set():
            try:
                if self.resource_version is None:
                    self.list()
                if self.sync() == 0:
                    # an empty stream that returned early, do not spin
                    stopping.wait(min(1.0, self.timeout))
                failures = 0
            except Exception as e:
                if expired(e):
                    logger.info('watch of %s expired, relisting', self.watch.resource)
                    self.resource_version = None
                    continue
                failures += 1
                delay = min(settings.GATEWAY_BACKOFF_BASE * (2 ** failures), settings.GATEWAY_BACKOFF_MAX)
                if isinstance(e, (KubeException, ApiException)):
                    logger.error('watch of %s failed, relisting in %.3fs: %s',
                                 self.watch.resource, delay, e)
                else:
                    logger.exception('watch of %s broke off, relisting in %.3fs',
                                     self.watch.resource, delay)
                self.resource_version = None
                stopping.wait(delay)
        logger.info('stopped watching %s', self.watch.resource)
