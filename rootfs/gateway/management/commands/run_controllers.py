import logging
import signal
import threading

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError

from gateway import watches
from gateway.reconcilers.gateway import GatewayReconciler
from gateway.reconcilers.gatewayclass import GatewayClassReconciler
from gateway.reconcilers.httproute import HTTPRouteReconciler
from gateway.utils import get_scheduler
from gateway.workqueue import Controller, Watcher

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    """Management command running the gateway, httproute and gatewayclass controllers"""

    def add_arguments(self, parser):
        parser.add_argument(
            "--controllers",
            nargs="+",
            choices=["gateway", "httproute", "gatewayclass"],
            default=["gatewayclass", "gateway", "httproute"],
            help="controllers to run, all of them by default.",
        )

    def controllers(self, scheduler, names):
        available = {
            "gatewayclass": (GatewayClassReconciler, watches.gatewayclass_watches),
            "gateway": (GatewayReconciler, watches.gateway_watches),
            "httproute": (HTTPRouteReconciler, watches.httproute_watches),
        }
        for name in names:
            reconciler_class, watch_factory = available[name]
            controller = Controller(reconciler_class(scheduler))
            watchers = [Watcher(scheduler, watch, controller.queue) for watch in watch_factory()]
            yield controller, watchers

    def handle(self, *args, **options):
        scheduler = get_scheduler()
        stopping = threading.Event()

        def stop(signum, frame):
            logger.info("received signal %s, shutting down", signum)
            stopping.set()

        signal.signal(signal.SIGTERM, stop)
        signal.signal(signal.SIGINT, stop)

        print("Starting controllers for GatewayClass {}".format(settings.GATEWAY_CLASS_NAME))
        threads, queues, streams = [], [], []
        for controller, watchers in self.controllers(scheduler, options["controllers"]):
            queues.append(controller.queue)
            streams += watchers
            for watcher in watchers:
                threads.append(threading.Thread(
                    target=watcher.run, args=(stopping,), daemon=True,
                    name="watch-{}-{}".format(controller.name, watcher.watch.resource)))
            threads.append(threading.Thread(
                target=controller.run, args=(stopping,), daemon=True,
                name="controller-{}".format(controller.name)))
        for thread in threads:
            thread.start()

        dead = []
        while not stopping.wait(1):
            dead = [thread.name for thread in threads if not thread.is_alive()]
            if dead:
                logger.error("threads %s exited unexpectedly, shutting down", ", ".join(dead))
                stopping.set()

        for watcher in streams:
            watcher.stop()
        for queue in queues:
            queue.shutdown()
        for thread in threads:
            thread.join(timeout=5)
        if dead:
            raise CommandError("controller threads exited: {}".format(", ".join(dead)))
        print("Controllers stopped.")
