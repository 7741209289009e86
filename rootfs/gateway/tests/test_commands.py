"""
Tests for the run_controllers management command.

Run the tests with './manage.py test gateway'
"""
from io import StringIO
import signal
from unittest import mock

from django.core.management import call_command
from django.core.management.base import CommandError

from gateway.tests import GatewayTestCase

COMMAND = 'gateway.management.commands.run_controllers'


class RunControllersTest(GatewayTestCase):

    def setUp(self):
        super().setUp()
        self.handlers = {}
        patcher = mock.patch(COMMAND + '.signal.signal', side_effect=self.handlers.__setitem__)
        patcher.start()
        self.addCleanup(patcher.stop)

    def call_command(self, *args):
        with mock.patch('sys.stdout', new_callable=StringIO) as out:
            call_command('run_controllers', '--controllers', 'gatewayclass', *args)
        return out.getvalue()

    def test_stops_on_sigterm(self):
        def run(watcher, stopping):
            self.handlers[signal.SIGTERM](signal.SIGTERM, None)
            stopping.wait(5)

        with mock.patch(COMMAND + '.Watcher.run', run):
            out = self.call_command()
        self.assertIn('Starting controllers for GatewayClass', out)
        self.assertIn('Controllers stopped.', out)

    def test_exits_when_a_watch_thread_dies(self):
        with mock.patch(COMMAND + '.Watcher.run', lambda watcher, stopping: None):
            with self.assertRaises(CommandError) as ctx:
                self.call_command()
        self.assertIn('watch-gatewayclass', str(ctx.exception))
