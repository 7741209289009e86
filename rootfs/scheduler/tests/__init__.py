import random
import string
import unittest

from gateway.utils import get_scheduler
from scheduler import mock


def generate_random_name(prefix='test', length=8):
    return '{}-{}'.format(prefix, ''.join(
        random.choice(string.ascii_lowercase + string.digits) for _ in range(length)))


class TestCase(unittest.TestCase):
    """Base class for scheduler tests, one fresh namespace per test."""

    def setUp(self):
        mock.reset()
        self.scheduler = get_scheduler()
        self.namespace = generate_random_name('ns')
        self.scheduler.ns.create(None, self.namespace)
