import unittest

from gateway.infra import INFRA_HASH_ANNOTATION, InfraConfig, needs_restart


def deployment(image='varnish:1', infra_hash='abc'):
    return {'spec': {'template': {
        'metadata': {'annotations': {INFRA_HASH_ANNOTATION: infra_hash}},
        'spec': {'containers': [{'name': 'varnish-gateway', 'image': image}]},
    }}}


class InfraConfigTest(unittest.TestCase):

    def test_argument_order_does_not_matter(self):
        a = InfraConfig('varnish:1', extra_args=['-p', 'a', '-p', 'b'])
        b = InfraConfig('varnish:1', extra_args=['-p', 'b', '-p', 'a'])
        self.assertEqual(a.digest(), b.digest())

    def test_stable(self):
        config = InfraConfig('varnish:1', pull_secrets=['registry'], has_tls=True)
        self.assertEqual(config.digest(), config.digest())
        self.assertEqual(len(config.digest()), 64)

    def test_tracked_fields_change_the_digest(self):
        base = InfraConfig('varnish:1')
        variants = [
            InfraConfig('varnish:2'),
            InfraConfig('varnish:1', extra_args=['-p', 'a']),
            InfraConfig('varnish:1', logging={'mode': 'varnishlog'}),
            InfraConfig('varnish:1', pull_secrets=['registry']),
            InfraConfig('varnish:1', has_tls=True),
            InfraConfig('varnish:1', extra_volumes=[{'name': 'cache', 'emptyDir': {}}]),
            InfraConfig('varnish:1', extra_volume_mounts=[{'name': 'cache', 'mountPath': '/c'}]),
            InfraConfig('varnish:1', extra_init_containers=[{'name': 'init', 'image': 'busybox'}]),
        ]
        digests = set(config.digest() for config in variants)
        self.assertEqual(len(digests), len(variants))
        self.assertNotIn(base.digest(), digests)

    def test_volumes_and_mounts_are_not_interchangeable(self):
        item = [{'name': 'cache'}]
        self.assertNotEqual(InfraConfig('varnish:1', extra_volumes=item).digest(),
                            InfraConfig('varnish:1', extra_volume_mounts=item).digest())

    def test_logging_fields(self):
        varnishlog = InfraConfig('varnish:1', logging={'mode': 'varnishlog'})
        ncsa = InfraConfig('varnish:1', logging={'mode': 'varnishncsa'})
        ncsa_format = InfraConfig('varnish:1', logging={'mode': 'varnishncsa', 'format': '%h'})
        self.assertEqual(len({varnishlog.digest(), ncsa.digest(), ncsa_format.digest()}), 3)


class NeedsRestartTest(unittest.TestCase):

    def test_same(self):
        self.assertFalse(needs_restart(deployment(), deployment()))

    def test_image_changed(self):
        self.assertTrue(needs_restart(deployment(image='varnish:1'), deployment(image='varnish:2')))

    def test_hash_changed(self):
        self.assertTrue(needs_restart(deployment(infra_hash='a'), deployment(infra_hash='b')))

    def test_other_fields_are_ignored(self):
        existing = deployment()
        existing['spec']['template']['spec']['containers'][0]['env'] = [{'name': 'X', 'value': '1'}]
        existing['spec']['replicas'] = 3
        self.assertFalse(needs_restart(existing, deployment()))
