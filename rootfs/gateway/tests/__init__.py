import datetime
import logging
import unittest

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from django.conf import settings
from django.test.runner import DiscoverRunner

from gateway.utils import get_scheduler
from scheduler import mock


class SilentDjangoTestSuiteRunner(DiscoverRunner):
    """Prevents gateway log messages from cluttering the console during tests."""

    def run_tests(self, test_labels, **kwargs):
        """Run tests with all but critical log messages disabled."""
        # hide any log messages less than critical
        logging.disable(logging.ERROR)
        return super(SilentDjangoTestSuiteRunner, self).run_tests(
            test_labels, **kwargs)


def self_signed_certificate(hostname='example.com'):
    """Return a PEM certificate and key pair for ``hostname``."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostname)])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = x509.CertificateBuilder().subject_name(
        name
    ).issuer_name(
        name
    ).public_key(
        key.public_key()
    ).serial_number(
        x509.random_serial_number()
    ).not_valid_before(
        now - datetime.timedelta(days=1)
    ).not_valid_after(
        now + datetime.timedelta(days=30)
    ).add_extension(
        x509.SubjectAlternativeName([x509.DNSName(hostname)]), critical=False
    ).sign(key, hashes.SHA256())
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    return cert_pem, key_pem


class GatewayTestCase(unittest.TestCase):
    """
    Runs against the in-memory API server, reset before every test, with a
    managed GatewayClass and the ``default`` namespace in place.
    """
    namespace = 'default'

    def setUp(self):
        mock.reset()
        self.scheduler = get_scheduler()
        self.scheduler.ns.create(None, self.namespace)
        self.scheduler.gatewayclasses.create(
            None, settings.GATEWAY_CLASS_NAME, controller_name=settings.GATEWAY_CONTROLLER_NAME)

    def create_namespace(self, name, labels=None):
        return self.scheduler.ns.create(None, name, labels=labels).json()

    def create_gateway(self, name='gw', namespace=None, listeners=None, **kwargs):
        if listeners is None:
            listeners = [{'name': 'http', 'protocol': 'HTTP', 'port': 80}]
        return self.scheduler.gateways.create(
            namespace or self.namespace, name, listeners=listeners,
            gateway_class=kwargs.pop('gateway_class', settings.GATEWAY_CLASS_NAME), **kwargs).json()

    def create_route(self, name='route', namespace=None, parent_refs=None, rules=None,
                     hostnames=None):
        if parent_refs is None:
            parent_refs = [{'name': 'gw'}]
        if rules is None:
            rules = [{'backendRefs': [{'name': 'backend', 'port': 8080}]}]
        return self.scheduler.httproutes.create(
            namespace or self.namespace, name, parent_refs=parent_refs, rules=rules,
            hostnames=hostnames).json()

    def create_service(self, name='backend', namespace=None, port=8080):
        return self.scheduler.svc.create(namespace or self.namespace, name, ports=[{
            'name': 'http',
            'port': port,
            'protocol': 'TCP',
            'targetPort': port,
        }]).json()

    def create_tls_secret(self, name, namespace=None, hostname='example.com',
                          secret_type='kubernetes.io/tls', cert=None, key=None):
        if cert is None or key is None:
            cert, key = self_signed_certificate(hostname)
        return self.scheduler.secrets.create(
            namespace or self.namespace, name, secret_type=secret_type,
            data={'tls.crt': cert, 'tls.key': key}).json()

    def create_grant(self, name, namespace, from_kind, from_namespace, to_kind, to_name=None):
        from_group = '' if from_kind == 'Service' else 'gateway.networking.k8s.io'
        to = {'group': '', 'kind': to_kind}
        if to_name:
            to['name'] = to_name
        return self.scheduler.referencegrants.create(
            namespace, name,
            from_refs=[{'group': from_group, 'kind': from_kind, 'namespace': from_namespace}],
            to_refs=[to]).json()

    def get(self, resource, name, namespace=None):
        return getattr(self.scheduler, resource).get(namespace or self.namespace, name).json()
