"""
Listener certificate references.

``TLSValidator.validate`` is the strict path that drives the listener's
ResolvedRefs condition. ``TLSValidator.collect`` is the lenient path that
assembles the PEM bundle mounted into the data plane, skipping whatever it
cannot use.
"""
import logging

from cryptography import x509

from gateway import conditions
from gateway.grants import Reference
from gateway.objects import CORE_GROUP, GATEWAY_GROUP
from scheduler.exceptions import KubeException, is_not_found
from scheduler.resources.secret import Secret

logger = logging.getLogger(__name__)

SECRET_TYPE_TLS = 'kubernetes.io/tls'


def certificate_reference(gateway, ref):
    return Reference(GATEWAY_GROUP, 'Gateway', gateway.namespace,
                     CORE_GROUP, 'Secret', ref.namespace, ref.name)


def is_valid_certificate(data):
    try:
        x509.load_pem_x509_certificates(data)
    except ValueError:
        return False
    return True


def bundle_key(gateway, ref):
    if ref.namespace != gateway.namespace:
        return '{}-{}.pem'.format(ref.namespace, ref.name)
    return '{}.pem'.format(ref.name)


class TLSValidator(object):

    def __init__(self, scheduler, authorizer):
        self.scheduler = scheduler
        self.authorizer = authorizer

    def resolved(self, status, reason, message, generation):
        return conditions.condition(conditions.RESOLVED_REFS, status, reason, message, generation)

    def validate(self, gateway, listener):
        """Return the ResolvedRefs condition for an HTTPS listener."""
        generation = gateway.generation
        invalid = conditions.REASON_INVALID_CERTIFICATE_REF
        if not listener.terminates_tls:
            return self.resolved(True, conditions.REASON_RESOLVED_REFS, 'Refs resolved', generation)
        if not listener.tls.certificate_refs:
            return self.resolved(False, invalid, 'HTTPS listener has no certificateRefs', generation)

        for ref in listener.tls.certificate_refs:
            if ref.group != CORE_GROUP:
                return self.resolved(
                    False, invalid, 'Unsupported certificateRef group: {}'.format(ref.group), generation)
            if ref.kind != 'Secret':
                return self.resolved(
                    False, invalid, 'Unsupported certificateRef kind: {}'.format(ref.kind), generation)

            reference = certificate_reference(gateway, ref)
            if reference.crosses_namespace:
                try:
                    allowed = self.authorizer.is_allowed(reference)
                except KubeException as e:
                    logger.error('failed to check ReferenceGrant for %s: %s', reference, e)
                    return self.resolved(
                        False, conditions.REASON_REF_NOT_PERMITTED,
                        'Failed to validate cross-namespace certificateRef {}/{}: {}'.format(
                            ref.namespace, ref.name, e),
                        generation)
                if not allowed:
                    return self.resolved(
                        False, conditions.REASON_REF_NOT_PERMITTED,
                        'Cross-namespace certificateRef {}/{} not allowed by any ReferenceGrant'.format(
                            ref.namespace, ref.name),
                        generation)

            try:
                secret = self.scheduler.secrets.get(ref.namespace, ref.name).json()
            except KubeException as e:
                if is_not_found(e):
                    message = 'Secret {}/{} not found'.format(ref.namespace, ref.name)
                else:
                    message = 'Failed to get Secret {}/{}: {}'.format(ref.namespace, ref.name, e)
                return self.resolved(False, invalid, message, generation)

            if secret.get('type') != SECRET_TYPE_TLS:
                return self.resolved(
                    False, invalid,
                    'Secret {}/{} has type {}, expected kubernetes.io/tls'.format(
                        ref.namespace, ref.name, secret.get('type')),
                    generation)
            cert = Secret.decode(secret, 'tls.crt')
            key = Secret.decode(secret, 'tls.key')
            if not cert or not key:
                return self.resolved(
                    False, invalid,
                    'Secret {}/{} missing tls.crt or tls.key data'.format(ref.namespace, ref.name),
                    generation)
            if not is_valid_certificate(cert):
                return self.resolved(
                    False, invalid,
                    'Secret {}/{} tls.crt does not contain valid PEM data'.format(ref.namespace, ref.name),
                    generation)

        return self.resolved(
            True, conditions.REASON_RESOLVED_REFS, 'All TLS certificate references resolved', generation)

    def collect(self, gateway):
        """
        Map of bundle file name to certificate followed by key, one entry per
        usable Secret referenced by a terminating HTTPS listener.
        """
        bundle = {}
        for listener in gateway.listeners:
            if not listener.terminates_tls:
                continue
            for ref in listener.tls.certificate_refs:
                if ref.group != CORE_GROUP or ref.kind != 'Secret':
                    continue
                key = bundle_key(gateway, ref)
                if key in bundle:
                    continue
                reference = certificate_reference(gateway, ref)
                if reference.crosses_namespace:
                    try:
                        if not self.authorizer.is_allowed(reference):
                            logger.warning('cross-namespace TLS certificateRef %s/%s of Gateway %s '
                                           'not allowed by ReferenceGrant, skipping',
                                           ref.namespace, ref.name, gateway.key)
                            continue
                    except KubeException as e:
                        logger.error('failed to check ReferenceGrant for TLS Secret %s/%s: %s',
                                     ref.namespace, ref.name, e)
                        continue
                try:
                    secret = self.scheduler.secrets.get(ref.namespace, ref.name).json()
                except KubeException as e:
                    if is_not_found(e):
                        logger.warning('TLS Secret %s/%s not found', ref.namespace, ref.name)
                    else:
                        logger.error('failed to get TLS Secret %s/%s: %s', ref.namespace, ref.name, e)
                    continue
                if secret.get('type') != SECRET_TYPE_TLS:
                    logger.warning('TLS Secret %s/%s has type %s, expected kubernetes.io/tls',
                                   ref.namespace, ref.name, secret.get('type'))
                    continue
                cert = Secret.decode(secret, 'tls.crt')
                private_key = Secret.decode(secret, 'tls.key')
                if not cert or not private_key:
                    logger.warning('TLS Secret %s/%s missing tls.crt or tls.key', ref.namespace, ref.name)
                    continue
                if not cert.endswith(b'\n'):
                    cert += b'\n'
                bundle[key] = cert + private_key
        return bundle
