import hashlib
import json

# pod template annotation carrying the digest below
INFRA_HASH_ANNOTATION = 'varnish.io/infra-hash'

SEPARATOR = b'\x00'


class InfraConfig(object):
    """
    The restart-relevant part of a gateway's configuration.

    Everything hashed here changes the pod template; anything left out
    (routing content, certificate rotation) is hot reloaded by the data plane.
    """

    def __init__(self, image, extra_args=None, logging=None, pull_secrets=None,
                 has_tls=False, extra_volumes=None, extra_volume_mounts=None,
                 extra_init_containers=None):
        self.image = image
        self.extra_args = list(extra_args or [])
        self.logging = logging
        self.pull_secrets = list(pull_secrets or [])
        self.has_tls = has_tls
        self.extra_volumes = list(extra_volumes or [])
        self.extra_volume_mounts = list(extra_volume_mounts or [])
        self.extra_init_containers = list(extra_init_containers or [])

    def digest(self):
        h = hashlib.sha256()

        def write(*chunks):
            for chunk in chunks:
                h.update(chunk.encode('utf-8') if isinstance(chunk, str) else chunk)

        write(self.image, SEPARATOR)
        write('\x00'.join(sorted(self.extra_args)), SEPARATOR)
        if self.logging:
            write(self.logging.get('mode', ''), SEPARATOR)
            write(self.logging.get('format', ''), SEPARATOR)
            write(self.logging.get('image', ''), SEPARATOR)
            write('\x00'.join(sorted(self.logging.get('extraArgs') or [])), SEPARATOR)
        write('\x00'.join(sorted(self.pull_secrets)), SEPARATOR)
        if self.has_tls:
            write('tls')
        write(SEPARATOR)
        for items in (self.extra_volumes, self.extra_volume_mounts):
            if items:
                write(serialize(items))
            write(SEPARATOR)
        if self.extra_init_containers:
            write(serialize(self.extra_init_containers))
        return h.hexdigest()


def serialize(items):
    return json.dumps(items, sort_keys=True, separators=(',', ':'))


def needs_restart(existing, desired):
    """
    True when the Deployment's pod template must be replaced.

    Only the served image and the infra hash annotation are compared.
    """
    def image(deployment):
        containers = deployment['spec']['template']['spec'].get('containers') or []
        return containers[0].get('image') if containers else None

    def infra_hash(deployment):
        annotations = deployment['spec']['template'].get('metadata', {}).get('annotations') or {}
        return annotations.get(INFRA_HASH_ANNOTATION)

    return image(existing) != image(desired) or infra_hash(existing) != infra_hash(desired)
