import importlib
import json
import pkgutil

from scheduler import KubeHTTPClient
from scheduler.exceptions import KubeHTTPException, is_not_found


class ResourceRegistry(type):
    """
    A registry of all Resources subclassed
    """
    def __init__(cls, name, bases, attrs):
        if not hasattr(cls, 'plugins'):
            cls.plugins = []
        else:
            if not attrs.get('abstract', False):
                cls.plugins.append(cls)
        if 'kind' not in attrs:
            cls.kind = name
        if 'plural' not in attrs:
            cls.plural = name.lower() + 's'
        super().__init__(name, bases, attrs)

    def __iter__(cls):
        return iter(cls.plugins)


class Resource(KubeHTTPClient, metaclass=ResourceRegistry):
    """
    Generic CRUD over one Kubernetes kind.

    Every method takes the namespace first. Cluster scoped kinds set
    ``namespaced = False`` and ignore it, and a ``None`` namespace on a
    namespaced kind addresses the collection across all namespaces.
    """
    abstract = True
    api_version = 'v1'
    api_prefix = 'api'
    short_name = None
    namespaced = True

    def __init__(self, url, k8s_api_verify_tls=True):
        super().__init__(url, k8s_api_verify_tls)

    def path(self, namespace=None, name=None, subresource=None):
        tmpl, args = '', []
        if self.namespaced and namespace is not None:
            tmpl += '/namespaces/{}'
            args.append(namespace)
        tmpl += '/{}'
        args.append(self.plural)
        if name is not None:
            tmpl += '/{}'
            args.append(name)
        if subresource is not None:
            tmpl += '/{}'
            args.append(subresource)
        return self.api(tmpl, *args)

    def describe(self, namespace, name=None):
        if name is None:
            return self.kind
        if self.namespaced and namespace is not None:
            return '{} "{}/{}"'.format(self.kind, namespace, name)
        return '{} "{}"'.format(self.kind, name)

    def manifest(self, namespace, name, **kwargs):
        data = {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "metadata": {
                "name": name,
            },
        }
        if self.namespaced:
            data["metadata"]["namespace"] = namespace
        for key, field in (("labels", "labels"),
                           ("annotations", "annotations"),
                           ("owner_references", "ownerReferences"),
                           ("finalizers", "finalizers")):
            if kwargs.get(key):
                data["metadata"][field] = kwargs[key]
        if "version" in kwargs:
            data["metadata"]["resourceVersion"] = kwargs.get("version")
        return data

    def get(self, namespace, name=None, ignore_exception=False, **kwargs):
        """
        Fetch a single object or a list of objects
        """
        url = self.path(namespace, name)
        response = self.http_get(url, params=self.query_params(**kwargs))
        if not ignore_exception and self.unhealthy(response.status_code):
            raise KubeHTTPException(response, 'get {}', self.describe(namespace, name))

        return response

    def find(self, namespace, name):
        """Return the object as a dict, or None when it does not exist."""
        try:
            return self.get(namespace, name).json()
        except KubeHTTPException as e:
            if is_not_found(e):
                return None
            raise

    def items(self, namespace=None, **kwargs):
        return self.get(namespace, **kwargs).json().get("items") or []

    def create(self, namespace, name, data=None, ignore_exception=False, **kwargs):
        if data is None:
            data = self.manifest(namespace, name, **kwargs)
        response = self.http_post(self.path(namespace), json=data)
        if not ignore_exception and self.unhealthy(response.status_code):
            self.log(namespace, 'template used: {}'.format(json.dumps(data, indent=4)), 'DEBUG')
            raise KubeHTTPException(response, 'create {}', self.describe(namespace, name))

        return response

    def update(self, namespace, name, data, ignore_exception=False):
        response = self.http_put(self.path(namespace, name), json=data)
        if not ignore_exception and self.unhealthy(response.status_code):
            raise KubeHTTPException(response, 'update {}', self.describe(namespace, name))

        return response

    def patch(self, namespace, name, data, ignore_exception=False):
        response = self.http_patch(
            self.path(namespace, name),
            json=data,
            headers={"Content-Type": "application/merge-patch+json"}
        )
        if not ignore_exception and self.unhealthy(response.status_code):
            raise KubeHTTPException(response, 'patch {}', self.describe(namespace, name))

        return response

    def apply_status(self, namespace, name, data, field_manager):
        """
        Server-side apply against the status subresource.

        Only the fields present in ``data`` are claimed by ``field_manager``,
        so several writers can own disjoint parts of one status.
        """
        response = self.http_patch(
            self.path(namespace, name, 'status'),
            data=json.dumps(data),
            params={'fieldManager': field_manager, 'force': 'true'},
            headers={"Content-Type": "application/apply-patch+yaml"}
        )
        if self.unhealthy(response.status_code):
            raise KubeHTTPException(response, 'apply status of {}', self.describe(namespace, name))

        return response

    def update_status(self, namespace, name, data):
        response = self.http_put(self.path(namespace, name, 'status'), json=data)
        if self.unhealthy(response.status_code):
            raise KubeHTTPException(response, 'update status of {}', self.describe(namespace, name))

        return response

    def delete(self, namespace, name, ignore_exception=True):
        response = self.http_delete(self.path(namespace, name))
        if not ignore_exception and self.unhealthy(response.status_code):
            raise KubeHTTPException(response, 'delete {}', self.describe(namespace, name))

        return response

    def stream(self, namespace=None, labels=None, resource_version=None, timeout_seconds=None,
               **kwargs):
        """
        Open a watch request and return its undecoded body.

        This is the list function handed to ``kubernetes.watch.Watch.stream``,
        which adds its own ``watch`` and ``_preload_content`` flags and reads
        the events off the returned urllib3 response.
        """
        params = self.query_params(labels=labels, resource_version=resource_version)
        params['watch'] = 'true'
        if timeout_seconds is not None:
            params['timeoutSeconds'] = int(timeout_seconds)
        response = self.http_get(self.path(namespace), params=params, stream=True,
                                 headers={'Accept-Encoding': 'identity'})
        if self.unhealthy(response.status_code):
            raise KubeHTTPException(response, 'watch {}', self.describe(namespace))

        return response.raw


# register every resource kind shipped in this package
for _, modname, _ in pkgutil.iter_modules(__path__):
    importlib.import_module('{}.{}'.format(__name__, modname))
