from collections import OrderedDict
from datetime import timezone
import logging
import requests
import requests.exceptions
from requests_toolbelt import user_agent
from urllib.parse import urljoin

from gateway import __version__ as gateway_version
from scheduler.exceptions import KubeException, KubeHTTPException  # noqa


logger = logging.getLogger(__name__)
session = None

SERVICE_ACCOUNT_DIR = '/var/run/secrets/kubernetes.io/serviceaccount'


def get_k8s_session(k8s_api_verify_tls):
    """Shared session authenticated with the pod's service account token."""
    global session
    if session is None:
        with open('{}/token'.format(SERVICE_ACCOUNT_DIR)) as token_file:
            token = token_file.read()
        session = requests.Session()
        session.headers = {
            'Authorization': 'Bearer ' + token,
            'Content-Type': 'application/json',
            'User-Agent': user_agent('Varnish Gateway Operator', gateway_version)
        }
        session.verify = '{}/ca.crt'.format(SERVICE_ACCOUNT_DIR) if k8s_api_verify_tls else False
    return session


class KubeHTTPClient(object):
    api_version = 'v1'
    api_prefix = 'api'
    # ISO-8601 which is used by kubernetes
    DATETIME_FORMAT = '%Y-%m-%dT%H:%M:%SZ'
    resource_mapping = OrderedDict()

    def __init__(self, url, k8s_api_verify_tls=True):
        self.url = url
        self.k8s_api_verify_tls = k8s_api_verify_tls
        self.session = get_k8s_session(self.k8s_api_verify_tls)

        # expose every Resource kind as an attribute, by plural and short name
        from scheduler.resources import Resource  # lazy load
        for res in Resource:
            if res.plural in self.resource_mapping:
                continue
            # placeholder first, a Resource builds its own KubeHTTPClient
            self.resource_mapping[res.plural] = ''
            self.resource_mapping[res.plural] = res(self.url, self.k8s_api_verify_tls)
            for alias in (res.__name__.lower(), res.short_name):
                if alias is not None and alias != res.plural:
                    self.resource_mapping[alias.lower()] = res.plural

    def api(self, tmpl, *args):
        """Return a fully-qualified Kubernetes API URL from a string template with args."""
        return "/{}/{}".format(self.api_prefix, self.api_version) + tmpl.format(*args)

    def __getattr__(self, name):
        if name in self.resource_mapping:
            component = self.resource_mapping[name]
            if isinstance(component, str):
                component = self.resource_mapping[component]
            return component

        return object.__getattribute__(self, name)

    @staticmethod
    def format_date(date):
        return date.astimezone(timezone.utc).strftime(KubeHTTPClient.DATETIME_FORMAT)

    @staticmethod
    def unhealthy(status_code):
        return not 200 <= status_code <= 299

    @staticmethod
    def query_params(labels=None, resource_version=None):
        query = {}
        if labels:
            # equality selectors, a None value only asks for the label to exist
            query['labelSelector'] = ','.join(
                key if value is None else '{}={}'.format(key, value)
                for key, value in sorted(labels.items()))
        if resource_version:
            query['resourceVersion'] = resource_version
        return query

    @staticmethod
    def log(namespace, message, level='INFO'):
        """Logs a message in the context of a namespaced object."""
        lvl = getattr(logging, level.upper(), logging.INFO)
        logger.log(lvl, "[{}]: {}".format(namespace, message))

    def http(self, method, path, **kwargs):
        """
        Send one request to the k8s server.

        Any failure below HTTP, a refused connection as much as a stream cut
        off halfway, is raised as KubeException.
        """
        url = urljoin(self.url, path)
        try:
            return self.session.request(method, url, **kwargs)
        except requests.exceptions.RequestException as err:
            message = "{} {} against the Kubernetes API server failed: {}".format(method, url, err)
            logger.error(message)
            raise KubeException(message) from err

    def http_get(self, path, params=None, **kwargs):
        return self.http('GET', path, params=params, **kwargs)

    def http_post(self, path, **kwargs):
        return self.http('POST', path, **kwargs)

    def http_put(self, path, **kwargs):
        return self.http('PUT', path, **kwargs)

    def http_patch(self, path, **kwargs):
        # accepted media types include:
        # application/merge-patch+json,
        # application/apply-patch+yaml
        return self.http('PATCH', path, **kwargs)

    def http_delete(self, path, **kwargs):
        return self.http('DELETE', path, **kwargs)


SchedulerClient = KubeHTTPClient
