"""
An in-memory stand-in for the Kubernetes API server.

The fake is mounted into the scheduler's requests session through a
``requests_mock`` adapter, so every resource class talks to it over the same
HTTP code path it uses against a real cluster. It models just enough of the
API machinery for the controllers: resourceVersion conflicts, generation
bumps on spec changes, finalizer gated deletion, owner reference garbage
collection, merge patches, status replacement, a simplified per field
manager server-side apply, label selectors and watch streams.
"""
from collections import OrderedDict
from copy import deepcopy
from datetime import datetime, timezone
import json
import logging
import threading
from urllib.parse import urlsplit, parse_qs
import uuid

import requests
import requests_mock

import scheduler
from scheduler import KubeHTTPClient

logger = logging.getLogger(__name__)

# list-map keys used when merging applied status configurations
LIST_MAP_KEYS = {
    'conditions': ('type',),
    'listeners': ('name',),
    'parents': ('controllerName', 'parentRef'),
}

_lock = threading.RLock()
_store = {}
_applied = {}
_events = []
_state = {'version': 0, 'compacted': 0}


def reset():
    """Forget every object and event."""
    with _lock:
        _store.clear()
        _applied.clear()
        del _events[:]
        _state['version'] = 0
        _state['compacted'] = 0


def compact():
    """Drop the event history, watches older than now get 410 Gone."""
    with _lock:
        del _events[:]
        _state['compacted'] = _state['version']


def _next_version():
    _state['version'] += 1
    return _state['version']


def _now():
    return datetime.now(timezone.utc).strftime(KubeHTTPClient.DATETIME_FORMAT)


def parse_path(path):
    segments = [s for s in path.split('/') if s]
    if segments[0] == 'api':
        root, rest = segments[:2], segments[2:]
    else:
        root, rest = segments[:3], segments[3:]
    namespace = None
    if len(rest) >= 3 and rest[0] == 'namespaces':
        namespace, rest = rest[1], rest[2:]
    plural = rest[0]
    name = rest[1] if len(rest) > 1 else None
    subresource = rest[2] if len(rest) > 2 else None
    return ('/'.join(root), plural), namespace, name, subresource


def merge_patch(target, patch):
    """RFC 7386 JSON merge patch."""
    if not isinstance(patch, dict):
        return deepcopy(patch)
    result = deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = merge_patch(result.get(key), value)
    return result


def _item_key(field, item):
    keys = LIST_MAP_KEYS[field]
    return json.dumps([item.get(k) for k in keys], sort_keys=True)


def structured_merge(target, applied, field=None):
    """Merge an applied configuration over ``target`` honouring list-map keys."""
    if isinstance(applied, dict):
        result = deepcopy(target) if isinstance(target, dict) else {}
        for key, value in applied.items():
            result[key] = structured_merge(result.get(key), value, key)
        return result
    if isinstance(applied, list) and field in LIST_MAP_KEYS and isinstance(target, list):
        merged = OrderedDict((_item_key(field, item), item) for item in target)
        for item in applied:
            key = _item_key(field, item)
            merged[key] = structured_merge(merged.get(key), item)
        return list(merged.values())
    return deepcopy(applied)


def _matches_labels(obj, selector):
    labels = obj['metadata'].get('labels') or {}
    for requirement in filter(None, selector.split(',')):
        if '!=' in requirement:
            key, value = requirement.split('!=', 1)
            if labels.get(key) == value:
                return False
        elif '=' in requirement:
            key, value = requirement.split('=', 1)
            if labels.get(key) != value.lstrip('='):
                return False
        elif requirement.startswith('!'):
            if requirement[1:] in labels:
                return False
        elif requirement not in labels:
            return False
    return True


class FakeAPIServer(object):

    def __call__(self, request):
        url = urlsplit(request.url)
        query = {k: v[0] for k, v in parse_qs(url.query).items()}
        try:
            collection, namespace, name, subresource = parse_path(url.path)
        except (IndexError, ValueError):
            return self.error(request, 404, 'NotFound', 'path {} not found'.format(url.path))

        with _lock:
            method = request.method.upper()
            if method == 'GET' and name is None:
                if query.get('watch') == 'true':
                    return self.watch(request, collection, namespace, query)
                return self.list(request, collection, namespace, query)
            if method == 'GET':
                return self.get(request, collection, namespace, name)
            if method == 'POST':
                return self.create(request, collection, namespace)
            if method == 'PUT':
                return self.update(request, collection, namespace, name, subresource)
            if method == 'PATCH':
                return self.patch(request, collection, namespace, name, subresource, query)
            if method == 'DELETE':
                return self.delete(request, collection, namespace, name)
        return self.error(request, 405, 'MethodNotAllowed', request.method)

    @staticmethod
    def error(request, code, reason, message):
        body = {'kind': 'Status', 'apiVersion': 'v1', 'status': 'Failure',
                'message': message, 'reason': reason, 'code': code}
        return requests_mock.create_response(request, json=body, status_code=code, reason=reason)

    @staticmethod
    def ok(request, obj, code=200):
        return requests_mock.create_response(request, json=deepcopy(obj), status_code=code)

    def lookup(self, collection, namespace, name):
        return _store.get(collection, {}).get((namespace, name))

    def record(self, collection, event_type, obj):
        _events.append((int(obj['metadata']['resourceVersion']), collection,
                        obj['metadata'].get('namespace'), event_type, deepcopy(obj)))

    def save(self, collection, obj, event_type='MODIFIED'):
        obj['metadata']['resourceVersion'] = str(_next_version())
        key = (obj['metadata'].get('namespace'), obj['metadata']['name'])
        _store.setdefault(collection, {})[key] = obj
        self.record(collection, event_type, obj)
        return obj

    def list(self, request, collection, namespace, query):
        items = []
        for (ns, _), obj in sorted(_store.get(collection, {}).items(), key=lambda i: str(i[0])):
            if namespace is not None and ns != namespace:
                continue
            if 'labelSelector' in query and not _matches_labels(obj, query['labelSelector']):
                continue
            items.append(deepcopy(obj))
        body = {
            'kind': 'List',
            'apiVersion': 'v1',
            'metadata': {'resourceVersion': str(_state['version'])},
            'items': items,
        }
        return requests_mock.create_response(request, json=body, status_code=200)

    def watch(self, request, collection, namespace, query):
        since = int(query.get('resourceVersion') or 0)
        if since < _state['compacted']:
            return self.error(request, 410, 'Expired', 'too old resource version: {}'.format(since))
        lines = []
        for version, coll, ns, event_type, obj in _events:
            if version <= since or coll != collection:
                continue
            if namespace is not None and ns != namespace:
                continue
            if 'labelSelector' in query and not _matches_labels(obj, query['labelSelector']):
                continue
            lines.append(json.dumps({'type': event_type, 'object': obj}) + '\n')
        return requests_mock.create_response(request, text=''.join(lines), status_code=200)

    def get(self, request, collection, namespace, name):
        obj = self.lookup(collection, namespace, name)
        if obj is None:
            return self.error(request, 404, 'NotFound', '{} "{}" not found'.format(collection[1], name))
        return self.ok(request, obj)

    def create(self, request, collection, namespace):
        obj = request.json()
        if namespace is not None and self.lookup(('api/v1', 'namespaces'), None, namespace) is None:
            return self.error(request, 404, 'NotFound', 'namespaces "{}" not found'.format(namespace))
        metadata = obj.setdefault('metadata', {})
        if namespace is not None:
            metadata['namespace'] = namespace
        if self.lookup(collection, namespace, metadata['name']) is not None:
            return self.error(request, 409, 'AlreadyExists',
                              '{} "{}" already exists'.format(collection[1], metadata['name']))
        metadata['uid'] = str(uuid.uuid4())
        metadata['creationTimestamp'] = _now()
        metadata.pop('resourceVersion', None)
        if 'spec' in obj:
            metadata['generation'] = 1
        return self.ok(request, self.save(collection, obj, 'ADDED'), 201)

    def check_version(self, request, current, desired):
        version = desired.get('metadata', {}).get('resourceVersion')
        if version and version != current['metadata']['resourceVersion']:
            return self.error(request, 409, 'Conflict',
                              'the object has been modified; please apply your changes '
                              'to the latest version and try again')
        return None

    def replace(self, collection, current, desired):
        obj = deepcopy(desired)
        obj['metadata'] = merge_patch(current['metadata'], {
            k: v for k, v in desired.get('metadata', {}).items()
            if k in ('labels', 'annotations', 'finalizers', 'ownerReferences')
        })
        for field in ('labels', 'annotations', 'finalizers', 'ownerReferences'):
            if field not in desired.get('metadata', {}):
                obj['metadata'].pop(field, None)
        obj['status'] = current.get('status')
        if obj['status'] is None:
            obj.pop('status')
        if 'generation' in current['metadata'] and obj.get('spec') != current.get('spec'):
            obj['metadata']['generation'] = current['metadata']['generation'] + 1
        return self.finish(collection, obj)

    def finish(self, collection, obj):
        metadata = obj['metadata']
        if metadata.get('deletionTimestamp') and not metadata.get('finalizers'):
            return self.remove(collection, obj)
        return self.save(collection, obj)

    def update(self, request, collection, namespace, name, subresource):
        current = self.lookup(collection, namespace, name)
        if current is None:
            return self.error(request, 404, 'NotFound', '{} "{}" not found'.format(collection[1], name))
        desired = request.json()
        conflict = self.check_version(request, current, desired)
        if conflict is not None:
            return conflict
        if subresource == 'status':
            obj = deepcopy(current)
            obj['status'] = desired.get('status', {})
            _applied.pop((collection, namespace, name), None)
            return self.ok(request, self.save(collection, obj))
        return self.ok(request, self.replace(collection, current, desired))

    def patch(self, request, collection, namespace, name, subresource, query):
        current = self.lookup(collection, namespace, name)
        if current is None:
            return self.error(request, 404, 'NotFound', '{} "{}" not found'.format(collection[1], name))
        body = request.json()
        content_type = request.headers.get('Content-Type', '')
        if subresource == 'status' and 'apply-patch' in content_type:
            manager = query.get('fieldManager')
            if not manager:
                return self.error(request, 400, 'BadRequest', 'fieldManager is required for apply')
            applied = _applied.setdefault((collection, namespace, name), OrderedDict())
            applied.pop(manager, None)
            applied[manager] = body.get('status', {})
            status = {}
            for configuration in applied.values():
                status = structured_merge(status, configuration)
            obj = deepcopy(current)
            obj['status'] = status
            return self.ok(request, self.save(collection, obj))
        conflict = self.check_version(request, current, body)
        if conflict is not None:
            return conflict
        if subresource == 'status':
            obj = deepcopy(current)
            obj['status'] = merge_patch(current.get('status'), body.get('status', {}))
            return self.ok(request, self.save(collection, obj))
        body.pop('status', None)
        obj = merge_patch(current, body)
        if 'generation' in current['metadata'] and obj.get('spec') != current.get('spec'):
            obj['metadata']['generation'] = current['metadata']['generation'] + 1
        return self.ok(request, self.finish(collection, obj))

    def delete(self, request, collection, namespace, name):
        current = self.lookup(collection, namespace, name)
        if current is None:
            return self.error(request, 404, 'NotFound', '{} "{}" not found'.format(collection[1], name))
        if current['metadata'].get('finalizers'):
            if not current['metadata'].get('deletionTimestamp'):
                obj = deepcopy(current)
                obj['metadata']['deletionTimestamp'] = _now()
                current = self.save(collection, obj)
            return self.ok(request, current)
        return self.ok(request, self.remove(collection, current))

    def remove(self, collection, obj):
        key = (obj['metadata'].get('namespace'), obj['metadata']['name'])
        _store.get(collection, {}).pop(key, None)
        _applied.pop((collection,) + key, None)
        obj['metadata']['resourceVersion'] = str(_next_version())
        self.record(collection, 'DELETED', obj)
        # garbage collect dependents
        uid = obj['metadata'].get('uid')
        for coll, objects in list(_store.items()):
            for dependent in list(objects.values()):
                owners = dependent['metadata'].get('ownerReferences') or []
                if any(owner.get('uid') == uid for owner in owners):
                    self.remove(coll, dependent)
        return obj


adapter = requests_mock.Adapter()
adapter.add_matcher(FakeAPIServer())
session = None


def get_session():
    global session
    if session is None:
        session = requests.Session()
        session.headers = {'Content-Type': 'application/json'}
        session.mount('http://', adapter)
        session.mount('https://', adapter)
    return session


class MockSchedulerClient(KubeHTTPClient):

    def __init__(self, url, k8s_api_verify_tls=True):
        # every resource shares the module level session
        scheduler.session = get_session()
        super().__init__(url, k8s_api_verify_tls)


SchedulerClient = MockSchedulerClient
