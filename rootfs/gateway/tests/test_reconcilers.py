"""
Unit tests for the gateway, httproute and gatewayclass reconcilers.

Run the tests with './manage.py test gateway'
"""
import json
from unittest import mock

from django.conf import settings

from gateway import builder
from gateway.infra import INFRA_HASH_ANNOTATION
from gateway.reconcilers.base import DONE, Request, Result
from gateway.reconcilers.gateway import GatewayReconciler
from gateway.reconcilers.gatewayclass import GatewayClassReconciler
from gateway.reconcilers.httproute import HTTPRouteReconciler
from gateway.tests import GatewayTestCase
from scheduler.exceptions import KubeException, KubeHTTPException


class ReconcilerTestCase(GatewayTestCase):

    def setUp(self):
        super().setUp()
        self.gateways = GatewayReconciler(self.scheduler)
        self.routes = HTTPRouteReconciler(self.scheduler)

    def converge(self, name='gw'):
        """Reconcile a Gateway until it settles."""
        request = Request(self.namespace, name)
        for _ in range(3):
            result = self.gateways.reconcile(request)
            if result == DONE:
                return result
        self.fail('gateway {} did not settle'.format(name))

    def reconcile_route(self, name='route'):
        return self.routes.reconcile(Request(self.namespace, name))

    def parents(self, name='route', namespace=None):
        status = self.get('httproutes', name, namespace).get('status') or {}
        return [parent for parent in status.get('parents') or []
                if parent['controllerName'] == settings.GATEWAY_CONTROLLER_NAME]

    def parent_conditions(self, parent='gw', name='route'):
        for entry in self.parents(name):
            if entry['parentRef']['name'] == parent:
                return {c['type']: c for c in entry['conditions']}
        self.fail('no parent status for {}'.format(parent))

    def gateway_conditions(self, name='gw'):
        status = self.get('gateways', name).get('status') or {}
        return {c['type']: c for c in status.get('conditions') or []}

    def attached_routes(self, name='gw'):
        status = self.get('gateways', name).get('status') or {}
        return {listener['name']: listener['attachedRoutes'] for listener in status.get('listeners') or []}

    def routing(self, name='gw'):
        configmap = self.get('configmaps', '{}-vcl'.format(name))
        return json.loads(configmap['data'][builder.ROUTING_KEY])


class GatewayReconcilerTest(ReconcilerTestCase):

    def test_missing_gateway(self):
        self.assertEqual(self.gateways.reconcile(Request('default', 'missing')), DONE)

    def test_other_gateway_class(self):
        self.create_gateway(gateway_class='other')
        self.assertEqual(self.gateways.reconcile(Request('default', 'gw')), DONE)
        self.assertNotIn('finalizers', self.get('gateways', 'gw')['metadata'])

    def test_adds_finalizer_first(self):
        self.create_gateway()
        result = self.gateways.reconcile(Request('default', 'gw'))
        self.assertEqual(result, Result(requeue=True))
        self.assertEqual(self.get('gateways', 'gw')['metadata']['finalizers'], [builder.FINALIZER])
        self.assertIsNone(self.scheduler.configmaps.find('default', 'gw-vcl'))

    def test_creates_children(self):
        self.create_gateway()
        self.converge()
        self.assertIsNotNone(self.scheduler.configmaps.find('default', 'gw-vcl'))
        self.assertIsNotNone(self.scheduler.secrets.find('default', 'gw-secret'))
        self.assertIsNone(self.scheduler.secrets.find('default', 'gw-tls'))
        self.assertIsNotNone(self.scheduler.serviceaccounts.find('default', 'gw-chaperone'))
        self.assertIsNotNone(self.scheduler.clusterrolebindings.find(None, 'default-gw-chaperone'))
        deployment = self.scheduler.deployments.find('default', 'gw')
        self.assertEqual(deployment['spec']['template']['spec']['containers'][0]['image'],
                         settings.GATEWAY_IMAGE)
        service = self.scheduler.services.find('default', 'gw')
        self.assertEqual([p['port'] for p in service['spec']['ports']], [80])

        conditions = self.gateway_conditions()
        self.assertEqual(conditions['Accepted']['status'], 'True')
        self.assertEqual(conditions['Accepted']['message'], 'Gateway accepted by controller')
        self.assertEqual(conditions['Programmed']['status'], 'True')
        self.assertEqual(self.attached_routes(), {'http': 0})

    def test_reconcile_is_idempotent(self):
        self.create_gateway()
        self.converge()
        children = [
            ('configmaps', 'default', 'gw-vcl'),
            ('secrets', 'default', 'gw-secret'),
            ('serviceaccounts', 'default', 'gw-chaperone'),
            ('clusterrolebindings', None, 'default-gw-chaperone'),
            ('deployments', 'default', 'gw'),
            ('services', 'default', 'gw'),
        ]

        def versions():
            return [getattr(self.scheduler, resource).find(namespace, name)['metadata']['resourceVersion']
                    for resource, namespace, name in children]

        before = versions()
        self.converge()
        self.assertEqual(versions(), before)

    def test_routing_json_is_left_alone(self):
        self.create_gateway()
        self.converge()
        routing = '{"version": 2, "vhosts": {"example.com": {"routes": []}}}'
        self.scheduler.configmaps.patch('default', 'gw-vcl', {'data': {builder.ROUTING_KEY: routing}})
        self.scheduler.configmaps.patch('default', 'gw-vcl', {'data': {builder.VCL_KEY: 'stale'}})
        self.converge()
        data = self.get('configmaps', 'gw-vcl')['data']
        self.assertEqual(data[builder.ROUTING_KEY], routing)
        self.assertTrue(data[builder.VCL_KEY].startswith('vcl 4.1;'))

    def test_adding_tls_restarts_deployment(self):
        self.create_gateway()
        self.converge()
        before = self.get('deployments', 'gw')['spec']['template']['metadata']['annotations']
        self.create_tls_secret('cert')
        self.scheduler.gateways.patch('default', 'gw', {'spec': {'listeners': [
            {'name': 'http', 'protocol': 'HTTP', 'port': 80},
            {'name': 'https', 'protocol': 'HTTPS', 'port': 443,
             'tls': {'certificateRefs': [{'name': 'cert'}]}},
        ]}})
        self.converge()

        after = self.get('deployments', 'gw')['spec']['template']['metadata']['annotations']
        self.assertNotEqual(before[INFRA_HASH_ANNOTATION], after[INFRA_HASH_ANNOTATION])
        tls = self.get('secrets', 'gw-tls')
        self.assertEqual(list(tls['data']), ['cert.pem'])
        ports = self.get('services', 'gw')['spec']['ports']
        self.assertEqual([(p['port'], p['targetPort']) for p in ports], [(80, 8080), (443, 8443)])
        status = self.get('gateways', 'gw')['status']
        https, = [listener for listener in status['listeners'] if listener['name'] == 'https']
        resolved, = [c for c in https['conditions'] if c['type'] == 'ResolvedRefs']
        self.assertEqual(resolved['status'], 'True')

    def test_removing_tls_deletes_tls_secret(self):
        self.create_tls_secret('cert')
        self.create_gateway(listeners=[
            {'name': 'http', 'protocol': 'HTTP', 'port': 80},
            {'name': 'https', 'protocol': 'HTTPS', 'port': 443,
             'tls': {'certificateRefs': [{'name': 'cert'}]}},
        ])
        self.converge()
        self.assertIsNotNone(self.scheduler.secrets.find('default', 'gw-tls'))

        self.scheduler.gateways.patch('default', 'gw', {'spec': {'listeners': [
            {'name': 'http', 'protocol': 'HTTP', 'port': 80},
        ]}})
        self.converge()
        self.assertIsNone(self.scheduler.secrets.find('default', 'gw-tls'))
        volumes = self.get('deployments', 'gw')['spec']['template']['spec']['volumes']
        self.assertNotIn('gw-tls', [v.get('secret', {}).get('secretName') for v in volumes])
        # the user's certificate stays
        self.assertIsNotNone(self.scheduler.secrets.find('default', 'cert'))

    def test_unmanaged_secret_is_not_pruned(self):
        self.scheduler.secrets.create('default', 'gw-tls', data={'tls.crt': 'kept'})
        self.create_gateway()
        self.converge()
        self.assertIsNotNone(self.scheduler.secrets.find('default', 'gw-tls'))

    def test_cross_namespace_certificate_grant(self):
        self.create_namespace('certs')
        self.create_tls_secret('shared', namespace='certs')
        self.create_gateway(listeners=[{
            'name': 'https', 'protocol': 'HTTPS', 'port': 443,
            'tls': {'certificateRefs': [{'name': 'shared', 'namespace': 'certs'}]},
        }])
        self.converge()

        def resolved():
            listener, = self.get('gateways', 'gw')['status']['listeners']
            return {c['type']: c for c in listener['conditions']}['ResolvedRefs']

        self.assertEqual(resolved()['status'], 'False')
        self.assertEqual(resolved()['reason'], 'RefNotPermitted')
        self.assertIsNone(self.scheduler.secrets.find('default', 'gw-tls'))

        self.create_grant('allow-gateways', 'certs', 'Gateway', 'default', 'Secret')
        self.converge()
        self.assertEqual(resolved()['status'], 'True')
        self.assertIsNotNone(self.scheduler.secrets.find('default', 'gw-tls'))

    def test_invalid_parameters(self):
        self.scheduler.gatewayclasses.delete(None, settings.GATEWAY_CLASS_NAME)
        self.scheduler.gatewayclasses.create(
            None, settings.GATEWAY_CLASS_NAME, controller_name=settings.GATEWAY_CONTROLLER_NAME,
            parameters_ref={'group': 'gateway.varnish-software.com',
                            'kind': 'GatewayClassParameters', 'name': 'params'})
        self.scheduler.gatewayclassparameters.create(
            None, 'params', spec={'varnishdExtraArgs': ['-S', '/etc/secret']})
        self.create_gateway()
        self.assertEqual(self.converge(), DONE)

        conditions = self.gateway_conditions()
        for type in ('Accepted', 'Programmed'):
            self.assertEqual(conditions[type]['status'], 'False')
            self.assertEqual(conditions[type]['reason'], 'Invalid')
            self.assertIn('-S', conditions[type]['message'])
        self.assertIsNone(self.scheduler.deployments.find('default', 'gw'))

    def test_api_failure_is_reported_and_raised(self):
        self.create_gateway()
        self.gateways.reconcile(Request('default', 'gw'))
        with mock.patch.object(self.scheduler.deployments, 'create',
                               side_effect=KubeException('quota exceeded')):
            with self.assertRaises(KubeException):
                self.gateways.reconcile(Request('default', 'gw'))
        conditions = self.gateway_conditions()
        self.assertEqual(conditions['Programmed']['status'], 'False')
        self.assertEqual(conditions['Programmed']['message'], 'quota exceeded')

        self.converge()
        self.assertEqual(self.gateway_conditions()['Programmed']['status'], 'True')

    def test_deletion(self):
        self.create_gateway()
        self.converge()
        self.scheduler.gateways.delete('default', 'gw')
        self.assertIn('deletionTimestamp', self.get('gateways', 'gw')['metadata'])

        self.assertEqual(self.gateways.reconcile(Request('default', 'gw')), DONE)
        self.assertIsNone(self.scheduler.clusterrolebindings.find(None, 'default-gw-chaperone'))
        self.assertIsNone(self.scheduler.gateways.find('default', 'gw'))
        # namespaced children go with their owner
        self.assertIsNone(self.scheduler.configmaps.find('default', 'gw-vcl'))
        self.assertIsNone(self.scheduler.deployments.find('default', 'gw'))

    def test_deletion_with_binding_already_gone(self):
        self.create_gateway()
        self.converge()
        self.scheduler.clusterrolebindings.delete(None, 'default-gw-chaperone')
        self.scheduler.gateways.delete('default', 'gw')
        self.assertEqual(self.gateways.reconcile(Request('default', 'gw')), DONE)
        self.assertIsNone(self.scheduler.gateways.find('default', 'gw'))

    def test_deletion_with_gateway_already_gone(self):
        self.create_gateway()
        self.converge()
        self.scheduler.gateways.delete('default', 'gw')
        gone = self.scheduler.gateways.get('default', 'missing', ignore_exception=True)
        with mock.patch.object(self.scheduler.gateways, 'patch',
                               side_effect=KubeHTTPException(gone, 'patch {}', 'Gateway "gw"')):
            self.assertEqual(self.gateways.reconcile(Request('default', 'gw')), DONE)

    def test_finalizer_removal_conflict_is_raised(self):
        self.create_gateway()
        self.converge()
        self.scheduler.gateways.delete('default', 'gw')
        stale = self.scheduler.gateways.get('default', 'missing', ignore_exception=True)
        stale.status_code = 409
        with mock.patch.object(self.scheduler.gateways, 'patch',
                               side_effect=KubeHTTPException(stale, 'patch {}', 'Gateway "gw"')):
            with self.assertRaises(KubeHTTPException):
                self.gateways.reconcile(Request('default', 'gw'))


class HTTPRouteReconcilerTest(ReconcilerTestCase):

    def test_missing_backend_then_created(self):
        self.create_gateway()
        self.converge()
        self.create_route()

        result = self.reconcile_route()
        self.assertEqual(result, Result(requeue_after=settings.GATEWAY_REQUEUE_AFTER))
        conditions = self.parent_conditions()
        self.assertEqual(conditions['Accepted']['status'], 'True')
        self.assertEqual(conditions['Accepted']['message'], 'Route accepted')
        self.assertEqual(conditions['ResolvedRefs']['status'], 'False')
        self.assertEqual(conditions['ResolvedRefs']['reason'], 'BackendNotFound')
        self.assertEqual(conditions['ResolvedRefs']['message'],
                         'Service "backend" not found in namespace "default"')
        route = self.routing()['default']['routes']
        self.assertEqual(route[0]['backend']['service'], 'backend')

        self.create_service()
        self.assertEqual(self.reconcile_route(), DONE)
        conditions = self.parent_conditions()
        self.assertEqual(conditions['ResolvedRefs']['status'], 'True')
        self.assertEqual(conditions['ResolvedRefs']['message'], 'All references resolved')

    def test_configmap_not_created_yet(self):
        self.create_gateway()
        self.create_service()
        self.create_route()
        result = self.reconcile_route()
        self.assertEqual(result, Result(requeue_after=settings.GATEWAY_REQUEUE_AFTER))
        accepted = self.parent_conditions()['Accepted']
        self.assertEqual(accepted['status'], 'False')
        self.assertEqual(accepted['reason'], 'Pending')
        self.assertEqual(accepted['message'],
                         'Failed to update ConfigMap: ConfigMap default/gw-vcl not yet created')

        self.converge()
        self.assertEqual(self.reconcile_route(), DONE)
        self.assertEqual(self.parent_conditions()['Accepted']['status'], 'True')

    def test_gateway_not_found(self):
        self.create_route(parent_refs=[{'name': 'missing'}])
        self.assertEqual(self.reconcile_route(), DONE)
        conditions = self.parent_conditions('missing')
        self.assertEqual(conditions['Accepted']['reason'], 'NoMatchingParent')
        self.assertEqual(conditions['Accepted']['message'], 'Gateway missing not found')
        self.assertEqual(conditions['ResolvedRefs']['status'], 'True')
        self.assertEqual(conditions['ResolvedRefs']['message'], 'References resolved')

    def test_hostname_mismatch(self):
        self.create_gateway(listeners=[
            {'name': 'http', 'protocol': 'HTTP', 'port': 80, 'hostname': 'example.com'}])
        self.converge()
        self.create_route(hostnames=['example.org'])
        self.assertEqual(self.reconcile_route(), DONE)
        conditions = self.parent_conditions()
        self.assertEqual(conditions['Accepted']['status'], 'False')
        self.assertEqual(conditions['Accepted']['reason'], 'NoMatchingListenerHostname')
        self.assertEqual(conditions['ResolvedRefs']['message'], 'All references resolved')
        self.assertEqual(self.attached_routes(), {'http': 0})

    def test_other_namespace_not_allowed(self):
        self.create_gateway()
        self.converge()
        self.create_namespace('apps')
        self.create_route(namespace='apps', parent_refs=[{'name': 'gw', 'namespace': 'default'}])
        self.assertEqual(self.routes.reconcile(Request('apps', 'route')), DONE)
        parent, = self.parents(namespace='apps')
        accepted = {c['type']: c for c in parent['conditions']}['Accepted']
        self.assertEqual(accepted['reason'], 'NotAllowedByListeners')

    def test_other_gateway_class_is_skipped(self):
        self.create_gateway(gateway_class='other')
        self.create_route()
        self.assertEqual(self.reconcile_route(), DONE)
        self.assertEqual(self.parents(), [])

    def test_non_gateway_parent_is_skipped(self):
        self.create_route(parent_refs=[{'name': 'mesh', 'kind': 'Service', 'group': ''}])
        self.assertEqual(self.reconcile_route(), DONE)
        self.assertEqual(self.parents(), [])

    def test_routing_and_attached_routes(self):
        self.create_gateway(listeners=[
            {'name': 'http', 'protocol': 'HTTP', 'port': 80},
            {'name': 'api', 'protocol': 'HTTP', 'port': 8080, 'hostname': 'api.example.com'},
        ])
        self.converge()
        self.create_service()
        self.create_route('site', hostnames=['www.example.com'])
        self.create_route('api', hostnames=['api.example.com'], rules=[{
            'matches': [{'path': {'type': 'PathPrefix', 'value': '/v1'}}],
            'backendRefs': [{'name': 'backend', 'port': 8080}],
        }])
        self.reconcile_route('site')
        self.reconcile_route('api')

        routing = self.routing()
        self.assertEqual(sorted(routing['vhosts']), ['api.example.com', 'www.example.com'])
        self.assertNotIn('default', routing)
        self.assertEqual(routing['vhosts']['api.example.com']['routes'][0]['priority'], 1030)
        self.assertEqual(self.attached_routes(), {'http': 2, 'api': 1})

        # gateway reconciles do not reset the counts
        self.converge()
        self.assertEqual(self.attached_routes(), {'http': 2, 'api': 1})

    def test_route_deleted(self):
        self.create_gateway()
        self.converge()
        self.create_service()
        self.create_route()
        self.reconcile_route()
        self.assertEqual(self.attached_routes(), {'http': 1})

        self.scheduler.httproutes.delete('default', 'route')
        self.assertEqual(self.reconcile_route(), DONE)
        self.assertEqual(self.attached_routes(), {'http': 0})

    def test_no_parent_refs(self):
        self.create_route(parent_refs=[])
        self.assertEqual(self.reconcile_route(), DONE)

    def test_invalid_backend_kind(self):
        self.create_gateway()
        self.converge()
        self.create_route(rules=[{'backendRefs': [{'name': 'bucket', 'kind': 'Bucket', 'group': 'example.com'}]}])
        self.assertEqual(self.reconcile_route(), DONE)
        resolved = self.parent_conditions()['ResolvedRefs']
        self.assertEqual(resolved['reason'], 'InvalidKind')
        self.assertEqual(resolved['message'], 'BackendRef kind "Bucket" is not supported')

    def test_cross_namespace_backend(self):
        self.create_gateway()
        self.converge()
        self.create_namespace('backends')
        self.create_service(namespace='backends')
        self.create_route(rules=[{'backendRefs': [{'name': 'backend', 'namespace': 'backends', 'port': 8080}]}])
        self.reconcile_route()
        resolved = self.parent_conditions()['ResolvedRefs']
        self.assertEqual(resolved['reason'], 'RefNotPermitted')
        self.assertEqual(resolved['message'],
                         'Cross-namespace backendRef backends/backend not allowed by any ReferenceGrant')

        self.create_grant('allow-routes', 'backends', 'HTTPRoute', 'default', 'Service')
        self.assertEqual(self.reconcile_route(), DONE)
        self.assertEqual(self.parent_conditions()['ResolvedRefs']['status'], 'True')

    def test_removed_parent_is_pruned(self):
        self.create_gateway()
        self.converge()
        self.create_service()
        self.create_route(parent_refs=[{'name': 'gw'}, {'name': 'gone'}])
        self.reconcile_route()
        self.assertEqual(sorted(p['parentRef']['name'] for p in self.parents()), ['gone', 'gw'])

        self.scheduler.httproutes.patch('default', 'route', {'spec': {'parentRefs': [{'name': 'gw'}]}})
        self.reconcile_route()
        self.assertEqual([p['parentRef']['name'] for p in self.parents()], ['gw'])

    def test_api_failure_is_reported_and_raised(self):
        self.create_gateway()
        self.converge()
        self.create_route()
        with mock.patch.object(self.routes.attachment, 'attached_routes',
                               side_effect=KubeException('list failed')):
            with self.assertRaises(KubeException):
                self.reconcile_route()
        accepted = self.parent_conditions()['Accepted']
        self.assertEqual(accepted['reason'], 'Pending')
        self.assertEqual(accepted['message'], 'Failed to process Gateway gw: list failed')

    def test_backend_lookup_failure_is_raised(self):
        self.create_gateway()
        self.converge()
        self.create_service()
        self.create_route()
        find = self.scheduler.services.find

        def unreachable(namespace, name):
            if name == 'backend':
                raise KubeException('connection refused')
            return find(namespace, name)

        with mock.patch.object(self.scheduler.services, 'find', side_effect=unreachable):
            with self.assertRaises(KubeException):
                self.reconcile_route()
        accepted = self.parent_conditions()['Accepted']
        self.assertEqual(accepted['reason'], 'Pending')
        self.assertEqual(accepted['message'], 'Failed to process Gateway gw: connection refused')
        self.assertNotEqual(self.parent_conditions()['ResolvedRefs']['reason'], 'BackendNotFound')


class GatewayClassReconcilerTest(GatewayTestCase):

    def setUp(self):
        super().setUp()
        self.reconciler = GatewayClassReconciler(self.scheduler)

    def test_accepts_own_class(self):
        request = Request(None, settings.GATEWAY_CLASS_NAME)
        self.assertEqual(self.reconciler.reconcile(request), DONE)
        obj = self.scheduler.gatewayclasses.find(None, settings.GATEWAY_CLASS_NAME)
        accepted, = obj['status']['conditions']
        self.assertEqual(accepted['status'], 'True')
        self.assertEqual(accepted['message'], 'GatewayClass is accepted')

        version = obj['metadata']['resourceVersion']
        self.reconciler.reconcile(request)
        obj = self.scheduler.gatewayclasses.find(None, settings.GATEWAY_CLASS_NAME)
        self.assertEqual(obj['metadata']['resourceVersion'], version)

    def test_ignores_other_controllers(self):
        self.scheduler.gatewayclasses.create(None, 'other', controller_name='example.com/other')
        self.assertEqual(self.reconciler.reconcile(Request(None, 'other')), DONE)
        self.assertNotIn('status', self.scheduler.gatewayclasses.find(None, 'other'))

    def test_missing_class(self):
        self.assertEqual(self.reconciler.reconcile(Request(None, 'missing')), DONE)
