import logging

from django.conf import settings

from gateway import builder, routing
from gateway.attachment import AttachmentResolver
from gateway.exceptions import InvalidParameters
from gateway.grants import ReferenceAuthorizer
from gateway.infra import InfraConfig
from gateway.objects import Gateway
from gateway.parameters import ParametersResolver
from gateway.reconcilers.base import DONE, Reconciler, Result
from gateway.status import StatusSynchronizer
from gateway.tls import TLSValidator
from scheduler.exceptions import KubeException, KubeHTTPException, is_conflict, is_not_found


class GatewayReconciler(Reconciler):
    """
    Owns a Gateway's infrastructure and its gateway level status.

    A Gateway of the managed class moves through these states:

    * gone: nothing to do
    * deleting: remove the cluster scoped children, then the finalizer
    * active without finalizer: add the finalizer and requeue
    * active: build the children, create or update them, publish status
    """
    name = 'gateway'

    def __init__(self, scheduler):
        super().__init__(scheduler)
        self.authorizer = ReferenceAuthorizer(scheduler)
        self.attachment = AttachmentResolver(scheduler)
        self.tls = TLSValidator(scheduler, self.authorizer)
        self.parameters = ParametersResolver(scheduler)
        self.status = StatusSynchronizer(scheduler, self.attachment, self.tls)

    def reconcile(self, request):
        obj = self.scheduler.gateways.find(request.namespace, request.name)
        if obj is None:
            self.log(request, 'gateway not found, nothing to do', logging.DEBUG)
            return DONE
        gateway = Gateway(obj)
        if gateway.class_name != settings.GATEWAY_CLASS_NAME:
            self.log(request, 'gateway class {} is not managed here'.format(gateway.class_name),
                     logging.DEBUG)
            return DONE
        if gateway.deleting:
            return self.finalize(request, gateway)
        if builder.FINALIZER not in gateway.finalizers:
            self.add_finalizer(request, gateway)
            return Result(requeue=True)

        try:
            config = self.resolve(gateway)
            for child in builder.build(gateway, config):
                self.apply(request, child)
            for resource, namespace, name in builder.obsolete(gateway, config):
                self.prune(request, resource, namespace, name)
        except InvalidParameters as e:
            self.log(request, 'invalid GatewayClassParameters: {}'.format(e), logging.WARNING)
            self.status.publish_gateway(gateway, error=e)
            return DONE
        except KubeException as e:
            self.log(request, 'failed to converge infrastructure: {}'.format(e), logging.ERROR)
            try:
                self.status.publish_gateway(gateway, error=e)
            except KubeException as status_error:
                self.log(request, 'failed to publish failure status: {}'.format(status_error),
                         logging.ERROR)
            raise

        self.status.publish_gateway(gateway)
        self.log(request, 'gateway reconciled', logging.DEBUG)
        return DONE

    def resolve(self, gateway):
        parameters = self.parameters.resolve(gateway)
        vcl = routing.merge(routing.generate(), parameters.user_vcl)
        tls_bundle = self.tls.collect(gateway)
        pull_secrets = list(settings.IMAGE_PULL_SECRETS)
        infra = InfraConfig(
            settings.GATEWAY_IMAGE,
            extra_args=parameters.extra_args,
            logging=parameters.logging,
            pull_secrets=pull_secrets,
            has_tls=bool(tls_bundle),
            extra_volumes=parameters.extra_volumes,
            extra_volume_mounts=parameters.extra_volume_mounts,
            extra_init_containers=parameters.extra_init_containers,
        )
        return builder.ResolvedConfig(
            settings.GATEWAY_IMAGE, vcl, parameters,
            tls_bundle=tls_bundle,
            pull_secrets=pull_secrets,
            infra_hash=infra.digest(),
            cluster_role=settings.GATEWAY_CHAPERONE_CLUSTER_ROLE,
        )

    def apply(self, request, child):
        resource = getattr(self.scheduler, child.resource)
        existing = resource.find(child.namespace, child.name)
        if existing is None:
            try:
                resource.create(child.namespace, child.name, data=child.manifest)
            except KubeHTTPException as e:
                # created concurrently, converged on the next pass
                if not is_conflict(e):
                    raise
            self.log(request, 'created {}'.format(resource.describe(child.namespace, child.name)))
            return
        patch = child.update(existing)
        if patch is None:
            return
        resource.patch(child.namespace, child.name, patch)
        self.log(request, 'updated {}'.format(resource.describe(child.namespace, child.name)))

    def prune(self, request, resource_name, namespace, name):
        """Delete a child we created earlier and no longer want."""
        resource = getattr(self.scheduler, resource_name)
        existing = resource.find(namespace, name)
        if existing is None:
            return
        labels = existing['metadata'].get('labels') or {}
        if labels.get(builder.MANAGED_BY_LABEL) != builder.MANAGED_BY:
            return
        try:
            resource.delete(namespace, name, ignore_exception=False)
        except KubeHTTPException as e:
            if not is_not_found(e):
                raise
        self.log(request, 'deleted {}'.format(resource.describe(namespace, name)))

    def add_finalizer(self, request, gateway):
        metadata = gateway.raw['metadata']
        self.scheduler.gateways.patch(gateway.namespace, gateway.name, {'metadata': {
            'finalizers': gateway.finalizers + [builder.FINALIZER],
            'resourceVersion': metadata['resourceVersion'],
        }})
        self.log(request, 'added finalizer', logging.DEBUG)

    def finalize(self, request, gateway):
        if builder.FINALIZER not in gateway.finalizers:
            return DONE
        name = builder.cluster_role_binding_name(gateway)
        try:
            self.scheduler.clusterrolebindings.delete(None, name, ignore_exception=False)
            self.log(request, 'deleted ClusterRoleBinding {}'.format(name))
        except KubeHTTPException as e:
            if not is_not_found(e):
                raise
        finalizers = [f for f in gateway.finalizers if f != builder.FINALIZER]
        try:
            self.scheduler.gateways.patch(gateway.namespace, gateway.name, {'metadata': {
                'finalizers': finalizers or None,
                'resourceVersion': gateway.raw['metadata']['resourceVersion'],
            }})
        except KubeHTTPException as e:
            if is_not_found(e):
                self.log(request, 'gateway already gone', logging.DEBUG)
                return DONE
            raise
        self.log(request, 'removed finalizer')
        return DONE
