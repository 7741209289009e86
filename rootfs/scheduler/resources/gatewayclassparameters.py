from scheduler.resources import Resource


class GatewayClassParameters(Resource):
    api_prefix = 'apis'
    api_version = 'gateway.varnish-software.com/v1alpha1'
    plural = 'gatewayclassparameters'
    namespaced = False

    def manifest(self, namespace, name, **kwargs):
        data = super().manifest(namespace, name, **kwargs)
        data["spec"] = kwargs.get("spec", {})
        return data
