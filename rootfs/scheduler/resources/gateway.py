from scheduler.resources import Resource


class GatewayAPIResource(Resource):
    abstract = True
    api_prefix = 'apis'
    api_version = 'gateway.networking.k8s.io/v1'


class GatewayClass(GatewayAPIResource):
    plural = 'gatewayclasses'
    namespaced = False

    def manifest(self, namespace, name, **kwargs):
        data = super().manifest(namespace, name, **kwargs)
        data["spec"] = {"controllerName": kwargs["controller_name"]}
        if kwargs.get("parameters_ref"):
            data["spec"]["parametersRef"] = kwargs["parameters_ref"]
        return data


class Gateway(GatewayAPIResource):
    short_name = 'gw'

    def manifest(self, namespace, name, **kwargs):
        data = super().manifest(namespace, name, **kwargs)
        data["spec"] = {
            "gatewayClassName": kwargs.get("gateway_class", "varnish"),
            "listeners": kwargs.get("listeners", []),
        }
        return data


class HTTPRoute(GatewayAPIResource):

    def manifest(self, namespace, name, **kwargs):
        data = super().manifest(namespace, name, **kwargs)
        data["spec"] = {
            "parentRefs": kwargs["parent_refs"],
            "rules": kwargs.get("rules", []),
        }
        if kwargs.get("hostnames"):
            data["spec"]["hostnames"] = kwargs["hostnames"]
        return data


class ReferenceGrant(GatewayAPIResource):
    api_version = 'gateway.networking.k8s.io/v1beta1'

    def manifest(self, namespace, name, **kwargs):
        data = super().manifest(namespace, name, **kwargs)
        data["spec"] = {
            "from": kwargs["from_refs"],
            "to": kwargs["to_refs"],
        }
        return data
