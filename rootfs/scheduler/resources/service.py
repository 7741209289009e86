from scheduler.resources import Resource


class Service(Resource):
    short_name = 'svc'

    def manifest(self, namespace, name, **kwargs):
        data = super().manifest(namespace, name, **kwargs)
        data["spec"] = {
            'type': kwargs.get("type", "ClusterIP"),
            'ports': kwargs.get("ports", []),
            'selector': kwargs.get("selector", {}),
        }
        return data
