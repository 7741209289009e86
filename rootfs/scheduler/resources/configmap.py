from scheduler.resources import Resource


class ConfigMap(Resource):
    short_name = 'cm'

    def manifest(self, namespace, name, **kwargs):
        data = super().manifest(namespace, name, **kwargs)
        data["data"] = kwargs.get("data", {})
        return data
