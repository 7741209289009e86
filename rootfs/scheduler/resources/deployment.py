from scheduler.resources import Resource


class Deployment(Resource):
    short_name = 'deploy'
    api_prefix = 'apis'
    api_version = 'apps/v1'

    def manifest(self, namespace, name, **kwargs):
        data = super().manifest(namespace, name, **kwargs)
        data["spec"] = {
            "replicas": kwargs.get("replicas", 1),
            "selector": {"matchLabels": kwargs.get("selector", {})},
            "strategy": kwargs.get("strategy", {"type": "RollingUpdate"}),
            "template": kwargs.get("template", {}),
        }
        return data
