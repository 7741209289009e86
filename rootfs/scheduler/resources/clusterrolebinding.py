from scheduler.resources import Resource


class ClusterRoleBinding(Resource):
    short_name = 'crb'
    api_prefix = 'apis'
    api_version = 'rbac.authorization.k8s.io/v1'
    namespaced = False

    def manifest(self, namespace, name, **kwargs):
        data = super().manifest(namespace, name, **kwargs)
        data["roleRef"] = {
            "apiGroup": "rbac.authorization.k8s.io",
            "kind": "ClusterRole",
            "name": kwargs["cluster_role"],
        }
        data["subjects"] = kwargs.get("subjects", [])
        return data
