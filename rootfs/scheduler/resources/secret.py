import base64

from scheduler.resources import Resource


class Secret(Resource):

    def manifest(self, namespace, name, **kwargs):
        data = super().manifest(namespace, name, **kwargs)
        data["type"] = kwargs.get("secret_type", "Opaque")
        data["data"] = {}
        for key, value in kwargs.get("data", {}).items():
            if isinstance(value, str):
                value = value.encode('utf-8')
            data["data"][key] = base64.b64encode(value).decode('ascii')
        return data

    @staticmethod
    def decode(secret, key):
        """Return the decoded bytes stored under ``key``, or None."""
        value = (secret.get("data") or {}).get(key)
        if value is None:
            return None
        return base64.b64decode(value)
