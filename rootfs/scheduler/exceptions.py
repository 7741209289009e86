class KubeException(Exception):
    def __init__(self, *args, **kwargs):
        Exception.__init__(self, *args, **kwargs)


class KubeHTTPException(KubeException):
    def __init__(self, response, errmsg, *args, **kwargs):
        self.response = response

        msg = errmsg.format(*args)
        msg = 'failed to {}: {} {}'.format(msg, response.status_code, response.reason)
        KubeException.__init__(self, msg, *args, **kwargs)


def is_not_found(err):
    """True when ``err`` is an HTTP 404 from the API server."""
    return isinstance(err, KubeHTTPException) and err.response.status_code == 404


def is_conflict(err):
    """True when ``err`` is an optimistic-concurrency conflict (HTTP 409)."""
    return isinstance(err, KubeHTTPException) and err.response.status_code == 409


def is_gone(err):
    return isinstance(err, KubeHTTPException) and err.response.status_code == 410
