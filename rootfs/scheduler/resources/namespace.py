from scheduler.resources import Resource


class Namespace(Resource):
    short_name = 'ns'
    namespaced = False
