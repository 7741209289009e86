from scheduler.resources import Resource


class ServiceAccount(Resource):
    short_name = 'sa'
