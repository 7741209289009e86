from django import apps


class AppConfig(apps.AppConfig):
    name = 'gateway'
    verbose_name = 'Varnish Gateway'
