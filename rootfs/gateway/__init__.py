"""
The **gateway** Django app reconciles Kubernetes Gateway API objects into a
running Varnish deployment and publishes their status.
"""

__version__ = '1.0.0'
