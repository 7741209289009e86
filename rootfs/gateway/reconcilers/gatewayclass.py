import logging

from django.conf import settings

from gateway import conditions
from gateway.reconcilers.base import DONE, Reconciler
from gateway.status import GATEWAY_FIELD_MANAGER, apply_document


class GatewayClassReconciler(Reconciler):
    """Marks GatewayClasses naming this controller as accepted."""
    name = 'gatewayclass'

    def reconcile(self, request):
        obj = self.scheduler.gatewayclasses.find(None, request.name)
        if obj is None:
            return DONE
        controller = (obj.get('spec') or {}).get('controllerName')
        if controller != settings.GATEWAY_CONTROLLER_NAME:
            self.log(request, 'controller {} is not this one, skipping'.format(controller),
                     logging.DEBUG)
            return DONE
        existing = (obj.get('status') or {}).get('conditions')
        if conditions.is_true(existing, conditions.ACCEPTED):
            current = conditions.find(existing, conditions.ACCEPTED)
            if current.get('observedGeneration') == obj['metadata'].get('generation', 0):
                return DONE
        accepted = conditions.condition(
            conditions.ACCEPTED, True, conditions.REASON_ACCEPTED,
            'GatewayClass is accepted', obj['metadata'].get('generation', 0))
        document = apply_document('GatewayClass', None, request.name,
                                  {'conditions': conditions.merge(existing, [accepted])})
        self.scheduler.gatewayclasses.apply_status(None, request.name, document, GATEWAY_FIELD_MANAGER)
        self.log(request, 'GatewayClass accepted')
        return DONE
