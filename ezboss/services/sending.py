"""
Send workflow: prepare -> dispatch email -> record sent.

If dispatch fails the token stays on the estimate and ``client_state`` is not
touched, so the caller can simply retry.
"""
from typing import Optional

import structlog

from ..exceptions import ExternalDependencyError, ValidationError
from ..schemas.auth import Actor
from ..schemas.estimates import Estimate
from ..schemas.updates import SendEstimateRequest
from .email import EmailDispatcher
from .estimates import EstimateService


logger = structlog.get_logger(__name__)


def send_estimate(
    service: EstimateService,
    dispatcher: EmailDispatcher,
    estimate_id: str,
    request: SendEstimateRequest,
    actor: Optional[Actor] = None,
) -> Estimate:
    estimate = service.get_estimate(estimate_id)
    recipient = request.recipient_email or estimate.customer_email
    if not recipient:
        raise ValidationError("Recipient email is required", errors={"recipient_email": "required"})

    contractor_email = request.contractor_email or (actor.email if actor else None)
    service.prepare_estimate_for_sending(estimate_id, contractor_email, actor)
    prepared = service.get_estimate(estimate_id)
    try:
        dispatcher.send(
            prepared,
            recipient,
            request.recipient_name or prepared.customer_name,
            request.subject,
            request.message,
            request.cc_emails,
        )
    except ExternalDependencyError as e:
        logger.warning("estimate_email_failed", estimate_id=estimate_id, to=recipient, error=str(e))
        raise
    return service.record_sent(estimate_id, recipient, actor)
