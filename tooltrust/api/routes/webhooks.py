"""Inbound payment processor webhooks."""

import structlog
from fastapi import APIRouter, Depends, Request

from tooltrust.api.dependencies import TrustServices, get_services
from tooltrust.domains.disputes.models import ExternalDisputeWebhook
from tooltrust.shared.schemas import PROCESSOR_DISPUTE_WEBHOOK, validate_payload

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/payment-processor/disputes")
async def payment_processor_dispute_webhook(
    request: Request,
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    """Always 200 for duplicates and ignored events so the processor stops redelivering."""
    payload = validate_payload(await request.json(), PROCESSOR_DISPUTE_WEBHOOK, "processor webhook")
    event = ExternalDisputeWebhook.model_validate(payload)
    result = await services.orchestrator.handle_processor_webhook(event)
    return result.model_dump(mode="json")
