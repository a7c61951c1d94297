"""Mutual closure endpoints."""

from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from tooltrust.api.dependencies import TrustServices, get_services

router = APIRouter(prefix="/api/v1", tags=["mutual-closure"])


class ProposeBody(BaseModel):
    proposer_id: str
    notes: str = Field(min_length=1, max_length=2000)
    refund_amount: Decimal | None = Field(default=None, ge=0)
    expiration_hours: int | None = None


class RespondBody(BaseModel):
    responder_id: str
    accept: bool
    message: str | None = None
    rejection_reason: str | None = None


class CancelBody(BaseModel):
    user_id: str
    reason: str = ""


@router.get("/disputes/{dispute_id}/mutual-closure/eligibility")
async def closure_eligibility(
    dispute_id: str,
    user_id: str = Query(...),
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    eligibility = await services.closures.check_eligibility(dispute_id, user_id)
    return eligibility.model_dump(mode="json")


@router.post("/disputes/{dispute_id}/mutual-closure", status_code=201)
async def propose_closure(
    dispute_id: str,
    body: ProposeBody,
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    closure = await services.orchestrator.propose_mutual_closure(
        dispute_id, body.proposer_id, body.notes, body.refund_amount, body.expiration_hours
    )
    return closure.model_dump(mode="json")


@router.get("/disputes/{dispute_id}/mutual-closures")
async def list_dispute_closures(
    dispute_id: str,
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    closures = await services.closures.list_dispute_closures(dispute_id)
    return {"items": [c.model_dump(mode="json") for c in closures], "count": len(closures)}


@router.get("/mutual-closures/statistics")
async def closure_statistics(
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    return (await services.closures.get_statistics()).model_dump(mode="json")


@router.post("/mutual-closures/expire")
async def expire_closures(
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    expired = await services.closures.expire_stale_closures()
    return {"expired": [c.id for c in expired], "count": len(expired)}


@router.get("/mutual-closures/{closure_id}")
async def get_closure(
    closure_id: str,
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    return (await services.closures.get_closure(closure_id)).model_dump(mode="json")


@router.post("/mutual-closures/{closure_id}/respond")
async def respond_to_closure(
    closure_id: str,
    body: RespondBody,
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    closure = await services.orchestrator.respond_to_mutual_closure(
        closure_id, body.responder_id, body.accept, body.message, body.rejection_reason
    )
    return closure.model_dump(mode="json")


@router.post("/mutual-closures/{closure_id}/complete")
async def complete_closure(
    closure_id: str,
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    closure = await services.orchestrator.complete_mutual_closure(closure_id)
    return closure.model_dump(mode="json")


@router.post("/mutual-closures/{closure_id}/cancel")
async def cancel_closure(
    closure_id: str,
    body: CancelBody,
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    closure = await services.closures.cancel_mutual_closure(closure_id, body.user_id, body.reason)
    return closure.model_dump(mode="json")


@router.get("/mutual-closures/{closure_id}/audit-log")
async def closure_audit_log(
    closure_id: str,
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    entries = await services.closures.get_audit_log(closure_id)
    return {"items": [e.model_dump(mode="json") for e in entries], "count": len(entries)}
