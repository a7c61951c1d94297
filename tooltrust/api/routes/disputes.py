"""Dispute lifecycle endpoints."""

from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from pydantic import BaseModel, Field

from tooltrust.api.dependencies import TrustServices, get_services
from tooltrust.domains.disputes.models import (
    CreateDisputeRequest,
    DisputeCategory,
    DisputeStatus,
    DisputeType,
    Resolution,
    ResolutionKind,
)
from tooltrust.integrations.evidence import EvidenceUpload
from tooltrust.shared.schemas import EVIDENCE_SCAN_CALLBACK, validate_payload

router = APIRouter(prefix="/api/v1/disputes", tags=["disputes"])


class CreateDisputeBody(BaseModel):
    rental_id: str
    payment_id: str | None = None
    initiated_by: str
    dispute_type: DisputeType
    category: DisputeCategory = DisputeCategory.OTHER
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(default="", max_length=5000)
    claimed_amount: Decimal = Field(default=Decimal("0"), ge=0)
    currency: str = "USD"


class AssignBody(BaseModel):
    admin_id: str
    assigned_by: str


class MessageBody(BaseModel):
    author_id: str
    body: str
    is_internal: bool = False


class ReadBody(BaseModel):
    user_id: str


class ResolveBody(BaseModel):
    resolved_by: str
    kind: ResolutionKind
    payload: dict[str, Any] = Field(default_factory=dict)
    notes: str | None = None


class EscalateBody(BaseModel):
    admin_user_id: str


class CloseBody(BaseModel):
    closed_by: str
    reason: str = Field(min_length=1)


class FraudDisputeBody(BaseModel):
    rental_id: str


@router.post("", status_code=201)
async def create_dispute(
    body: CreateDisputeBody,
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    dispute = await services.orchestrator.open_dispute(CreateDisputeRequest(**body.model_dump()))
    return dispute.model_dump(mode="json")


@router.get("")
async def list_disputes(
    user_id: str = Query(...),
    status: DisputeStatus | None = Query(default=None),
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    disputes = await services.disputes.list_user_disputes(user_id, status)
    return {"items": [d.model_dump(mode="json") for d in disputes], "count": len(disputes)}


@router.get("/statistics")
async def dispute_statistics(
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    return (await services.disputes.get_statistics()).model_dump(mode="json")


@router.post("/evidence/scan")
async def evidence_scan_callback(
    request: Request,
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    payload = validate_payload(await request.json(), EVIDENCE_SCAN_CALLBACK, "evidence scan")
    evidence = await services.disputes.record_evidence_scan(
        payload["storage_reference"], payload["is_safe"]
    )
    return evidence.model_dump(mode="json")


@router.post("/external/{external_dispute_id}/sync")
async def sync_external_dispute(
    external_dispute_id: str,
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    result = await services.orchestrator.sync_external_dispute(external_dispute_id)
    return result.model_dump(mode="json")


@router.post("/from-fraud-check/{check_id}", status_code=201)
async def raise_fraud_dispute(
    check_id: str,
    body: FraudDisputeBody,
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    dispute = await services.orchestrator.raise_fraud_dispute(check_id, body.rental_id)
    return dispute.model_dump(mode="json")


@router.get("/{dispute_id}")
async def get_dispute(
    dispute_id: str,
    user_id: str | None = Query(default=None),
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    return (await services.disputes.get_dispute(dispute_id, user_id)).model_dump(mode="json")


@router.post("/{dispute_id}/assign")
async def assign_admin(
    dispute_id: str,
    body: AssignBody,
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    dispute = await services.disputes.assign_admin(dispute_id, body.admin_id, body.assigned_by)
    return dispute.model_dump(mode="json")


@router.post("/{dispute_id}/messages", status_code=201)
async def post_message(
    dispute_id: str,
    body: MessageBody,
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    message = await services.orchestrator.post_message(
        dispute_id, body.author_id, body.body, body.is_internal
    )
    return message.model_dump(mode="json")


@router.get("/{dispute_id}/messages")
async def list_messages(
    dispute_id: str,
    user_id: str = Query(...),
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    messages = await services.disputes.get_messages(dispute_id, user_id)
    return {"items": [m.model_dump(mode="json") for m in messages], "count": len(messages)}


@router.post("/{dispute_id}/messages/read")
async def mark_messages_read(
    dispute_id: str,
    body: ReadBody,
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    marked = await services.disputes.mark_messages_read(dispute_id, body.user_id)
    return {"dispute_id": dispute_id, "user_id": body.user_id, "marked_read": marked}


@router.post("/{dispute_id}/evidence", status_code=201)
async def upload_evidence(
    dispute_id: str,
    uploaded_by: str = Form(...),
    description: str = Form(default=""),
    files: list[UploadFile] = File(...),  # noqa: B008
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    uploads = [
        EvidenceUpload(
            file_name=f.filename or "upload",
            content_type=f.content_type or "application/octet-stream",
            content=await f.read(),
            description=description,
        )
        for f in files
    ]
    evidence = await services.disputes.upload_evidence(dispute_id, uploaded_by, uploads)
    return {"items": [e.model_dump(mode="json") for e in evidence], "count": len(evidence)}


@router.post("/{dispute_id}/resolve")
async def resolve_dispute(
    dispute_id: str,
    body: ResolveBody,
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    dispute = await services.orchestrator.resolve(
        dispute_id,
        body.resolved_by,
        Resolution(kind=body.kind, payload=body.payload),
        body.notes,
    )
    return dispute.model_dump(mode="json")


@router.post("/{dispute_id}/escalate")
async def escalate_dispute(
    dispute_id: str,
    body: EscalateBody,
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    dispute = await services.orchestrator.escalate(dispute_id, body.admin_user_id)
    return dispute.model_dump(mode="json")


@router.post("/{dispute_id}/close")
async def close_dispute(
    dispute_id: str,
    body: CloseBody,
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    dispute = await services.orchestrator.close(dispute_id, body.closed_by, body.reason)
    return dispute.model_dump(mode="json")


@router.get("/{dispute_id}/timeline")
async def dispute_timeline(
    dispute_id: str,
    user_id: str = Query(...),
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    entries = await services.disputes.get_timeline(dispute_id, user_id)
    return {"items": [e.model_dump(mode="json") for e in entries], "count": len(entries)}
