"""Fraud check, suspicious activity and velocity limit endpoints."""

from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from tooltrust.api.dependencies import TrustServices, get_services
from tooltrust.domains.fraud.models import (
    MonitoredAction,
    SuspiciousActivityStatus,
    VelocityLimitType,
)

router = APIRouter(prefix="/api/v1/fraud", tags=["fraud"])


class ReviewBody(BaseModel):
    reviewer_id: str
    approve: bool
    notes: str | None = None


class ResolveActivityBody(BaseModel):
    status: SuspiciousActivityStatus
    resolved_by: str
    notes: str | None = None


class FlagBody(BaseModel):
    reason: str = Field(min_length=1)
    flagged_by: str
    related_payment_ids: list[str] = Field(default_factory=list)


class UnflagBody(BaseModel):
    resolved_by: str
    notes: str | None = None


class VelocityLimitBody(BaseModel):
    limit: Decimal = Field(ge=0)
    expires_at: datetime | None = None
    reason: str | None = None


@router.post("/evaluate")
async def evaluate_action(
    action: MonitoredAction,
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    evaluation = await services.fraud.evaluate(action)
    return {**evaluation.model_dump(mode="json"), "allowed": evaluation.allowed}


@router.get("/checks/pending")
async def pending_reviews(
    limit: int = Query(default=100, ge=1, le=1000),
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    checks = await services.fraud.list_pending_reviews(limit)
    return {"items": [c.model_dump(mode="json") for c in checks], "count": len(checks)}


@router.get("/checks/{check_id}")
async def get_check(
    check_id: str,
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    return (await services.fraud.get_check(check_id)).model_dump(mode="json")


@router.post("/checks/{check_id}/review")
async def review_check(
    check_id: str,
    body: ReviewBody,
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    check = await services.fraud.review_fraud_check(
        check_id, body.reviewer_id, body.approve, body.notes
    )
    return check.model_dump(mode="json")


@router.get("/activities")
async def list_activities(
    user_id: str | None = Query(default=None),
    include_closed: bool = Query(default=False),
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    activities = await services.fraud.list_suspicious_activities(user_id, include_closed)
    return {"items": [a.model_dump(mode="json") for a in activities], "count": len(activities)}


@router.post("/activities/{activity_id}/resolve")
async def resolve_activity(
    activity_id: str,
    body: ResolveActivityBody,
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    activity = await services.fraud.resolve_suspicious_activity(
        activity_id, body.status, body.resolved_by, body.notes
    )
    return activity.model_dump(mode="json")


@router.get("/users/{user_id}/checks")
async def user_checks(
    user_id: str,
    limit: int = Query(default=100, ge=1, le=1000),
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    checks = await services.fraud.list_checks(user_id, limit)
    return {"items": [c.model_dump(mode="json") for c in checks], "count": len(checks)}


@router.post("/users/{user_id}/flag", status_code=201)
async def flag_user(
    user_id: str,
    body: FlagBody,
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    activity = await services.fraud.flag_user(
        user_id, body.reason, body.flagged_by, body.related_payment_ids
    )
    return activity.model_dump(mode="json")


@router.post("/users/{user_id}/unflag")
async def unflag_user(
    user_id: str,
    body: UnflagBody,
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    resolved = await services.fraud.unflag_user(user_id, body.resolved_by, body.notes)
    return {"user_id": user_id, "resolved": resolved}


@router.get("/users/{user_id}/flagged")
async def is_user_flagged(
    user_id: str,
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    return {"user_id": user_id, "flagged": await services.fraud.is_user_flagged(user_id)}


@router.get("/users/{user_id}/risk")
async def user_risk(
    user_id: str,
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    return {"user_id": user_id, "risk_score": await services.fraud.calculate_user_risk(user_id)}


@router.get("/users/{user_id}/velocity-limits")
async def get_velocity_limits(
    user_id: str,
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    limits = await services.fraud.get_velocity_limits(user_id)
    return {"items": [limit.model_dump(mode="json") for limit in limits], "count": len(limits)}


@router.put("/users/{user_id}/velocity-limits/{limit_type}")
async def set_velocity_limit(
    user_id: str,
    limit_type: VelocityLimitType,
    body: VelocityLimitBody,
    services: TrustServices = Depends(get_services),  # noqa: B008
) -> dict:
    limit = await services.fraud.set_velocity_limit(
        user_id, limit_type, body.limit, body.expires_at, body.reason
    )
    return limit.model_dump(mode="json")
