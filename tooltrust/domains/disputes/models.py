"""Pydantic models for the dispute domain."""

import uuid
from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from tooltrust.integrations.evidence import EvidenceUpload
from tooltrust.shared.errors import InvalidStateError

SYSTEM_ACTOR = "system"
ARBITRATION_ACTOR = "system:arbitration"
PROCESSOR_ACTOR = "system:payment_processor"


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(UTC)


class DisputeStatus(StrEnum):
    OPENED = "opened"
    UNDER_REVIEW = "under_review"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    CLOSED = "closed"

    @property
    def is_terminal(self) -> bool:
        return self in (DisputeStatus.RESOLVED, DisputeStatus.CLOSED)


# Every legal edge of the dispute lifecycle
ALLOWED_TRANSITIONS: dict[DisputeStatus, frozenset[DisputeStatus]] = {
    DisputeStatus.OPENED: frozenset({DisputeStatus.UNDER_REVIEW, DisputeStatus.CLOSED}),
    DisputeStatus.UNDER_REVIEW: frozenset(
        {DisputeStatus.RESOLVED, DisputeStatus.ESCALATED, DisputeStatus.CLOSED}
    ),
    DisputeStatus.ESCALATED: frozenset({DisputeStatus.RESOLVED, DisputeStatus.CLOSED}),
    DisputeStatus.RESOLVED: frozenset(),
    DisputeStatus.CLOSED: frozenset(),
}


class DisputeType(StrEnum):
    PAYMENT = "payment"
    ITEM_NOT_RECEIVED = "item_not_received"
    ITEM_NOT_AS_DESCRIBED = "item_not_as_described"
    DAMAGE = "damage"
    NON_RETURN = "non_return"
    SERVICE = "service"
    FRAUD = "fraud"
    OTHER = "other"


class DisputeCategory(StrEnum):
    BILLING = "billing"
    SERVICE = "service"
    PRODUCT = "product"
    DELIVERY = "delivery"
    FRAUD = "fraud"
    AUTHORIZATION = "authorization"
    OTHER = "other"


class ResolutionKind(StrEnum):
    REFUND = "refund"
    PARTIAL_REFUND = "partial_refund"
    NO_REFUND = "no_refund"
    REPLACEMENT = "replacement"
    STORE_CREDIT = "store_credit"
    PROCESSOR_DECISION = "processor_decision"

    @property
    def moves_money(self) -> bool:
        return self in (ResolutionKind.REFUND, ResolutionKind.PARTIAL_REFUND)


class Resolution(BaseModel):
    """Tagged resolution: ``kind`` selects the action, ``payload`` carries its arguments.

    Known payload keys: ``refund_amount`` (refund kinds), ``replacement_reference``,
    ``credit_amount``, ``flag_user_id`` (user to flag as high-risk).
    """

    kind: ResolutionKind
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def refund_amount(self) -> Decimal | None:
        value = self.payload.get("refund_amount")
        return Decimal(str(value)) if value is not None else None

    @property
    def flag_user_id(self) -> str | None:
        return self.payload.get("flag_user_id")


class MessageAuthorRole(StrEnum):
    PARTY = "party"
    ADMIN = "admin"
    SYSTEM = "system"


class Dispute(BaseModel):
    id: str = Field(default_factory=_new_id)
    rental_id: str
    payment_id: str | None = None
    initiated_by: str
    owner_id: str
    renter_id: str
    dispute_type: DisputeType
    category: DisputeCategory = DisputeCategory.OTHER
    title: str
    description: str = ""
    claimed_amount: Decimal = Decimal("0")
    currency: str = "USD"
    status: DisputeStatus = DisputeStatus.OPENED
    assigned_admin_id: str | None = None
    external_dispute_id: str | None = None
    external_status: str | None = None
    resolution: Resolution | None = None
    resolution_notes: str | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    refund_amount: Decimal | None = None
    refund_transaction_id: str | None = None
    closed_by: str | None = None
    close_reason: str | None = None
    closed_at: datetime | None = None
    escalated_at: datetime | None = None
    response_due_at: datetime | None = None
    last_action_at: datetime = Field(default_factory=_now)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    active_closure_id: str | None = None
    unread_counts: dict[str, int] = Field(default_factory=dict)
    processed_event_keys: list[str] = Field(default_factory=list)
    status_history: list[dict[str, Any]] = Field(default_factory=list)
    version: int = 0

    @property
    def party_ids(self) -> tuple[str, str]:
        return (self.owner_id, self.renter_id)

    def is_party(self, user_id: str) -> bool:
        return user_id in self.party_ids

    def counterparty(self, user_id: str) -> str | None:
        if user_id == self.owner_id:
            return self.renter_id
        if user_id == self.renter_id:
            return self.owner_id
        return None

    def participants(self) -> list[str]:
        people = [self.owner_id, self.renter_id]
        if self.assigned_admin_id:
            people.append(self.assigned_admin_id)
        return people

    def can_transition_to(self, target: DisputeStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self.status]

    def transition_to(
        self, target: DisputeStatus, actor_id: str, now: datetime, reason: str = ""
    ) -> None:
        """Move along a legal edge, recording it in the status history."""
        if not self.can_transition_to(target):
            raise InvalidStateError(
                f"Dispute {self.id} cannot move from {self.status.value} to {target.value}",
                dispute_id=self.id,
                status=self.status.value,
                target=target.value,
            )
        self.status_history.append(
            {
                "from": self.status.value,
                "to": target.value,
                "actor_id": actor_id,
                "reason": reason,
                "at": now.isoformat(),
            }
        )
        self.status = target
        self.last_action_at = now
        self.updated_at = now


class DisputeMessage(BaseModel):
    id: str = Field(default_factory=_new_id)
    dispute_id: str
    sequence: int = Field(ge=1)
    author_id: str
    author_role: MessageAuthorRole
    body: str
    is_internal: bool = False
    created_at: datetime = Field(default_factory=_now)
    read_by: dict[str, datetime] = Field(default_factory=dict)


class DisputeEvidence(BaseModel):
    id: str = Field(default_factory=_new_id)
    dispute_id: str
    uploaded_by: str
    file_name: str
    content_type: str
    file_size: int = Field(ge=0)
    storage_reference: str
    description: str = ""
    is_scanned: bool = False
    is_safe: bool | None = None
    uploaded_at: datetime = Field(default_factory=_now)
    scanned_at: datetime | None = None


class CreateDisputeRequest(BaseModel):
    rental_id: str
    payment_id: str | None = None
    initiated_by: str
    dispute_type: DisputeType
    category: DisputeCategory = DisputeCategory.OTHER
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(default="", max_length=5000)
    claimed_amount: Decimal = Field(default=Decimal("0"), ge=0)
    currency: str = "USD"
    evidence: list[EvidenceUpload] = Field(default_factory=list)


class DisputeTimelineEntry(BaseModel):
    at: datetime
    kind: str  # "status" | "message" | "evidence"
    actor_id: str | None = None
    summary: str
    reference_id: str | None = None


class DisputeStatistics(BaseModel):
    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    by_type: dict[str, int] = Field(default_factory=dict)
    escalated: int = 0
    average_resolution_hours: float | None = None
    total_refunded: Decimal = Decimal("0")


# ---------------------------------------------------------------------------
# External processor webhooks
# ---------------------------------------------------------------------------


class ExternalDisputeWebhook(BaseModel):
    """Inbound processor event. Accepts the processor's camelCase field names."""

    model_config = ConfigDict(populate_by_name=True)

    dispute_id: str = Field(alias="disputeId")
    status: str | None = None
    reason: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    event_type: str = Field(alias="eventType")
    event_time: datetime | None = Field(default=None, alias="eventTime")
    event_id: str | None = Field(default=None, alias="eventId")


class WebhookOutcome(StrEnum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    IN_PROGRESS = "in_progress"


class WebhookResult(BaseModel):
    outcome: WebhookOutcome
    dispute_id: str | None = None
    status: DisputeStatus | None = None
    refund_transaction_id: str | None = None
    detail: str = ""


# ---------------------------------------------------------------------------
# Mutual closure
# ---------------------------------------------------------------------------


class MutualClosureStatus(StrEnum):
    PROPOSED = "proposed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class MutualDisputeClosure(BaseModel):
    id: str = Field(default_factory=_new_id)
    dispute_id: str
    proposed_by: str
    response_required_from: str
    resolution_notes: str
    refund_amount: Decimal = Decimal("0")
    status: MutualClosureStatus = MutualClosureStatus.PROPOSED
    response_message: str | None = None
    rejection_reason: str | None = None
    responded_at: datetime | None = None
    expires_at: datetime
    created_at: datetime = Field(default_factory=_now)
    refund_transaction_id: str | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.status == MutualClosureStatus.PROPOSED and now >= self.expires_at


class MutualClosureAuditLog(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    closure_id: str
    actor_id: str
    action: str
    from_status: MutualClosureStatus | None = None
    to_status: MutualClosureStatus
    reason: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)


class MutualClosureEligibility(BaseModel):
    is_eligible: bool
    reasons: list[str] = Field(default_factory=list)
    max_refund_amount: Decimal = Decimal("0")
    active_closure_id: str | None = None


class MutualClosureStatistics(BaseModel):
    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    acceptance_rate: float | None = None
    total_refunded: Decimal = Decimal("0")
