"""Idempotent reducer from payment-processor dispute events to local dispute state."""

import hashlib
from datetime import datetime
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel

from tooltrust.integrations.payments import ExternalDisputeState

from .models import (
    PROCESSOR_ACTOR,
    Dispute,
    DisputeStatus,
    ExternalDisputeWebhook,
    Resolution,
    ResolutionKind,
)


class ExternalEventType(StrEnum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    RESOLVED = "RESOLVED"


# Processor outcomes that do not return money to the payer
NO_REFUND_OUTCOMES = frozenset(
    {
        "RESOLVED_SELLER_FAVOUR",
        "RESOLVED_SELLER_FAVOR",
        "DENIED",
        "CANCELED_BY_BUYER",
        "CANCELLED_BY_BUYER",
    }
)


class WebhookReduction(BaseModel):
    dispute: Dispute
    changed: bool
    duplicate: bool = False
    refund_amount: Decimal | None = None
    note: str = ""


def normalize_event_type(raw: str) -> ExternalEventType | None:
    """Accepts both ``RESOLVED`` and ``CUSTOMER.DISPUTE.RESOLVED`` spellings."""
    key = raw.strip().upper().rsplit(".", 1)[-1]
    try:
        return ExternalEventType(key)
    except ValueError:
        return None


def event_key(event: ExternalDisputeWebhook) -> str:
    """Stable identity of an event, used to recognize redeliveries."""
    if event.event_id:
        return f"id:{event.event_id}"
    event_type = normalize_event_type(event.event_type)
    parts = [
        event.dispute_id,
        event_type.value if event_type else event.event_type,
        (event.status or "").upper(),
        event.event_time.isoformat() if event.event_time else "",
    ]
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:32]
    return f"sha:{digest}"


def refund_due(event: ExternalDisputeWebhook) -> Decimal | None:
    if event.amount is None or event.amount <= 0:
        return None
    if (event.status or "").upper() in NO_REFUND_OUTCOMES:
        return None
    return event.amount


def apply_webhook(dispute: Dispute, event: ExternalDisputeWebhook, now: datetime) -> WebhookReduction:
    """Compute the next state of ``dispute`` for ``event``.

    Pure: the input dispute is not modified. Applying an event whose key is
    already recorded returns the dispute unchanged, so any number of
    redeliveries converge on the same state.
    """
    key = event_key(event)
    if key in dispute.processed_event_keys:
        return WebhookReduction(dispute=dispute, changed=False, duplicate=True, note="duplicate")

    event_type = normalize_event_type(event.event_type)
    if event_type is None:
        return WebhookReduction(dispute=dispute, changed=False, note="unknown_event_type")

    new = dispute.model_copy(deep=True)
    new.processed_event_keys.append(key)
    if event.status:
        new.external_status = event.status
    new.last_action_at = now
    new.updated_at = now

    if event_type in (ExternalEventType.CREATED, ExternalEventType.UPDATED):
        if new.status.is_terminal:
            return WebhookReduction(dispute=new, changed=True, note="terminal_status_synced")
        if event.amount is not None:
            new.claimed_amount = event.amount
        if new.status == DisputeStatus.UNDER_REVIEW:
            new.transition_to(
                DisputeStatus.ESCALATED, PROCESSOR_ACTOR, now, reason="Opened by payment processor"
            )
            new.escalated_at = now
        return WebhookReduction(dispute=new, changed=True, note="synced")

    # RESOLVED
    if new.status.is_terminal:
        return WebhookReduction(dispute=new, changed=True, note="already_terminal")
    if not new.can_transition_to(DisputeStatus.RESOLVED):
        return WebhookReduction(dispute=new, changed=True, note=f"not_resolvable_from_{new.status}")

    refund = refund_due(event)
    new.transition_to(
        DisputeStatus.RESOLVED,
        PROCESSOR_ACTOR,
        now,
        reason=f"Payment processor decision: {event.status or 'resolved'}",
    )
    new.resolution = Resolution(
        kind=ResolutionKind.PROCESSOR_DECISION,
        payload={
            "external_status": event.status,
            "reason": event.reason,
            "refund_amount": str(refund) if refund is not None else None,
        },
    )
    new.resolution_notes = event.reason
    new.resolved_by = PROCESSOR_ACTOR
    new.resolved_at = now
    new.refund_amount = refund
    return WebhookReduction(dispute=new, changed=True, refund_amount=refund, note="resolved")


def webhook_from_state(state: ExternalDisputeState) -> ExternalDisputeWebhook:
    """Translate a polled processor state into the equivalent webhook event."""
    status = state.status.upper()
    event_type = ExternalEventType.RESOLVED if status.startswith("RESOLVED") or status in (
        NO_REFUND_OUTCOMES
    ) else ExternalEventType.UPDATED
    return ExternalDisputeWebhook(
        dispute_id=state.external_dispute_id,
        status=state.status,
        reason=state.reason,
        amount=state.amount,
        currency=state.currency,
        event_type=event_type.value,
        event_time=state.updated_at,
    )
