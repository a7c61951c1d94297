"""Tests for payment-processor dispute events."""

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from tests.fakes import ADMIN, OWNER, PAYMENT, RENTAL, RENTER, build_harness
from tooltrust.domains.disputes.config import DisputeConfig, MutualClosureConfig
from tooltrust.domains.disputes.models import (
    PROCESSOR_ACTOR,
    CreateDisputeRequest,
    Dispute,
    DisputeStatus,
    DisputeType,
    ExternalDisputeWebhook,
    MutualClosureStatus,
    ResolutionKind,
    WebhookOutcome,
)
from tooltrust.domains.disputes.webhooks import (
    ExternalEventType,
    apply_webhook,
    event_key,
    normalize_event_type,
    webhook_from_state,
)
from tooltrust.integrations.payments import ExternalDisputeState
from tooltrust.shared.errors import ExternalServiceError

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


def _dispute(**kwargs) -> Dispute:
    defaults = {
        "id": "d-1",
        "rental_id": RENTAL,
        "payment_id": PAYMENT,
        "initiated_by": RENTER,
        "owner_id": OWNER,
        "renter_id": RENTER,
        "dispute_type": DisputeType.PAYMENT,
        "title": "Charged twice",
        "status": DisputeStatus.ESCALATED,
        "external_dispute_id": "ext-d-1",
    }
    defaults.update(kwargs)
    return Dispute(**defaults)


def _event(**kwargs) -> ExternalDisputeWebhook:
    defaults = {
        "disputeId": "ext-d-1",
        "eventType": "CUSTOMER.DISPUTE.RESOLVED",
        "status": "RESOLVED_BUYER_FAVOUR",
        "amount": "40.00",
        "eventId": "evt-1",
    }
    defaults.update(kwargs)
    return ExternalDisputeWebhook.model_validate(defaults)


async def _escalated(harness) -> Dispute:
    dispute = await harness.disputes.create_dispute(
        CreateDisputeRequest(
            rental_id=RENTAL,
            payment_id=PAYMENT,
            initiated_by=RENTER,
            dispute_type=DisputeType.PAYMENT,
            title="Charged twice",
            claimed_amount=Decimal("40.00"),
        )
    )
    await harness.disputes.assign_admin(dispute.id, ADMIN, ADMIN)
    return await harness.disputes.escalate_to_external_processor(dispute.id, ADMIN)


class TestReducer:
    def test_event_type_spellings(self):
        assert normalize_event_type("CUSTOMER.DISPUTE.RESOLVED") == ExternalEventType.RESOLVED
        assert normalize_event_type("updated") == ExternalEventType.UPDATED
        assert normalize_event_type("CUSTOMER.DISPUTE.ARCHIVED") is None

    def test_event_key_prefers_event_id(self):
        assert event_key(_event()) == "id:evt-1"
        keyed = event_key(_event(eventId=None, eventTime="2026-03-01T10:00:00Z"))
        assert keyed.startswith("sha:")
        assert keyed == event_key(_event(eventId=None, eventTime="2026-03-01T10:00:00Z"))

    def test_resolution_does_not_mutate_input(self):
        dispute = _dispute()

        reduction = apply_webhook(dispute, _event(), NOW)

        assert dispute.status == DisputeStatus.ESCALATED
        assert dispute.processed_event_keys == []
        assert reduction.dispute.status == DisputeStatus.RESOLVED
        assert reduction.dispute.resolved_by == PROCESSOR_ACTOR
        assert reduction.dispute.resolution.kind == ResolutionKind.PROCESSOR_DECISION
        assert reduction.refund_amount == Decimal("40.00")

    def test_redelivery_is_a_no_op(self):
        first = apply_webhook(_dispute(), _event(), NOW).dispute

        again = apply_webhook(first, _event(), NOW)

        assert again.duplicate
        assert not again.changed
        assert again.dispute == first

    def test_seller_favour_pays_nothing(self):
        reduction = apply_webhook(_dispute(), _event(status="RESOLVED_SELLER_FAVOUR"), NOW)

        assert reduction.dispute.status == DisputeStatus.RESOLVED
        assert reduction.refund_amount is None

    def test_update_escalates_disputes_under_review(self):
        dispute = _dispute(status=DisputeStatus.UNDER_REVIEW)

        reduction = apply_webhook(dispute, _event(eventType="UPDATED", status="UNDER_REVIEW"), NOW)

        assert reduction.dispute.status == DisputeStatus.ESCALATED
        assert reduction.dispute.external_status == "UNDER_REVIEW"
        assert reduction.dispute.claimed_amount == Decimal("40.00")

    def test_terminal_dispute_only_syncs_status(self):
        dispute = _dispute(status=DisputeStatus.CLOSED)

        reduction = apply_webhook(dispute, _event(), NOW)

        assert reduction.dispute.status == DisputeStatus.CLOSED
        assert reduction.dispute.external_status == "RESOLVED_BUYER_FAVOUR"
        assert reduction.refund_amount is None

    def test_unknown_event_type(self):
        reduction = apply_webhook(_dispute(), _event(eventType="ARCHIVED"), NOW)

        assert not reduction.changed

    def test_polled_state_maps_to_event(self):
        state = ExternalDisputeState(
            external_dispute_id="ext-d-1", status="RESOLVED_BUYER_FAVOUR", amount=Decimal("10")
        )

        event = webhook_from_state(state)

        assert normalize_event_type(event.event_type) == ExternalEventType.RESOLVED
        assert event.dispute_id == "ext-d-1"


class TestHandleWebhook:
    @pytest.mark.asyncio
    async def test_resolution_refunds_once(self, harness):
        dispute = await _escalated(harness)
        event = _event(disputeId=dispute.external_dispute_id)

        first = await harness.disputes.handle_external_webhook(event)
        second = await harness.disputes.handle_external_webhook(event)

        assert first.outcome == WebhookOutcome.APPLIED
        assert first.status == DisputeStatus.RESOLVED
        assert first.refund_transaction_id == "txn-1"
        assert second.outcome == WebhookOutcome.DUPLICATE
        assert second.refund_transaction_id == "txn-1"
        assert harness.processor.refund_calls == {f"dispute-{dispute.id}": 1}

    @pytest.mark.asyncio
    async def test_failed_refund_is_retried_on_redelivery(self, harness):
        dispute = await _escalated(harness)
        event = _event(disputeId=dispute.external_dispute_id)
        harness.processor.fail_refunds = True

        with pytest.raises(ExternalServiceError):
            await harness.disputes.handle_external_webhook(event)

        assert (await harness.disputes.get_dispute(dispute.id)).status == DisputeStatus.RESOLVED
        harness.processor.fail_refunds = False
        result = await harness.disputes.handle_external_webhook(event)

        assert result.outcome == WebhookOutcome.DUPLICATE
        assert result.refund_transaction_id == "txn-1"
        assert len(harness.processor.refunds) == 1

    @pytest.mark.asyncio
    async def test_no_refund_outcome(self, harness):
        dispute = await _escalated(harness)

        result = await harness.disputes.handle_external_webhook(
            _event(disputeId=dispute.external_dispute_id, status="DENIED")
        )

        assert result.status == DisputeStatus.RESOLVED
        assert result.refund_transaction_id is None
        assert harness.processor.refunds == {}

    @pytest.mark.asyncio
    async def test_unknown_dispute_is_ignored(self, harness):
        result = await harness.disputes.handle_external_webhook(_event(disputeId="ext-unknown"))

        assert result.outcome == WebhookOutcome.IGNORED
        assert result.detail == "unknown_dispute"

    @pytest.mark.asyncio
    async def test_unknown_event_type_is_ignored(self, harness):
        dispute = await _escalated(harness)

        result = await harness.disputes.handle_external_webhook(
            _event(disputeId=dispute.external_dispute_id, eventType="CUSTOMER.DISPUTE.ARCHIVED")
        )

        assert result.outcome == WebhookOutcome.IGNORED
        assert (await harness.disputes.get_dispute(dispute.id)).status == DisputeStatus.ESCALATED

    @pytest.mark.asyncio
    async def test_sync_pulls_processor_state(self, harness):
        dispute = await _escalated(harness)
        harness.processor.states[dispute.external_dispute_id] = ExternalDisputeState(
            external_dispute_id=dispute.external_dispute_id,
            status="RESOLVED_SELLER_FAVOUR",
            reason="Item delivered as described",
            updated_at=NOW,
        )

        result = await harness.disputes.sync_external_dispute(dispute.external_dispute_id)

        assert result.status == DisputeStatus.RESOLVED
        resolved = await harness.disputes.get_dispute(dispute.id)
        assert resolved.resolution_notes == "Item delivered as described"
        assert resolved.external_status == "RESOLVED_SELLER_FAVOUR"

    @pytest.mark.asyncio
    async def test_processor_decision_cancels_pending_proposal(self):
        harness = build_harness(
            DisputeConfig(mutual_closure=MutualClosureConfig(allow_with_external_escalation=True))
        )
        dispute = await _escalated(harness)
        closure = await harness.closures.initiate_mutual_closure(dispute.id, RENTER, "settle")

        await harness.disputes.handle_external_webhook(
            _event(disputeId=dispute.external_dispute_id, status="DENIED")
        )

        closure = await harness.closures.get_closure(closure.id)
        assert closure.status == MutualClosureStatus.CANCELLED
        assert (await harness.disputes.get_dispute(dispute.id)).active_closure_id is None
