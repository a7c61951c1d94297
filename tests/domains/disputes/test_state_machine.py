"""Tests for the dispute lifecycle state machine."""

import asyncio
import random
from decimal import Decimal

import pytest

from tests.fakes import (
    ADMIN,
    OTHER_ADMIN,
    OWNER,
    PAYMENT,
    RENTAL,
    RENTER,
    STRANGER,
    DisputeHarness,
    build_harness,
)
from tooltrust.domains.disputes.models import (
    ALLOWED_TRANSITIONS,
    ARBITRATION_ACTOR,
    CreateDisputeRequest,
    DisputeStatus,
    DisputeType,
    MessageAuthorRole,
    Resolution,
    ResolutionKind,
)
from tooltrust.integrations.evidence import EvidenceUpload
from tooltrust.shared.errors import (
    AccessDenied,
    DuplicateError,
    ExternalServiceError,
    InvalidStateError,
    NotFoundError,
    TrustError,
    ValidationError,
)


def _request(**kwargs) -> CreateDisputeRequest:
    defaults = {
        "rental_id": RENTAL,
        "payment_id": PAYMENT,
        "initiated_by": RENTER,
        "dispute_type": DisputeType.DAMAGE,
        "title": "Drill arrived broken",
        "description": "The chuck is cracked.",
        "claimed_amount": Decimal("40.00"),
    }
    defaults.update(kwargs)
    return CreateDisputeRequest(**defaults)


async def _under_review(harness: DisputeHarness, **kwargs):
    dispute = await harness.disputes.create_dispute(_request(**kwargs))
    return await harness.disputes.assign_admin(dispute.id, ADMIN, ADMIN)


class TestCreateDispute:
    @pytest.mark.asyncio
    async def test_opens_with_system_message(self, harness):
        dispute = await harness.disputes.create_dispute(_request())

        assert dispute.status == DisputeStatus.OPENED
        assert (dispute.owner_id, dispute.renter_id) == (OWNER, RENTER)
        assert dispute.status_history[0]["from"] is None
        messages = await harness.disputes.get_messages(dispute.id, RENTER)
        assert [m.body for m in messages] == ["Dispute created: Drill arrived broken"]
        assert messages[0].author_role == MessageAuthorRole.SYSTEM

    @pytest.mark.asyncio
    async def test_one_open_dispute_per_rental(self, harness):
        await harness.disputes.create_dispute(_request())

        with pytest.raises(DuplicateError):
            await harness.disputes.create_dispute(_request(initiated_by=OWNER))

    @pytest.mark.asyncio
    async def test_terminal_dispute_frees_the_rental(self, harness):
        first = await harness.disputes.create_dispute(_request())
        await harness.disputes.close_dispute(first.id, RENTER, "sorted it out")

        second = await harness.disputes.create_dispute(_request())

        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_requester_must_be_a_party(self, harness):
        with pytest.raises(ValidationError):
            await harness.disputes.create_dispute(_request(initiated_by=STRANGER))

    @pytest.mark.asyncio
    async def test_unknown_rental(self, harness):
        with pytest.raises(ValidationError):
            await harness.disputes.create_dispute(_request(rental_id="rental-404"))

    @pytest.mark.asyncio
    async def test_payment_must_belong_to_rental(self, harness):
        harness.directory.add_rental("rental-2", payment_id="payment-2")

        with pytest.raises(ValidationError):
            await harness.disputes.create_dispute(_request(payment_id="payment-2"))

    @pytest.mark.asyncio
    async def test_initial_evidence_is_stored(self, harness):
        upload = EvidenceUpload(file_name="crack.jpg", content_type="image/jpeg", content=b"\xff\xd8")

        dispute = await harness.disputes.create_dispute(_request(evidence=[upload]))

        timeline = await harness.disputes.get_timeline(dispute.id, RENTER)
        assert [e.summary for e in timeline if e.kind == "evidence"] == ["Uploaded crack.jpg"]
        assert list(harness.storage.objects)[0].startswith(f"disputes/{dispute.id}/")

    @pytest.mark.asyncio
    async def test_storage_failure_leaves_nothing_behind(self, harness):
        upload = EvidenceUpload(file_name="crack.jpg", content_type="image/jpeg", content=b"\xff\xd8")
        harness.storage.fail = True

        with pytest.raises(ExternalServiceError):
            await harness.disputes.create_dispute(_request(evidence=[upload]))

        assert await harness.disputes.list_user_disputes(RENTER) == []
        harness.storage.fail = False
        dispute = await harness.disputes.create_dispute(_request(evidence=[upload]))
        timeline = await harness.disputes.get_timeline(dispute.id, RENTER)
        assert [e.summary for e in timeline if e.kind == "evidence"] == ["Uploaded crack.jpg"]

    @pytest.mark.asyncio
    async def test_disallowed_content_type(self, harness):
        upload = EvidenceUpload(file_name="run.exe", content_type="application/x-msdownload", content=b"MZ")

        with pytest.raises(ValidationError):
            await harness.disputes.create_dispute(_request(evidence=[upload]))


class TestMessages:
    @pytest.mark.asyncio
    async def test_unread_counters(self, harness):
        dispute = await _under_review(harness)

        await harness.disputes.add_message(dispute.id, RENTER, "Photos attached")

        dispute = await harness.disputes.get_dispute(dispute.id)
        assert dispute.unread_counts[OWNER] >= 1
        assert dispute.unread_counts[ADMIN] >= 1
        before = dispute.unread_counts.get(RENTER, 0)
        marked = await harness.disputes.mark_messages_read(dispute.id, OWNER)
        dispute = await harness.disputes.get_dispute(dispute.id)
        assert marked >= 1
        assert dispute.unread_counts[OWNER] == 0
        assert dispute.unread_counts.get(RENTER, 0) == before

    @pytest.mark.asyncio
    async def test_sequence_numbers_increase(self, harness):
        dispute = await _under_review(harness)
        first = await harness.disputes.add_message(dispute.id, RENTER, "one")
        second = await harness.disputes.add_message(dispute.id, OWNER, "two")

        assert second.sequence == first.sequence + 1

    @pytest.mark.asyncio
    async def test_internal_notes_hidden_from_parties(self, harness):
        dispute = await _under_review(harness)

        await harness.disputes.add_message(dispute.id, ADMIN, "Renter has prior claims", is_internal=True)

        assert all(not m.is_internal for m in await harness.disputes.get_messages(dispute.id, RENTER))
        admin_view = await harness.disputes.get_messages(dispute.id, ADMIN)
        assert any(m.is_internal for m in admin_view)

    @pytest.mark.asyncio
    async def test_only_admin_posts_internal_notes(self, harness):
        dispute = await _under_review(harness)

        with pytest.raises(AccessDenied):
            await harness.disputes.add_message(dispute.id, OWNER, "psst", is_internal=True)

    @pytest.mark.asyncio
    async def test_outsider_cannot_post(self, harness):
        dispute = await harness.disputes.create_dispute(_request())

        with pytest.raises(AccessDenied):
            await harness.disputes.add_message(dispute.id, STRANGER, "hello")

    @pytest.mark.asyncio
    async def test_empty_body(self, harness):
        dispute = await harness.disputes.create_dispute(_request())

        with pytest.raises(ValidationError):
            await harness.disputes.add_message(dispute.id, RENTER, "   ")

    @pytest.mark.asyncio
    async def test_closed_dispute_rejects_messages(self, harness):
        dispute = await harness.disputes.create_dispute(_request())
        await harness.disputes.close_dispute(dispute.id, OWNER, "withdrawn")

        with pytest.raises(InvalidStateError):
            await harness.disputes.add_message(dispute.id, RENTER, "wait")


class TestEvidence:
    @pytest.mark.asyncio
    async def test_upload_then_scan_verdict(self, harness):
        dispute = await harness.disputes.create_dispute(_request())
        upload = EvidenceUpload(file_name="receipt.pdf", content_type="application/pdf", content=b"%PDF")

        [evidence] = await harness.disputes.upload_evidence(dispute.id, OWNER, [upload])

        assert evidence.uploaded_by == OWNER
        assert evidence.file_size == 4
        assert evidence.is_scanned is False
        assert harness.storage.objects[evidence.storage_reference] == b"%PDF"

        scanned = await harness.disputes.record_evidence_scan(evidence.storage_reference, is_safe=False)

        assert scanned.is_scanned is True
        assert scanned.is_safe is False
        assert scanned.scanned_at == harness.clock.now

    @pytest.mark.asyncio
    async def test_outsider_cannot_upload(self, harness):
        dispute = await harness.disputes.create_dispute(_request())
        upload = EvidenceUpload(file_name="a.jpg", content_type="image/jpeg", content=b"\xff\xd8")

        with pytest.raises(AccessDenied):
            await harness.disputes.upload_evidence(dispute.id, STRANGER, [upload])
        assert harness.storage.objects == {}

    @pytest.mark.asyncio
    async def test_empty_upload_rejected(self, harness):
        dispute = await harness.disputes.create_dispute(_request())

        with pytest.raises(ValidationError):
            await harness.disputes.upload_evidence(dispute.id, RENTER, [])

    @pytest.mark.asyncio
    async def test_scan_for_unknown_reference(self, harness):
        with pytest.raises(NotFoundError):
            await harness.disputes.record_evidence_scan("disputes/none/1-x.jpg", is_safe=True)


class TestAssignment:
    @pytest.mark.asyncio
    async def test_assignment_moves_to_review(self, harness):
        dispute = await _under_review(harness)

        assert dispute.status == DisputeStatus.UNDER_REVIEW
        assert dispute.assigned_admin_id == ADMIN

    @pytest.mark.asyncio
    async def test_reassignment_keeps_status(self, harness):
        dispute = await _under_review(harness)

        dispute = await harness.disputes.assign_admin(dispute.id, OTHER_ADMIN, ADMIN)

        assert dispute.status == DisputeStatus.UNDER_REVIEW
        assert dispute.assigned_admin_id == OTHER_ADMIN
        assert len(dispute.status_history) == 2

    @pytest.mark.asyncio
    async def test_non_admin_cannot_assign(self, harness):
        dispute = await harness.disputes.create_dispute(_request())

        with pytest.raises(AccessDenied):
            await harness.disputes.assign_admin(dispute.id, OWNER, OWNER)


class TestResolve:
    @pytest.mark.asyncio
    async def test_refund_end_to_end(self, harness):
        dispute = await harness.disputes.create_dispute(_request())
        assert dispute.status == DisputeStatus.OPENED
        dispute = await harness.disputes.assign_admin(dispute.id, ADMIN, ADMIN)
        assert dispute.status == DisputeStatus.UNDER_REVIEW

        resolved = await harness.disputes.resolve_dispute(
            dispute.id,
            ADMIN,
            Resolution(kind=ResolutionKind.REFUND, payload={"refund_amount": "25.00"}),
            notes="Damage confirmed",
        )

        assert resolved.status == DisputeStatus.RESOLVED
        assert resolved.refund_amount == Decimal("25.00")
        assert resolved.refund_transaction_id == "txn-1"
        assert harness.processor.refund_calls == {f"dispute-{dispute.id}": 1}
        with pytest.raises(InvalidStateError):
            await harness.disputes.close_dispute(dispute.id, RENTER, "again")
        with pytest.raises(InvalidStateError):
            await harness.disputes.resolve_dispute(
                dispute.id, ADMIN, Resolution(kind=ResolutionKind.NO_REFUND)
            )
        assert len(harness.processor.refunds) == 1

    @pytest.mark.asyncio
    async def test_full_refund_defaults_to_claimed_amount(self, harness):
        dispute = await _under_review(harness)

        resolved = await harness.disputes.resolve_dispute(
            dispute.id, ADMIN, Resolution(kind=ResolutionKind.REFUND)
        )

        assert resolved.refund_amount == Decimal("40.00")

    @pytest.mark.asyncio
    async def test_non_monetary_resolution(self, harness):
        dispute = await _under_review(harness)

        resolved = await harness.disputes.resolve_dispute(
            dispute.id,
            ARBITRATION_ACTOR,
            Resolution(kind=ResolutionKind.REPLACEMENT, payload={"replacement_reference": "drill-77"}),
        )

        assert resolved.status == DisputeStatus.RESOLVED
        assert resolved.refund_transaction_id is None
        assert harness.processor.refunds == {}

    @pytest.mark.asyncio
    async def test_cannot_resolve_while_opened(self, harness):
        dispute = await harness.disputes.create_dispute(_request())

        with pytest.raises(InvalidStateError):
            await harness.disputes.resolve_dispute(
                dispute.id, ARBITRATION_ACTOR, Resolution(kind=ResolutionKind.NO_REFUND)
            )

    @pytest.mark.asyncio
    async def test_only_assigned_admin_or_arbitrator(self, harness):
        dispute = await _under_review(harness)

        for actor in (OWNER, OTHER_ADMIN):
            with pytest.raises(AccessDenied):
                await harness.disputes.resolve_dispute(
                    dispute.id, actor, Resolution(kind=ResolutionKind.NO_REFUND)
                )

    @pytest.mark.asyncio
    async def test_refund_needs_a_payment(self, harness):
        dispute = await _under_review(harness, payment_id=None)

        with pytest.raises(ValidationError):
            await harness.disputes.resolve_dispute(
                dispute.id,
                ADMIN,
                Resolution(kind=ResolutionKind.PARTIAL_REFUND, payload={"refund_amount": "5"}),
            )

    @pytest.mark.asyncio
    async def test_processor_failure_leaves_dispute_under_review(self, harness):
        dispute = await _under_review(harness)
        harness.processor.fail_refunds = True

        with pytest.raises(ExternalServiceError) as exc_info:
            await harness.disputes.resolve_dispute(
                dispute.id, ADMIN, Resolution(kind=ResolutionKind.REFUND, payload={"refund_amount": "10"})
            )

        assert exc_info.value.retryable
        assert (await harness.disputes.get_dispute(dispute.id)).status == DisputeStatus.UNDER_REVIEW

        harness.processor.fail_refunds = False
        resolved = await harness.disputes.resolve_dispute(
            dispute.id, ADMIN, Resolution(kind=ResolutionKind.REFUND, payload={"refund_amount": "10"})
        )
        assert resolved.status == DisputeStatus.RESOLVED
        assert len(harness.processor.refunds) == 1

    @pytest.mark.asyncio
    async def test_close_is_rejected_while_refund_is_in_flight(self, harness):
        dispute = await _under_review(harness)
        harness.processor.delay = 0.05
        resolving = asyncio.create_task(
            harness.disputes.resolve_dispute(
                dispute.id, ADMIN, Resolution(kind=ResolutionKind.REFUND, payload={"refund_amount": "25"})
            )
        )
        while not harness.processor.refund_calls:
            await asyncio.sleep(0)

        with pytest.raises(InvalidStateError):
            await harness.disputes.close_dispute(dispute.id, RENTER, "Settled elsewhere")
        with pytest.raises(InvalidStateError):
            await harness.disputes.escalate_to_external_processor(dispute.id, ADMIN)

        resolved = await resolving
        assert resolved.status == DisputeStatus.RESOLVED
        assert resolved.refund_transaction_id == "txn-1"
        assert harness.processor.refund_calls == {f"dispute-{dispute.id}": 1}

    @pytest.mark.asyncio
    async def test_closed_dispute_is_never_refunded(self, harness):
        dispute = await _under_review(harness)
        await harness.disputes.close_dispute(dispute.id, RENTER, "Settled elsewhere")

        with pytest.raises(InvalidStateError):
            await harness.disputes.resolve_dispute(
                dispute.id, ADMIN, Resolution(kind=ResolutionKind.REFUND, payload={"refund_amount": "25"})
            )

        assert not harness.processor.refund_calls


class TestEscalateAndClose:
    @pytest.mark.asyncio
    async def test_escalation(self, harness):
        dispute = await _under_review(harness)

        escalated = await harness.disputes.escalate_to_external_processor(dispute.id, ADMIN)

        assert escalated.status == DisputeStatus.ESCALATED
        assert escalated.external_dispute_id == f"ext-{dispute.id}"
        assert harness.processor.escalations[0].amount == Decimal("40.00")

    @pytest.mark.asyncio
    async def test_escalation_failure_keeps_status(self, harness):
        dispute = await _under_review(harness)
        harness.processor.fail_escalations = True

        with pytest.raises(ExternalServiceError):
            await harness.disputes.escalate_to_external_processor(dispute.id, ADMIN)

        assert (await harness.disputes.get_dispute(dispute.id)).status == DisputeStatus.UNDER_REVIEW

    @pytest.mark.asyncio
    async def test_escalation_needs_review(self, harness):
        dispute = await harness.disputes.create_dispute(_request())

        with pytest.raises(InvalidStateError):
            await harness.disputes.escalate_to_external_processor(dispute.id, ADMIN)

    @pytest.mark.asyncio
    async def test_admin_cannot_resolve_escalated_dispute(self, harness):
        dispute = await _under_review(harness)
        await harness.disputes.escalate_to_external_processor(dispute.id, ADMIN)

        with pytest.raises(InvalidStateError):
            await harness.disputes.resolve_dispute(
                dispute.id, ADMIN, Resolution(kind=ResolutionKind.NO_REFUND)
            )

    @pytest.mark.asyncio
    async def test_escalated_dispute_can_still_close(self, harness):
        dispute = await _under_review(harness)
        await harness.disputes.escalate_to_external_processor(dispute.id, ADMIN)

        closed = await harness.disputes.close_dispute(dispute.id, ADMIN, "Withdrawn at processor")

        assert closed.status == DisputeStatus.CLOSED
        assert closed.closed_by == ADMIN

    @pytest.mark.asyncio
    async def test_stranger_cannot_close(self, harness):
        dispute = await harness.disputes.create_dispute(_request())

        with pytest.raises(AccessDenied):
            await harness.disputes.close_dispute(dispute.id, STRANGER, "nope")


class TestQueries:
    @pytest.mark.asyncio
    async def test_unknown_dispute(self, harness):
        with pytest.raises(NotFoundError):
            await harness.disputes.get_dispute("missing")

    @pytest.mark.asyncio
    async def test_outsider_cannot_read(self, harness):
        dispute = await harness.disputes.create_dispute(_request())

        with pytest.raises(AccessDenied):
            await harness.disputes.get_dispute(dispute.id, STRANGER)
        assert (await harness.disputes.get_dispute(dispute.id, ADMIN)).id == dispute.id

    @pytest.mark.asyncio
    async def test_list_and_statistics(self, harness):
        harness.directory.add_rental("rental-2", payment_id="payment-2")
        first = await _under_review(harness)
        await harness.disputes.create_dispute(_request(rental_id="rental-2", payment_id="payment-2"))
        harness.clock.advance(hours=6)
        await harness.disputes.resolve_dispute(
            first.id, ADMIN, Resolution(kind=ResolutionKind.REFUND, payload={"refund_amount": "25.00"})
        )

        assert len(await harness.disputes.list_user_disputes(RENTER)) == 2
        opened = await harness.disputes.list_user_disputes(RENTER, status=DisputeStatus.OPENED)
        assert len(opened) == 1
        stats = await harness.disputes.get_statistics()
        assert stats.total == 2
        assert stats.by_status == {"resolved": 1, "opened": 1}
        assert stats.total_refunded == Decimal("25.00")
        assert stats.average_resolution_hours == 6.0

    @pytest.mark.asyncio
    async def test_timeline_is_ordered(self, harness):
        dispute = await harness.disputes.create_dispute(_request())
        harness.clock.advance(minutes=5)
        await harness.disputes.assign_admin(dispute.id, ADMIN, ADMIN)
        harness.clock.advance(minutes=5)
        await harness.disputes.add_message(dispute.id, OWNER, "I disagree")

        timeline = await harness.disputes.get_timeline(dispute.id, OWNER)

        assert [e.at for e in timeline] == sorted(e.at for e in timeline)
        assert {e.kind for e in timeline} == {"status", "message"}


async def _random_step(harness: DisputeHarness, dispute_id: str, rng: random.Random) -> None:
    sm = harness.disputes
    operations = [
        lambda: sm.assign_admin(dispute_id, ADMIN, ADMIN),
        lambda: sm.resolve_dispute(dispute_id, ADMIN, Resolution(kind=ResolutionKind.NO_REFUND)),
        lambda: sm.resolve_dispute(
            dispute_id, ADMIN, Resolution(kind=ResolutionKind.PARTIAL_REFUND, payload={"refund_amount": "5"})
        ),
        lambda: sm.escalate_to_external_processor(dispute_id, ADMIN),
        lambda: sm.close_dispute(dispute_id, rng.choice([OWNER, RENTER, ADMIN]), "random close"),
        lambda: sm.add_message(dispute_id, rng.choice([OWNER, RENTER]), "ping"),
        lambda: sm.resolve_dispute(dispute_id, OWNER, Resolution(kind=ResolutionKind.NO_REFUND)),
    ]
    await rng.choice(operations)()


class TestConformance:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", range(25))
    async def test_random_sequences_follow_transition_table(self, seed):
        harness = build_harness()
        rng = random.Random(seed)
        dispute = await harness.disputes.create_dispute(_request())

        for _ in range(12):
            before = await harness.disputes.get_dispute(dispute.id)
            try:
                await _random_step(harness, dispute.id, rng)
            except TrustError:
                after = await harness.disputes.get_dispute(dispute.id)
                assert after.status == before.status
                continue
            after = await harness.disputes.get_dispute(dispute.id)
            if after.status != before.status:
                assert after.status in ALLOWED_TRANSITIONS[before.status]
            if before.status.is_terminal:
                assert after.status == before.status

        history = (await harness.disputes.get_dispute(dispute.id)).status_history
        for previous, current in zip(history, history[1:], strict=False):
            assert current["from"] == previous["to"]
            assert DisputeStatus(current["to"]) in ALLOWED_TRANSITIONS[DisputeStatus(current["from"])]
        assert len(harness.processor.refunds) <= 1
