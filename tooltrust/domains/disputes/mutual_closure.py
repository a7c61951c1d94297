"""MutualClosureWorkflow: two-party agreements that close a dispute.

Lifecycle ``proposed -> accepted | rejected | expired | cancelled``. Expiry
is applied lazily whenever a proposal is read or about to change, and
``expire_stale_closures`` sweeps the rest. Each transition writes one audit
entry; an acceptance writes a second entry once the refund and the dispute
closure have completed.
"""

from datetime import datetime, timedelta
from decimal import ROUND_DOWN, Decimal

import structlog

from tooltrust.integrations.calls import call_external
from tooltrust.integrations.directory import UserDirectory
from tooltrust.integrations.payments import PaymentProcessor
from tooltrust.shared.errors import (
    AccessDenied,
    AlreadyActiveError,
    ExternalServiceError,
    InvalidStateError,
    LimitExceededError,
    NotFoundError,
    TrustError,
    ValidationError,
)

from .closure_log import expire_if_stale, record_audit, transition_closure
from .config import DisputeConfig, default_config
from .models import (
    SYSTEM_ACTOR,
    Dispute,
    DisputeCategory,
    DisputeStatus,
    DisputeType,
    MutualClosureAuditLog,
    MutualClosureEligibility,
    MutualClosureStatistics,
    MutualClosureStatus,
    MutualDisputeClosure,
)
from .state_machine import DisputeStateMachine
from .store import ClosureStore

logger = structlog.get_logger()

CENT = Decimal("0.01")


def _ensure_open(dispute: Dispute) -> None:
    if dispute.status.is_terminal:
        raise InvalidStateError(
            f"Dispute {dispute.id} is {dispute.status.value}",
            dispute_id=dispute.id,
            status=dispute.status.value,
        )


class MutualClosureWorkflow:
    def __init__(
        self,
        disputes: DisputeStateMachine,
        closures: ClosureStore,
        directory: UserDirectory,
        processor: PaymentProcessor,
        config: DisputeConfig | None = None,
    ) -> None:
        self._config = config or default_config
        self._policy = self._config.mutual_closure
        self._disputes = disputes
        self._closures = closures
        self._directory = directory
        self._processor = processor

    async def check_eligibility(
        self, dispute_id: str, user_id: str
    ) -> MutualClosureEligibility:
        """Report whether ``user_id`` may propose a closure now. Never raises."""
        try:
            dispute = await self._disputes.get_dispute(dispute_id)
            max_refund = await self._max_refund(dispute)
            async with self._disputes.locks.hold(dispute_id):
                blockers = await self._blockers(dispute_id, user_id, self._disputes.clock())
                active = await self._closures.get_active(dispute_id)
        except NotFoundError:
            return MutualClosureEligibility(is_eligible=False, reasons=["Dispute not found"])
        except TrustError as exc:
            logger.warning(
                "mutual_closure_eligibility_unavailable",
                dispute_id=dispute_id,
                user_id=user_id,
                error=exc.code,
            )
            return MutualClosureEligibility(is_eligible=False, reasons=[exc.message])
        return MutualClosureEligibility(
            is_eligible=not blockers,
            reasons=[message for _, message in blockers],
            max_refund_amount=max_refund,
            active_closure_id=active.id if active else None,
        )

    async def initiate_mutual_closure(
        self,
        dispute_id: str,
        proposer_id: str,
        notes: str,
        refund_amount: Decimal | None = None,
        expiration_hours: int | None = None,
    ) -> MutualDisputeClosure:
        if not notes or not notes.strip():
            raise ValidationError("Resolution notes are required", dispute_id=dispute_id)
        hours = (
            self._policy.default_expiration_hours if expiration_hours is None else expiration_hours
        )
        if not self._policy.min_expiration_hours <= hours <= self._policy.max_expiration_hours:
            raise ValidationError(
                f"Expiration must be between {self._policy.min_expiration_hours} and "
                f"{self._policy.max_expiration_hours} hours",
                expiration_hours=hours,
            )
        amount = refund_amount if refund_amount is not None else Decimal("0")
        dispute = await self._disputes.get_dispute(dispute_id)
        max_refund = await self._max_refund(dispute)
        if amount < 0 or amount > max_refund:
            raise ValidationError(
                f"Refund must be between 0 and {max_refund}",
                refund_amount=str(amount),
                max_refund_amount=str(max_refund),
            )

        async with self._disputes.locks.hold(dispute_id):
            now = self._disputes.clock()
            if blockers := await self._blockers(dispute_id, proposer_id, now):
                error_cls, message = blockers[0]
                raise error_cls(message, dispute_id=dispute_id, user_id=proposer_id)
            dispute = await self._disputes.get_dispute(dispute_id)
            closure = MutualDisputeClosure(
                dispute_id=dispute_id,
                proposed_by=proposer_id,
                response_required_from=dispute.counterparty(proposer_id),
                resolution_notes=notes.strip(),
                refund_amount=amount,
                expires_at=now + timedelta(hours=hours),
                created_at=now,
            )
            await self._closures.add(closure)

            def point(d: Dispute) -> None:
                d.active_closure_id = closure.id
                d.last_action_at = now
                d.updated_at = now

            await self._disputes.apply_change(dispute_id, point)

        logger.info(
            "mutual_closure_proposed",
            closure_id=closure.id,
            dispute_id=dispute_id,
            proposed_by=proposer_id,
            refund_amount=str(amount),
            expires_at=closure.expires_at.isoformat(),
        )
        return closure

    async def respond_to_mutual_closure(
        self,
        closure_id: str,
        responder_id: str,
        accept: bool,
        message: str | None = None,
        rejection_reason: str | None = None,
    ) -> MutualDisputeClosure:
        closure = await self._get(closure_id)
        async with self._disputes.locks.hold(closure.dispute_id):
            now = self._disputes.clock()
            closure = await self._get(closure_id)
            await self._expire(closure, now)
            if closure.status != MutualClosureStatus.PROPOSED:
                raise InvalidStateError(
                    f"Closure {closure_id} is {closure.status.value}",
                    closure_id=closure_id,
                    status=closure.status.value,
                )
            if responder_id != closure.response_required_from:
                raise AccessDenied(
                    "Only the other party can respond to this proposal",
                    closure_id=closure_id,
                    user_id=responder_id,
                )
            closure.response_message = message
            if accept:
                await transition_closure(
                    self._closures,
                    closure,
                    MutualClosureStatus.ACCEPTED,
                    responder_id,
                    now,
                    action="accepted",
                    reason=message or "",
                )
            else:
                closure.rejection_reason = rejection_reason
                await transition_closure(
                    self._closures,
                    closure,
                    MutualClosureStatus.REJECTED,
                    responder_id,
                    now,
                    action="rejected",
                    reason=rejection_reason or "",
                )
                await self._release(closure)

        if accept:
            return await self.handle_mutual_closure_completion(closure_id)
        return closure

    async def handle_mutual_closure_completion(self, closure_id: str) -> MutualDisputeClosure:
        """Refund the agreed amount once, then close the dispute.

        Safe to call again after a failure: the refund carries the key
        ``closure:{id}`` and a completed closure is left untouched. The
        dispute is claimed for the refund, so nobody can close or escalate it
        while the money is moving.
        """
        closure = await self._get(closure_id)
        if closure.status != MutualClosureStatus.ACCEPTED:
            raise InvalidStateError(
                f"Closure {closure_id} is {closure.status.value}, not accepted",
                closure_id=closure_id,
                status=closure.status.value,
            )
        dispute = await self._disputes.get_dispute(closure.dispute_id)
        if dispute.status.is_terminal:
            logger.info(
                "mutual_closure_already_complete",
                closure_id=closure_id,
                dispute_id=dispute.id,
                status=dispute.status.value,
            )
            return closure

        async with self._disputes.processor_call(closure.dispute_id, _ensure_open) as dispute:
            txn_id = closure.refund_transaction_id
            if closure.refund_amount > 0 and txn_id is None:
                txn_id = await call_external(
                    "payment_processor",
                    "refund",
                    self._processor.refund(
                        dispute.payment_id,
                        closure.refund_amount,
                        reason=f"Mutual closure {closure_id} of dispute {dispute.id}",
                        idempotency_key=f"closure:{closure_id}",
                    ),
                    timeout=self._config.processor_timeout_seconds,
                )

            async with self._disputes.locks.hold(closure.dispute_id):
                now = self._disputes.clock()
                closure = await self._get(closure_id)
                closure.refund_transaction_id = txn_id
                await self._closures.save(closure)
                closer = closure.response_required_from

                def close(d: Dispute) -> None:
                    _ensure_open(d)
                    d.transition_to(
                        DisputeStatus.CLOSED, closer, now, reason="Closed by mutual agreement"
                    )
                    d.closed_by = closer
                    d.close_reason = "Closed by mutual agreement"
                    d.closed_at = now
                    d.resolution_notes = closure.resolution_notes
                    d.refund_amount = closure.refund_amount if closure.refund_amount > 0 else None
                    d.refund_transaction_id = txn_id
                    d.active_closure_id = None

                await self._disputes.apply_change(closure.dispute_id, close)
                await record_audit(
                    self._closures,
                    closure,
                    SYSTEM_ACTOR,
                    "completed",
                    MutualClosureStatus.ACCEPTED,
                    MutualClosureStatus.ACCEPTED,
                    now,
                    reason="Dispute closed by mutual agreement",
                    metadata={
                        "refund_amount": str(closure.refund_amount),
                        "refund_transaction_id": txn_id,
                    },
                )

        logger.info(
            "mutual_closure_completed",
            closure_id=closure_id,
            dispute_id=closure.dispute_id,
            refund_amount=str(closure.refund_amount),
            refund_transaction_id=txn_id,
        )
        return closure

    async def cancel_mutual_closure(
        self, closure_id: str, user_id: str, reason: str = ""
    ) -> MutualDisputeClosure:
        closure = await self._get(closure_id)
        if user_id != closure.proposed_by:
            raise AccessDenied(
                "Only the proposer can cancel a closure proposal", closure_id=closure_id, user_id=user_id
            )
        async with self._disputes.locks.hold(closure.dispute_id):
            now = self._disputes.clock()
            closure = await self._get(closure_id)
            await self._expire(closure, now)
            if closure.status != MutualClosureStatus.PROPOSED:
                raise InvalidStateError(
                    f"Closure {closure_id} is {closure.status.value}",
                    closure_id=closure_id,
                    status=closure.status.value,
                )
            await transition_closure(
                self._closures,
                closure,
                MutualClosureStatus.CANCELLED,
                user_id,
                now,
                action="cancelled",
                reason=reason,
            )
            await self._release(closure)
        return closure

    async def expire_stale_closures(self, now: datetime | None = None) -> list[MutualDisputeClosure]:
        now = now or self._disputes.clock()
        expired = []
        for candidate in await self._closures.list_proposed():
            if not candidate.is_expired(now):
                continue
            async with self._disputes.locks.hold(candidate.dispute_id):
                closure = await self._get(candidate.id)
                if closure.is_expired(now):
                    await self._expire(closure, now)
                    expired.append(closure)
        if expired:
            logger.info("mutual_closures_expired", count=len(expired))
        return expired

    async def get_closure(self, closure_id: str) -> MutualDisputeClosure:
        closure = await self._get(closure_id)
        if closure.status != MutualClosureStatus.PROPOSED:
            return closure
        async with self._disputes.locks.hold(closure.dispute_id):
            closure = await self._get(closure_id)
            await self._expire(closure, self._disputes.clock())
        return closure

    async def list_dispute_closures(self, dispute_id: str) -> list[MutualDisputeClosure]:
        async with self._disputes.locks.hold(dispute_id):
            if (active := await self._closures.get_active(dispute_id)) is not None:
                await self._expire(active, self._disputes.clock())
        return await self._closures.list_for_dispute(dispute_id)

    async def get_audit_log(self, closure_id: str) -> list[MutualClosureAuditLog]:
        await self._get(closure_id)
        return await self._closures.list_audit(closure_id)

    async def get_statistics(self) -> MutualClosureStatistics:
        closures = await self._closures.list_all()
        stats = MutualClosureStatistics(total=len(closures))
        for closure in closures:
            key = closure.status.value
            stats.by_status[key] = stats.by_status.get(key, 0) + 1
            if closure.status == MutualClosureStatus.ACCEPTED and closure.refund_transaction_id:
                stats.total_refunded += closure.refund_amount
        accepted = stats.by_status.get(MutualClosureStatus.ACCEPTED.value, 0)
        answered = accepted + stats.by_status.get(MutualClosureStatus.REJECTED.value, 0)
        if answered:
            stats.acceptance_rate = round(accepted / answered, 4)
        return stats

    # ------------------------------------------------------------------

    async def _get(self, closure_id: str) -> MutualDisputeClosure:
        if (closure := await self._closures.get(closure_id)) is None:
            raise NotFoundError(f"Mutual closure {closure_id} not found", closure_id=closure_id)
        return closure

    async def _expire(self, closure: MutualDisputeClosure, now: datetime) -> None:
        """Apply lazy expiry. Caller holds the dispute lock."""
        if closure.is_expired(now):
            await expire_if_stale(self._closures, closure, now)
            await self._release(closure)

    async def _release(self, closure: MutualDisputeClosure) -> None:
        def clear(d: Dispute) -> bool:
            if d.active_closure_id != closure.id:
                return False
            d.active_closure_id = None
            return True

        await self._disputes.apply_change(closure.dispute_id, clear)

    async def _max_refund(self, dispute: Dispute) -> Decimal:
        if dispute.payment_id is None:
            return Decimal("0")
        payment = await call_external(
            "directory",
            "get_payment",
            self._directory.get_payment(dispute.payment_id),
            timeout=self._config.directory_timeout_seconds,
        )
        if payment is None:
            raise ExternalServiceError(
                f"Payment {dispute.payment_id} could not be loaded",
                service="directory",
                payment_id=dispute.payment_id,
            )
        net = payment.amount * (Decimal("1") - Decimal(str(self._policy.platform_fee_pct)))
        cap = Decimal(str(self._policy.max_refund_amount))
        return min(net, cap).quantize(CENT, rounding=ROUND_DOWN)

    async def _blockers(
        self, dispute_id: str, user_id: str, now: datetime
    ) -> list[tuple[type[TrustError], str]]:
        """Reasons ``user_id`` cannot propose now, each with the error it maps to.

        Caller holds the dispute lock; stale proposals are expired on the way.
        """
        dispute = await self._disputes.get_dispute(dispute_id)
        blockers: list[tuple[type[TrustError], str]] = []
        if not dispute.is_party(user_id):
            blockers.append((AccessDenied, "Only the owner or the renter can propose a closure"))
        if dispute.status.is_terminal:
            blockers.append((InvalidStateError, f"Dispute is {dispute.status.value}"))
        if (active := await self._closures.get_active(dispute_id)) is not None:
            await self._expire(active, now)
            if active.status == MutualClosureStatus.PROPOSED:
                blockers.append((AlreadyActiveError, "A closure proposal is already pending"))
        elif dispute.active_closure_id is not None:
            pointed = await self._closures.get(dispute.active_closure_id)
            if pointed is not None and pointed.status == MutualClosureStatus.ACCEPTED:
                blockers.append((InvalidStateError, "An accepted closure is still completing"))
        if not self._policy.allow_with_external_escalation and (
            dispute.status == DisputeStatus.ESCALATED or dispute.external_dispute_id is not None
        ):
            blockers.append(
                (InvalidStateError, "Dispute is escalated to the payment processor")
            )
        if not self._policy.allow_fraud_category and (
            dispute.category == DisputeCategory.FRAUD or dispute.dispute_type == DisputeType.FRAUD
        ):
            blockers.append((InvalidStateError, "Fraud disputes cannot be closed mutually"))
        recent = await self._closures.list_by_proposer(user_id, since=now - timedelta(days=1))
        if len(recent) >= self._policy.max_proposals_per_day:
            blockers.append(
                (
                    LimitExceededError,
                    f"At most {self._policy.max_proposals_per_day} proposals per day",
                )
            )
        return blockers
