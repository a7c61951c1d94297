"""DisputeOrchestrator: the entry point external callers use for disputes.

Composes DisputeStateMachine, MutualClosureWorkflow and FraudCheckService.
Notifications to the parties and feedback into the fraud subsystem live
here so the two components stay free of cross-cutting side effects.
"""

from decimal import Decimal

import structlog

from tooltrust.domains.fraud.models import FraudCheck
from tooltrust.domains.fraud.service import FraudCheckService
from tooltrust.integrations.notifications import (
    NotificationEvent,
    NotificationPublisher,
    NotificationType,
    notify_safely,
)
from tooltrust.shared.errors import InvalidStateError, ValidationError

from .models import (
    CreateDisputeRequest,
    Dispute,
    DisputeCategory,
    DisputeMessage,
    DisputeStatus,
    DisputeType,
    ExternalDisputeWebhook,
    MutualClosureStatus,
    MutualDisputeClosure,
    Resolution,
    WebhookOutcome,
    WebhookResult,
)
from .mutual_closure import MutualClosureWorkflow
from .state_machine import DisputeStateMachine

logger = structlog.get_logger()


class DisputeOrchestrator:
    def __init__(
        self,
        disputes: DisputeStateMachine,
        closures: MutualClosureWorkflow,
        fraud: FraudCheckService | None = None,
        publisher: NotificationPublisher | None = None,
    ) -> None:
        self.disputes = disputes
        self.closures = closures
        self.fraud = fraud
        self._publisher = publisher

    async def open_dispute(self, request: CreateDisputeRequest) -> Dispute:
        dispute = await self.disputes.create_dispute(request)
        await self._notify(
            NotificationType.DISPUTE_CREATED,
            dispute,
            [dispute.counterparty(dispute.initiated_by)],
            title=dispute.title,
            dispute_type=dispute.dispute_type.value,
        )
        return dispute

    async def raise_fraud_dispute(self, check_id: str, rental_id: str) -> Dispute:
        """Open a dispute on behalf of the payer of a payment held by a fraud check."""
        if self.fraud is None:
            raise InvalidStateError("Fraud checks are not available")
        check = await self.fraud.get_check(check_id)
        if not check.payment_blocked or check.payment_id is None:
            raise ValidationError(
                f"Fraud check {check_id} did not block a payment", check_id=check_id
            )
        return await self.open_dispute(
            CreateDisputeRequest(
                rental_id=rental_id,
                payment_id=check.payment_id,
                initiated_by=check.user_id,
                dispute_type=DisputeType.PAYMENT,
                category=DisputeCategory.FRAUD,
                title=f"Payment {check.payment_id} held for review",
                description=_describe_check(check),
                claimed_amount=Decimal(check.details.get("amount") or "0"),
            )
        )

    async def post_message(
        self, dispute_id: str, author_id: str, body: str, is_internal: bool = False
    ) -> DisputeMessage:
        message = await self.disputes.add_message(dispute_id, author_id, body, is_internal)
        if not is_internal:
            dispute = await self.disputes.get_dispute(dispute_id)
            await self._notify(
                NotificationType.DISPUTE_MESSAGE,
                dispute,
                [p for p in dispute.participants() if p != author_id],
                message_id=message.id,
                sequence=message.sequence,
            )
        return message

    async def resolve(
        self, dispute_id: str, resolved_by: str, resolution: Resolution, notes: str | None = None
    ) -> Dispute:
        dispute = await self.disputes.resolve_dispute(dispute_id, resolved_by, resolution, notes)
        if (flag_user_id := resolution.flag_user_id) is not None:
            await self._flag_from_resolution(dispute, flag_user_id, resolved_by)
        await self._status_changed(dispute, resolution_kind=resolution.kind.value)
        return dispute

    async def escalate(self, dispute_id: str, admin_user_id: str) -> Dispute:
        dispute = await self.disputes.escalate_to_external_processor(dispute_id, admin_user_id)
        await self._status_changed(dispute, external_dispute_id=dispute.external_dispute_id)
        return dispute

    async def close(self, dispute_id: str, closed_by: str, reason: str) -> Dispute:
        dispute = await self.disputes.close_dispute(dispute_id, closed_by, reason)
        await self._status_changed(dispute, reason=reason)
        return dispute

    async def propose_mutual_closure(
        self,
        dispute_id: str,
        proposer_id: str,
        notes: str,
        refund_amount: Decimal | None = None,
        expiration_hours: int | None = None,
    ) -> MutualDisputeClosure:
        closure = await self.closures.initiate_mutual_closure(
            dispute_id, proposer_id, notes, refund_amount, expiration_hours
        )
        dispute = await self.disputes.get_dispute(dispute_id)
        await self._notify(
            NotificationType.MUTUAL_CLOSURE_PROPOSED,
            dispute,
            [closure.response_required_from],
            closure_id=closure.id,
            refund_amount=str(closure.refund_amount),
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
        closure = await self.closures.respond_to_mutual_closure(
            closure_id, responder_id, accept, message, rejection_reason
        )
        dispute = await self.disputes.get_dispute(closure.dispute_id)
        await self._notify(
            NotificationType.MUTUAL_CLOSURE_RESPONDED,
            dispute,
            [closure.proposed_by],
            closure_id=closure.id,
            status=closure.status.value,
        )
        if closure.status == MutualClosureStatus.ACCEPTED and dispute.status == DisputeStatus.CLOSED:
            await self._status_changed(dispute, closure_id=closure.id)
        return closure

    async def complete_mutual_closure(self, closure_id: str) -> MutualDisputeClosure:
        """Finish an accepted closure whose refund failed when it was accepted."""
        closure = await self.closures.get_closure(closure_id)
        before = await self.disputes.get_dispute(closure.dispute_id)
        closure = await self.closures.handle_mutual_closure_completion(closure_id)
        dispute = await self.disputes.get_dispute(closure.dispute_id)
        if dispute.status != before.status:
            await self._status_changed(dispute, closure_id=closure.id)
        return closure

    async def handle_processor_webhook(self, event: ExternalDisputeWebhook) -> WebhookResult:
        result = await self.disputes.handle_external_webhook(event)
        await self._after_processor_update(result)
        return result

    async def sync_external_dispute(self, external_dispute_id: str) -> WebhookResult:
        result = await self.disputes.sync_external_dispute(external_dispute_id)
        await self._after_processor_update(result)
        return result

    async def _after_processor_update(self, result: WebhookResult) -> None:
        if result.outcome != WebhookOutcome.APPLIED or result.dispute_id is None:
            return
        dispute = await self.disputes.get_dispute(result.dispute_id)
        if dispute.status.is_terminal:
            await self._status_changed(dispute, external_status=dispute.external_status)

    async def _flag_from_resolution(self, dispute: Dispute, user_id: str, resolved_by: str) -> None:
        if self.fraud is None:
            logger.warning("fraud_feedback_unavailable", dispute_id=dispute.id, user_id=user_id)
            return
        await self.fraud.flag_user(
            user_id,
            reason=f"Flagged by resolution of dispute {dispute.id}",
            flagged_by=resolved_by,
            related_payment_ids=[dispute.payment_id] if dispute.payment_id else [],
        )

    async def _status_changed(self, dispute: Dispute, **payload) -> None:
        await self._notify(
            NotificationType.DISPUTE_STATUS_CHANGED,
            dispute,
            dispute.participants(),
            status=dispute.status.value,
            **payload,
        )

    async def _notify(
        self, event_type: NotificationType, dispute: Dispute, recipients: list[str | None], **payload
    ) -> None:
        await notify_safely(
            self._publisher,
            NotificationEvent(
                event_type=event_type,
                subject_id=dispute.id,
                recipient_ids=[r for r in recipients if r],
                payload={"dispute_id": dispute.id, "rental_id": dispute.rental_id, **payload},
            ),
        )


def _describe_check(check: FraudCheck) -> str:
    rules = ", ".join(check.triggered_rules) or "none"
    return (
        f"Fraud check {check.id} scored {check.risk_score:.0f} ({check.risk_level.value}). "
        f"Triggered rules: {rules}."
    )
