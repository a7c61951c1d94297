"""DisputeStateMachine: the dispute lifecycle and everything that happens inside it.

Every local transition runs under the per-dispute lock and is persisted with
a version compare-and-swap, retried a bounded number of times. Calls to the
payment processor, the directory and evidence storage happen with no lock
held; the lock is retaken afterwards and the state re-validated.
"""

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager, nullcontext
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

import structlog

from tooltrust.integrations.calls import call_external
from tooltrust.integrations.directory import UserDirectory
from tooltrust.integrations.evidence import EvidenceStorage, EvidenceUpload
from tooltrust.integrations.payments import EscalationRequest, PaymentProcessor
from tooltrust.shared.errors import (
    AccessDenied,
    ConcurrencyConflict,
    DuplicateError,
    ExternalServiceError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from tooltrust.shared.locks import KeyedLock

from .closure_log import cancel_pending, expire_if_stale
from .config import DisputeConfig, default_config
from .models import (
    ARBITRATION_ACTOR,
    PROCESSOR_ACTOR,
    SYSTEM_ACTOR,
    CreateDisputeRequest,
    Dispute,
    DisputeEvidence,
    DisputeMessage,
    DisputeStatistics,
    DisputeStatus,
    DisputeTimelineEntry,
    ExternalDisputeWebhook,
    MessageAuthorRole,
    MutualClosureStatus,
    Resolution,
    ResolutionKind,
    WebhookOutcome,
    WebhookResult,
)
from .store import ClosureStore, DisputeStore
from .webhooks import apply_webhook, normalize_event_type, webhook_from_state

logger = structlog.get_logger()

Change = Callable[[Dispute], Any]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DisputeStateMachine:
    def __init__(
        self,
        store: DisputeStore,
        closures: ClosureStore,
        directory: UserDirectory,
        processor: PaymentProcessor,
        evidence_storage: EvidenceStorage | None = None,
        config: DisputeConfig | None = None,
        locks: KeyedLock | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config or default_config
        self._store = store
        self._closures = closures
        self._directory = directory
        self._processor = processor
        self._evidence_storage = evidence_storage
        self.locks = locks or KeyedLock()
        self.clock = clock
        # dispute ids with a processor call (refund or escalation) underway
        self._in_flight: set[str] = set()

    # ------------------------------------------------------------------
    # Creation and assignment
    # ------------------------------------------------------------------

    async def create_dispute(self, request: CreateDisputeRequest) -> Dispute:
        rental = await self._directory_call("get_rental", self._directory.get_rental(request.rental_id))
        if rental is None:
            raise ValidationError(f"Rental {request.rental_id} not found", rental_id=request.rental_id)
        if not rental.is_party(request.initiated_by):
            raise ValidationError(
                "Only the owner or the renter can open a dispute on this rental",
                rental_id=request.rental_id,
                user_id=request.initiated_by,
            )
        if request.payment_id is not None:
            payment = await self._directory_call(
                "get_payment", self._directory.get_payment(request.payment_id)
            )
            if payment is None or payment.rental_id != request.rental_id:
                raise ValidationError(
                    f"Payment {request.payment_id} does not belong to rental {request.rental_id}",
                    payment_id=request.payment_id,
                    rental_id=request.rental_id,
                )
        self._validate_uploads(request.evidence)
        if (existing := await self._store.find_open_for_rental(request.rental_id)) is not None:
            raise DuplicateError(
                f"Rental {request.rental_id} already has an open dispute",
                rental_id=request.rental_id,
                dispute_id=existing.id,
            )

        now = self.clock()
        dispute = Dispute(
            rental_id=request.rental_id,
            payment_id=request.payment_id,
            initiated_by=request.initiated_by,
            owner_id=rental.owner_id,
            renter_id=rental.renter_id,
            dispute_type=request.dispute_type,
            category=request.category,
            title=request.title,
            description=request.description,
            claimed_amount=request.claimed_amount,
            currency=request.currency,
            response_due_at=now + timedelta(days=self._config.response_due_days),
            last_action_at=now,
            created_at=now,
            updated_at=now,
            status_history=[
                {
                    "from": None,
                    "to": DisputeStatus.OPENED.value,
                    "actor_id": request.initiated_by,
                    "reason": "Dispute opened",
                    "at": now.isoformat(),
                }
            ],
        )
        # Files go to storage before anything is persisted, so a storage
        # failure leaves no dispute behind and the request can be retried.
        evidence = await self._upload_evidence(dispute, request.initiated_by, request.evidence, now)
        async with self.locks.hold(f"rental:{request.rental_id}"):
            await self._store.add(dispute)
            for record in evidence:
                await self._store.add_evidence(record)

        await self._append_message(
            dispute.id, SYSTEM_ACTOR, MessageAuthorRole.SYSTEM, f"Dispute created: {dispute.title}", now
        )
        logger.info(
            "dispute_created",
            dispute_id=dispute.id,
            rental_id=dispute.rental_id,
            initiated_by=dispute.initiated_by,
            dispute_type=dispute.dispute_type.value,
            evidence_count=len(request.evidence),
        )
        return await self._load(dispute.id)

    async def assign_admin(self, dispute_id: str, admin_id: str, assigned_by: str) -> Dispute:
        """Assign (or reassign) the reviewing admin; an opened dispute moves under review."""
        if not await self._is_admin(assigned_by):
            raise AccessDenied("Only admins can assign disputes", user_id=assigned_by)
        if admin_id != assigned_by and not await self._is_admin(admin_id):
            raise ValidationError(f"User {admin_id} is not an admin", admin_id=admin_id)
        now = self.clock()

        def change(dispute: Dispute) -> None:
            self._ensure_no_processor_call(dispute.id)
            if dispute.status.is_terminal:
                raise InvalidStateError(
                    f"Dispute {dispute.id} is {dispute.status.value}",
                    dispute_id=dispute.id,
                    status=dispute.status.value,
                )
            dispute.assigned_admin_id = admin_id
            if dispute.status == DisputeStatus.OPENED:
                dispute.transition_to(
                    DisputeStatus.UNDER_REVIEW, assigned_by, now, reason=f"Assigned to {admin_id}"
                )
            dispute.last_action_at = now
            dispute.updated_at = now

        dispute = await self._mutate(dispute_id, change)
        await self._append_message(
            dispute_id, SYSTEM_ACTOR, MessageAuthorRole.SYSTEM, "An admin was assigned to this dispute", now
        )
        logger.info("dispute_assigned", dispute_id=dispute_id, admin_id=admin_id, status=dispute.status.value)
        return dispute

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def add_message(
        self, dispute_id: str, author_id: str, body: str, is_internal: bool = False
    ) -> DisputeMessage:
        if not body or not body.strip():
            raise ValidationError("Message body cannot be empty", dispute_id=dispute_id)
        dispute = await self._load(dispute_id)
        if author_id not in dispute.participants():
            raise AccessDenied(
                "Only the parties and the assigned admin can post messages",
                dispute_id=dispute_id,
                user_id=author_id,
            )
        is_admin = author_id == dispute.assigned_admin_id
        if is_internal and not is_admin:
            raise AccessDenied("Only the assigned admin can post internal notes", dispute_id=dispute_id)
        role = MessageAuthorRole.ADMIN if is_admin else MessageAuthorRole.PARTY
        message = await self._append_message(
            dispute_id, author_id, role, body.strip(), self.clock(), is_internal=is_internal
        )
        logger.info(
            "dispute_message_added",
            dispute_id=dispute_id,
            message_id=message.id,
            author_id=author_id,
            sequence=message.sequence,
            is_internal=is_internal,
        )
        return message

    async def get_messages(self, dispute_id: str, user_id: str) -> list[DisputeMessage]:
        """Messages visible to ``user_id``, oldest first. Parties never see internal notes."""
        dispute = await self._load(dispute_id)
        sees_internal = await self._can_see_internal(dispute, user_id)
        messages = await self._store.list_messages(dispute_id)
        return [m for m in messages if sees_internal or not m.is_internal]

    async def mark_messages_read(self, dispute_id: str, user_id: str) -> int:
        """Mark every visible message read by ``user_id`` and reset their unread counter."""
        dispute = await self._load(dispute_id)
        sees_internal = await self._can_see_internal(dispute, user_id)
        now = self.clock()
        async with self.locks.hold(dispute_id):
            messages = await self._store.list_messages(dispute_id)
            updated = []
            for message in messages:
                if message.is_internal and not sees_internal:
                    continue
                if user_id not in message.read_by and message.author_id != user_id:
                    message.read_by[user_id] = now
                    updated.append(message)
            if updated:
                await self._store.save_messages(updated)

            def reset(d: Dispute) -> bool:
                if d.unread_counts.get(user_id, 0) == 0:
                    return False
                d.unread_counts[user_id] = 0
                return True

            await self.apply_change(dispute_id, reset)
        return len(updated)

    # ------------------------------------------------------------------
    # Evidence
    # ------------------------------------------------------------------

    async def upload_evidence(
        self, dispute_id: str, uploaded_by: str, uploads: list[EvidenceUpload]
    ) -> list[DisputeEvidence]:
        if not uploads:
            raise ValidationError("No evidence files supplied", dispute_id=dispute_id)
        dispute = await self._load(dispute_id)
        if uploaded_by not in dispute.participants():
            raise AccessDenied(
                "Only the parties and the assigned admin can upload evidence",
                dispute_id=dispute_id,
                user_id=uploaded_by,
            )
        self._ensure_not_terminal(dispute)
        self._validate_uploads(uploads)
        now = self.clock()
        stored = await self._store_evidence(dispute, uploaded_by, uploads, now)

        def touch(d: Dispute) -> None:
            d.last_action_at = now
            d.updated_at = now

        await self._mutate(dispute_id, touch)
        return stored

    async def record_evidence_scan(self, storage_reference: str, is_safe: bool) -> DisputeEvidence:
        """Store the malware scan verdict reported for an uploaded file."""
        evidence = await self._store.get_evidence_by_reference(storage_reference)
        if evidence is None:
            raise NotFoundError(
                f"No evidence stored under {storage_reference}", storage_reference=storage_reference
            )
        evidence.is_scanned = True
        evidence.is_safe = is_safe
        evidence.scanned_at = self.clock()
        await self._store.save_evidence(evidence)
        log = logger.info if is_safe else logger.warning
        log(
            "evidence_scanned",
            dispute_id=evidence.dispute_id,
            evidence_id=evidence.id,
            is_safe=is_safe,
        )
        return evidence

    # ------------------------------------------------------------------
    # Resolution, escalation, closing
    # ------------------------------------------------------------------

    async def resolve_dispute(
        self, dispute_id: str, resolved_by: str, resolution: Resolution, notes: str | None = None
    ) -> Dispute:
        """Resolve with a decision; refund kinds pay out through the processor first.

        The refund carries the key ``dispute-{id}`` so a retried resolution
        after a failure never pays twice. While it is in flight the dispute
        cannot be closed, reassigned or escalated.
        """
        dispute = await self._load(dispute_id)
        self._check_resolvable(dispute, resolved_by)
        refund_amount = self._refund_amount(dispute, resolution)

        claim = (
            self.processor_call(dispute_id, lambda d: self._check_resolvable(d, resolved_by))
            if refund_amount is not None
            else nullcontext()
        )
        refund_txn_id = None
        async with claim:
            if refund_amount is not None:
                refund_txn_id = await call_external(
                    "payment_processor",
                    "refund",
                    self._processor.refund(
                        dispute.payment_id,
                        refund_amount,
                        reason=f"Dispute {dispute_id} resolved: {resolution.kind.value}",
                        idempotency_key=f"dispute-{dispute_id}",
                    ),
                    timeout=self._config.processor_timeout_seconds,
                )

            now = self.clock()
            async with self.locks.hold(dispute_id):
                await cancel_pending(
                    self._closures, dispute_id, resolved_by, now, reason="Dispute resolved"
                )

                def change(d: Dispute) -> None:
                    self._check_resolvable(d, resolved_by)
                    d.transition_to(
                        DisputeStatus.RESOLVED, resolved_by, now, reason=resolution.kind.value
                    )
                    d.resolution = resolution
                    d.resolution_notes = notes
                    d.resolved_by = resolved_by
                    d.resolved_at = now
                    d.refund_amount = refund_amount
                    d.refund_transaction_id = refund_txn_id
                    d.active_closure_id = None

                try:
                    resolved = await self.apply_change(dispute_id, change)
                except InvalidStateError:
                    if refund_txn_id is not None:
                        await self._keep_refund_record(dispute_id, refund_amount, refund_txn_id)
                    raise
        logger.info(
            "dispute_resolved",
            dispute_id=dispute_id,
            resolved_by=resolved_by,
            kind=resolution.kind.value,
            refund_amount=str(refund_amount) if refund_amount is not None else None,
            refund_transaction_id=refund_txn_id,
        )
        return resolved

    async def escalate_to_external_processor(self, dispute_id: str, admin_user_id: str) -> Dispute:
        if not await self._is_admin(admin_user_id):
            raise AccessDenied("Only admins can escalate disputes", user_id=admin_user_id)

        async with self.processor_call(dispute_id, self._check_escalatable) as dispute:
            external_id = await call_external(
                "payment_processor",
                "escalate_dispute",
                self._processor.escalate_dispute(
                    EscalationRequest(
                        dispute_id=dispute.id,
                        payment_id=dispute.payment_id,
                        amount=dispute.claimed_amount,
                        currency=dispute.currency,
                        reason=dispute.dispute_type.value,
                        description=dispute.description,
                    )
                ),
                timeout=self._config.processor_timeout_seconds,
            )

            now = self.clock()
            async with self.locks.hold(dispute_id):
                await cancel_pending(
                    self._closures, dispute_id, admin_user_id, now, reason="Dispute escalated"
                )

                def change(d: Dispute) -> None:
                    self._check_escalatable(d)
                    d.transition_to(
                        DisputeStatus.ESCALATED,
                        admin_user_id,
                        now,
                        reason="Escalated to payment processor",
                    )
                    d.external_dispute_id = external_id
                    d.escalated_at = now
                    d.active_closure_id = None

                escalated = await self.apply_change(dispute_id, change)
        logger.info(
            "dispute_escalated",
            dispute_id=dispute_id,
            admin_id=admin_user_id,
            external_dispute_id=external_id,
        )
        return escalated

    async def close_dispute(self, dispute_id: str, closed_by: str, reason: str) -> Dispute:
        dispute = await self._load(dispute_id)
        if not dispute.is_party(closed_by) and not await self._is_admin(closed_by):
            raise AccessDenied(
                "Only a party or an admin can close a dispute", dispute_id=dispute_id, user_id=closed_by
            )
        now = self.clock()
        async with self.locks.hold(dispute_id):
            self._ensure_no_processor_call(dispute_id)
            if (pending := await self._closures.get_active(dispute_id)) is not None:
                await expire_if_stale(self._closures, pending, now)
                if pending.status == MutualClosureStatus.PROPOSED:
                    raise InvalidStateError(
                        "Dispute has a pending mutual closure proposal",
                        dispute_id=dispute_id,
                        closure_id=pending.id,
                    )

            def change(d: Dispute) -> None:
                d.transition_to(DisputeStatus.CLOSED, closed_by, now, reason=reason)
                d.closed_by = closed_by
                d.close_reason = reason
                d.closed_at = now
                d.active_closure_id = None

            closed = await self.apply_change(dispute_id, change)
        logger.info("dispute_closed", dispute_id=dispute_id, closed_by=closed_by, reason=reason)
        return closed

    # ------------------------------------------------------------------
    # Payment processor events
    # ------------------------------------------------------------------

    async def handle_external_webhook(self, event: ExternalDisputeWebhook) -> WebhookResult:
        """Apply a processor event. Redeliveries and unknown events are no-ops."""
        if normalize_event_type(event.event_type) is None:
            logger.warning(
                "webhook_ignored",
                reason="unknown_event_type",
                event_type=event.event_type,
                external_dispute_id=event.dispute_id,
            )
            return WebhookResult(outcome=WebhookOutcome.IGNORED, detail="unknown_event_type")
        dispute = await self._store.get_by_external_id(event.dispute_id)
        if dispute is None:
            logger.warning(
                "webhook_ignored",
                reason="unknown_dispute",
                event_type=event.event_type,
                external_dispute_id=event.dispute_id,
            )
            return WebhookResult(outcome=WebhookOutcome.IGNORED, detail="unknown_dispute")

        now = self.clock()
        async with self.locks.hold(dispute.id):
            dispute = await self._load(dispute.id)
            reduction = apply_webhook(dispute, event, now)
            if reduction.changed:
                if reduction.dispute.status.is_terminal and not dispute.status.is_terminal:
                    await cancel_pending(
                        self._closures, dispute.id, PROCESSOR_ACTOR, now, reason="Processor decision"
                    )
                    reduction.dispute.active_closure_id = None
                dispute = await self._store.save(reduction.dispute)

        if reduction.duplicate:
            logger.info("webhook_duplicate", dispute_id=dispute.id, event_type=event.event_type)
        elif reduction.changed:
            logger.info(
                "webhook_applied",
                dispute_id=dispute.id,
                event_type=event.event_type,
                external_status=event.status,
                status=dispute.status.value,
                note=reduction.note,
            )

        # A refund owed from an earlier delivery that failed mid-way is retried here.
        if (
            dispute.refund_amount
            and dispute.payment_id
            and dispute.refund_transaction_id is None
            and dispute.resolved_by == PROCESSOR_ACTOR
        ):
            if dispute.id in self._in_flight:
                return WebhookResult(
                    outcome=WebhookOutcome.IN_PROGRESS, dispute_id=dispute.id, status=dispute.status
                )
            dispute = await self._issue_processor_refund(dispute)

        outcome = WebhookOutcome.DUPLICATE if reduction.duplicate else WebhookOutcome.APPLIED
        return WebhookResult(
            outcome=outcome,
            dispute_id=dispute.id,
            status=dispute.status,
            refund_transaction_id=dispute.refund_transaction_id,
            detail=reduction.note,
        )

    async def sync_external_dispute(self, external_dispute_id: str) -> WebhookResult:
        """Pull the processor's current view and apply it like a webhook."""
        state = await call_external(
            "payment_processor",
            "get_dispute",
            self._processor.get_dispute(external_dispute_id),
            timeout=self._config.processor_timeout_seconds,
        )
        return await self.handle_external_webhook(webhook_from_state(state))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_dispute(self, dispute_id: str, user_id: str | None = None) -> Dispute:
        dispute = await self._load(dispute_id)
        if user_id is not None and user_id not in dispute.participants():
            if not await self._is_admin(user_id):
                raise AccessDenied("Not a participant of this dispute", dispute_id=dispute_id)
        return dispute

    async def list_user_disputes(
        self, user_id: str, status: DisputeStatus | None = None
    ) -> list[Dispute]:
        disputes = await self._store.list_for_user(user_id)
        if status is not None:
            disputes = [d for d in disputes if d.status == status]
        return disputes

    async def get_timeline(self, dispute_id: str, user_id: str) -> list[DisputeTimelineEntry]:
        """Status changes, visible messages and evidence, merged in time order."""
        dispute = await self.get_dispute(dispute_id, user_id)
        entries = [
            DisputeTimelineEntry(
                at=datetime.fromisoformat(change["at"]),
                kind="status",
                actor_id=change["actor_id"],
                summary=(
                    f"{change['from']} -> {change['to']}" if change["from"] else f"{change['to']}"
                )
                + (f": {change['reason']}" if change["reason"] else ""),
            )
            for change in dispute.status_history
        ]
        for message in await self.get_messages(dispute_id, user_id):
            entries.append(
                DisputeTimelineEntry(
                    at=message.created_at,
                    kind="message",
                    actor_id=message.author_id,
                    summary=message.body[:200],
                    reference_id=message.id,
                )
            )
        for evidence in await self._store.list_evidence(dispute_id):
            entries.append(
                DisputeTimelineEntry(
                    at=evidence.uploaded_at,
                    kind="evidence",
                    actor_id=evidence.uploaded_by,
                    summary=f"Uploaded {evidence.file_name}",
                    reference_id=evidence.id,
                )
            )
        entries.sort(key=lambda e: e.at)
        return entries

    async def get_statistics(self) -> DisputeStatistics:
        disputes = await self._store.list_all()
        stats = DisputeStatistics(total=len(disputes))
        durations = []
        for dispute in disputes:
            stats.by_status[dispute.status.value] = stats.by_status.get(dispute.status.value, 0) + 1
            key = dispute.dispute_type.value
            stats.by_type[key] = stats.by_type.get(key, 0) + 1
            if dispute.escalated_at is not None:
                stats.escalated += 1
            if dispute.refund_transaction_id and dispute.refund_amount:
                stats.total_refunded += dispute.refund_amount
            if (ended := dispute.resolved_at or dispute.closed_at) is not None:
                durations.append((ended - dispute.created_at).total_seconds() / 3600)
        if durations:
            stats.average_resolution_hours = round(sum(durations) / len(durations), 2)
        return stats

    # ------------------------------------------------------------------
    # Lock-aware persistence, shared with the mutual closure workflow
    # ------------------------------------------------------------------

    async def apply_change(self, dispute_id: str, change: Change) -> Dispute:
        """Load, apply ``change`` and save with a version check. Caller holds the lock.

        ``change`` mutates the dispute in place and may raise; returning
        ``False`` means nothing changed and the save is skipped. A stale write
        is retried on a fresh copy up to ``max_conflict_retries`` times.
        """
        attempts = self._config.max_conflict_retries
        for attempt in range(1, attempts + 1):
            dispute = await self._load(dispute_id)
            if change(dispute) is False:
                return dispute
            try:
                return await self._store.save(dispute)
            except ConcurrencyConflict:
                logger.warning("dispute_write_conflict", dispute_id=dispute_id, attempt=attempt)
        raise ConcurrencyConflict(
            f"Dispute {dispute_id} kept changing; gave up after {attempts} attempts",
            dispute_id=dispute_id,
        )

    async def _mutate(self, dispute_id: str, change: Change) -> Dispute:
        async with self.locks.hold(dispute_id):
            return await self.apply_change(dispute_id, change)

    async def _load(self, dispute_id: str) -> Dispute:
        if (dispute := await self._store.get(dispute_id)) is None:
            raise NotFoundError(f"Dispute {dispute_id} not found", dispute_id=dispute_id)
        return dispute

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _append_message(
        self,
        dispute_id: str,
        author_id: str,
        role: MessageAuthorRole,
        body: str,
        now: datetime,
        is_internal: bool = False,
    ) -> DisputeMessage:
        async with self.locks.hold(dispute_id):
            dispute = await self._load(dispute_id)
            self._ensure_not_terminal(dispute, allow_system=role == MessageAuthorRole.SYSTEM)
            existing = await self._store.list_messages(dispute_id)
            message = DisputeMessage(
                dispute_id=dispute_id,
                sequence=len(existing) + 1,
                author_id=author_id,
                author_role=role,
                body=body,
                is_internal=is_internal,
                created_at=now,
            )
            await self._store.add_message(message)

            def bump(d: Dispute) -> None:
                readers = [p for p in d.participants() if p != author_id]
                if is_internal:
                    readers = [p for p in readers if p == d.assigned_admin_id]
                for reader in readers:
                    d.unread_counts[reader] = d.unread_counts.get(reader, 0) + 1
                d.last_action_at = now
                d.updated_at = now

            await self.apply_change(dispute_id, bump)
        return message

    async def _store_evidence(
        self, dispute: Dispute, uploaded_by: str, uploads: list[EvidenceUpload], now: datetime
    ) -> list[DisputeEvidence]:
        records = await self._upload_evidence(dispute, uploaded_by, uploads, now)
        for evidence in records:
            await self._store.add_evidence(evidence)
        return records

    async def _upload_evidence(
        self, dispute: Dispute, uploaded_by: str, uploads: list[EvidenceUpload], now: datetime
    ) -> list[DisputeEvidence]:
        """Send every file to storage and build the records. Nothing is persisted here."""
        if not uploads:
            return []
        if self._evidence_storage is None:
            raise ExternalServiceError("Evidence storage is not configured", service="evidence_storage")
        records = []
        for upload in uploads:
            reference = await call_external(
                "evidence_storage",
                "store",
                self._evidence_storage.store(
                    upload.file_name, upload.content_type, upload.content, folder=f"disputes/{dispute.id}"
                ),
                timeout=self._config.storage_timeout_seconds,
            )
            evidence = DisputeEvidence(
                dispute_id=dispute.id,
                uploaded_by=uploaded_by,
                file_name=upload.file_name,
                content_type=upload.content_type,
                file_size=len(upload.content),
                storage_reference=reference,
                description=upload.description,
                uploaded_at=now,
            )
            records.append(evidence)
        logger.info(
            "evidence_uploaded", dispute_id=dispute.id, uploaded_by=uploaded_by, count=len(records)
        )
        return records

    def _validate_uploads(self, uploads: list[EvidenceUpload]) -> None:
        policy = self._config.evidence
        if len(uploads) > policy.max_files_per_upload:
            raise ValidationError(
                f"At most {policy.max_files_per_upload} files per upload", count=len(uploads)
            )
        for upload in uploads:
            if upload.content_type not in policy.allowed_content_types:
                raise ValidationError(
                    f"File type {upload.content_type} is not allowed", file_name=upload.file_name
                )
            if len(upload.content) > policy.max_file_bytes:
                raise ValidationError(
                    f"{upload.file_name} exceeds {policy.max_file_bytes} bytes",
                    file_name=upload.file_name,
                    size=len(upload.content),
                )

    def _check_resolvable(self, dispute: Dispute, actor_id: str) -> None:
        allowed = {dispute.assigned_admin_id, ARBITRATION_ACTOR, PROCESSOR_ACTOR} - {None}
        if actor_id not in allowed:
            raise AccessDenied(
                "Only the assigned admin or the arbitrator can resolve a dispute",
                dispute_id=dispute.id,
                user_id=actor_id,
            )
        if dispute.status.is_terminal or dispute.status == DisputeStatus.OPENED:
            raise InvalidStateError(
                f"Dispute {dispute.id} cannot be resolved while {dispute.status.value}",
                dispute_id=dispute.id,
                status=dispute.status.value,
            )
        if dispute.status == DisputeStatus.ESCALATED and actor_id != PROCESSOR_ACTOR:
            raise InvalidStateError(
                "Escalated disputes are resolved by the payment processor decision",
                dispute_id=dispute.id,
                status=dispute.status.value,
            )

    @staticmethod
    def _refund_amount(dispute: Dispute, resolution: Resolution) -> Decimal | None:
        if not resolution.kind.moves_money:
            return None
        amount = resolution.refund_amount
        if amount is None and resolution.kind == ResolutionKind.REFUND:
            amount = dispute.claimed_amount
        if amount is None or amount <= 0:
            raise ValidationError(
                f"A {resolution.kind.value} resolution needs a positive refund_amount",
                dispute_id=dispute.id,
            )
        if dispute.payment_id is None:
            raise ValidationError(
                "Dispute has no payment to refund", dispute_id=dispute.id, kind=resolution.kind.value
            )
        return amount

    @staticmethod
    def _check_escalatable(dispute: Dispute) -> None:
        if dispute.status != DisputeStatus.UNDER_REVIEW:
            raise InvalidStateError(
                f"Only disputes under review can be escalated, this one is {dispute.status.value}",
                dispute_id=dispute.id,
                status=dispute.status.value,
            )

    @staticmethod
    def _ensure_not_terminal(dispute: Dispute, allow_system: bool = False) -> None:
        if dispute.status.is_terminal and not allow_system:
            raise InvalidStateError(
                f"Dispute {dispute.id} is {dispute.status.value}",
                dispute_id=dispute.id,
                status=dispute.status.value,
            )

    async def _issue_processor_refund(self, dispute: Dispute) -> Dispute:
        async with self.processor_call(dispute.id):
            txn_id = await call_external(
                "payment_processor",
                "refund",
                self._processor.refund(
                    dispute.payment_id,
                    dispute.refund_amount,
                    reason=f"Processor decision on dispute {dispute.id}",
                    idempotency_key=f"dispute-{dispute.id}",
                ),
                timeout=self._config.processor_timeout_seconds,
            )

            def record(d: Dispute) -> bool:
                if d.refund_transaction_id is not None:
                    return False
                d.refund_transaction_id = txn_id
                return True

            updated = await self._mutate(dispute.id, record)
        logger.info(
            "dispute_refund_issued",
            dispute_id=dispute.id,
            amount=str(dispute.refund_amount),
            refund_transaction_id=txn_id,
        )
        return updated

    async def _keep_refund_record(self, dispute_id: str, amount: Decimal, txn_id: str) -> None:
        """Attach a refund that went through to a dispute another path already finished.

        Caller holds the lock.
        """

        def record(d: Dispute) -> bool:
            if d.refund_transaction_id is not None:
                return False
            d.refund_amount = amount
            d.refund_transaction_id = txn_id
            return True

        dispute = await self.apply_change(dispute_id, record)
        logger.error(
            "dispute_refund_without_resolution",
            dispute_id=dispute_id,
            status=dispute.status.value,
            refund_transaction_id=txn_id,
            recorded_transaction_id=dispute.refund_transaction_id,
        )

    @asynccontextmanager
    async def processor_call(
        self, dispute_id: str, check: Change | None = None
    ) -> AsyncIterator[Dispute]:
        """Claim ``dispute_id`` for one payment processor call and its follow-up write.

        The claim is taken under the dispute lock once ``check`` accepts the
        current state, and released when the block exits. While it is held the
        dispute cannot be closed, reassigned, escalated or claimed again.
        """
        async with self.locks.hold(dispute_id):
            dispute = await self._load(dispute_id)
            if check is not None:
                check(dispute)
            self._ensure_no_processor_call(dispute_id)
            self._in_flight.add(dispute_id)
        try:
            yield dispute
        finally:
            self._in_flight.discard(dispute_id)

    def _ensure_no_processor_call(self, dispute_id: str) -> None:
        if dispute_id in self._in_flight:
            raise InvalidStateError(
                f"A payment processor call for dispute {dispute_id} is in progress",
                dispute_id=dispute_id,
            )

    async def _is_admin(self, user_id: str) -> bool:
        if user_id in (ARBITRATION_ACTOR, PROCESSOR_ACTOR, SYSTEM_ACTOR):
            return False
        return await self._directory_call("is_admin", self._directory.is_admin(user_id))

    async def _can_see_internal(self, dispute: Dispute, user_id: str) -> bool:
        if user_id == dispute.assigned_admin_id:
            return True
        if dispute.is_party(user_id):
            return False
        if await self._is_admin(user_id):
            return True
        raise AccessDenied("Not a participant of this dispute", dispute_id=dispute.id, user_id=user_id)

    async def _directory_call(self, operation: str, call):
        return await call_external(
            "directory", operation, call, timeout=self._config.directory_timeout_seconds
        )

