"""Persistence contracts for disputes and mutual closures, with in-memory versions."""

from datetime import datetime
from typing import Protocol

from tooltrust.shared.errors import AlreadyActiveError, ConcurrencyConflict, DuplicateError

from .models import (
    Dispute,
    DisputeEvidence,
    DisputeMessage,
    MutualClosureAuditLog,
    MutualClosureStatus,
    MutualDisputeClosure,
)


class DisputeStore(Protocol):
    async def add(self, dispute: Dispute) -> None:
        """Insert a new dispute; DuplicateError if the rental already has an open one."""
        ...

    async def get(self, dispute_id: str) -> Dispute | None: ...

    async def get_by_external_id(self, external_dispute_id: str) -> Dispute | None: ...

    async def find_open_for_rental(self, rental_id: str) -> Dispute | None: ...

    async def list_for_user(self, user_id: str) -> list[Dispute]: ...

    async def list_all(self) -> list[Dispute]: ...

    async def save(self, dispute: Dispute) -> Dispute:
        """Compare-and-swap on ``version``; returns the stored copy with the bumped version."""
        ...

    async def add_message(self, message: DisputeMessage) -> None: ...

    async def list_messages(self, dispute_id: str) -> list[DisputeMessage]: ...

    async def save_messages(self, messages: list[DisputeMessage]) -> None: ...

    async def add_evidence(self, evidence: DisputeEvidence) -> None: ...

    async def list_evidence(self, dispute_id: str) -> list[DisputeEvidence]: ...

    async def get_evidence_by_reference(self, storage_reference: str) -> DisputeEvidence | None: ...

    async def save_evidence(self, evidence: DisputeEvidence) -> None: ...


class ClosureStore(Protocol):
    async def add(self, closure: MutualDisputeClosure) -> None:
        """Insert a proposal; AlreadyActiveError if the dispute already has a proposed one."""
        ...

    async def get(self, closure_id: str) -> MutualDisputeClosure | None: ...

    async def get_active(self, dispute_id: str) -> MutualDisputeClosure | None: ...

    async def list_for_dispute(self, dispute_id: str) -> list[MutualDisputeClosure]: ...

    async def list_by_proposer(self, user_id: str, since: datetime) -> list[MutualDisputeClosure]: ...

    async def list_proposed(self) -> list[MutualDisputeClosure]: ...

    async def list_all(self) -> list[MutualDisputeClosure]: ...

    async def save(self, closure: MutualDisputeClosure) -> None: ...

    async def append_audit(self, entry: MutualClosureAuditLog) -> None: ...

    async def list_audit(self, closure_id: str) -> list[MutualClosureAuditLog]: ...


class InMemoryDisputeStore:
    def __init__(self) -> None:
        self._disputes: dict[str, Dispute] = {}
        self._messages: dict[str, list[DisputeMessage]] = {}
        self._evidence: dict[str, list[DisputeEvidence]] = {}

    async def add(self, dispute: Dispute) -> None:
        if await self.find_open_for_rental(dispute.rental_id) is not None:
            raise DuplicateError(
                f"Rental {dispute.rental_id} already has an open dispute",
                rental_id=dispute.rental_id,
            )
        self._disputes[dispute.id] = dispute.model_copy(deep=True)
        self._messages.setdefault(dispute.id, [])
        self._evidence.setdefault(dispute.id, [])

    async def get(self, dispute_id: str) -> Dispute | None:
        dispute = self._disputes.get(dispute_id)
        return dispute.model_copy(deep=True) if dispute else None

    async def get_by_external_id(self, external_dispute_id: str) -> Dispute | None:
        for dispute in self._disputes.values():
            if dispute.external_dispute_id == external_dispute_id:
                return dispute.model_copy(deep=True)
        return None

    async def find_open_for_rental(self, rental_id: str) -> Dispute | None:
        for dispute in self._disputes.values():
            if dispute.rental_id == rental_id and not dispute.status.is_terminal:
                return dispute.model_copy(deep=True)
        return None

    async def list_for_user(self, user_id: str) -> list[Dispute]:
        disputes = [
            d
            for d in self._disputes.values()
            if user_id in (d.owner_id, d.renter_id, d.initiated_by, d.assigned_admin_id)
        ]
        disputes.sort(key=lambda d: d.created_at, reverse=True)
        return [d.model_copy(deep=True) for d in disputes]

    async def list_all(self) -> list[Dispute]:
        return [d.model_copy(deep=True) for d in self._disputes.values()]

    async def save(self, dispute: Dispute) -> Dispute:
        current = self._disputes.get(dispute.id)
        if current is None or current.version != dispute.version:
            raise ConcurrencyConflict(
                f"Dispute {dispute.id} was modified concurrently",
                dispute_id=dispute.id,
                expected_version=dispute.version,
                actual_version=current.version if current else None,
            )
        stored = dispute.model_copy(deep=True, update={"version": dispute.version + 1})
        self._disputes[dispute.id] = stored
        return stored.model_copy(deep=True)

    async def add_message(self, message: DisputeMessage) -> None:
        self._messages.setdefault(message.dispute_id, []).append(message.model_copy(deep=True))

    async def list_messages(self, dispute_id: str) -> list[DisputeMessage]:
        return [m.model_copy(deep=True) for m in self._messages.get(dispute_id, [])]

    async def save_messages(self, messages: list[DisputeMessage]) -> None:
        for message in messages:
            stored = self._messages.get(message.dispute_id, [])
            for idx, existing in enumerate(stored):
                if existing.id == message.id:
                    stored[idx] = message.model_copy(deep=True)

    async def add_evidence(self, evidence: DisputeEvidence) -> None:
        self._evidence.setdefault(evidence.dispute_id, []).append(evidence.model_copy(deep=True))

    async def list_evidence(self, dispute_id: str) -> list[DisputeEvidence]:
        return [e.model_copy(deep=True) for e in self._evidence.get(dispute_id, [])]

    async def get_evidence_by_reference(self, storage_reference: str) -> DisputeEvidence | None:
        for items in self._evidence.values():
            for evidence in items:
                if evidence.storage_reference == storage_reference:
                    return evidence.model_copy(deep=True)
        return None

    async def save_evidence(self, evidence: DisputeEvidence) -> None:
        stored = self._evidence.get(evidence.dispute_id, [])
        for idx, existing in enumerate(stored):
            if existing.id == evidence.id:
                stored[idx] = evidence.model_copy(deep=True)


class InMemoryClosureStore:
    def __init__(self) -> None:
        self._closures: dict[str, MutualDisputeClosure] = {}
        self._audit: dict[str, list[MutualClosureAuditLog]] = {}

    async def add(self, closure: MutualDisputeClosure) -> None:
        if (active := await self.get_active(closure.dispute_id)) is not None:
            raise AlreadyActiveError(
                f"Dispute {closure.dispute_id} already has an active closure proposal",
                dispute_id=closure.dispute_id,
                closure_id=active.id,
            )
        self._closures[closure.id] = closure.model_copy(deep=True)

    async def get(self, closure_id: str) -> MutualDisputeClosure | None:
        closure = self._closures.get(closure_id)
        return closure.model_copy(deep=True) if closure else None

    async def get_active(self, dispute_id: str) -> MutualDisputeClosure | None:
        for closure in self._closures.values():
            if closure.dispute_id == dispute_id and closure.status == MutualClosureStatus.PROPOSED:
                return closure.model_copy(deep=True)
        return None

    async def list_for_dispute(self, dispute_id: str) -> list[MutualDisputeClosure]:
        closures = [c for c in self._closures.values() if c.dispute_id == dispute_id]
        closures.sort(key=lambda c: c.created_at)
        return [c.model_copy(deep=True) for c in closures]

    async def list_by_proposer(self, user_id: str, since: datetime) -> list[MutualDisputeClosure]:
        return [
            c.model_copy(deep=True)
            for c in self._closures.values()
            if c.proposed_by == user_id and c.created_at >= since
        ]

    async def list_proposed(self) -> list[MutualDisputeClosure]:
        return [
            c.model_copy(deep=True)
            for c in self._closures.values()
            if c.status == MutualClosureStatus.PROPOSED
        ]

    async def list_all(self) -> list[MutualDisputeClosure]:
        return [c.model_copy(deep=True) for c in self._closures.values()]

    async def save(self, closure: MutualDisputeClosure) -> None:
        self._closures[closure.id] = closure.model_copy(deep=True)

    async def append_audit(self, entry: MutualClosureAuditLog) -> None:
        self._audit.setdefault(entry.closure_id, []).append(entry)

    async def list_audit(self, closure_id: str) -> list[MutualClosureAuditLog]:
        return list(self._audit.get(closure_id, []))
