"""Closure status changes, each paired with its audit entry."""

from datetime import datetime
from typing import Any

import structlog

from .models import (
    SYSTEM_ACTOR,
    MutualClosureAuditLog,
    MutualClosureStatus,
    MutualDisputeClosure,
)
from .store import ClosureStore

logger = structlog.get_logger()


async def transition_closure(
    store: ClosureStore,
    closure: MutualDisputeClosure,
    to_status: MutualClosureStatus,
    actor_id: str,
    now: datetime,
    action: str,
    reason: str = "",
    metadata: dict[str, Any] | None = None,
) -> MutualDisputeClosure:
    from_status = closure.status
    closure.status = to_status
    if to_status in (MutualClosureStatus.ACCEPTED, MutualClosureStatus.REJECTED):
        closure.responded_at = now
    await store.save(closure)
    await record_audit(
        store,
        closure,
        actor_id,
        action,
        from_status,
        to_status,
        now,
        reason=reason,
        metadata=metadata,
    )
    logger.info(
        "mutual_closure_transitioned",
        closure_id=closure.id,
        dispute_id=closure.dispute_id,
        from_status=from_status.value,
        to_status=to_status.value,
        actor_id=actor_id,
    )
    return closure


async def record_audit(
    store: ClosureStore,
    closure: MutualDisputeClosure,
    actor_id: str,
    action: str,
    from_status: MutualClosureStatus | None,
    to_status: MutualClosureStatus,
    now: datetime,
    reason: str = "",
    metadata: dict[str, Any] | None = None,
) -> MutualClosureAuditLog:
    entry = MutualClosureAuditLog(
        closure_id=closure.id,
        actor_id=actor_id,
        action=action,
        from_status=from_status,
        to_status=to_status,
        reason=reason,
        metadata=metadata or {},
        created_at=now,
    )
    await store.append_audit(entry)
    return entry


async def expire_if_stale(
    store: ClosureStore, closure: MutualDisputeClosure, now: datetime
) -> MutualDisputeClosure:
    if closure.is_expired(now):
        await transition_closure(
            store,
            closure,
            MutualClosureStatus.EXPIRED,
            SYSTEM_ACTOR,
            now,
            action="expired",
            reason="No response before expiry",
        )
    return closure


async def cancel_pending(
    store: ClosureStore, dispute_id: str, actor_id: str, now: datetime, reason: str
) -> MutualDisputeClosure | None:
    """Cancel the dispute's proposed closure, if any. Stale proposals expire instead."""
    if (closure := await store.get_active(dispute_id)) is None:
        return None
    await expire_if_stale(store, closure, now)
    if closure.status != MutualClosureStatus.PROPOSED:
        return None
    return await transition_closure(
        store, closure, MutualClosureStatus.CANCELLED, actor_id, now, action="cancelled", reason=reason
    )
