"""
Procedure lifecycle.

    Pending -> InReview -> Approved
    Pending -> InReview -> Rejected
    any     -> Archived

A transition to `target` is legal iff target's position in STATUS_SEQUENCE is
>= the current position. Skipping forward is allowed; moving backward is not.
Re-confirming the current state is accepted and still recorded in history.
A Rejected record only returns to Pending through resend, as a new version.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime

from app.procdesk.errors import IllegalTransitionError
from app.procdesk.modules.procedures.records import HistoryAction, HistoryEntry, ProcedureRecord, Status
from app.procdesk.modules.procedures.store import RecordStore

logger = logging.getLogger(__name__)


def can_transition(current: Status, target: Status) -> bool:
    return target.order >= current.order


def apply_transition(record: ProcedureRecord, target: Status | str, actor: str, *, now: datetime | None = None) -> ProcedureRecord:
    target = Status.parse(target)
    if not can_transition(record.status, target):
        raise IllegalTransitionError(
            "Cannot move a procedure backward.",
            details={"from": record.status.value, "to": target.value},
        )
    now = now or datetime.utcnow()
    entry = HistoryEntry(
        action=HistoryAction.STATE_CHANGE,
        actor=actor,
        timestamp=now,
        from_state=record.status,
        to_state=target,
    )
    return replace(
        record,
        status=target,
        updated_at=now,
        updated_by=actor,
        history=record.history + (entry,),
    )


class LifecycleEngine:
    def __init__(self, store: RecordStore) -> None:
        self._store = store

    def transition(self, record_id: str, target: Status | str, actor: str) -> ProcedureRecord:
        target = Status.parse(target)
        updated = self._store.update(record_id, lambda cur: apply_transition(cur, target, actor))
        logger.info("Procedure %s v%d -> %s by %s", record_id, updated.version, target.value, actor)
        return updated
