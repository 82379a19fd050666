"""
Record store: the durable set of procedure versions.

Every write is a read-modify-write cycle over the whole collection, done while
holding the store's lock, so concurrent `create` / `replace_version` / `update`
calls are serialized. Reads work on a snapshot returned by the backend and do
not take the lock.

Each (id, version) pair is stored exactly once. A transition rewrites the
current version's row; a resend appends the next version. Rows are never
deleted.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from collections.abc import Callable, Iterable
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from app.procdesk.db import transaction
from app.procdesk.errors import ConflictError, NotFoundError
from app.procdesk.modules.procedures.models import ProcedureVersion
from app.procdesk.modules.procedures.records import ProcedureRecord

logger = logging.getLogger(__name__)


class RecordBackend:
    """Persistence for serialized record rows (`ProcedureRecord.to_dict()`)."""

    def load(self) -> list[dict]:
        raise NotImplementedError

    def save(self, rows: Iterable[dict]) -> None:
        """Insert or overwrite the given rows, matched by (id, version), as one unit."""
        raise NotImplementedError


class MemoryRecordBackend(RecordBackend):
    def __init__(self, rows: Iterable[dict] | None = None) -> None:
        self._rows: list[dict] = [copy.deepcopy(r) for r in rows or ()]

    def load(self) -> list[dict]:
        return copy.deepcopy(self._rows)

    def save(self, rows: Iterable[dict]) -> None:
        merged = {(r["id"], r["version"]): r for r in self._rows}
        for r in rows:
            merged[(r["id"], r["version"])] = copy.deepcopy(r)
        # swap the whole list so a concurrent load() sees old or new, never a mix
        self._rows = list(merged.values())


class SqlRecordBackend(RecordBackend):
    def __init__(self, sm: sessionmaker) -> None:
        self._sm = sm

    def load(self) -> list[dict]:
        with transaction(self._sm) as s:
            rows = s.execute(select(ProcedureVersion.payload_json)).scalars().all()
        return [json.loads(r) for r in rows]

    def save(self, rows: Iterable[dict]) -> None:
        with transaction(self._sm) as s:
            for r in rows:
                s.merge(
                    ProcedureVersion(
                        procedure_id=r["id"],
                        version=r["version"],
                        status=r["status"],
                        created_by=r["created_by"],
                        updated_at=datetime.fromisoformat(r["updated_at"]),
                        payload_json=json.dumps(r, sort_keys=True),
                    )
                )


def _latest_by_id(rows: Iterable[dict]) -> dict[str, dict]:
    latest: dict[str, dict] = {}
    for r in rows:
        cur = latest.get(r["id"])
        if cur is None or r["version"] > cur["version"]:
            latest[r["id"]] = r
    return latest


class RecordStore:
    def __init__(self, backend: RecordBackend) -> None:
        self._backend = backend
        self._lock = threading.RLock()

    # -- reads -------------------------------------------------------------

    def _current(self) -> list[ProcedureRecord]:
        records = [ProcedureRecord.from_dict(r) for r in _latest_by_id(self._backend.load()).values()]
        records.sort(key=lambda r: (r.created_at, r.id))
        return records

    def find_by_id(self, record_id: str) -> ProcedureRecord | None:
        row = _latest_by_id(self._backend.load()).get(record_id)
        return ProcedureRecord.from_dict(row) if row else None

    def list_all(self) -> list[ProcedureRecord]:
        return self._current()

    def list_by_owner(self, identity: str) -> list[ProcedureRecord]:
        return [r for r in self._current() if r.created_by == identity]

    def list_versions(self, record_id: str) -> list[ProcedureRecord]:
        rows = [r for r in self._backend.load() if r["id"] == record_id]
        rows.sort(key=lambda r: r["version"])
        return [ProcedureRecord.from_dict(r) for r in rows]

    # -- writes ------------------------------------------------------------

    def create(self, record: ProcedureRecord) -> ProcedureRecord:
        if record.version != 1:
            raise ConflictError("New procedures must start at version 1.", details={"id": record.id})
        with self._lock:
            rows = self._backend.load()
            if any(r["id"] == record.id for r in rows):
                raise ConflictError("A procedure with this identifier already exists.", details={"id": record.id})
            self._backend.save([record.to_dict()])
        logger.info("Procedure %s created (v1)", record.id)
        return record

    def replace_version(self, record_id: str, new_record: ProcedureRecord) -> ProcedureRecord:
        """
        Swap the current record for `record_id` with `new_record`.

        `new_record.version` must be the current version (in-place update) or the
        next one (new version); anything else is a conflict.
        """
        with self._lock:
            current = self.find_by_id(record_id)
            if current is None:
                raise NotFoundError("Procedure not found.", details={"id": record_id})
            self._check_successor(current, new_record)
            self._backend.save([new_record.to_dict()])
        return new_record

    def update(self, record_id: str, mutate: Callable[[ProcedureRecord], ProcedureRecord]) -> ProcedureRecord:
        """
        Read the current record, compute its replacement with `mutate`, and store it,
        all under one lock hold. Errors raised by `mutate` abort without writing.
        """
        with self._lock:
            current = self.find_by_id(record_id)
            if current is None:
                raise NotFoundError("Procedure not found.", details={"id": record_id})
            new_record = mutate(current)
            self._check_successor(current, new_record)
            self._backend.save([new_record.to_dict()])
        return new_record

    @staticmethod
    def _check_successor(current: ProcedureRecord, new_record: ProcedureRecord) -> None:
        if new_record.id != current.id:
            raise ConflictError("Record identifier mismatch.", details={"id": current.id, "got": new_record.id})
        if new_record.created_by != current.created_by:
            raise ConflictError("The creator of a procedure cannot change.", details={"id": current.id})
        if new_record.version not in (current.version, current.version + 1):
            raise ConflictError(
                "Stale or out-of-sequence version.",
                details={"id": current.id, "current": current.version, "got": new_record.version},
            )
