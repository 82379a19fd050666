from __future__ import annotations

import io
import logging
import re
import uuid
from collections.abc import Callable, Mapping, Sequence
from dataclasses import replace
from datetime import datetime
from typing import Any

from app.procdesk.constants import DEFAULT_PROCEDURE_TYPE, MAX_DOCUMENTS
from app.procdesk.errors import IllegalStateError, NotFoundError, ValidationError
from app.procdesk.modules.procedures.lifecycle import LifecycleEngine
from app.procdesk.modules.procedures.policy import Action, authorize
from app.procdesk.modules.procedures.records import (
    ApplicantFields,
    DocumentRef,
    HistoryAction,
    HistoryEntry,
    Principal,
    ProcedureRecord,
    Status,
    UploadedFile,
)
from app.procdesk.modules.procedures.store import RecordStore
from app.procdesk.modules.procedures.vault import DocumentVault

logger = logging.getLogger(__name__)

Notifier = Callable[[str, Status], None]


def log_notifier(owner_identity: str, new_state: Status) -> None:
    logger.info("Notify %s: status changed to %s", owner_identity, new_state.value)


_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_MIMETYPE = re.compile(r"^[a-z0-9][a-z0-9!#$&^_.+-]*/[a-z0-9][a-z0-9!#$&^_.+-]*$")


def display_filename(filename: str) -> str:
    """
    The name a document is listed and downloaded under. Keeps non-ASCII
    characters; drops directory components and control characters.
    """
    base = re.split(r"[\\/]", filename or "")[-1]
    fn = _CONTROL_CHARS.sub("", base).strip()
    if fn in ("", ".", ".."):
        return "document.bin"
    return fn


def normalize_content_type(value: str | None) -> str:
    mt = (value or "").split(";", 1)[0].strip().lower()
    return mt if _MIMETYPE.match(mt) else "application/octet-stream"


def to_download_fileobj(file_bytes: bytes) -> io.BytesIO:
    bio = io.BytesIO(file_bytes)
    bio.seek(0)
    return bio


class ProcedureService:
    """
    Entry points for the transport layer. Every call takes an already
    authenticated `Principal`; authorization happens here, before any read of
    record contents is returned or any write is made.
    """

    def __init__(
        self,
        store: RecordStore,
        vault: DocumentVault,
        *,
        notifier: Notifier | None = None,
        max_upload_bytes: int | None = None,
    ) -> None:
        self.store = store
        self.vault = vault
        self.lifecycle = LifecycleEngine(store)
        self._notifier = notifier or log_notifier
        self._max_upload_bytes = max_upload_bytes

    # -- helpers -------------------------------------------------------------

    def _validate_files(self, files: Sequence[UploadedFile]) -> None:
        if len(files) > MAX_DOCUMENTS:
            raise ValidationError(
                f"At most {MAX_DOCUMENTS} documents may be attached.",
                details={"count": len(files)},
            )
        if self._max_upload_bytes is not None:
            for f in files:
                if len(f.data) > self._max_upload_bytes:
                    raise ValidationError(
                        "Document exceeds the maximum upload size.",
                        details={"document": display_filename(f.original_name), "max_bytes": self._max_upload_bytes},
                    )

    def _encrypt_all(self, record_id: str, files: Sequence[UploadedFile]) -> tuple[DocumentRef, ...]:
        refs: list[DocumentRef] = []
        try:
            for f in files:
                handle = self.vault.store(f.data, owner_id=record_id)
                refs.append(
                    DocumentRef(
                        display_name=display_filename(f.original_name),
                        storage_name=handle,
                        content_type=normalize_content_type(f.content_type),
                    )
                )
        except Exception:
            self._discard(refs)
            raise
        return tuple(refs)

    def _discard(self, documents: Sequence[DocumentRef]) -> None:
        """Remove blobs written for a submission that was not stored."""
        for d in documents:
            try:
                self.vault.discard(d.storage_name)
            except Exception:
                logger.exception("Could not discard unreferenced document %s", d.storage_name)

    def _get_or_404(self, record_id: str) -> ProcedureRecord:
        record = self.store.find_by_id(record_id)
        if record is None:
            raise NotFoundError("Procedure not found.", details={"id": record_id})
        return record

    # -- operations ----------------------------------------------------------

    def submit(
        self,
        principal: Principal,
        fields: Mapping[str, Any],
        files: Sequence[UploadedFile] = (),
        *,
        procedure_type: str | None = None,
    ) -> ProcedureRecord:
        authorize(principal, Action.CREATE)
        if procedure_type is not None and not isinstance(procedure_type, str):
            raise ValidationError("Procedure type must be a string.", details={"field": "procedure_type"})
        applicant = ApplicantFields.from_payload(fields, submitter_role=principal.role)
        self._validate_files(files)

        record_id = str(uuid.uuid4())
        documents = self._encrypt_all(record_id, files)
        now = datetime.utcnow()
        record = ProcedureRecord(
            id=record_id,
            version=1,
            procedure_type=(procedure_type or "").strip() or DEFAULT_PROCEDURE_TYPE,
            created_at=now,
            updated_at=now,
            status=Status.PENDING,
            fields=applicant,
            documents=documents,
            created_by=principal.identity,
        )
        try:
            self.store.create(record)
        except Exception:
            self._discard(documents)
            raise
        logger.info("Procedure %s submitted by %s with %d document(s)", record_id, principal.identity, len(documents))
        return record

    def resend(
        self,
        principal: Principal,
        record_id: str,
        fields: Mapping[str, Any],
        files: Sequence[UploadedFile] = (),
    ) -> ProcedureRecord:
        current = self._get_or_404(record_id)
        authorize(principal, Action.RESEND, current)
        if current.status is not Status.REJECTED:
            raise IllegalStateError(
                "Only rejected procedures may be resent.",
                details={"status": current.status.value},
            )
        applicant = ApplicantFields.from_payload(fields, submitter_role=current.fields.submitter_role)
        self._validate_files(files)
        documents = self._encrypt_all(record_id, files)

        def _next_version(cur: ProcedureRecord) -> ProcedureRecord:
            # Re-checked under the store lock: a concurrent resend may have won.
            if cur.status is not Status.REJECTED:
                raise IllegalStateError("Only rejected procedures may be resent.", details={"status": cur.status.value})
            now = datetime.utcnow()
            entry = HistoryEntry(
                action=HistoryAction.RESENT,
                actor=principal.identity,
                timestamp=now,
                prior_version=cur.version,
            )
            return replace(
                cur,
                version=cur.version + 1,
                updated_at=now,
                updated_by=principal.identity,
                status=Status.PENDING,
                fields=applicant,
                documents=documents,
                history=cur.history + (entry,),
            )

        try:
            record = self.store.update(record_id, _next_version)
        except Exception:
            self._discard(documents)
            raise
        logger.info("Procedure %s resent by %s as v%d", record_id, principal.identity, record.version)
        return record

    def list_procedures(self, principal: Principal) -> list[ProcedureRecord]:
        authorize(principal, Action.LIST)
        if principal.role.is_reviewer:
            authorize(principal, Action.LIST_ALL)
            return self.store.list_all()
        return self.store.list_by_owner(principal.identity)

    def get(self, principal: Principal, record_id: str) -> ProcedureRecord:
        record = self._get_or_404(record_id)
        authorize(principal, Action.READ, record)
        return record

    def versions(self, principal: Principal, record_id: str) -> list[ProcedureRecord]:
        record = self._get_or_404(record_id)
        authorize(principal, Action.READ, record)
        return self.store.list_versions(record_id)

    def download(self, principal: Principal, record_id: str, storage_name: str) -> tuple[DocumentRef, bytes]:
        record = self._get_or_404(record_id)
        authorize(principal, Action.DOWNLOAD, record)
        doc = record.document(storage_name)
        if doc is None:
            raise NotFoundError("Document not found.", details={"id": record_id})
        return doc, self.vault.retrieve(doc.storage_name)

    def transition(self, principal: Principal, record_id: str, target: Status | str) -> ProcedureRecord:
        record = self._get_or_404(record_id)
        authorize(principal, Action.TRANSITION, record)
        updated = self.lifecycle.transition(record_id, target, principal.identity)
        self._notify(updated.created_by, updated.status)
        return updated

    def _notify(self, owner_identity: str, new_state: Status) -> None:
        try:
            self._notifier(owner_identity, new_state)
        except Exception:
            # Best-effort hook; the transition is already stored.
            logger.exception("Notification hook failed for %s", owner_identity)
