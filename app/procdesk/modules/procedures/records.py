"""
Procedure record types.

A procedure is identified by `id`; each resend stores a new `version` of it.
Records are immutable dataclasses: the lifecycle engine and the workflow build
new instances with `dataclasses.replace` instead of mutating in place.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Mapping

from app.procdesk.constants import DEFAULT_PROCEDURE_TYPE
from app.procdesk.errors import InvalidStateError, ValidationError


class Status(str, Enum):
    PENDING = "Pending"
    IN_REVIEW = "InReview"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    ARCHIVED = "Archived"

    @property
    def order(self) -> int:
        return STATUS_SEQUENCE.index(self)

    @classmethod
    def parse(cls, value: "Status | str | None") -> "Status":
        if isinstance(value, Status):
            return value
        if not isinstance(value, str):
            raise InvalidStateError(f"Status must be a string, got {type(value).__name__}.")
        raw = value.strip()
        for s in cls:
            if s.value == raw:
                return s
        raise InvalidStateError(
            f"Unknown status {raw!r}. Must be one of: {', '.join(s.value for s in STATUS_SEQUENCE)}",
        )


# Fixed total order used for transition legality.
STATUS_SEQUENCE: tuple[Status, ...] = (
    Status.PENDING,
    Status.IN_REVIEW,
    Status.APPROVED,
    Status.REJECTED,
    Status.ARCHIVED,
)


class Role(str, Enum):
    STUDENT = "Student"
    REPRESENTATIVE = "Representative"
    DELEGATE = "Delegate"
    OFFICER = "Officer"

    @property
    def is_applicant(self) -> bool:
        return self in APPLICANT_ROLES

    @property
    def is_reviewer(self) -> bool:
        return self is Role.OFFICER

    @classmethod
    def parse(cls, value: "Role | str | None") -> "Role":
        if isinstance(value, Role):
            return value
        if not isinstance(value, str):
            raise ValidationError(f"Role must be a string, got {type(value).__name__}.")
        raw = value.strip()
        for r in cls:
            if r.value == raw:
                return r
        raise ValidationError(f"Unknown role {raw!r}. Must be one of: {', '.join(r.value for r in cls)}")


APPLICANT_ROLES = frozenset({Role.STUDENT, Role.REPRESENTATIVE, Role.DELEGATE})


class HistoryAction(str, Enum):
    STATE_CHANGE = "state_change"
    RESENT = "resent"


@dataclass(frozen=True)
class Principal:
    """An already-authenticated caller. Identity is the principal's email."""

    identity: str
    role: Role


@dataclass(frozen=True)
class UploadedFile:
    original_name: str
    data: bytes
    content_type: str = "application/octet-stream"


@dataclass(frozen=True)
class ApplicantFields:
    name: str
    national_id: str
    phone: str = ""
    degree: str = ""
    institution: str = ""
    campus: str = ""
    email: str = ""
    submitter_role: str = ""

    OPTIONAL = ("phone", "degree", "institution", "campus", "email")

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], *, submitter_role: Role | str) -> "ApplicantFields":
        """
        Build from a form/JSON payload, validating required attributes.
        Unknown keys are ignored.
        """
        name = str(payload.get("name") or "").strip()
        national_id = str(payload.get("national_id") or "").strip()
        missing = [k for k, v in (("name", name), ("national_id", national_id)) if not v]
        if missing:
            raise ValidationError("All required fields must be filled in.", details={"missing": missing})
        optional = {k: str(payload.get(k) or "").strip() for k in cls.OPTIONAL}
        role = submitter_role.value if isinstance(submitter_role, Role) else str(submitter_role)
        return cls(name=name, national_id=national_id, submitter_role=role, **optional)

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ApplicantFields":
        known = {k: str(data.get(k) or "") for k in ("name", "national_id", "submitter_role", *cls.OPTIONAL)}
        return cls(**known)


@dataclass(frozen=True)
class DocumentRef:
    display_name: str
    storage_name: str
    content_type: str = "application/octet-stream"

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DocumentRef":
        return cls(
            display_name=data["display_name"],
            storage_name=data["storage_name"],
            content_type=data.get("content_type") or "application/octet-stream",
        )


@dataclass(frozen=True)
class HistoryEntry:
    action: HistoryAction
    actor: str
    timestamp: datetime
    from_state: Status | None = None
    to_state: Status | None = None
    prior_version: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "actor": self.actor,
            "timestamp": self.timestamp.isoformat(),
            "from_state": self.from_state.value if self.from_state else None,
            "to_state": self.to_state.value if self.to_state else None,
            "prior_version": self.prior_version,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "HistoryEntry":
        return cls(
            action=HistoryAction(data["action"]),
            actor=data["actor"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            from_state=Status(data["from_state"]) if data.get("from_state") else None,
            to_state=Status(data["to_state"]) if data.get("to_state") else None,
            prior_version=data.get("prior_version"),
        )


@dataclass(frozen=True)
class ProcedureRecord:
    id: str
    version: int
    procedure_type: str
    created_at: datetime
    updated_at: datetime
    status: Status
    fields: ApplicantFields
    created_by: str
    documents: tuple[DocumentRef, ...] = ()
    history: tuple[HistoryEntry, ...] = ()
    updated_by: str | None = None

    def __post_init__(self) -> None:
        if self.version < 1:
            raise ValueError(f"version must be positive (got {self.version})")

    def document(self, storage_name: str) -> DocumentRef | None:
        for d in self.documents:
            if d.storage_name == storage_name:
                return d
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "version": self.version,
            "procedure_type": self.procedure_type,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "status": self.status.value,
            "fields": self.fields.to_dict(),
            "documents": [d.to_dict() for d in self.documents],
            "created_by": self.created_by,
            "updated_by": self.updated_by,
            "history": [h.to_dict() for h in self.history],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ProcedureRecord":
        return cls(
            id=data["id"],
            version=int(data["version"]),
            procedure_type=data.get("procedure_type") or DEFAULT_PROCEDURE_TYPE,
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            status=Status(data["status"]),
            fields=ApplicantFields.from_dict(data.get("fields") or {}),
            documents=tuple(DocumentRef.from_dict(d) for d in data.get("documents") or ()),
            created_by=data["created_by"],
            updated_by=data.get("updated_by"),
            history=tuple(HistoryEntry.from_dict(h) for h in data.get("history") or ()),
        )
