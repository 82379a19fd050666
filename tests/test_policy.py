from datetime import datetime

import pytest

from app.procdesk.errors import ForbiddenError, ValidationError
from app.procdesk.modules.procedures.policy import Action, authorize, is_allowed
from app.procdesk.modules.procedures.records import (
    STATUS_SEQUENCE,
    ApplicantFields,
    Principal,
    ProcedureRecord,
    Role,
    Status,
)

OWNER = Principal(identity="ana@example.com", role=Role.STUDENT)
OTHER = Principal(identity="bob@example.com", role=Role.DELEGATE)
OFFICER = Principal(identity="officer@example.com", role=Role.OFFICER)


def _record(status: Status = Status.PENDING) -> ProcedureRecord:
    now = datetime(2026, 1, 15)
    return ProcedureRecord(
        id="rec-1",
        version=1,
        procedure_type="General",
        created_at=now,
        updated_at=now,
        status=status,
        fields=ApplicantFields(name="Ana", national_id="123", submitter_role="Student"),
        created_by=OWNER.identity,
    )


@pytest.mark.parametrize("role", [Role.STUDENT, Role.REPRESENTATIVE, Role.DELEGATE])
def test_applicant_roles_may_create(role):
    authorize(Principal(identity="x@example.com", role=role), Action.CREATE)


def test_officer_may_not_create():
    with pytest.raises(ForbiddenError):
        authorize(OFFICER, Action.CREATE)


def test_listing_rules():
    assert is_allowed(OWNER, Action.LIST)
    assert is_allowed(OFFICER, Action.LIST)
    assert is_allowed(OFFICER, Action.LIST_ALL)
    assert not is_allowed(OWNER, Action.LIST_ALL)


@pytest.mark.parametrize("status", STATUS_SEQUENCE)
def test_non_creator_applicant_is_always_forbidden(status):
    record = _record(status)
    for action in (Action.READ, Action.DOWNLOAD, Action.RESEND, Action.TRANSITION):
        with pytest.raises(ForbiddenError):
            authorize(OTHER, action, record)


def test_creator_and_officer_may_download():
    record = _record()
    authorize(OWNER, Action.DOWNLOAD, record)
    authorize(OFFICER, Action.DOWNLOAD, record)


def test_only_officer_may_transition():
    record = _record()
    authorize(OFFICER, Action.TRANSITION, record)
    with pytest.raises(ForbiddenError):
        authorize(OWNER, Action.TRANSITION, record)


def test_only_creator_may_resend():
    record = _record(Status.REJECTED)
    authorize(OWNER, Action.RESEND, record)
    with pytest.raises(ForbiddenError):
        authorize(OFFICER, Action.RESEND, record)


def test_record_actions_without_record_are_denied():
    assert not is_allowed(OFFICER, Action.DOWNLOAD)
    assert not is_allowed(OWNER, Action.RESEND)


def test_denial_is_structured():
    with pytest.raises(ForbiddenError) as exc:
        authorize(OWNER, Action.TRANSITION, _record())
    body = exc.value.to_dict()
    assert body["error"] == "forbidden"
    assert body["details"] == {"action": "transition"}


@pytest.mark.parametrize("raw", [1, None, ["Officer"]])
def test_role_parse_rejects_non_strings(raw):
    with pytest.raises(ValidationError):
        Role.parse(raw)
