from __future__ import annotations

import logging
from enum import Enum

from app.procdesk.errors import ForbiddenError
from app.procdesk.modules.procedures.records import Principal, ProcedureRecord

logger = logging.getLogger(__name__)


class Action(str, Enum):
    CREATE = "create"
    LIST = "list"
    LIST_ALL = "list_all"
    READ = "read"
    DOWNLOAD = "download"
    TRANSITION = "transition"
    RESEND = "resend"


_RECORD_ACTIONS = frozenset({Action.READ, Action.DOWNLOAD, Action.RESEND})


def is_allowed(principal: Principal, action: Action, record: ProcedureRecord | None = None) -> bool:
    """
    Pure authorization decision. Record-scoped actions without a record are denied.
    """
    if action in _RECORD_ACTIONS and record is None:
        return False

    if action is Action.CREATE:
        return principal.role.is_applicant
    if action is Action.LIST:
        return True
    if action is Action.LIST_ALL:
        return principal.role.is_reviewer
    if action in (Action.READ, Action.DOWNLOAD):
        return principal.role.is_reviewer or record.created_by == principal.identity  # type: ignore[union-attr]
    if action is Action.TRANSITION:
        return principal.role.is_reviewer
    if action is Action.RESEND:
        # Only the original creator; the Rejected requirement is a lifecycle check.
        return record.created_by == principal.identity  # type: ignore[union-attr]
    raise ValueError(f"Unhandled action: {action!r}")


_DENIAL_MESSAGES = {
    Action.CREATE: "Only university applicants may create procedures.",
    Action.LIST_ALL: "Only officers may list every procedure.",
    Action.TRANSITION: "Only officers may change a procedure's status.",
    Action.RESEND: "Only the creator of a procedure may resend it.",
}


def authorize(principal: Principal, action: Action, record: ProcedureRecord | None = None) -> None:
    if is_allowed(principal, action, record):
        return
    logger.warning(
        "Denied %s for %s (%s) on %s",
        action.value,
        principal.identity,
        principal.role.value,
        record.id if record else "-",
    )
    raise ForbiddenError(
        _DENIAL_MESSAGES.get(action, "You do not have access to this procedure."),
        details={"action": action.value},
    )
