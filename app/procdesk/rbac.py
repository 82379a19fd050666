from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import g

from app.procdesk.errors import AuthenticationError
from app.procdesk.models import User
from app.procdesk.modules.procedures.records import Principal, Role


def principal_for(user: User | None) -> Principal | None:
    if not user or not user.session_active:
        return None
    return Principal(identity=user.email, role=Role.parse(user.role))


def current_principal() -> Principal:
    p: Principal | None = getattr(g, "current_principal", None)
    if p is None:
        raise AuthenticationError("Sign in to continue.")
    return p


def require_login(fn: Callable[..., Any]) -> Callable[..., Any]:
    """
    Unauthenticated → 401 JSON. Role/ownership checks are made by the
    procedure service's access policy, not here.
    """

    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        current_principal()
        return fn(*args, **kwargs)

    return wrapped
