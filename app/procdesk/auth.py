from __future__ import annotations

import secrets
import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, g, request, session
from werkzeug.security import check_password_hash, generate_password_hash

from app.procdesk.audit import record_event
from app.procdesk.constants import ONE_TIME_CODE_DIGITS
from app.procdesk.db import db_session
from app.procdesk.errors import AuthenticationError, ConflictError, ForbiddenError, ProcedureError, ValidationError
from app.procdesk.models import User
from app.procdesk.modules.procedures.records import Role
from app.procdesk.rbac import current_principal, principal_for, require_login

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds


class RateLimitedError(ProcedureError):
    code = "rate_limited"
    status_code = 429


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def _payload() -> dict:
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def _text(data: dict, key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(f"Field {key!r} must be a string.", details={"field": key})
    return value.strip()


def _new_one_time_code() -> str:
    low = 10 ** (ONE_TIME_CODE_DIGITS - 1)
    return str(low + secrets.randbelow(9 * low))


def load_current_user() -> None:
    """
    Loads g.current_user / g.current_principal from the signed session cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    g.current_user = None
    g.current_principal = None
    if request.path.startswith(("/static/", "/health", "/healthz")):
        return

    user_id = session.get("user_id")
    if not user_id:
        return

    s = db_session()
    user = s.get(User, str(user_id))
    principal = principal_for(user)
    if principal is None:
        session.pop("user_id", None)
        return
    g.current_user = user
    g.current_principal = principal


@bp.post("/register")
def register():
    data = _payload()
    name = _text(data, "name")
    email = _text(data, "email").lower()
    national_id = _text(data, "national_id")
    role_raw = _text(data, "role")
    if not name or not email or not national_id or not role_raw:
        raise ValidationError("All fields are required.")
    role = Role.parse(role_raw)
    if role.is_reviewer:
        # Officers are provisioned by scripts/init_db.py.
        raise ForbiddenError("Officer accounts cannot be self-registered.")

    s = db_session()
    exists = s.query(User).filter((User.email == email) | (User.national_id == national_id)).first()
    if exists:
        raise ConflictError("User already exists.")

    user = User(
        id=str(uuid.uuid4()),
        name=name,
        email=email,
        national_id=national_id,
        role=role.value,
        session_active=True,
    )
    s.add(user)
    record_event(s, actor=principal_for(user), action="auth.register", entity_type="User", entity_id=user.id)
    s.commit()
    session["user_id"] = user.id
    return {"message": "User registered and signed in.", "user": user.to_dict()}


@bp.post("/login")
def login():
    data = _payload()
    email = _text(data, "email").lower()
    national_id = _text(data, "national_id")
    ip = request.remote_addr or "unknown"

    if not email or not national_id:
        raise ValidationError("Email and national id are required.")
    if _check_rate_limit(ip):
        raise RateLimitedError("Too many login attempts. Please wait 5 minutes.")
    _record_attempt(ip)

    s = db_session()
    user = s.query(User).filter(User.email == email, User.national_id == national_id).one_or_none()
    if not user:
        record_event(
            s,
            actor=None,
            action="auth.login_failed",
            entity_type="User",
            entity_id=email,
            reason="Invalid credentials",
        )
        s.commit()
        raise AuthenticationError("Invalid email or national id.")

    # The code is shown to the caller directly; there is no out-of-band delivery.
    code = _new_one_time_code()
    session["pending_user_id"] = user.id
    session["one_time_code_hash"] = generate_password_hash(code)
    current_app.logger.info("One-time code issued (user_id=%s request_id=%s)", user.id, g.request_id)
    return {"message": "One-time code generated.", "code": code, "user": user.to_dict()}


@bp.post("/verify-mfa")
def verify_mfa():
    code = _text(_payload(), "code")
    pending_id = session.get("pending_user_id")
    code_hash = session.get("one_time_code_hash")
    if not pending_id or not code_hash:
        raise AuthenticationError("No sign-in is pending.")
    if not code or not check_password_hash(code_hash, code):
        raise AuthenticationError("Invalid code.")

    s = db_session()
    user = s.get(User, pending_id)
    if not user:
        session.pop("pending_user_id", None)
        session.pop("one_time_code_hash", None)
        raise AuthenticationError("No sign-in is pending.")
    user.session_active = True
    session.pop("pending_user_id", None)
    session.pop("one_time_code_hash", None)
    session["user_id"] = user.id
    _login_attempts[request.remote_addr or "unknown"].clear()
    record_event(s, actor=principal_for(user), action="auth.login", entity_type="User", entity_id=user.id)
    s.commit()
    return {"message": "Code verified.", "user": user.to_dict()}


@bp.get("/session")
def session_status():
    user = getattr(g, "current_user", None)
    if user is None:
        return {"authenticated": False}
    return {"authenticated": True, "user": user.to_dict()}


@bp.post("/logout")
@require_login
def logout():
    s = db_session()
    principal = current_principal()
    user = g.current_user
    user.session_active = False
    record_event(s, actor=principal, action="auth.logout", entity_type="User", entity_id=user.id)
    s.commit()
    session.pop("user_id", None)
    return {"message": "Signed out."}
