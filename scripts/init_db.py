"""
Idempotent setup:
- creates the vault key file if it does not exist (never overwrites one)
- seeds the officer account from OFFICER_EMAIL / OFFICER_NAME / OFFICER_NATIONAL_ID

Usage:
  python scripts/init_db.py
"""

import sys
import uuid
from pathlib import Path
import os

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from contextlib import contextmanager

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.procdesk.models import User
from app.procdesk.modules.procedures.records import Role
from app.procdesk.modules.procedures.vault import generate_key_file


@contextmanager
def _session_scope(database_url: str):
    engine = create_engine(database_url, future=True)
    sm = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()


def ensure_vault_key(key_path: str | None = None) -> Path:
    p = Path((key_path or os.environ.get("VAULT_KEY_PATH") or os.path.join("instance", "vault.key")).strip())
    if p.exists():
        print(f"Vault key present: {p}")
        return p
    generate_key_file(p)
    print(f"Generated vault key: {p} (keep it out of version control and back it up)")
    return p


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed the officer account in an idempotent way.
    Does NOT modify an existing account.
    """
    officer_email = (os.environ.get("OFFICER_EMAIL") or "").strip().lower()
    officer_name = (os.environ.get("OFFICER_NAME") or "Officer").strip()
    officer_national_id = (os.environ.get("OFFICER_NATIONAL_ID") or "").strip()

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///procdesk.db").strip()

    if not officer_email or not officer_national_id:
        print("OFFICER_EMAIL/OFFICER_NATIONAL_ID not set; skipping officer seed.")
        return

    with _session_scope(db_url) as s:
        user = s.query(User).filter(User.email == officer_email).one_or_none()
        if user:
            print(f"Officer already exists: {officer_email}")
            return
        s.add(
            User(
                id=str(uuid.uuid4()),
                name=officer_name,
                email=officer_email,
                national_id=officer_national_id,
                role=Role.OFFICER.value,
                session_active=False,
            )
        )

    print("Seeded officer account.")
    print(f"Officer email: {officer_email}")


def main() -> None:
    ensure_vault_key()
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
