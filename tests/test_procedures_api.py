import io
from urllib.parse import quote

import pytest

from app.procdesk import create_app
from app.procdesk.auth import _login_attempts
from app.procdesk.db import session_scope
from app.procdesk.models import AuditEvent, Base, User
from app.procdesk.modules.procedures.models import ProcedureVersion
from app.procdesk.modules.procedures.vault import generate_key_file


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("VAULT_KEY_PATH", str(tmp_path / "vault.key"))
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)
    _login_attempts.clear()

    generate_key_file(tmp_path / "vault.key")
    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        s.add(
            User(
                id="officer-1",
                name="Olga Officer",
                email="officer@example.com",
                national_id="0900000001",
                role="Officer",
                session_active=False,
            )
        )
    return app


def _applicant(app, email, national_id, role="Student"):
    c = app.test_client()
    r = c.post("/api/register", json={"name": email.split("@")[0], "email": email, "national_id": national_id, "role": role})
    assert r.status_code == 200
    return c


def _officer(app):
    c = app.test_client()
    r = c.post("/api/login", json={"email": "officer@example.com", "national_id": "0900000001"})
    assert r.status_code == 200
    r = c.post("/api/verify-mfa", json={"code": r.json["code"]})
    assert r.status_code == 200
    return c


def test_procedure_lifecycle_over_http(app):
    ana = _applicant(app, "ana@example.com", "123")
    officer = _officer(app)

    # Submit without attachments
    r = ana.post("/api/procedures", data={"name": "Ana", "national_id": "123"}, content_type="multipart/form-data")
    assert r.status_code == 201
    proc = r.json["procedure"]
    assert proc["version"] == 1
    assert proc["status"] == "Pending"
    assert proc["documents"] == []
    pid = proc["id"]

    # Reject
    r = officer.post(f"/api/procedures/{pid}/state", json={"status": "Rejected"})
    assert r.status_code == 200
    hist = r.json["procedure"]["history"]
    assert len(hist) == 1
    assert (hist[0]["from_state"], hist[0]["to_state"]) == ("Pending", "Rejected")

    # Resend with one new document
    r = ana.post(
        f"/api/procedures/{pid}/resend",
        data={"name": "Ana", "national_id": "123", "docs": [(io.BytesIO(b"%PDF-1.4 diploma"), "diploma.pdf")]},
        content_type="multipart/form-data",
    )
    assert r.status_code == 200
    proc = r.json["procedure"]
    assert proc["version"] == 2
    assert proc["status"] == "Pending"
    assert len(proc["documents"]) == 1
    assert len(proc["history"]) == 2
    assert proc["history"][1]["action"] == "resent"
    assert proc["history"][1]["prior_version"] == 1
    storage_name = proc["documents"][0]["storage_name"]

    # Same-state transition is a recorded no-op
    r = officer.post(f"/api/procedures/{pid}/state", json={"status": "Pending"})
    assert r.status_code == 200
    assert r.json["procedure"]["status"] == "Pending"
    assert len(r.json["procedure"]["history"]) == 3

    # Download as owner and as officer
    for c in (ana, officer):
        r = c.get(f"/api/procedures/{pid}/documents/{storage_name}")
        assert r.status_code == 200
        assert r.data == b"%PDF-1.4 diploma"
        assert "diploma.pdf" in r.headers["Content-Disposition"]

    # Approve, then moving backward is refused
    assert officer.post(f"/api/procedures/{pid}/state", json={"status": "Approved"}).status_code == 200
    r = officer.post(f"/api/procedures/{pid}/state", json={"status": "Pending"})
    assert r.status_code == 409
    assert r.json["error"] == "illegal_transition"

    # Both versions are stored
    r = ana.get(f"/api/procedures/{pid}/versions")
    assert [v["version"] for v in r.json["versions"]] == [1, 2]
    with session_scope(app) as s:
        assert s.query(ProcedureVersion).filter(ProcedureVersion.procedure_id == pid).count() == 2

    with session_scope(app) as s:
        actions = [e.action for e in s.query(AuditEvent).order_by(AuditEvent.id.asc()).all()]
    for expected in ("procedure.submit", "procedure.transition", "procedure.resend", "procedure.download"):
        assert expected in actions


def test_access_rules_over_http(app):
    ana = _applicant(app, "ana@example.com", "123")
    bob = _applicant(app, "bob@example.com", "456", role="Delegate")
    officer = _officer(app)

    r = ana.post(
        "/api/procedures",
        data={"name": "Ana", "national_id": "123", "docs": [(io.BytesIO(b"secret"), "id-card.png")]},
        content_type="multipart/form-data",
    )
    pid = r.json["procedure"]["id"]
    storage_name = r.json["procedure"]["documents"][0]["storage_name"]
    bob.post("/api/procedures", json={"name": "Bob", "national_id": "456"})

    # Listing is scoped
    assert [p["id"] for p in ana.get("/api/procedures").json["procedures"]] == [pid]
    assert len(bob.get("/api/procedures").json["procedures"]) == 1
    assert len(officer.get("/api/procedures").json["procedures"]) == 2

    # Non-owner applicant
    assert bob.get(f"/api/procedures/{pid}").status_code == 403
    assert bob.get(f"/api/procedures/{pid}/documents/{storage_name}").status_code == 403
    assert bob.post(f"/api/procedures/{pid}/state", json={"status": "Approved"}).status_code == 403
    assert bob.post(f"/api/procedures/{pid}/resend", json={"name": "B", "national_id": "4"}).status_code == 403

    # Owner cannot change state; officer cannot submit
    assert ana.post(f"/api/procedures/{pid}/state", json={"status": "Approved"}).status_code == 403
    assert officer.post("/api/procedures", json={"name": "Olga", "national_id": "1"}).status_code == 403

    # Resend of a non-rejected procedure
    r = ana.post(f"/api/procedures/{pid}/resend", json={"name": "Ana", "national_id": "123"})
    assert r.status_code == 409
    assert r.json["error"] == "illegal_state"


def test_validation_and_not_found_over_http(app):
    ana = _applicant(app, "ana@example.com", "123")
    officer = _officer(app)

    r = ana.post("/api/procedures", json={"name": "Ana"})
    assert r.status_code == 400
    assert r.json["error"] == "validation_error"

    files = [(io.BytesIO(b"x"), f"{i}.pdf") for i in range(6)]
    r = ana.post(
        "/api/procedures",
        data={"name": "Ana", "national_id": "123", "docs": files},
        content_type="multipart/form-data",
    )
    assert r.status_code == 400

    r = ana.post("/api/procedures", json={"name": "Ana", "national_id": "123"})
    pid = r.json["procedure"]["id"]

    r = officer.post(f"/api/procedures/{pid}/state", json={"status": "Done"})
    assert r.status_code == 400
    assert r.json["error"] == "invalid_state"

    assert officer.post("/api/procedures/missing/state", json={"status": "Approved"}).status_code == 404
    assert ana.get(f"/api/procedures/{pid}/documents/other.enc").status_code == 404
    assert ana.get("/api/procedures/missing").status_code == 404


def test_tampered_document_returns_structured_error(app, tmp_path):
    ana = _applicant(app, "ana@example.com", "123")
    r = ana.post(
        "/api/procedures",
        data={"name": "Ana", "national_id": "123", "docs": [(io.BytesIO(b"payload"), "a.pdf")]},
        content_type="multipart/form-data",
    )
    pid = r.json["procedure"]["id"]
    storage_name = r.json["procedure"]["documents"][0]["storage_name"]

    blob = tmp_path / "storage" / "uploads" / storage_name
    data = bytearray(blob.read_bytes())
    data[10] ^= 0x80
    blob.write_bytes(bytes(data))

    r = ana.get(f"/api/procedures/{pid}/documents/{storage_name}")
    assert r.status_code == 500
    assert r.json["error"] == "integrity_error"
    assert "payload" not in r.get_data(as_text=True)


def test_non_string_json_values_are_rejected(app):
    ana = _applicant(app, "ana@example.com", "123")
    officer = _officer(app)
    pid = ana.post("/api/procedures", json={"name": "Ana", "national_id": "123"}).json["procedure"]["id"]

    for status in (3, None, ["Approved"], {"status": "Approved"}):
        r = officer.post(f"/api/procedures/{pid}/state", json={"status": status})
        assert r.status_code == 400
        assert r.json["error"] == "invalid_state"
    assert ana.get(f"/api/procedures/{pid}").json["procedure"]["status"] == "Pending"

    r = ana.post("/api/procedures", json={"name": "Ana", "national_id": "123", "procedure_type": 7})
    assert r.status_code == 400
    assert r.json["error"] == "validation_error"
    assert len(ana.get("/api/procedures").json["procedures"]) == 1

    c = app.test_client()
    r = c.post("/api/register", json={"name": "Eve", "email": "eve@example.com", "national_id": 789, "role": "Student"})
    assert r.status_code == 400
    assert r.json["error"] == "validation_error"
    r = c.post("/api/register", json={"name": "Eve", "email": "eve@example.com", "national_id": "789", "role": 1})
    assert r.status_code == 400
    r = c.post("/api/login", json={"email": ["officer@example.com"], "national_id": "0900000001"})
    assert r.status_code == 400
    r = c.post("/api/login", json={"email": "officer@example.com", "national_id": "0900000001"})
    assert r.status_code == 200
    r = c.post("/api/verify-mfa", json={"code": {"value": r.json["code"]}})
    assert r.status_code == 400


def test_download_keeps_unicode_name_and_content_type(app):
    ana = _applicant(app, "ana@example.com", "123")
    r = ana.post(
        "/api/procedures",
        data={"name": "Ana", "national_id": "123", "docs": [(io.BytesIO(b"\x89PNG"), "证书.png", "image/png")]},
        content_type="multipart/form-data",
    )
    assert r.status_code == 201
    doc = r.json["procedure"]["documents"][0]
    assert doc["display_name"] == "证书.png"
    assert doc["content_type"] == "image/png"

    r = ana.get(f"/api/procedures/{r.json['procedure']['id']}/documents/{doc['storage_name']}")
    assert r.status_code == 200
    assert r.data == b"\x89PNG"
    assert r.mimetype == "image/png"
    assert "filename*=UTF-8''" + quote("证书.png") in r.headers["Content-Disposition"]
