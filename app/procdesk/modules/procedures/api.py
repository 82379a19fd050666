from __future__ import annotations

from flask import Blueprint, current_app, request, send_file

from app.procdesk.audit import record_event
from app.procdesk.db import db_session
from app.procdesk.modules.procedures.records import UploadedFile
from app.procdesk.modules.procedures.service import ProcedureService, to_download_fileobj
from app.procdesk.rbac import current_principal, require_login

bp = Blueprint("procedures", __name__)


def _service() -> ProcedureService:
    return current_app.extensions["procedure_service"]


def _form_payload() -> dict:
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def _uploaded_files() -> list[UploadedFile]:
    out = []
    for f in request.files.getlist("docs"):
        # Empty file inputs arrive as parts with no filename.
        if not f or not f.filename:
            continue
        out.append(
            UploadedFile(
                original_name=f.filename,
                data=f.read(),
                content_type=f.mimetype,
            )
        )
    return out


@bp.post("")
@require_login
def submit_procedure():
    principal = current_principal()
    payload = _form_payload()
    record = _service().submit(
        principal,
        payload,
        _uploaded_files(),
        procedure_type=payload.get("procedure_type"),
    )

    s = db_session()
    record_event(
        s,
        actor=principal,
        action="procedure.submit",
        entity_type="Procedure",
        entity_id=record.id,
        metadata={"version": record.version, "documents": len(record.documents)},
    )
    s.commit()
    return {"message": "Procedure submitted successfully.", "procedure": record.to_dict()}, 201


@bp.get("")
@require_login
def list_procedures():
    records = _service().list_procedures(current_principal())
    return {"procedures": [r.to_dict() for r in records]}


@bp.get("/<record_id>")
@require_login
def get_procedure(record_id: str):
    record = _service().get(current_principal(), record_id)
    return {"procedure": record.to_dict()}


@bp.get("/<record_id>/versions")
@require_login
def list_versions(record_id: str):
    versions = _service().versions(current_principal(), record_id)
    return {"versions": [r.to_dict() for r in versions]}


@bp.get("/<record_id>/documents/<storage_name>")
@require_login
def download_document(record_id: str, storage_name: str):
    principal = current_principal()
    doc, data = _service().download(principal, record_id, storage_name)

    s = db_session()
    record_event(
        s,
        actor=principal,
        action="procedure.download",
        entity_type="Procedure",
        entity_id=record_id,
        metadata={"storage_name": doc.storage_name},
    )
    s.commit()

    return send_file(
        to_download_fileobj(data),
        mimetype=doc.content_type,
        as_attachment=True,
        download_name=doc.display_name,
        max_age=0,
    )


@bp.post("/<record_id>/state")
@require_login
def change_state(record_id: str):
    principal = current_principal()
    target = _form_payload().get("status")
    record = _service().transition(principal, record_id, target)

    s = db_session()
    record_event(
        s,
        actor=principal,
        action="procedure.transition",
        entity_type="Procedure",
        entity_id=record.id,
        metadata={"from": record.history[-1].from_state.value, "to": record.status.value, "version": record.version},
    )
    s.commit()
    return {"message": "Status updated.", "procedure": record.to_dict()}


@bp.post("/<record_id>/resend")
@require_login
def resend_procedure(record_id: str):
    principal = current_principal()
    record = _service().resend(principal, record_id, _form_payload(), _uploaded_files())

    s = db_session()
    record_event(
        s,
        actor=principal,
        action="procedure.resend",
        entity_type="Procedure",
        entity_id=record.id,
        metadata={"version": record.version, "documents": len(record.documents)},
    )
    s.commit()
    return {
        "message": "Your procedure has been resent and is now Pending.",
        "procedure": record.to_dict(),
    }
