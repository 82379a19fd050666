from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.procdesk.models import Base


class ProcedureVersion(Base):
    """
    One stored version of a procedure. Rows are never deleted; the current
    record for a procedure is its highest version.
    """

    __tablename__ = "procedure_versions"
    __table_args__ = (
        Index("ix_procedure_versions_created_by", "created_by"),
    )

    procedure_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, primary_key=True)

    # Denormalized from payload_json for querying/ops.
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    created_by: Mapped[str] = mapped_column(String(320), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
