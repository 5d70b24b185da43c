from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.doclife.utils import utcnow


class Base(DeclarativeBase):
    pass


class AuditEvent(Base):
    """
    Append-only audit trail event.
    Keep this table intentionally generic; the structured stream for external
    sinks is produced by to_event().
    """

    __tablename__ = "audit_events"
    __table_args__ = (
        Index("idx_audit_events_document", "document_id"),
        Index("idx_audit_events_tenant_action", "tenant_id", "action"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)

    actor: Mapped[str | None] = mapped_column(String(128), nullable=True)  # e.g. "staff:42"

    action: Mapped[str] = mapped_column(String(128), nullable=False)  # e.g. "document.supersede"
    document_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    entity_type: Mapped[str | None] = mapped_column(String(128), nullable=True)  # "Document" / "DocumentRelation"
    entity_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    related_ids_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)  # small JSON string

    @property
    def related_ids(self) -> list[Any]:
        return json.loads(self.related_ids_json) if self.related_ids_json else []

    @property
    def event_metadata(self) -> dict[str, Any]:
        return json.loads(self.metadata_json) if self.metadata_json else {}

    def to_event(self) -> dict[str, Any]:
        return {
            "event": self.action,
            "documentId": self.document_id,
            "relatedIds": self.related_ids,
            "actor": self.actor,
            "timestamp": self.created_at.isoformat() if self.created_at else None,
            "reason": self.reason,
        }


# Ensure module models are imported so Base.metadata includes their tables.
# (Kept at bottom to avoid circular imports.)
from app.doclife.modules.document_lifecycle.models import Document, DocumentRelation  # noqa: E402,F401
