import json
import logging
from typing import Any

from flask import g, has_request_context
from sqlalchemy.orm import Session

from app.doclife.constants import AUDIT_LOGGER_NAME
from app.doclife.models import AuditEvent
from app.doclife.refs import EntityRef
from app.doclife.utils import utcnow

audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)


def record_event(
    s: Session,
    *,
    tenant_id: str,
    actor: EntityRef | str | None,
    action: str,
    document_id: int | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    related_ids: list[Any] | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    """
    Append-only audit event helper.

    The row joins the caller's transaction, so a rolled-back operation leaves no
    audit trail behind. The structured event is also logged on the audit logger
    with the payload under ``record.audit`` for log-based sinks.
    """
    rid = request_id
    if rid is None and has_request_context():
        rid = getattr(g, "request_id", None)
    ev = AuditEvent(
        created_at=utcnow(),
        request_id=rid,
        tenant_id=tenant_id,
        actor=str(actor) if actor else None,
        action=action,
        document_id=document_id,
        entity_type=entity_type,
        entity_id=entity_id,
        related_ids_json=json.dumps(related_ids) if related_ids else None,
        reason=reason,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
    )
    s.add(ev)
    payload = ev.to_event()
    audit_logger.info(
        "%s document=%s related=%s actor=%s",
        action,
        document_id,
        related_ids or [],
        ev.actor,
        extra={"audit": payload, "tenant_id": tenant_id, "request_id": rid},
    )
    return ev
