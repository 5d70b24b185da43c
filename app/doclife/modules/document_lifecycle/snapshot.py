"""
Point-in-time snapshots of an owner's documents for a consumer.

A snapshot attaches USAGE relations from the consumer (e.g. a submitted
application) to the documents that were active and valid at ``as_of``. Later
supersession only touches documents, never these relations, so the consumer
keeps pointing at the versions it was evaluated against.
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.doclife.audit import record_event
from app.doclife.db import atomic
from app.doclife.errors import (
    DuplicateActiveDocument,
    RelationConflict,
    TransactionAborted,
    ValidationError,
)
from app.doclife.modules.document_lifecycle.models import Document, DocumentRelation
from app.doclife.modules.document_lifecycle.relations import (
    link_ownership,
    link_usage,
    revoke_relation,
    usage_documents,
    usage_relations,
)
from app.doclife.modules.document_lifecycle.store import list_active_documents
from app.doclife.refs import EntityRef, validate_ref, validate_tenant
from app.doclife.utils import as_naive_utc, utcnow

logger = logging.getLogger(__name__)


class SnapshotContext(str, enum.Enum):
    SUBMISSION = "SUBMISSION"
    APPROVAL = "APPROVAL"
    MANUAL_ATTACH = "MANUAL_ATTACH"


def is_valid_at(doc: Document, instant: datetime) -> bool:
    if doc.valid_from is None:
        return False
    instant = as_naive_utc(instant)
    if instant < doc.valid_from:
        return False
    return doc.valid_to is None or instant <= doc.valid_to


def create_snapshot(
    s: Session,
    tenant_id: str,
    consumer: EntityRef,
    owner: EntityRef,
    *,
    as_of: datetime | None = None,
    context: SnapshotContext | str = SnapshotContext.SUBMISSION,
    created_by: EntityRef | str | None = None,
) -> int:
    """
    Freeze the owner's active documents into USAGE relations for ``consumer``.

    Types the consumer already uses are left alone, except under APPROVAL,
    where a USAGE pointing at an older version is revoked and re-linked to the
    current one. Returns the number of documents attached; under APPROVAL that
    includes documents the consumer was already linked to. An aware ``as_of``
    is converted to UTC.

    Any failed link aborts the whole snapshot (TransactionAborted). The abort
    rolls back the entire session transaction, including unrelated pending
    work the caller had not committed yet.
    """
    tenant = validate_tenant(tenant_id)
    consumer = validate_ref(consumer, role="consumer")
    owner = validate_ref(owner, role="owner")
    try:
        ctx = SnapshotContext(context)
    except ValueError as e:
        raise ValidationError(f"Unknown snapshot context {context!r}.") from e
    instant = as_naive_utc(as_of) if as_of is not None else utcnow()

    attached: list[int] = []
    try:
        with atomic(s):
            docs = [
                d
                for d in list_active_documents(s, tenant, owner, as_of=instant, lock=True)
                if is_valid_at(d, instant)
            ]
            in_use: dict[str, list[DocumentRelation]] = {}
            for rel in usage_relations(s, tenant, consumer):
                in_use.setdefault(rel.document.doc_type, []).append(rel)

            for d in docs:
                current = in_use.get(d.doc_type) or []
                if current:
                    if ctx is not SnapshotContext.APPROVAL:
                        continue
                    stale = [r for r in current if r.document_id != d.id]
                    for r in stale:
                        revoke_relation(s, tenant, r, actor=created_by, reason=f"Re-pointed on {ctx.value}")
                    if len(stale) < len(current):
                        # Already linked to the current version.
                        attached.append(d.id)
                        continue
                link_ownership(s, tenant, d, owner, created_by=created_by)
                link_usage(s, tenant, d, consumer, created_by=created_by, notes=f"Context: {ctx.value}")
                attached.append(d.id)

            record_event(
                s,
                tenant_id=tenant,
                actor=created_by,
                action="snapshot.create",
                entity_type=consumer.kind,
                entity_id=consumer.id,
                related_ids=attached,
                metadata={"context": ctx.value, "as_of": instant.isoformat(), "owner": str(owner)},
            )
    except (DuplicateActiveDocument, RelationConflict, SQLAlchemyError) as e:
        logger.warning("Snapshot for %s aborted: %s", consumer, e)
        raise TransactionAborted("snapshot", e) from e

    logger.info("Snapshot for %s attached %s document(s) (%s)", consumer, len(attached), ctx.value)
    return len(attached)


def snapshot_documents(s: Session, tenant_id: str, consumer: EntityRef) -> dict[str, Document]:
    """The documents a consumer is frozen against, keyed by document type."""
    return {d.doc_type: d for d in usage_documents(s, tenant_id, consumer)}
