from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.orm import Session

from app.doclife.modules.document_lifecycle.models import (
    Document,
    DocumentRelation,
    DocumentStatus,
    DocumentType,
    RelationContext,
    coerce_type,
)
from app.doclife.refs import EntityRef, validate_ref, validate_tenant
from app.doclife.utils import as_naive_utc


@dataclass
class DocumentVersion:
    document: Document
    supersedes_id: int | None
    superseded_by_id: int | None
    used_by: list[EntityRef] = field(default_factory=list)


@dataclass(frozen=True)
class TimelineEvent:
    at: datetime
    event: str  # UPLOADED / APPROVED / REJECTED / SUPERSEDED / USED_BY
    document_id: int
    doc_type: str
    detail: str | None = None


def _owner_query(s: Session, tenant: str, owner: EntityRef):
    return s.query(Document).filter(
        Document.tenant_id == tenant,
        Document.owner_kind == owner.kind,
        Document.owner_id == owner.id,
    )


def _live_usage_by_document(s: Session, tenant: str, document_ids: list[int]) -> dict[int, list[DocumentRelation]]:
    if not document_ids:
        return {}
    rels = (
        s.query(DocumentRelation)
        .filter(
            DocumentRelation.tenant_id == tenant,
            DocumentRelation.document_id.in_(document_ids),
            DocumentRelation.relation_context == RelationContext.USAGE.value,
            DocumentRelation.is_revoked.is_(False),
        )
        .order_by(DocumentRelation.id.asc())
        .all()
    )
    out: dict[int, list[DocumentRelation]] = {}
    for r in rels:
        out.setdefault(r.document_id, []).append(r)
    return out


def document_history(
    s: Session,
    tenant_id: str,
    owner: EntityRef,
    doc_type: DocumentType | str,
) -> list[DocumentVersion]:
    """
    Every version of one document type for an owner, newest first, with the
    consumers that still reference each version.
    """
    tenant = validate_tenant(tenant_id)
    owner = validate_ref(owner, role="owner")
    docs = (
        _owner_query(s, tenant, owner)
        .filter(Document.doc_type == coerce_type(doc_type).value)
        .order_by(Document.created_at.desc(), Document.id.desc())
        .all()
    )
    predecessor = {d.superseded_by_id: d.id for d in docs if d.superseded_by_id is not None}
    usage = _live_usage_by_document(s, tenant, [d.id for d in docs])
    return [
        DocumentVersion(
            document=d,
            supersedes_id=predecessor.get(d.id),
            superseded_by_id=d.superseded_by_id,
            used_by=[r.related for r in usage.get(d.id, [])],
        )
        for d in docs
    ]


def documents_valid_at(
    s: Session,
    tenant_id: str,
    owner: EntityRef,
    instant: datetime,
    doc_type: DocumentType | str | None = None,
) -> list[Document]:
    """Documents whose validity interval contains ``instant``, whether or not still active."""
    tenant = validate_tenant(tenant_id)
    owner = validate_ref(owner, role="owner")
    instant = as_naive_utc(instant)
    q = _owner_query(s, tenant, owner).filter(
        Document.valid_from.is_not(None),
        Document.valid_from <= instant,
        (Document.valid_to.is_(None)) | (Document.valid_to >= instant),
    )
    if doc_type is not None:
        q = q.filter(Document.doc_type == coerce_type(doc_type).value)
    return q.order_by(Document.doc_type.asc(), Document.valid_from.desc(), Document.id.desc()).all()


def document_timeline(
    s: Session,
    tenant_id: str,
    owner: EntityRef,
    doc_type: DocumentType | str | None = None,
) -> list[TimelineEvent]:
    tenant = validate_tenant(tenant_id)
    owner = validate_ref(owner, role="owner")
    q = _owner_query(s, tenant, owner)
    if doc_type is not None:
        q = q.filter(Document.doc_type == coerce_type(doc_type).value)
    docs = q.all()

    events: list[TimelineEvent] = []
    for d in docs:
        events.append(TimelineEvent(d.created_at, "UPLOADED", d.id, d.doc_type, d.file_ref))
        if d.reviewed_at is not None and d.status != DocumentStatus.PENDING.value:
            if d.rejection_reason:
                events.append(TimelineEvent(d.reviewed_at, "REJECTED", d.id, d.doc_type, d.rejection_reason))
            else:
                events.append(TimelineEvent(d.reviewed_at, "APPROVED", d.id, d.doc_type, d.reviewed_by))
        if d.replaced_at is not None:
            events.append(
                TimelineEvent(
                    d.replaced_at,
                    "SUPERSEDED",
                    d.id,
                    d.doc_type,
                    f"by document {d.superseded_by_id} ({d.replacement_reason})",
                )
            )

    usage = _live_usage_by_document(s, tenant, [d.id for d in docs])
    by_id = {d.id: d for d in docs}
    for doc_id, rels in usage.items():
        for r in rels:
            events.append(TimelineEvent(r.created_at, "USED_BY", doc_id, by_id[doc_id].doc_type, str(r.related)))

    events.sort(key=lambda e: (e.at, e.document_id), reverse=True)
    return events
