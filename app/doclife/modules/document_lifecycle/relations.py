"""
Links between documents and the entities that own, use or reference them.

Links are upserts keyed on (document, related entity, context) among live rows.
Revocation is a flag; every read below filters on it explicitly.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.doclife.audit import record_event
from app.doclife.errors import RelationConflict, ValidationError
from app.doclife.modules.document_lifecycle.models import (
    Document,
    DocumentRelation,
    DocumentType,
    RelationContext,
    coerce_type,
)
from app.doclife.refs import EntityRef, validate_ref, validate_tenant
from app.doclife.utils import clean_text, utcnow

logger = logging.getLogger(__name__)

_UPSERT_INSERTS = {
    "sqlite": sqlite_insert,
    "postgresql": pg_insert,
}


def _coerce_context(context: RelationContext | str) -> RelationContext:
    try:
        return RelationContext(context)
    except ValueError as e:
        raise ValidationError(f"Unknown relation context {context!r}.") from e


def _live_relation(s: Session, document_id: int, related: EntityRef, context: RelationContext) -> DocumentRelation | None:
    return (
        s.query(DocumentRelation)
        .filter(
            DocumentRelation.document_id == document_id,
            DocumentRelation.related_kind == related.kind,
            DocumentRelation.related_id == related.id,
            DocumentRelation.relation_context == context.value,
            DocumentRelation.is_revoked.is_(False),
        )
        .one_or_none()
    )


def link(
    s: Session,
    tenant_id: str,
    doc: Document,
    related: EntityRef,
    context: RelationContext | str,
    *,
    created_by: EntityRef | str | None = None,
    notes: str | None = None,
) -> DocumentRelation:
    """
    Idempotent upsert of a live relation.

    Returns the live row whether it was created now or already existed. A
    uniqueness failure that the upsert could not absorb, or a row that is gone
    by the time it is read back, rolls the session back and raises
    RelationConflict; callers may retry.
    """
    tenant = validate_tenant(tenant_id)
    related = validate_ref(related, role="related")
    ctx = _coerce_context(context)
    doc.require_tenant(tenant)
    if doc.id is None:
        s.flush()
    if doc.id is None:
        raise ValidationError("Document must be persisted before it can be linked.")

    values = {
        "tenant_id": tenant,
        "document_id": doc.id,
        "related_kind": related.kind,
        "related_id": related.id,
        "relation_context": ctx.value,
        "notes": clean_text(notes),
        "created_by": str(created_by) if created_by else None,
        "created_at": utcnow(),
        "is_revoked": False,
    }
    insert_fn = _UPSERT_INSERTS.get(s.get_bind().dialect.name)
    try:
        if insert_fn is not None:
            stmt = insert_fn(DocumentRelation.__table__).values(**values).on_conflict_do_nothing()
            created = s.execute(stmt).rowcount == 1
            rel = _live_relation(s, doc.id, related, ctx)
        else:
            rel = _live_relation(s, doc.id, related, ctx)
            created = rel is None
            if created:
                rel = DocumentRelation(**values)
                s.add(rel)
                s.flush()
    except IntegrityError as e:
        s.rollback()
        raise RelationConflict(f"Could not link document {doc.id} to {related} ({ctx.value}).") from e

    if rel is None:
        s.rollback()
        raise RelationConflict(f"Relation of document {doc.id} to {related} ({ctx.value}) vanished during upsert.")

    if created:
        record_event(
            s,
            tenant_id=tenant,
            actor=created_by,
            action="relation.link",
            document_id=doc.id,
            entity_type="DocumentRelation",
            entity_id=str(rel.id),
            related_ids=[str(related)],
            metadata={"context": ctx.value},
        )
        s.flush()
    else:
        logger.debug("Relation already live: document=%s related=%s context=%s", doc.id, related, ctx.value)
    return rel


def link_ownership(
    s: Session,
    tenant_id: str,
    doc: Document,
    owner: EntityRef,
    *,
    created_by: EntityRef | str | None = None,
) -> DocumentRelation:
    owner = validate_ref(owner, role="owner")
    if owner != doc.owner:
        raise ValidationError(f"Document {doc.id} is owned by {doc.owner}, not {owner}.")
    return link(s, tenant_id, doc, owner, RelationContext.OWNERSHIP, created_by=created_by)


def link_usage(
    s: Session,
    tenant_id: str,
    doc: Document,
    consumer: EntityRef,
    *,
    created_by: EntityRef | str | None = None,
    notes: str | None = None,
) -> DocumentRelation:
    return link(s, tenant_id, doc, consumer, RelationContext.USAGE, created_by=created_by, notes=notes)


def link_reference(
    s: Session,
    tenant_id: str,
    doc: Document,
    related: EntityRef,
    *,
    created_by: EntityRef | str | None = None,
    notes: str | None = None,
) -> DocumentRelation:
    return link(s, tenant_id, doc, related, RelationContext.REFERENCE, created_by=created_by, notes=notes)


def revoke_relation(
    s: Session,
    tenant_id: str,
    rel: DocumentRelation,
    *,
    actor: EntityRef | str | None = None,
    reason: str | None = None,
) -> DocumentRelation:
    tenant = validate_tenant(tenant_id)
    if rel.tenant_id != tenant:
        raise ValidationError(f"Relation {rel.id} does not belong to tenant {tenant!r}.")
    if rel.is_revoked:
        return rel
    rel.is_revoked = True
    rel.revoked_at = utcnow()
    rel.revoked_by = str(actor) if actor else None
    record_event(
        s,
        tenant_id=tenant,
        actor=actor,
        action="relation.revoke",
        document_id=rel.document_id,
        entity_type="DocumentRelation",
        entity_id=str(rel.id),
        related_ids=[str(rel.related)],
        reason=clean_text(reason),
        metadata={"context": rel.relation_context},
    )
    s.flush()
    return rel


def relations_for_document(
    s: Session,
    tenant_id: str,
    doc: Document,
    *,
    context: RelationContext | str | None = None,
    include_revoked: bool = False,
) -> list[DocumentRelation]:
    tenant = validate_tenant(tenant_id)
    doc.require_tenant(tenant)
    q = s.query(DocumentRelation).filter(
        DocumentRelation.tenant_id == tenant,
        DocumentRelation.document_id == doc.id,
    )
    if context is not None:
        q = q.filter(DocumentRelation.relation_context == _coerce_context(context).value)
    if not include_revoked:
        q = q.filter(DocumentRelation.is_revoked.is_(False))
    return q.order_by(DocumentRelation.id.asc()).all()


def usage_relations(s: Session, tenant_id: str, consumer: EntityRef) -> list[DocumentRelation]:
    """Live USAGE relations held by a consumer, oldest first."""
    tenant = validate_tenant(tenant_id)
    consumer = validate_ref(consumer, role="consumer")
    return (
        s.query(DocumentRelation)
        .filter(
            DocumentRelation.tenant_id == tenant,
            DocumentRelation.related_kind == consumer.kind,
            DocumentRelation.related_id == consumer.id,
            DocumentRelation.relation_context == RelationContext.USAGE.value,
            DocumentRelation.is_revoked.is_(False),
        )
        .order_by(DocumentRelation.id.asc())
        .all()
    )


def usage_documents(s: Session, tenant_id: str, consumer: EntityRef) -> list[Document]:
    """Documents a consumer references through live USAGE relations."""
    tenant = validate_tenant(tenant_id)
    consumer = validate_ref(consumer, role="consumer")
    stmt = (
        select(Document)
        .join(DocumentRelation, DocumentRelation.document_id == Document.id)
        .where(
            DocumentRelation.tenant_id == tenant,
            DocumentRelation.related_kind == consumer.kind,
            DocumentRelation.related_id == consumer.id,
            DocumentRelation.relation_context == RelationContext.USAGE.value,
            DocumentRelation.is_revoked.is_(False),
        )
        .order_by(Document.doc_type.asc(), Document.id.asc())
    )
    return list(s.scalars(stmt).unique())


def used_document_types(s: Session, tenant_id: str, consumer: EntityRef) -> set[str]:
    return {d.doc_type for d in usage_documents(s, tenant_id, consumer)}


def missing_types(
    s: Session,
    tenant_id: str,
    consumer: EntityRef,
    required_types: Iterable[DocumentType | str],
) -> list[DocumentType]:
    """Required types with no live USAGE relation, in request order without duplicates."""
    required: list[DocumentType] = []
    for t in required_types:
        dt = coerce_type(t)
        if dt not in required:
            required.append(dt)
    if not required:
        return []
    used = used_document_types(s, tenant_id, consumer)
    return [dt for dt in required if dt.value not in used]


def has_all_required(
    s: Session,
    tenant_id: str,
    consumer: EntityRef,
    required_types: Iterable[DocumentType | str],
) -> bool:
    return not missing_types(s, tenant_id, consumer, required_types)
