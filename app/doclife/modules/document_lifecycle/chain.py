"""
Supersession and lineage traversal.

Lineage is a singly linked list over ``documents.superseded_by_id``. Each
traversal is a single recursive CTE that carries a depth counter and stops one
hop past the limit; the rows are then checked in depth order for revisits
(cycles), branching and overflow. Corrupted lineage is reported, never repaired.
"""

from __future__ import annotations

import logging

from sqlalchemy import Integer, literal, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, aliased

from app.doclife.audit import record_event
from app.doclife.constants import MAX_CHAIN_DEPTH
from app.doclife.db import atomic
from app.doclife.errors import (
    ChainCycleDetected,
    ChainDepthExceeded,
    ChainTraversalError,
    DuplicateActiveDocument,
    RelationConflict,
    TransactionAborted,
    ValidationError,
)
from app.doclife.modules.document_lifecycle.models import (
    Document,
    DocumentStatus,
    DocumentType,
    ReplacementReason,
)
from app.doclife.modules.document_lifecycle.relations import link_ownership
from app.doclife.modules.document_lifecycle.store import (
    build_document,
    claim_slot,
    clean_reason,
    create_document,
    get_active_document,
    release_slot,
)
from app.doclife.refs import EntityRef, validate_tenant
from app.doclife.utils import utcnow

logger = logging.getLogger(__name__)


def _normalize_reason(reason: ReplacementReason | str | None) -> str:
    if isinstance(reason, ReplacementReason):
        return reason.value
    r = clean_reason(reason, required=False) or ReplacementReason.UPDATED.value
    if r.upper() in ReplacementReason.__members__:
        return r.upper()
    return r


def supersede(
    s: Session,
    tenant_id: str,
    old: Document,
    new: Document,
    reason: ReplacementReason | str = ReplacementReason.UPDATED,
    *,
    actor: EntityRef | str | None = None,
) -> Document:
    """
    Replace the active ``old`` document with ``new`` in one transaction.

    ``old`` is deactivated, marked SUPERSEDED and pointed at ``new``; ``new`` is
    activated (inserted and linked to its owner when transient). Preconditions
    are checked before anything is written and raise ValidationError/NotFound.
    A failure after that raises TransactionAborted with the failing step as
    ``cause``. The rollback covers the entire session transaction, so unrelated
    pending work the caller had not committed is discarded as well.
    """
    tenant = validate_tenant(tenant_id)
    old.require_tenant(tenant)
    new.require_tenant(tenant)
    r = _normalize_reason(reason)

    if old.id is None:
        raise ValidationError("The superseded document must already be stored.")
    if new is old or (new.id is not None and new.id == old.id):
        raise ValidationError(f"Document {old.id} cannot supersede itself.")
    if (new.owner, new.doc_type) != (old.owner, old.doc_type):
        raise ValidationError(
            f"Successor must share owner and type with document {old.id} ({old.owner}, {old.doc_type})."
        )
    if old.status == DocumentStatus.SUPERSEDED.value or not old.is_active:
        raise ValidationError(f"Document {old.id} is not the active document and cannot be superseded.")
    if new.status == DocumentStatus.SUPERSEDED.value:
        raise ValidationError(f"Document {new.id} is already superseded.")
    if new.id is not None:
        predecessor = s.query(Document.id).filter(Document.superseded_by_id == new.id).first()
        if predecessor is not None:
            raise ValidationError(f"Document {new.id} already succeeds document {predecessor[0]}.")

    is_new = new.id is None
    now = utcnow()
    try:
        with atomic(s):
            release_slot(s, old, now)
            claim_slot(s, new, now)
            old.superseded_by_id = new.id
            old.status = DocumentStatus.SUPERSEDED.value
            old.replaced_at = now
            old.replacement_reason = r
            s.flush()
            if is_new:
                link_ownership(s, tenant, new, new.owner, created_by=actor)
            record_event(
                s,
                tenant_id=tenant,
                actor=actor,
                action="document.supersede",
                document_id=old.id,
                entity_type="Document",
                entity_id=str(old.id),
                related_ids=[new.id],
                reason=r,
            )
            record_event(
                s,
                tenant_id=tenant,
                actor=actor,
                action="document.activate",
                document_id=new.id,
                entity_type="Document",
                entity_id=str(new.id),
                related_ids=[old.id],
            )
    except (DuplicateActiveDocument, RelationConflict, SQLAlchemyError) as e:
        logger.warning("supersede of document %s aborted: %s", old.id, e)
        raise TransactionAborted("supersede", e) from e

    logger.info("Document %s superseded by %s (%s)", old.id, new.id, r)
    return new


def _walk(s: Session, tenant_id: str, doc: Document, *, forward: bool, max_depth: int) -> list[Document]:
    """
    Documents reachable from ``doc`` in one direction, nearest first (``doc`` included).
    """
    tenant = validate_tenant(tenant_id)
    doc.require_tenant(tenant)
    if doc.id is None:
        raise ValidationError("Lineage is only defined for stored documents.")
    if max_depth < 0:
        raise ValidationError("max_depth must be >= 0.")

    seed = select(
        Document.id.label("id"),
        Document.superseded_by_id.label("next_id"),
        literal(0, Integer).label("depth"),
    ).where(Document.id == doc.id, Document.tenant_id == tenant)
    lineage = seed.cte("lineage", recursive=True)

    step = aliased(Document, name="step")
    hop = (step.id == lineage.c.next_id) if forward else (step.superseded_by_id == lineage.c.id)
    lineage = lineage.union_all(
        select(step.id, step.superseded_by_id, lineage.c.depth + 1).where(
            hop,
            step.tenant_id == tenant,
            # One hop past the limit so overflow is observable.
            lineage.c.depth <= max_depth,
        )
    )

    rows = s.execute(
        select(Document, lineage.c.depth)
        .join(lineage, Document.id == lineage.c.id)
        .order_by(lineage.c.depth.asc(), Document.id.asc())
    ).all()

    ordered: list[Document] = []
    seen: set[int] = set()
    last_depth = -1
    for d, depth in rows:
        if d.id in seen:
            raise ChainCycleDetected(f"Supersession cycle through document {d.id}.", document_id=d.id)
        if depth == last_depth:
            raise ChainTraversalError(
                f"Lineage of document {doc.id} branches at depth {depth}.",
                document_id=doc.id,
            )
        if depth > max_depth:
            raise ChainDepthExceeded(
                f"Lineage of document {doc.id} is longer than {max_depth} hops.",
                document_id=doc.id,
                max_depth=max_depth,
            )
        seen.add(d.id)
        ordered.append(d)
        last_depth = depth
    return ordered


def forward_chain(s: Session, tenant_id: str, doc: Document, *, max_depth: int = MAX_CHAIN_DEPTH) -> list[Document]:
    """``doc`` followed by every successor, oldest to newest."""
    return _walk(s, tenant_id, doc, forward=True, max_depth=max_depth)


def backward_chain(s: Session, tenant_id: str, doc: Document, *, max_depth: int = MAX_CHAIN_DEPTH) -> list[Document]:
    """``doc`` followed by its predecessors, back to the oldest ancestor."""
    return _walk(s, tenant_id, doc, forward=False, max_depth=max_depth)


def complete_chain(s: Session, tenant_id: str, doc: Document, *, max_depth: int = MAX_CHAIN_DEPTH) -> list[Document]:
    back = backward_chain(s, tenant_id, doc, max_depth=max_depth)
    fwd = forward_chain(s, tenant_id, doc, max_depth=max_depth)
    out: list[Document] = []
    seen: set[int] = set()
    for d in list(reversed(back)) + fwd[1:]:
        if d.id not in seen:
            seen.add(d.id)
            out.append(d)
    return out


def replace_document(
    s: Session,
    tenant_id: str,
    owner: EntityRef,
    doc_type: DocumentType | str,
    file_ref: str,
    reason: ReplacementReason | str = ReplacementReason.UPDATED,
    *,
    actor: EntityRef | str | None = None,
    notes: str | None = None,
    allow_replace_approved: bool = False,
) -> Document:
    """
    Upload-style entry point: create into an empty slot, otherwise supersede the holder.

    An APPROVED holder is only replaced when ``allow_replace_approved`` is set.
    """
    new = build_document(tenant_id, owner, doc_type, file_ref, actor=actor, notes=notes)
    holder = get_active_document(s, new.tenant_id, new.owner, new.doc_type, lock=True)
    if holder is None:
        return create_document(s, new.tenant_id, new.owner, new.doc_type, new.file_ref, actor=actor, notes=notes)
    if holder.status == DocumentStatus.APPROVED.value and not allow_replace_approved:
        raise ValidationError(f"Document {holder.id} is approved; replacing it needs explicit permission.")
    return supersede(s, new.tenant_id, holder, new, reason, actor=actor)
