"""
Document store and active-document registrar.

Every (tenant, owner, type) slot holds at most one active document. The storage
layer is the final arbiter: the partial unique index rejects a second active
row, and displacing a holder is a conditional UPDATE that only matches while
the holder is still active. Losing either race raises DuplicateActiveDocument
and leaves the slot as the winner committed it.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from app.doclife.audit import record_event
from app.doclife.constants import MAX_FILE_REF_LENGTH, MAX_REASON_LENGTH
from app.doclife.db import atomic
from app.doclife.errors import DuplicateActiveDocument, NotFound, ValidationError
from app.doclife.modules.document_lifecycle.models import (
    Document,
    DocumentStatus,
    DocumentType,
    category_for,
    coerce_type,
)
from app.doclife.modules.document_lifecycle.relations import link_ownership
from app.doclife.refs import EntityRef, validate_ref, validate_tenant
from app.doclife.utils import as_naive_utc, clean_text, utcnow

logger = logging.getLogger(__name__)

# Sentinel for "caller did not say which holder it observed".
_UNSET = object()


def _clean_file_ref(file_ref: str | None) -> str:
    ref = (file_ref or "").strip()
    if not ref:
        raise ValidationError("file_ref is required.")
    if len(ref) > MAX_FILE_REF_LENGTH:
        raise ValidationError(f"file_ref exceeds {MAX_FILE_REF_LENGTH} characters.")
    return ref


def clean_reason(reason: str | None, *, required: bool) -> str | None:
    r = clean_text(reason)
    if r is None and required:
        raise ValidationError("A reason is required.")
    if r is not None and len(r) > MAX_REASON_LENGTH:
        raise ValidationError(f"Reason exceeds {MAX_REASON_LENGTH} characters.")
    return r


def build_document(
    tenant_id: str,
    owner: EntityRef,
    doc_type: DocumentType | str,
    file_ref: str,
    *,
    actor: EntityRef | str | None = None,
    notes: str | None = None,
) -> Document:
    """
    Validated, transient Document.

    Nothing is written; the row enters storage only when it is activated
    (create_document, activate_document or supersede).
    """
    tenant = validate_tenant(tenant_id)
    owner = validate_ref(owner, role="owner")
    dt = coerce_type(doc_type)
    return Document(
        tenant_id=tenant,
        owner_kind=owner.kind,
        owner_id=owner.id,
        doc_type=dt.value,
        category=category_for(dt).value,
        file_ref=_clean_file_ref(file_ref),
        status=DocumentStatus.PENDING.value,
        is_active=False,
        valid_from=None,
        valid_to=None,
        notes=clean_text(notes),
        created_at=utcnow(),
        created_by=str(actor) if actor else None,
    )


def get_document(s: Session, tenant_id: str, document_id: int, *, lock: bool = False) -> Document:
    tenant = validate_tenant(tenant_id)
    q = s.query(Document).filter(Document.id == document_id, Document.tenant_id == tenant)
    if lock:
        q = q.with_for_update()
    doc = q.one_or_none()
    if doc is None:
        raise NotFound(f"Document {document_id} not found.")
    return doc


def get_active_document(
    s: Session,
    tenant_id: str,
    owner: EntityRef,
    doc_type: DocumentType | str,
    *,
    lock: bool = False,
) -> Document | None:
    tenant = validate_tenant(tenant_id)
    owner = validate_ref(owner, role="owner")
    q = s.query(Document).filter(
        Document.tenant_id == tenant,
        Document.owner_kind == owner.kind,
        Document.owner_id == owner.id,
        Document.doc_type == coerce_type(doc_type).value,
        Document.is_active.is_(True),
    )
    if lock:
        q = q.with_for_update()
    return q.one_or_none()


def list_active_documents(
    s: Session,
    tenant_id: str,
    owner: EntityRef,
    *,
    as_of: datetime | None = None,
    lock: bool = False,
) -> list[Document]:
    """
    Documents that are active now and whose validity had started by ``as_of``.
    """
    tenant = validate_tenant(tenant_id)
    owner = validate_ref(owner, role="owner")
    q = s.query(Document).filter(
        Document.tenant_id == tenant,
        Document.owner_kind == owner.kind,
        Document.owner_id == owner.id,
        Document.is_active.is_(True),
    )
    if as_of is not None:
        q = q.filter(Document.valid_from.is_not(None), Document.valid_from <= as_naive_utc(as_of))
    if lock:
        q = q.with_for_update()
    return q.order_by(Document.doc_type.asc(), Document.id.asc()).all()


def release_slot(s: Session, doc: Document, now: datetime) -> None:
    """
    Deactivate ``doc`` only if it is still the active row in storage.
    """
    res = s.execute(
        update(Document)
        .where(Document.id == doc.id, Document.is_active.is_(True))
        .values(is_active=False, valid_to=now)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise DuplicateActiveDocument(
            f"Document {doc.id} is no longer the active {doc.doc_type} for {doc.owner}; the slot changed concurrently.",
            document_id=doc.id,
        )
    set_committed_value(doc, "is_active", False)
    set_committed_value(doc, "valid_to", now)


def claim_slot(s: Session, doc: Document, now: datetime) -> None:
    """
    Mark ``doc`` active (inserting it when transient) and flush.

    The partial unique index rejects the write when another document already
    holds the slot.
    """
    doc.is_active = True
    doc.valid_from = now
    doc.valid_to = None
    if doc.id is None:
        s.add(doc)
    try:
        s.flush()
    except IntegrityError as e:
        raise DuplicateActiveDocument(
            f"An active {doc.doc_type} already exists for {doc.owner}.",
            document_id=doc.id,
        ) from e


def create_document(
    s: Session,
    tenant_id: str,
    owner: EntityRef,
    doc_type: DocumentType | str,
    file_ref: str,
    *,
    actor: EntityRef | str | None = None,
    notes: str | None = None,
) -> Document:
    """
    Insert a PENDING, active document and link its OWNERSHIP relation.

    Fails with DuplicateActiveDocument when the slot is taken; replacing a
    holder goes through supersession.
    """
    doc = build_document(tenant_id, owner, doc_type, file_ref, actor=actor, notes=notes)
    holder = get_active_document(s, doc.tenant_id, doc.owner, doc.doc_type)
    if holder is not None:
        raise DuplicateActiveDocument(
            f"{doc.owner} already has an active {doc.doc_type} (document {holder.id}); supersede it instead.",
            holder_id=holder.id,
        )
    with atomic(s):
        claim_slot(s, doc, utcnow())
        link_ownership(s, doc.tenant_id, doc, doc.owner, created_by=actor)
        record_event(
            s,
            tenant_id=doc.tenant_id,
            actor=actor,
            action="document.create",
            document_id=doc.id,
            entity_type="Document",
            entity_id=str(doc.id),
            related_ids=[str(doc.owner)],
            metadata={"doc_type": doc.doc_type, "file_ref": doc.file_ref},
        )
    logger.info("Created document %s (%s for %s)", doc.id, doc.doc_type, doc.owner)
    return doc


def _review_guard(doc: Document, tenant_id: str) -> str:
    tenant = validate_tenant(tenant_id)
    doc.require_tenant(tenant)
    if doc.id is None:
        raise ValidationError("Only stored documents can be reviewed.")
    if doc.status == DocumentStatus.SUPERSEDED.value:
        raise ValidationError(f"Document {doc.id} is superseded and can no longer be reviewed.")
    return tenant


def approve_document(
    s: Session,
    tenant_id: str,
    doc: Document,
    *,
    reviewer: EntityRef | str | None = None,
    notes: str | None = None,
) -> Document:
    tenant = _review_guard(doc, tenant_id)
    before = doc.status
    doc.status = DocumentStatus.APPROVED.value
    doc.rejection_reason = None
    doc.reviewed_at = utcnow()
    doc.reviewed_by = str(reviewer) if reviewer else None
    if clean_text(notes):
        doc.notes = clean_text(notes)
    record_event(
        s,
        tenant_id=tenant,
        actor=reviewer,
        action="document.approve",
        document_id=doc.id,
        entity_type="Document",
        entity_id=str(doc.id),
        metadata={"from": before, "to": doc.status},
    )
    s.flush()
    return doc


def reject_document(
    s: Session,
    tenant_id: str,
    doc: Document,
    reason: str,
    *,
    reviewer: EntityRef | str | None = None,
) -> Document:
    tenant = _review_guard(doc, tenant_id)
    r = clean_reason(reason, required=True)
    before = doc.status
    doc.status = DocumentStatus.REJECTED.value
    doc.rejection_reason = r
    doc.reviewed_at = utcnow()
    doc.reviewed_by = str(reviewer) if reviewer else None
    record_event(
        s,
        tenant_id=tenant,
        actor=reviewer,
        action="document.reject",
        document_id=doc.id,
        entity_type="Document",
        entity_id=str(doc.id),
        reason=r,
        metadata={"from": before, "to": doc.status},
    )
    s.flush()
    return doc


def activate_document(
    s: Session,
    tenant_id: str,
    doc: Document,
    *,
    expected_active: Document | None | object = _UNSET,
    actor: EntityRef | str | None = None,
) -> Document:
    """
    Make ``doc`` the active document of its slot, displacing the current holder.

    ``expected_active`` is the holder the caller observed (None for an empty
    slot). When given, the call is a compare-and-swap: if the slot no longer
    matches, DuplicateActiveDocument is raised and nothing changes. Without it
    the holder is read (and row-locked where supported) in this transaction.
    A transient document is inserted and linked to its owner.
    """
    tenant = validate_tenant(tenant_id)
    doc.require_tenant(tenant)
    if doc.status == DocumentStatus.SUPERSEDED.value:
        raise ValidationError(f"Document {doc.id} is superseded and cannot be reactivated.")
    if doc.id is not None and doc.is_active:
        return doc

    if expected_active is _UNSET:
        holder = get_active_document(s, tenant, doc.owner, doc.doc_type, lock=True)
    else:
        holder = expected_active  # type: ignore[assignment]
    if holder is not None:
        if not isinstance(holder, Document):
            raise ValidationError("expected_active must be a Document or None.")
        if (holder.tenant_id, holder.owner, holder.doc_type) != (tenant, doc.owner, doc.doc_type):
            raise ValidationError(f"Document {holder.id} does not hold the slot of document {doc.id}.")

    is_new = doc.id is None
    now = utcnow()
    with atomic(s):
        if holder is not None:
            release_slot(s, holder, now)
            record_event(
                s,
                tenant_id=tenant,
                actor=actor,
                action="document.deactivate",
                document_id=holder.id,
                entity_type="Document",
                entity_id=str(holder.id),
                reason="displaced",
            )
        claim_slot(s, doc, now)
        if is_new:
            link_ownership(s, tenant, doc, doc.owner, created_by=actor)
        record_event(
            s,
            tenant_id=tenant,
            actor=actor,
            action="document.activate",
            document_id=doc.id,
            entity_type="Document",
            entity_id=str(doc.id),
            related_ids=[holder.id] if holder is not None else None,
        )
    return doc


def deactivate_document(
    s: Session,
    tenant_id: str,
    doc: Document,
    *,
    actor: EntityRef | str | None = None,
    reason: str | None = None,
) -> Document:
    tenant = validate_tenant(tenant_id)
    doc.require_tenant(tenant)
    if doc.id is None or not doc.is_active:
        return doc
    r = clean_reason(reason, required=False)
    with atomic(s):
        release_slot(s, doc, utcnow())
        record_event(
            s,
            tenant_id=tenant,
            actor=actor,
            action="document.deactivate",
            document_id=doc.id,
            entity_type="Document",
            entity_id=str(doc.id),
            reason=r,
        )
    return doc


def find_invariant_violations(s: Session, tenant_id: str | None = None) -> list[str]:
    """
    Scan committed rows for slot, validity-interval and lineage corruption.

    Returns human-readable findings; an empty list means the data is sound.
    """
    tenant = validate_tenant(tenant_id) if tenant_id is not None else None

    def _scoped(q):
        return q.filter(Document.tenant_id == tenant) if tenant is not None else q

    found: list[str] = []

    dup_slots = _scoped(
        s.query(
            Document.tenant_id,
            Document.owner_kind,
            Document.owner_id,
            Document.doc_type,
            func.count(Document.id),
        ).filter(Document.is_active.is_(True))
    ).group_by(Document.tenant_id, Document.owner_kind, Document.owner_id, Document.doc_type).having(
        func.count(Document.id) > 1
    )
    for t, kind, ident, dt, n in dup_slots.all():
        found.append(f"{n} active {dt} documents for {kind}:{ident} in tenant {t}")

    bad_intervals = _scoped(
        s.query(Document.id).filter(
            or_(
                (Document.is_active.is_(True)) & (Document.valid_to.is_not(None)),
                (Document.is_active.is_(False)) & (Document.valid_to.is_(None)),
            )
        )
    )
    for (doc_id,) in bad_intervals.all():
        found.append(f"document {doc_id} has is_active inconsistent with valid_to")

    bad_superseded = _scoped(
        s.query(Document.id).filter(
            or_(
                (Document.superseded_by_id.is_not(None)) & (Document.status != DocumentStatus.SUPERSEDED.value),
                (Document.superseded_by_id.is_(None)) & (Document.status == DocumentStatus.SUPERSEDED.value),
                (Document.superseded_by_id.is_not(None)) & (Document.is_active.is_(True)),
            )
        )
    )
    for (doc_id,) in bad_superseded.all():
        found.append(f"document {doc_id} has an inconsistent superseded_by/status/is_active combination")

    branching = _scoped(
        s.query(Document.superseded_by_id, func.count(Document.id)).filter(Document.superseded_by_id.is_not(None))
    ).group_by(Document.superseded_by_id).having(func.count(Document.id) > 1)
    for successor_id, n in branching.all():
        found.append(f"document {successor_id} is the successor of {n} documents")

    if found:
        logger.warning("Invariant scan found %s problem(s)", len(found))
    return found
