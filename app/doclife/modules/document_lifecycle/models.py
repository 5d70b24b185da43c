from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.doclife.errors import NotFound, ValidationError
from app.doclife.models import Base
from app.doclife.refs import EntityRef
from app.doclife.utils import utcnow


class DocumentType(str, enum.Enum):
    # Identity
    INE_FRONT = "INE_FRONT"
    INE_BACK = "INE_BACK"
    PASSPORT = "PASSPORT"
    CURP_DOC = "CURP_DOC"
    RFC_CONSTANCIA = "RFC_CONSTANCIA"
    DRIVER_LICENSE_FRONT = "DRIVER_LICENSE_FRONT"
    DRIVER_LICENSE_BACK = "DRIVER_LICENSE_BACK"
    # Address
    PROOF_OF_ADDRESS = "PROOF_OF_ADDRESS"
    UTILITY_BILL = "UTILITY_BILL"
    BANK_STATEMENT_ADDRESS = "BANK_STATEMENT_ADDRESS"
    LEASE_AGREEMENT = "LEASE_AGREEMENT"
    PROPERTY_DEED = "PROPERTY_DEED"
    # Income
    PAYSLIP = "PAYSLIP"
    BANK_STATEMENT = "BANK_STATEMENT"
    TAX_RETURN = "TAX_RETURN"
    IMSS_STATEMENT = "IMSS_STATEMENT"
    EMPLOYMENT_LETTER = "EMPLOYMENT_LETTER"
    INCOME_AFFIDAVIT = "INCOME_AFFIDAVIT"
    # Company
    CONSTITUTIVE_ACT = "CONSTITUTIVE_ACT"
    POWER_OF_ATTORNEY = "POWER_OF_ATTORNEY"
    TAX_ID_COMPANY = "TAX_ID_COMPANY"
    FISCAL_SITUATION = "FISCAL_SITUATION"
    LEGAL_REP_ID = "LEGAL_REP_ID"
    SHAREHOLDER_STRUCTURE = "SHAREHOLDER_STRUCTURE"
    # Verification
    SELFIE = "SELFIE"
    SIGNATURE = "SIGNATURE"
    OTHER = "OTHER"


class DocumentCategory(str, enum.Enum):
    IDENTITY = "IDENTITY"
    ADDRESS = "ADDRESS"
    INCOME = "INCOME"
    COMPANY = "COMPANY"
    VERIFICATION = "VERIFICATION"
    OTHER = "OTHER"


class DocumentStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    SUPERSEDED = "SUPERSEDED"


class RelationContext(str, enum.Enum):
    OWNERSHIP = "OWNERSHIP"
    USAGE = "USAGE"
    REFERENCE = "REFERENCE"


class ReplacementReason(str, enum.Enum):
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    UPDATED = "UPDATED"
    BETTER_QUALITY = "BETTER_QUALITY"


_T = DocumentType
_C = DocumentCategory

CATEGORY_BY_TYPE: dict[DocumentType, DocumentCategory] = {
    _T.INE_FRONT: _C.IDENTITY,
    _T.INE_BACK: _C.IDENTITY,
    _T.PASSPORT: _C.IDENTITY,
    _T.CURP_DOC: _C.IDENTITY,
    _T.RFC_CONSTANCIA: _C.IDENTITY,
    _T.DRIVER_LICENSE_FRONT: _C.IDENTITY,
    _T.DRIVER_LICENSE_BACK: _C.IDENTITY,
    _T.PROOF_OF_ADDRESS: _C.ADDRESS,
    _T.UTILITY_BILL: _C.ADDRESS,
    _T.BANK_STATEMENT_ADDRESS: _C.ADDRESS,
    _T.LEASE_AGREEMENT: _C.ADDRESS,
    _T.PROPERTY_DEED: _C.ADDRESS,
    _T.PAYSLIP: _C.INCOME,
    _T.BANK_STATEMENT: _C.INCOME,
    _T.TAX_RETURN: _C.INCOME,
    _T.IMSS_STATEMENT: _C.INCOME,
    _T.EMPLOYMENT_LETTER: _C.INCOME,
    _T.INCOME_AFFIDAVIT: _C.INCOME,
    _T.CONSTITUTIVE_ACT: _C.COMPANY,
    _T.POWER_OF_ATTORNEY: _C.COMPANY,
    _T.TAX_ID_COMPANY: _C.COMPANY,
    _T.FISCAL_SITUATION: _C.COMPANY,
    _T.LEGAL_REP_ID: _C.COMPANY,
    _T.SHAREHOLDER_STRUCTURE: _C.COMPANY,
    _T.SELFIE: _C.VERIFICATION,
    _T.SIGNATURE: _C.VERIFICATION,
    _T.OTHER: _C.OTHER,
}


def coerce_type(doc_type: DocumentType | str | None) -> DocumentType:
    raw = doc_type.value if isinstance(doc_type, DocumentType) else (doc_type or "").strip().upper()
    try:
        return DocumentType(raw)
    except ValueError as e:
        raise ValidationError(f"Unknown document type {doc_type!r}.") from e


def category_for(doc_type: DocumentType | str) -> DocumentCategory:
    return CATEGORY_BY_TYPE.get(coerce_type(doc_type), DocumentCategory.OTHER)


class Document(Base):
    """
    One evidence file for an owner.

    Active documents have an open validity interval (valid_to IS NULL); the
    partial unique index keeps a single active row per slot.
    """

    __tablename__ = "documents"
    __table_args__ = (
        Index(
            "uq_documents_active_slot",
            "tenant_id",
            "owner_kind",
            "owner_id",
            "doc_type",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active = true"),
        ),
        CheckConstraint(
            "(is_active AND valid_to IS NULL) OR (NOT is_active AND valid_to IS NOT NULL)",
            name="ck_documents_active_open_interval",
        ),
        Index("idx_documents_owner", "tenant_id", "owner_kind", "owner_id"),
        Index("idx_documents_superseded_by", "superseded_by_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)

    owner_kind: Mapped[str] = mapped_column(String(64), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)

    doc_type: Mapped[str] = mapped_column(String(64), nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False, default=DocumentCategory.OTHER.value)
    file_ref: Mapped[str] = mapped_column(String(512), nullable=False)

    # PENDING -> APPROVED/REJECTED -> SUPERSEDED
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=DocumentStatus.PENDING.value)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    valid_from: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    valid_to: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    superseded_by_id: Mapped[int | None] = mapped_column(
        ForeignKey("documents.id", ondelete="RESTRICT"),
        nullable=True,
    )
    replaced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    replacement_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    rejection_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)

    @property
    def owner(self) -> EntityRef:
        return EntityRef(kind=self.owner_kind, id=self.owner_id)

    def require_tenant(self, tenant_id: str) -> None:
        # Cross-tenant access looks exactly like a missing row.
        if self.tenant_id != tenant_id:
            raise NotFound(f"Document {self.id} not found.")

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} {self.owner_kind}:{self.owner_id} {self.doc_type} "
            f"status={self.status} active={self.is_active}>"
        )


class DocumentRelation(Base):
    __tablename__ = "document_relations"
    __table_args__ = (
        Index(
            "uq_document_relations_live",
            "document_id",
            "related_kind",
            "related_id",
            "relation_context",
            unique=True,
            sqlite_where=text("is_revoked = 0"),
            postgresql_where=text("is_revoked = false"),
        ),
        Index("idx_document_relations_related", "tenant_id", "related_kind", "related_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)

    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="RESTRICT"), nullable=False)

    related_kind: Mapped[str] = mapped_column(String(64), nullable=False)
    related_id: Mapped[str] = mapped_column(String(64), nullable=False)
    relation_context: Mapped[str] = mapped_column(String(16), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    # Soft delete only; rows are never removed.
    is_revoked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    revoked_by: Mapped[str | None] = mapped_column(String(128), nullable=True)

    document: Mapped[Document] = relationship("Document", lazy="selectin")

    @property
    def related(self) -> EntityRef:
        return EntityRef(kind=self.related_kind, id=self.related_id)
