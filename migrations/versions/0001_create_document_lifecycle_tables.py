"""Create documents, document_relations and audit_events tables.

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    bind = op.get_bind()
    insp = sa.inspect(bind)

    if not insp.has_table("documents"):
        op.create_table(
            "documents",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("tenant_id", sa.String(64), nullable=False),
            sa.Column("owner_kind", sa.String(64), nullable=False),
            sa.Column("owner_id", sa.String(64), nullable=False),
            sa.Column("doc_type", sa.String(64), nullable=False),
            sa.Column("category", sa.String(32), nullable=False, server_default="OTHER"),
            sa.Column("file_ref", sa.String(512), nullable=False),
            sa.Column("status", sa.String(16), nullable=False, server_default="PENDING"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("valid_from", sa.DateTime(timezone=False), nullable=True),
            sa.Column("valid_to", sa.DateTime(timezone=False), nullable=True),
            sa.Column(
                "superseded_by_id",
                sa.Integer(),
                sa.ForeignKey("documents.id", ondelete="RESTRICT"),
                nullable=True,
            ),
            sa.Column("replaced_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("replacement_reason", sa.String(255), nullable=True),
            sa.Column("rejection_reason", sa.String(255), nullable=True),
            sa.Column("reviewed_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("reviewed_by", sa.String(128), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("created_by", sa.String(128), nullable=True),
            sa.CheckConstraint(
                "(is_active AND valid_to IS NULL) OR (NOT is_active AND valid_to IS NOT NULL)",
                name="ck_documents_active_open_interval",
            ),
        )

    existing = {idx["name"] for idx in insp.get_indexes("documents")} if insp.has_table("documents") else set()
    if "uq_documents_active_slot" not in existing:
        op.create_index(
            "uq_documents_active_slot",
            "documents",
            ["tenant_id", "owner_kind", "owner_id", "doc_type"],
            unique=True,
            sqlite_where=sa.text("is_active = 1"),
            postgresql_where=sa.text("is_active = true"),
        )
    if "idx_documents_owner" not in existing:
        op.create_index("idx_documents_owner", "documents", ["tenant_id", "owner_kind", "owner_id"])
    if "idx_documents_superseded_by" not in existing:
        op.create_index("idx_documents_superseded_by", "documents", ["superseded_by_id"])

    if not insp.has_table("document_relations"):
        op.create_table(
            "document_relations",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("tenant_id", sa.String(64), nullable=False),
            sa.Column(
                "document_id",
                sa.Integer(),
                sa.ForeignKey("documents.id", ondelete="RESTRICT"),
                nullable=False,
            ),
            sa.Column("related_kind", sa.String(64), nullable=False),
            sa.Column("related_id", sa.String(64), nullable=False),
            sa.Column("relation_context", sa.String(16), nullable=False),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("created_by", sa.String(128), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("is_revoked", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("revoked_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("revoked_by", sa.String(128), nullable=True),
        )

    existing = (
        {idx["name"] for idx in insp.get_indexes("document_relations")}
        if insp.has_table("document_relations")
        else set()
    )
    if "uq_document_relations_live" not in existing:
        op.create_index(
            "uq_document_relations_live",
            "document_relations",
            ["document_id", "related_kind", "related_id", "relation_context"],
            unique=True,
            sqlite_where=sa.text("is_revoked = 0"),
            postgresql_where=sa.text("is_revoked = false"),
        )
    if "idx_document_relations_related" not in existing:
        op.create_index(
            "idx_document_relations_related",
            "document_relations",
            ["tenant_id", "related_kind", "related_id"],
        )

    if not insp.has_table("audit_events"):
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("request_id", sa.String(64), nullable=True),
            sa.Column("tenant_id", sa.String(64), nullable=False),
            sa.Column("actor", sa.String(128), nullable=True),
            sa.Column("action", sa.String(128), nullable=False),
            sa.Column("document_id", sa.Integer(), nullable=True),
            sa.Column("entity_type", sa.String(128), nullable=True),
            sa.Column("entity_id", sa.String(128), nullable=True),
            sa.Column("related_ids_json", sa.Text(), nullable=True),
            sa.Column("reason", sa.String(512), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
        )
        op.create_index("idx_audit_events_document", "audit_events", ["document_id"])
        op.create_index("idx_audit_events_tenant_action", "audit_events", ["tenant_id", "action"])


def downgrade() -> None:
    op.drop_index("idx_audit_events_tenant_action", table_name="audit_events")
    op.drop_index("idx_audit_events_document", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_index("idx_document_relations_related", table_name="document_relations")
    op.drop_index("uq_document_relations_live", table_name="document_relations")
    op.drop_table("document_relations")
    op.drop_index("idx_documents_superseded_by", table_name="documents")
    op.drop_index("idx_documents_owner", table_name="documents")
    op.drop_index("uq_documents_active_slot", table_name="documents")
    op.drop_table("documents")
