"""Document templates.

Revision ID: b7e2f4a9c310
Revises: a1d0c5e7f201
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "b7e2f4a9c310"
down_revision: Union[str, Sequence[str], None] = "a1d0c5e7f201"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "document_templates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("type", sa.String(64), nullable=True),
        sa.Column("category", sa.String(128), nullable=True),
        sa.Column("file_url", sa.String(1024), nullable=True),
        sa.Column("file_name", sa.String(255), nullable=True),
        sa.Column("file_size", sa.Integer(), nullable=True),
        sa.Column("file_type", sa.String(128), nullable=True),
        sa.Column("placeholders", sa.JSON(), nullable=False),
        sa.Column("default_tags", sa.JSON(), nullable=False),
        sa.Column("default_access_level", sa.String(16), nullable=False, server_default="INTERNAL"),
        sa.Column("default_approval_workflow_id", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="ACTIVE"),
        sa.Column("created_by", sa.String(320), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["default_approval_workflow_id"], ["approval_workflows.id"], ondelete="SET NULL"),
    )
    op.create_index("idx_document_templates_type", "document_templates", ["type", "category"])


def downgrade() -> None:
    op.drop_index("idx_document_templates_type", table_name="document_templates")
    op.drop_table("document_templates")
