"""create buyers and buyer history

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def _enum(name: str, *values: str) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False, create_constraint=True, length=32)


def upgrade() -> None:
    op.create_table(
        "buyers",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("full_name", sa.String(length=80), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("phone", sa.String(length=15), nullable=False),
        sa.Column("city", _enum("city", "Chandigarh", "Mohali", "Zirakpur", "Panchkula", "Other"), nullable=False),
        sa.Column(
            "property_type",
            _enum("property_type", "Apartment", "Villa", "Plot", "Office", "Retail"),
            nullable=False,
        ),
        sa.Column("bhk", _enum("bhk", "1", "2", "3", "4", "Studio"), nullable=True),
        sa.Column("purpose", _enum("purpose", "Buy", "Rent"), nullable=False),
        sa.Column("budget_min", sa.BigInteger(), nullable=True),
        sa.Column("budget_max", sa.BigInteger(), nullable=True),
        sa.Column("timeline", _enum("timeline", "0-3m", "3-6m", ">6m", "Exploring"), nullable=False),
        sa.Column("source", _enum("source", "Website", "Referral", "Walk-in", "Call", "Other"), nullable=False),
        sa.Column(
            "status",
            _enum("status", "New", "Qualified", "Contacted", "Visited", "Negotiation", "Converted", "Dropped"),
            nullable=False,
            server_default="New",
        ),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_buyers_owner_updated", "buyers", ["owner_id", "updated_at"], unique=False)
    op.create_index("ix_buyers_filters", "buyers", ["city", "property_type", "status", "timeline"], unique=False)

    op.create_table(
        "buyer_history",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("buyer_id", sa.Uuid(), nullable=False),
        sa.Column("changed_by", sa.String(length=128), nullable=False),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("diff", sa.JSON(), nullable=False),
        sa.ForeignKeyConstraint(["buyer_id"], ["buyers.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_buyer_history_buyer_id", "buyer_history", ["buyer_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_buyer_history_buyer_id", table_name="buyer_history")
    op.drop_table("buyer_history")
    op.drop_index("ix_buyers_filters", table_name="buyers")
    op.drop_index("ix_buyers_owner_updated", table_name="buyers")
    op.drop_table("buyers")
