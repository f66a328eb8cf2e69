"""initial schema

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610180900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "profiles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("username", sa.String(length=50), nullable=False),
        sa.Column("full_name", sa.String(length=120)),
        sa.Column("avatar_url", sa.String(length=500)),
        sa.Column("password_hash", sa.String(length=100), nullable=False),
        sa.Column("updated_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("username", name="uq_profiles_username"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("date", sa.DateTime(), nullable=False),
        sa.Column(
            "type", sa.Enum("income", "expense", name="transactiontype"), nullable=False
        ),
        sa.Column("category", sa.String(length=100)),
        sa.Column("notes", sa.Text()),
        sa.Column("is_credit", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("installments", sa.Integer()),
        sa.Column("original_amount_cents", sa.Integer()),
        sa.Column("remaining_installments", sa.Integer()),
        sa.Column(
            "source_transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="SET NULL"),
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
        sa.CheckConstraint(
            "installments IS NULL OR (installments >= 1 AND installments <= 24)",
            name="ck_transactions_installments_range",
        ),
        sa.CheckConstraint(
            "remaining_installments IS NULL OR "
            "(remaining_installments >= 0 AND remaining_installments <= installments)",
            name="ck_transactions_remaining_range",
        ),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index("ix_transactions_is_credit", "transactions", ["is_credit"])


def downgrade():
    op.drop_index("ix_transactions_is_credit", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("profiles")
    sa.Enum(name="transactiontype").drop(op.get_bind(), checkfirst=True)
