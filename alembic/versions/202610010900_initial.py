"""initial ledger schema

Revision ID: 202610010900
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610010900"
down_revision = None
branch_labels = None
depends_on = None

AMOUNT = sa.Numeric(18, 2)


def _transaction_type():
    return sa.Enum("income", "expense", name="transactiontype")


def _currency_code():
    return sa.Enum("UZS", "USD", name="currencycode")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("telegram_id", sa.BigInteger(), nullable=False, unique=True),
        sa.Column("username", sa.String(length=64)),
        sa.Column(
            "selection_kind",
            sa.Enum("all", "project", "balance", "unscoped", name="selectionkind"),
            nullable=False,
        ),
        sa.Column("selection_ref", sa.Integer()),
        *_timestamps(),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id")),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("kind", _transaction_type(), nullable=False),
        sa.Column("icon", sa.String(length=16)),
        sa.Column("color", sa.String(length=9)),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("is_labor", sa.Boolean(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id", "kind", "name", name="uq_category_user_kind_name"
        ),
    )

    op.create_table(
        "projects",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_projects_user", "projects", ["user_id"])

    op.create_table(
        "personal_balances",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("title", sa.String(length=100), nullable=False),
        sa.Column("currency", _currency_code(), nullable=False),
        sa.Column("amount", AMOUNT, nullable=False, server_default="0"),
        sa.Column("emoji", sa.String(length=16)),
        sa.Column("color", sa.String(length=9)),
        *_timestamps(),
    )
    op.create_index("ix_personal_balances_user", "personal_balances", ["user_id"])

    op.create_table(
        "transfers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "from_balance_id",
            sa.Integer(),
            sa.ForeignKey("personal_balances.id"),
            nullable=False,
        ),
        sa.Column(
            "to_balance_id",
            sa.Integer(),
            sa.ForeignKey("personal_balances.id"),
            nullable=False,
        ),
        sa.Column("amount", AMOUNT, nullable=False),
        sa.Column("fee", AMOUNT, nullable=False, server_default="0"),
        sa.Column("date", sa.DateTime(), nullable=False),
        sa.Column("note", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_transfers_amount_positive"),
        sa.CheckConstraint("fee >= 0", name="ck_transfers_fee_non_negative"),
        sa.CheckConstraint(
            "from_balance_id <> to_balance_id", name="ck_transfers_distinct_balances"
        ),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("kind", _transaction_type(), nullable=False),
        sa.Column("amount", AMOUNT, nullable=False),
        sa.Column("currency", _currency_code(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column(
            "project_id",
            sa.Integer(),
            sa.ForeignKey("projects.id", ondelete="CASCADE"),
        ),
        sa.Column("balance_id", sa.Integer(), sa.ForeignKey("personal_balances.id")),
        sa.Column("transfer_id", sa.Integer(), sa.ForeignKey("transfers.id")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount >= 0", name="ck_transactions_amount_positive"),
        sa.CheckConstraint(
            "project_id IS NULL OR balance_id IS NULL",
            name="ck_transactions_single_scope",
        ),
    )
    op.create_index(
        "ix_transactions_user_created", "transactions", ["user_id", "created_at"]
    )
    op.create_index(
        "ix_transactions_user_project", "transactions", ["user_id", "project_id"]
    )
    op.create_index(
        "ix_transactions_user_balance", "transactions", ["user_id", "balance_id"]
    )

    op.create_table(
        "debt_contacts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_debt_contact_user_name"),
    )

    op.create_table(
        "debt_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "contact_id",
            sa.Integer(),
            sa.ForeignKey("debt_contacts.id"),
            nullable=False,
        ),
        sa.Column(
            "kind",
            sa.Enum("borrow", "lend", "repay", "receive", name="debtkind"),
            nullable=False,
        ),
        sa.Column("amount", AMOUNT, nullable=False),
        sa.Column("currency", _currency_code(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("note", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("amount >= 0", name="ck_debt_entries_amount_positive"),
    )
    op.create_index(
        "ix_debt_entries_user_contact",
        "debt_entries",
        ["user_id", "contact_id", "currency"],
    )


def downgrade():
    op.drop_index("ix_debt_entries_user_contact", table_name="debt_entries")
    op.drop_table("debt_entries")
    op.drop_table("debt_contacts")
    op.drop_index("ix_transactions_user_balance", table_name="transactions")
    op.drop_index("ix_transactions_user_project", table_name="transactions")
    op.drop_index("ix_transactions_user_created", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("transfers")
    op.drop_index("ix_personal_balances_user", table_name="personal_balances")
    op.drop_table("personal_balances")
    op.drop_index("ix_projects_user", table_name="projects")
    op.drop_table("projects")
    op.drop_table("categories")
    op.drop_table("users")
