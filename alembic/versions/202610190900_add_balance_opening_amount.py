"""add_balance_opening_amount

Revision ID: 202610190900
Revises: 202610010900
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "202610190900"
down_revision = "202610010900"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("personal_balances") as batch_op:
        batch_op.add_column(
            sa.Column(
                "opening_amount",
                sa.Numeric(18, 2),
                nullable=False,
                server_default="0",
            )
        )


def downgrade() -> None:
    with op.batch_alter_table("personal_balances") as batch_op:
        batch_op.drop_column("opening_amount")
