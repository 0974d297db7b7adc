"""seed default pipeline stages

Revision ID: 202610190002
Revises: 202610190001
Create Date: 2026-10-19 00:02:00
"""

from collections.abc import Sequence
from decimal import Decimal

from alembic import op
import sqlalchemy as sa


revision: str = "202610190002"
down_revision: str | None = "202610190001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


_DEFAULT_STAGES = [
    ("Lead", 1, Decimal("0.10")),
    ("Qualified", 2, Decimal("0.25")),
    ("Proposal", 3, Decimal("0.50")),
    ("Negotiation", 4, Decimal("0.75")),
    ("Closed Won", 5, Decimal("1.00")),
    ("Closed Lost", 6, Decimal("0.00")),
]

_stages_table = sa.table(
    "pipeline_stages",
    sa.column("name", sa.String),
    sa.column("display_order", sa.Integer),
    sa.column("win_probability", sa.Numeric(3, 2)),
    sa.column("is_active", sa.Boolean),
)


def upgrade() -> None:
    op.bulk_insert(
        _stages_table,
        [
            {"name": name, "display_order": display_order, "win_probability": probability, "is_active": True}
            for name, display_order, probability in _DEFAULT_STAGES
        ],
    )


def downgrade() -> None:
    op.execute(
        _stages_table.delete().where(
            _stages_table.c.display_order.in_([display_order for _, display_order, _ in _DEFAULT_STAGES])
        )
    )
