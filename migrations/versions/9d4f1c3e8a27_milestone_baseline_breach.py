"""milestone_baseline_breach

Track deliverables running past a committed milestone end date.

Revision ID: 9d4f1c3e8a27
Revises: 7c1e2a9b4d10
Create Date: 2026-10-16 15:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


revision = "9d4f1c3e8a27"
down_revision = "7c1e2a9b4d10"
branch_labels = None
depends_on = None


def _table_names(bind) -> set[str]:
    insp = sa.inspect(bind)
    return set(insp.get_table_names())


def _columns(bind, table_name: str) -> set[str]:
    insp = sa.inspect(bind)
    return {c["name"] for c in insp.get_columns(table_name)}


def upgrade():
    bind = op.get_bind()
    if "work_items" not in _table_names(bind):
        return

    cols = _columns(bind, "work_items")
    with op.batch_alter_table("work_items") as batch_op:
        if "baseline_breached" not in cols:
            batch_op.add_column(
                sa.Column("baseline_breached", sa.Boolean(), nullable=False, server_default=sa.false())
            )
        if "baseline_breach_reason" not in cols:
            batch_op.add_column(sa.Column("baseline_breach_reason", sa.Text(), nullable=True))
        if "baseline_breached_at" not in cols:
            batch_op.add_column(sa.Column("baseline_breached_at", sa.DateTime(timezone=True), nullable=True))
        if "baseline_breached_by" not in cols:
            batch_op.add_column(sa.Column("baseline_breached_by", sa.Integer(), nullable=True))
            batch_op.create_foreign_key(
                "fk_work_items_baseline_breached_by_users",
                "users",
                ["baseline_breached_by"],
                ["id"],
                ondelete="SET NULL",
            )


def downgrade():
    bind = op.get_bind()
    if "work_items" not in _table_names(bind):
        return

    cols = _columns(bind, "work_items")
    with op.batch_alter_table("work_items") as batch_op:
        if "baseline_breached_by" in cols:
            batch_op.drop_constraint("fk_work_items_baseline_breached_by_users", type_="foreignkey")
        for name in ("baseline_breached_by", "baseline_breached_at", "baseline_breach_reason", "baseline_breached"):
            if name in cols:
                batch_op.drop_column(name)
