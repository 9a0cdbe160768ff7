"""One prevented record per idempotency key.

Revision ID: 002
Revises: 001
Create Date: 2026-10-20

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

PREVENTED_STATUS_CLAUSE = sa.text("status = 'prevented'")


def upgrade() -> None:
    conn = op.get_bind()
    indexes = {ix["name"] for ix in sa.inspect(conn).get_indexes("action_queue")}
    if "uq_action_queue_prevented_idempotency_key" in indexes:
        return

    if conn.dialect.name == "postgresql":
        # Keep one row per key from before the constraint existed
        op.execute(
            "DELETE FROM action_queue a USING action_queue b "
            "WHERE a.status = 'prevented' AND b.status = 'prevented' "
            "AND a.idempotency_key = b.idempotency_key AND a.id::text > b.id::text"
        )
    op.create_index(
        "uq_action_queue_prevented_idempotency_key", "action_queue", ["idempotency_key"],
        unique=True, postgresql_where=PREVENTED_STATUS_CLAUSE, sqlite_where=PREVENTED_STATUS_CLAUSE,
    )


def downgrade() -> None:
    op.drop_index("uq_action_queue_prevented_idempotency_key", table_name="action_queue")
