"""At most one primary contact per client

Revision ID: 0002_primary_contact
Revises: 0001_portal
Create Date: 2026-10-18 15:00:00.000000

A partial unique index on ``client_contacts(client_id) WHERE is_primary``.
Any client that already has several primaries keeps only its oldest one.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "0002_primary_contact"
down_revision: Union[str, None] = "0001_portal"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

INDEX_NAME = "uq_client_contacts_one_primary"


def upgrade() -> None:
    op.execute(
        """
        UPDATE client_contacts SET is_primary = false
        WHERE is_primary AND id NOT IN (
            SELECT DISTINCT ON (client_id) id FROM client_contacts
            WHERE is_primary
            ORDER BY client_id, created_at, id
        )
        """
    )
    op.create_index(
        INDEX_NAME,
        "client_contacts",
        ["client_id"],
        unique=True,
        postgresql_where=sa.text("is_primary"),
    )


def downgrade() -> None:
    op.drop_index(INDEX_NAME, table_name="client_contacts")
