"""dealership baseline schema

Revision ID: 0001_dealership_baseline
Revises:
Create Date: 2026-10-16

Creates every table declared on app.dms.models.Base. Tables that already exist are
left alone so the revision can be stamped onto a database bootstrapped by create_all.
"""

from typing import Sequence, Union

from alembic import op
from sqlalchemy import inspect

from app.dms.models import Base


# revision identifiers, used by Alembic.
revision: str = "0001_dealership_baseline"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    bind = op.get_bind()
    existing_tables = set(inspect(bind).get_table_names())
    missing = [t for t in Base.metadata.sorted_tables if t.name not in existing_tables]
    Base.metadata.create_all(bind=bind, tables=missing, checkfirst=True)


def downgrade() -> None:
    Base.metadata.drop_all(bind=op.get_bind())
