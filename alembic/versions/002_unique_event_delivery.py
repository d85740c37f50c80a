"""one delivery per webhook and event

Revision ID: 002
Revises: 001
Create Date: 2026-10-18 10:00:00.000000

"""
from typing import Sequence, Union
from alembic import op


# revision identifiers, used by Alembic.
revision: str = '002'
down_revision: Union[str, None] = '001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_unique_constraint(
        'uq_webhook_deliveries_webhook_event',
        'webhook_deliveries',
        ['webhook_id', 'event_id'],
    )


def downgrade() -> None:
    op.drop_constraint('uq_webhook_deliveries_webhook_event', 'webhook_deliveries', type_='unique')
