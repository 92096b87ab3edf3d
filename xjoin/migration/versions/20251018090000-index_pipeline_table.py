"""index_pipeline_table

Revision ID: 20251018090000
Revises:
Create Date: 2025-10-18 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '20251018090000'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'xjoin_index_pipeline',
        sa.Column('name', sa.String(63), primary_key=True, comment='Pipeline name (DNS-1123 label)'),
        sa.Column('spec', sa.JSON, nullable=False, comment='Pipeline definition'),
        sa.Column('finalizers', sa.JSON, nullable=False, comment='Finalizer markers'),
        sa.Column('status', sa.JSON, nullable=False, comment='Observed status'),
        sa.Column('resource_version', sa.Integer, nullable=False, server_default='1', comment='Optimistic concurrency token'),
        sa.Column('deletion_timestamp', sa.DateTime(timezone=True), nullable=True, comment='Deletion requested at'),
        sa.Column('gmt_created', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(), comment='Created time'),
        sa.Column('gmt_updated', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(), comment='Updated time'),
    )
    op.create_index('idx_xjoin_index_pipeline_deletion', 'xjoin_index_pipeline', ['deletion_timestamp'])


def downgrade():
    op.drop_index('idx_xjoin_index_pipeline_deletion', table_name='xjoin_index_pipeline')
    op.drop_table('xjoin_index_pipeline')
