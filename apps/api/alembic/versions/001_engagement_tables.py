"""engagement tables

Revision ID: 001
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Append-only activity log (written upstream, read by detection)
    op.create_table(
        'client_activity_event',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('client_id', sa.String(64), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('type', sa.Text(), nullable=False),
        sa.Column('category', sa.Text(), nullable=False, server_default='general'),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_client_activity_event_client_id', 'client_activity_event', ['client_id'])
    op.create_index('ix_client_activity_event_client_ts', 'client_activity_event', ['client_id', 'timestamp'])

    op.create_table(
        'engagement_trigger',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('client_id', sa.String(64), nullable=False),
        sa.Column('type', sa.Text(), nullable=False),
        sa.Column('severity', sa.Text(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('recommended_action', sa.Text(), nullable=True),
        sa.Column('is_resolved', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('detected_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_engagement_trigger_client_id', 'engagement_trigger', ['client_id'])
    op.create_index(
        'ix_engagement_trigger_client_type_detected',
        'engagement_trigger',
        ['client_id', 'type', 'detected_at'],
    )

    op.create_table(
        'engagement_recommendation',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('client_id', sa.String(64), nullable=False),
        sa.Column('trigger_id', sa.String(36), nullable=True),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('priority', sa.Text(), nullable=False, server_default='medium'),
        sa.Column('status', sa.Text(), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sent_via', sa.Text(), nullable=True),
        sa.Column('scheduled_for', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['trigger_id'], ['engagement_trigger.id'], ),
        sa.CheckConstraint(
            "status IN ('pending', 'sent', 'dismissed', 'scheduled')",
            name='ck_engagement_recommendation_status',
        ),
    )
    op.create_index('ix_engagement_recommendation_client_id', 'engagement_recommendation', ['client_id'])
    op.create_index(
        'ix_engagement_recommendation_client_status',
        'engagement_recommendation',
        ['client_id', 'status'],
    )

    op.create_table(
        'notification_preference',
        sa.Column('client_id', sa.String(64), primary_key=True),
        sa.Column('sms_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('web_push_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('in_app_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('frequency', sa.Text(), nullable=False, server_default='moderate'),
        sa.Column('daily_limit', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('quiet_hours_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('quiet_hours_start', sa.String(5), nullable=False, server_default='22:00'),
        sa.Column('quiet_hours_end', sa.String(5), nullable=False, server_default='08:00'),
        sa.Column('timezone', sa.Text(), nullable=False, server_default='UTC'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'in_app_notification',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('client_id', sa.String(64), nullable=False),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('type', sa.Text(), nullable=False, server_default='message'),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('read_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_in_app_notification_client_id', 'in_app_notification', ['client_id'])


def downgrade() -> None:
    op.drop_index('ix_in_app_notification_client_id', table_name='in_app_notification')
    op.drop_table('in_app_notification')
    op.drop_table('notification_preference')
    op.drop_index('ix_engagement_recommendation_client_status', table_name='engagement_recommendation')
    op.drop_index('ix_engagement_recommendation_client_id', table_name='engagement_recommendation')
    op.drop_table('engagement_recommendation')
    op.drop_index('ix_engagement_trigger_client_type_detected', table_name='engagement_trigger')
    op.drop_index('ix_engagement_trigger_client_id', table_name='engagement_trigger')
    op.drop_table('engagement_trigger')
    op.drop_index('ix_client_activity_event_client_ts', table_name='client_activity_event')
    op.drop_index('ix_client_activity_event_client_id', table_name='client_activity_event')
    op.drop_table('client_activity_event')
