"""Create attachment storage tables

Revision ID: create_attachment_tables
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'create_attachment_tables'
down_revision = None
branch_labels = None
depends_on = None


attachment_status = sa.Enum('PENDING_UPLOAD', 'ACTIVE', 'FAILED', 'DELETED', name='attachmentstatus')
backup_kind = sa.Enum('THUMBNAIL', 'COMPRESSED', 'SNIPPET', name='backupkind')
outbox_event_type = sa.Enum('VERIFY_UPLOAD', 'RETRY_UPLOAD', 'DELETE_REMOTE', name='outboxeventtype')


def upgrade() -> None:
    # Attachments
    op.create_table(
        'attachments',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('organization_id', sa.String(), nullable=False),
        sa.Column('owner_type', sa.String(length=50), nullable=False),
        sa.Column('owner_id', sa.String(), nullable=False),

        sa.Column('file_name', sa.String(), nullable=False),
        sa.Column('mime_type', sa.String(), nullable=False),
        sa.Column('file_size', sa.Integer(), nullable=False),

        sa.Column('remote_url', sa.String(), nullable=True),
        sa.Column('remote_object_id', sa.String(), nullable=True),

        sa.Column('backup_payload', sa.LargeBinary(), nullable=True),
        sa.Column('backup_kind', backup_kind, nullable=True),
        sa.Column('backup_available', sa.Boolean(), nullable=False, server_default='false'),

        sa.Column('status', attachment_status, nullable=False),
        sa.Column('upload_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('uploaded_by', sa.String(), nullable=True),
        sa.Column('uploaded_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('last_verified_at', sa.DateTime(), nullable=True),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),

        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_attachments_organization_id', 'attachments', ['organization_id'])
    op.create_index('ix_attachments_owner', 'attachments', ['owner_type', 'owner_id'])
    op.create_index('ix_attachments_remote_object_id', 'attachments', ['remote_object_id'])
    op.create_index('ix_attachments_status', 'attachments', ['status'])
    op.create_index('ix_attachments_uploaded_at', 'attachments', ['uploaded_at'])

    # Outbox events
    op.create_table(
        'outbox_events',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('event_type', outbox_event_type, nullable=False),
        sa.Column('entity_type', sa.String(), nullable=False, server_default='attachment'),
        sa.Column('entity_id', sa.String(), nullable=False),
        sa.Column('organization_id', sa.String(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('scheduled_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('orphaned', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('failure_count', sa.Integer(), nullable=False, server_default='0'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_outbox_events_event_type', 'outbox_events', ['event_type'])
    op.create_index('ix_outbox_events_entity_id', 'outbox_events', ['entity_id'])
    op.create_index('ix_outbox_events_organization_id', 'outbox_events', ['organization_id'])
    op.create_index('ix_outbox_events_created_at', 'outbox_events', ['created_at'])
    op.create_index('ix_outbox_events_due', 'outbox_events', ['processed_at', 'orphaned', 'scheduled_at'])

    # Audit logs
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('organization_id', sa.String(), nullable=False),
        sa.Column('actor_id', sa.String(), nullable=True),
        sa.Column('entity_type', sa.String(), nullable=False),
        sa.Column('entity_id', sa.String(), nullable=False),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('changes', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_logs_organization_id', 'audit_logs', ['organization_id'])
    op.create_index('ix_audit_logs_actor_id', 'audit_logs', ['actor_id'])
    op.create_index('ix_audit_logs_entity_type', 'audit_logs', ['entity_type'])
    op.create_index('ix_audit_logs_entity_id', 'audit_logs', ['entity_id'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_created_at', 'audit_logs', ['created_at'])


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('outbox_events')
    op.drop_table('attachments')

    # Drop enum types (PostgreSQL)
    op.execute('DROP TYPE IF EXISTS outboxeventtype')
    op.execute('DROP TYPE IF EXISTS backupkind')
    op.execute('DROP TYPE IF EXISTS attachmentstatus')
