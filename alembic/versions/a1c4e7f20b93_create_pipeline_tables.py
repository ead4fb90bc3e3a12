"""create pipeline tables

Revision ID: a1c4e7f20b93
Revises:
Create Date: 2026-10-16 09:12:44.118302

Creates every table of the HUBZone pipeline. Development databases may
use create_tables() instead and be stamped with:

    alembic stamp head
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = 'a1c4e7f20b93'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _enum(name: str, length: int, *values: str) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False, length=length)


def upgrade() -> None:
    op.create_table(
        'geographic_units',
        sa.Column('geoid', sa.String(length=11), nullable=False),
        sa.Column('unit_type', _enum('unittype', 10, 'tract', 'county'), nullable=False),
        sa.Column('state_fips', sa.String(length=2), nullable=False),
        sa.Column('county_fips', sa.String(length=3), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('land_area', sa.Float(), nullable=True),
        sa.Column('water_area', sa.Float(), nullable=True),
        sa.Column('centroid_lat', sa.Float(), nullable=True),
        sa.Column('centroid_lon', sa.Float(), nullable=True),
        sa.Column('geometry', sa.JSON(), nullable=False),
        sa.Column('geometry_hash', sa.String(length=64), nullable=False),
        sa.Column('bbox_minx', sa.Float(), nullable=False),
        sa.Column('bbox_miny', sa.Float(), nullable=False),
        sa.Column('bbox_maxx', sa.Float(), nullable=False),
        sa.Column('bbox_maxy', sa.Float(), nullable=False),
        sa.Column('vintage', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('geoid'),
    )
    op.create_index('ix_geographic_units_unit_type', 'geographic_units', ['unit_type'])
    op.create_index('ix_geographic_units_state_fips', 'geographic_units', ['state_fips'])

    op.create_table(
        'designations',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('geoid', sa.String(length=11), nullable=False),
        sa.Column('state_fips', sa.String(length=2), nullable=False),
        sa.Column('county_fips', sa.String(length=3), nullable=True),
        sa.Column(
            'designation_type',
            _enum(
                'designationtype', 40,
                'qualified_census_tract', 'qualified_non_metro_county', 'indian_lands',
                'base_closure_area', 'governor_designated', 'redesignated',
            ),
            nullable=False,
        ),
        sa.Column(
            'status',
            _enum('designationstatus', 20, 'active', 'expired', 'pending', 'redesignated'),
            nullable=False,
        ),
        sa.Column('designation_date', sa.Date(), nullable=False),
        sa.Column('expiration_date', sa.Date(), nullable=True),
        sa.Column('grace_period_end_date', sa.Date(), nullable=True),
        sa.Column('source_dataset', sa.String(length=50), nullable=False),
        sa.Column('last_execution_id', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_designations_geoid', 'designations', ['geoid'], unique=True)
    op.create_index('ix_designations_state_fips', 'designations', ['state_fips'])
    op.create_index('ix_designations_status', 'designations', ['status'])

    op.create_table(
        'cache_entries',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('cache_key', sa.String(length=255), nullable=False),
        sa.Column('source_id', sa.String(length=100), nullable=False),
        sa.Column('source_url', sa.Text(), nullable=False),
        sa.Column('local_path', sa.Text(), nullable=False),
        sa.Column('downloaded_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('checksum', sa.String(length=64), nullable=False),
        sa.Column('byte_size', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_cache_entries_cache_key', 'cache_entries', ['cache_key'], unique=True)
    op.create_index('ix_cache_entries_source_id', 'cache_entries', ['source_id'])

    op.create_table(
        'import_executions',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('job_id', sa.String(length=100), nullable=False),
        sa.Column('trigger_type', _enum('triggertype', 20, 'scheduled', 'manual'), nullable=False),
        sa.Column('triggered_by', sa.String(length=255), nullable=True),
        sa.Column(
            'status',
            _enum('executionstatus', 20, 'pending', 'running', 'completed', 'failed', 'cancelled'),
            nullable=False,
        ),
        sa.Column('options', sa.JSON(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('statistics', sa.JSON(), nullable=True),
        sa.Column('errors', sa.JSON(), nullable=False),
        sa.Column('warnings', sa.JSON(), nullable=False),
        sa.Column('changeset', sa.JSON(), nullable=True),
        sa.Column('affected_business_count', sa.Integer(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False),
        sa.Column('max_retries', sa.Integer(), nullable=False),
        sa.Column('cancel_requested', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_import_executions_job_id', 'import_executions', ['job_id'])
    op.create_index('ix_import_executions_status', 'import_executions', ['status'])
    op.create_index('ix_import_executions_job_started', 'import_executions', ['job_id', 'started_at'])

    op.create_table(
        'affected_business_changes',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('execution_id', sa.String(length=64), nullable=False),
        sa.Column('business_id', sa.String(length=64), nullable=False),
        sa.Column('business_name', sa.String(length=255), nullable=True),
        sa.Column('previous_status', sa.String(length=20), nullable=False),
        sa.Column('new_status', sa.String(length=20), nullable=False),
        sa.Column(
            'change_type',
            _enum('businesschangetype', 30, 'gained_hubzone', 'lost_hubzone', 'hubzone_redesignated'),
            nullable=False,
        ),
        sa.Column('geoid', sa.String(length=11), nullable=False),
        sa.Column('grace_period_end_date', sa.Date(), nullable=True),
        sa.Column('notification_sent', sa.Boolean(), nullable=False),
        sa.Column('notification_sent_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_affected_business_changes_execution_id', 'affected_business_changes', ['execution_id'])
    op.create_index('ix_affected_business_changes_business_id', 'affected_business_changes', ['business_id'])

    op.create_table(
        'businesses',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('state_fips', sa.String(length=2), nullable=True),
        sa.Column('principal_office_latitude', sa.Float(), nullable=True),
        sa.Column('principal_office_longitude', sa.Float(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_businesses_state_fips', 'businesses', ['state_fips'])

    op.create_table(
        'execution_locks',
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('holder_execution_id', sa.String(length=64), nullable=True),
        sa.Column('acquired_at', sa.DateTime(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('name'),
    )

    op.create_table(
        'notification_outbox',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('execution_id', sa.String(length=64), nullable=False),
        sa.Column('business_id', sa.String(length=64), nullable=False),
        sa.Column('change_type', sa.String(length=30), nullable=False),
        sa.Column('geoid', sa.String(length=11), nullable=False),
        sa.Column('grace_period_end_date', sa.Date(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('consumed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_notification_outbox_execution_id', 'notification_outbox', ['execution_id'])

    op.create_table(
        'job_notifications',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('execution_id', sa.String(length=64), nullable=False),
        sa.Column('notification_type', sa.String(length=30), nullable=False),
        sa.Column('recipients', sa.JSON(), nullable=False),
        sa.Column('content', sa.JSON(), nullable=False),
        sa.Column('sent_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_job_notifications_execution_id', 'job_notifications', ['execution_id'])


def downgrade() -> None:
    op.drop_table('job_notifications')
    op.drop_table('notification_outbox')
    op.drop_table('execution_locks')
    op.drop_table('businesses')
    op.drop_table('affected_business_changes')
    op.drop_table('import_executions')
    op.drop_table('cache_entries')
    op.drop_table('designations')
    op.drop_table('geographic_units')
