"""
SQLAlchemy models for the HUBZone designation pipeline.

Reference geography, the mutable designation set, the dataset cache,
execution history, and the hand-off tables all share one declarative base.
"""
from datetime import datetime
from sqlalchemy import (
    Column,
    Integer,
    String,
    Date,
    DateTime,
    Text,
    JSON,
    Enum,
    Float,
    Boolean,
    Index,
)
from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()


def _enum_values(enum_cls):
    return [m.value for m in enum_cls]


class UnitType(str, enum.Enum):
    """Geographic unit granularity."""
    TRACT = "tract"
    COUNTY = "county"


class DesignationType(str, enum.Enum):
    """HUBZone designation types."""
    QUALIFIED_CENSUS_TRACT = "qualified_census_tract"
    QUALIFIED_NON_METRO_COUNTY = "qualified_non_metro_county"
    INDIAN_LANDS = "indian_lands"
    BASE_CLOSURE_AREA = "base_closure_area"
    GOVERNOR_DESIGNATED = "governor_designated"
    REDESIGNATED = "redesignated"


class DesignationStatus(str, enum.Enum):
    """Designation status - at most one ACTIVE row per geographic unit."""
    ACTIVE = "active"
    EXPIRED = "expired"
    PENDING = "pending"
    REDESIGNATED = "redesignated"


class ExecutionStatus(str, enum.Enum):
    """Import execution status: pending -> running -> completed/failed/cancelled."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TriggerType(str, enum.Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"


class BusinessChangeType(str, enum.Enum):
    """How a business's HUBZone status moved during a run."""
    GAINED_HUBZONE = "gained_hubzone"
    LOST_HUBZONE = "lost_hubzone"
    HUBZONE_REDESIGNATED = "hubzone_redesignated"


class GeographicUnit(Base):
    """
    A census tract or county with its boundary.

    Reference data: rewritten only when the upstream geometry hash changes.
    """
    __tablename__ = "geographic_units"

    geoid = Column(String(11), primary_key=True)  # 11-digit tract GEOID or 5-digit county FIPS
    unit_type = Column(
        Enum(UnitType, native_enum=False, length=10, values_callable=_enum_values),
        nullable=False,
        index=True
    )
    state_fips = Column(String(2), nullable=False, index=True)
    county_fips = Column(String(3), nullable=False)
    name = Column(String(255), nullable=True)

    land_area = Column(Float, nullable=True)  # square meters
    water_area = Column(Float, nullable=True)
    centroid_lat = Column(Float, nullable=True)
    centroid_lon = Column(Float, nullable=True)

    # GeoJSON geometry (Polygon or MultiPolygon)
    geometry = Column(JSON, nullable=False)
    geometry_hash = Column(String(64), nullable=False)

    # Bounding box for coarse spatial filtering
    bbox_minx = Column(Float, nullable=False)
    bbox_miny = Column(Float, nullable=False)
    bbox_maxx = Column(Float, nullable=False)
    bbox_maxy = Column(Float, nullable=False)

    vintage = Column(Integer, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<GeographicUnit(geoid={self.geoid}, unit_type={self.unit_type})>"


class Designation(Base):
    """
    HUBZone designation of one geographic unit.

    Keyed by GEOID: redesignation and expiry transition the row rather than
    deleting it, and a superseding type rewrites it in place.
    """
    __tablename__ = "designations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    geoid = Column(String(11), nullable=False, unique=True, index=True)
    state_fips = Column(String(2), nullable=False, index=True)
    county_fips = Column(String(3), nullable=True)

    designation_type = Column(
        Enum(DesignationType, native_enum=False, length=40, values_callable=_enum_values),
        nullable=False
    )
    status = Column(
        Enum(DesignationStatus, native_enum=False, length=20, values_callable=_enum_values),
        nullable=False,
        default=DesignationStatus.ACTIVE,
        index=True
    )

    designation_date = Column(Date, nullable=False)
    expiration_date = Column(Date, nullable=True)
    grace_period_end_date = Column(Date, nullable=True)
    source_dataset = Column(String(50), nullable=False)  # sba_feed, census_acs

    last_execution_id = Column(String(64), nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self) -> str:
        return (
            f"<Designation(geoid={self.geoid}, type={self.designation_type}, "
            f"status={self.status})>"
        )


class CacheEntry(Base):
    """
    Metadata for one locally cached source dataset.

    Created on successful download; read-only until its TTL expires.
    """
    __tablename__ = "cache_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cache_key = Column(String(255), nullable=False, unique=True, index=True)
    source_id = Column(String(100), nullable=False, index=True)
    source_url = Column(Text, nullable=False)
    local_path = Column(Text, nullable=False)

    downloaded_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    expires_at = Column(DateTime, nullable=False)

    checksum = Column(String(64), nullable=False)  # sha256 hex
    byte_size = Column(Integer, nullable=False)

    def __repr__(self) -> str:
        return f"<CacheEntry(cache_key={self.cache_key}, expires_at={self.expires_at})>"


class ImportExecution(Base):
    """
    One run of the designation import pipeline.

    MANDATORY: every run creates one row, and only the job execution engine
    mutates it.
    """
    __tablename__ = "import_executions"

    id = Column(String(64), primary_key=True)  # exec_<hex>
    job_id = Column(String(100), nullable=False, index=True)

    trigger_type = Column(
        Enum(TriggerType, native_enum=False, length=20, values_callable=_enum_values),
        nullable=False
    )
    triggered_by = Column(String(255), nullable=True)

    status = Column(
        Enum(ExecutionStatus, native_enum=False, length=20, values_callable=_enum_values),
        nullable=False,
        default=ExecutionStatus.PENDING,
        index=True
    )
    options = Column(JSON, nullable=False, default=dict)  # dry_run, skip_notifications, states

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    # Results
    statistics = Column(JSON, nullable=True)
    errors = Column(JSON, nullable=False, default=list)
    warnings = Column(JSON, nullable=False, default=list)
    changeset = Column(JSON, nullable=True)  # summary of applied (or would-be) changes
    affected_business_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    # Retry tracking
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=0)

    cancel_requested = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_import_executions_job_started", "job_id", "started_at"),
    )

    @property
    def is_finished(self) -> bool:
        return self.status in (
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        )

    def __repr__(self) -> str:
        return (
            f"<ImportExecution(id={self.id}, status={self.status}, "
            f"trigger_type={self.trigger_type}, started_at={self.started_at})>"
        )


class AffectedBusinessChange(Base):
    """A business whose HUBZone status changed during one execution."""
    __tablename__ = "affected_business_changes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    execution_id = Column(String(64), nullable=False, index=True)
    business_id = Column(String(64), nullable=False, index=True)
    business_name = Column(String(255), nullable=True)

    previous_status = Column(String(20), nullable=False)  # in_hubzone / not_in_hubzone
    new_status = Column(String(20), nullable=False)
    change_type = Column(
        Enum(BusinessChangeType, native_enum=False, length=30, values_callable=_enum_values),
        nullable=False
    )
    geoid = Column(String(11), nullable=False)
    grace_period_end_date = Column(Date, nullable=True)

    notification_sent = Column(Boolean, nullable=False, default=False)
    notification_sent_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self) -> str:
        return (
            f"<AffectedBusinessChange(business_id={self.business_id}, "
            f"change_type={self.change_type}, geoid={self.geoid})>"
        )


class Business(Base):
    """
    Registered business principal-office location.

    Owned by the business registry; the pipeline only reads it.
    """
    __tablename__ = "businesses"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    state_fips = Column(String(2), nullable=True, index=True)
    principal_office_latitude = Column(Float, nullable=True)
    principal_office_longitude = Column(Float, nullable=True)

    def __repr__(self) -> str:
        return f"<Business(id={self.id}, name='{self.name}')>"


class ExecutionLock(Base):
    """
    Lease row enforcing single-flight execution across instances.

    Acquired by compare-and-swap on (holder IS NULL OR expires_at < now).
    """
    __tablename__ = "execution_locks"

    name = Column(String(100), primary_key=True)
    holder_execution_id = Column(String(64), nullable=True)
    acquired_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<ExecutionLock(name={self.name}, holder={self.holder_execution_id})>"


class NotificationOutbox(Base):
    """Status-change notifications handed off to the notification service."""
    __tablename__ = "notification_outbox"

    id = Column(Integer, primary_key=True, autoincrement=True)
    execution_id = Column(String(64), nullable=False, index=True)
    business_id = Column(String(64), nullable=False)
    change_type = Column(String(30), nullable=False)
    geoid = Column(String(11), nullable=False)
    grace_period_end_date = Column(Date, nullable=True)
    payload = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    consumed_at = Column(DateTime, nullable=True)


class JobNotification(Base):
    """Admin completion notification for an execution (audit record)."""
    __tablename__ = "job_notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    execution_id = Column(String(64), nullable=False, index=True)
    notification_type = Column(String(30), nullable=False, default="completion")
    recipients = Column(JSON, nullable=False, default=list)
    content = Column(JSON, nullable=False)
    sent_at = Column(DateTime, nullable=False, default=datetime.utcnow)
