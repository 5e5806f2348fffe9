from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class JobKind(str, Enum):
    GENERATION = "generation"
    INJECTION = "injection"
    CLEANUP = "cleanup"
    SNAPSHOT_CREATE = "snapshot-create"
    SNAPSHOT_RESTORE = "snapshot-restore"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class DatasetStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    GENERATED = "generated"
    INJECTING = "injecting"
    COMPLETED = "completed"
    FAILED = "failed"


class RecordStatus(str, Enum):
    GENERATED = "generated"
    INJECTING = "injecting"
    INJECTED = "injected"
    FAILED = "failed"


class SnapshotStatus(str, Enum):
    CREATING = "creating"
    READY = "ready"
    RESTORING = "restoring"
    FAILED = "failed"


class SnapshotKind(str, Enum):
    MANUAL = "manual"
    PRE_INJECTION = "pre_injection"
    GOLDEN_IMAGE = "golden_image"


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    kind: Mapped[JobKind] = mapped_column(
        SAEnum(JobKind, native_enum=False, values_callable=_enum_values),
        nullable=False,
    )
    status: Mapped[JobStatus] = mapped_column(
        SAEnum(JobStatus, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=JobStatus.PENDING,
    )
    user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    dataset_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("datasets.id", ondelete="SET NULL"), nullable=True
    )

    payload: Mapped[dict[str, Any]] = mapped_column(JSON(none_as_null=True), nullable=False, default=dict)
    result: Mapped[dict[str, Any] | None] = mapped_column(JSON(none_as_null=True), nullable=True)

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    worker_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_jobs_claim", "status", "priority", "scheduled_for", "created_at"),
        Index("ix_jobs_kind_status", "kind", "status"),
        Index("ix_jobs_running_lease", "status", "lease_expires_at"),
        Index("ix_jobs_created_id", "created_at", "id"),
        Index("ix_jobs_dataset", "dataset_id"),
        Index("ix_jobs_user", "user_id"),
    )


class JobLock(Base):
    __tablename__ = "job_locks"

    lock_key: Mapped[str] = mapped_column(String(100), primary_key=True)
    owner_job_id: Mapped[str] = mapped_column(String(36), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    heartbeat_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_job_locks_owner_job_id", "owner_job_id"),
        Index("ix_job_locks_expires_at", "expires_at"),
    )


class Dataset(Base):
    __tablename__ = "datasets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    environment_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    template_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[DatasetStatus] = mapped_column(
        SAEnum(DatasetStatus, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=DatasetStatus.PENDING,
    )
    config: Mapped[dict[str, Any]] = mapped_column(JSON(none_as_null=True), nullable=False, default=dict)
    record_counts: Mapped[dict[str, Any]] = mapped_column(JSON(none_as_null=True), nullable=False, default=dict)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_datasets_user_created", "user_id", "created_at"),
        Index("ix_datasets_environment_status", "environment_id", "status"),
    )


class DatasetRecord(Base):
    __tablename__ = "dataset_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    dataset_id: Mapped[str] = mapped_column(String(36), ForeignKey("datasets.id", ondelete="CASCADE"), nullable=False)
    object_type: Mapped[str] = mapped_column(String(64), nullable=False)
    local_id: Mapped[str] = mapped_column(String(128), nullable=False)
    external_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    parent_local_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSON(none_as_null=True), nullable=False, default=dict)
    status: Mapped[RecordStatus] = mapped_column(
        SAEnum(RecordStatus, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=RecordStatus.GENERATED,
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    injected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("dataset_id", "local_id", name="uq_dataset_records_dataset_local_id"),
        Index("ix_dataset_records_dataset_object", "dataset_id", "object_type"),
        Index("ix_dataset_records_dataset_status", "dataset_id", "status"),
    )


class Snapshot(Base):
    __tablename__ = "snapshots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    environment_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    kind: Mapped[SnapshotKind] = mapped_column(
        SAEnum(SnapshotKind, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=SnapshotKind.MANUAL,
    )
    status: Mapped[SnapshotStatus] = mapped_column(
        SAEnum(SnapshotStatus, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=SnapshotStatus.CREATING,
    )
    is_golden_image: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    record_ids: Mapped[dict[str, Any]] = mapped_column(JSON(none_as_null=True), nullable=False, default=dict)
    record_data: Mapped[dict[str, Any]] = mapped_column(JSON(none_as_null=True), nullable=False, default=dict)
    object_counts: Mapped[dict[str, Any]] = mapped_column(JSON(none_as_null=True), nullable=False, default=dict)
    total_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    restore_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    restored_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_snapshots_environment_created", "environment_id", "created_at"),
        Index(
            "uq_snapshots_golden_per_environment",
            "environment_id",
            unique=True,
            sqlite_where=text("is_golden_image = 1"),
            postgresql_where=text("is_golden_image"),
        ),
    )


class SchemaMigration(Base):
    __tablename__ = "schema_migrations"

    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
