from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from sqlalchemy import Connection, Engine, inspect, text


@dataclass(frozen=True)
class MigrationStep:
    version: int
    name: str
    apply: Callable[[Connection], None]


def _ensure_schema_migrations_table(conn: Connection) -> None:
    conn.execute(
        text(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name VARCHAR(255) NOT NULL,
                applied_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
    )


def _table_exists(conn: Connection, table_name: str) -> bool:
    inspector = inspect(conn)
    return inspector.has_table(table_name)


def _column_exists(conn: Connection, table_name: str, column_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False

    if conn.engine.dialect.name == "sqlite":
        rows = conn.execute(text(f"PRAGMA table_info('{table_name}')")).mappings().all()
        return any(str(row["name"]) == column_name for row in rows)

    inspector = inspect(conn)
    return any(col["name"] == column_name for col in inspector.get_columns(table_name))


def _index_exists(conn: Connection, table_name: str, index_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False

    if conn.engine.dialect.name == "sqlite":
        rows = conn.execute(text(f"PRAGMA index_list('{table_name}')")).mappings().all()
        return any(str(row["name"]) == index_name for row in rows)

    inspector = inspect(conn)
    return any(index.get("name") == index_name for index in inspector.get_indexes(table_name))


def _migration_0001_baseline(_conn: Connection) -> None:
    return


def _migration_0002_jobs_claim_indexes(conn: Connection) -> None:
    if not _table_exists(conn, "jobs"):
        return

    if not _index_exists(conn, "jobs", "ix_jobs_claim"):
        conn.execute(text("CREATE INDEX ix_jobs_claim ON jobs (status, priority, scheduled_for, created_at)"))

    if not _index_exists(conn, "jobs", "ix_jobs_running_lease"):
        conn.execute(text("CREATE INDEX ix_jobs_running_lease ON jobs (status, lease_expires_at)"))

    if not _index_exists(conn, "jobs", "ix_jobs_created_id"):
        conn.execute(text("CREATE INDEX ix_jobs_created_id ON jobs (created_at, id)"))


def _migration_0003_job_progress_message(conn: Connection) -> None:
    if _table_exists(conn, "jobs") and not _column_exists(conn, "jobs", "progress_message"):
        conn.execute(text("ALTER TABLE jobs ADD COLUMN progress_message TEXT"))


def _migration_0004_dataset_record_indexes(conn: Connection) -> None:
    if not _table_exists(conn, "dataset_records"):
        return

    if not _index_exists(conn, "dataset_records", "ix_dataset_records_dataset_object"):
        conn.execute(
            text("CREATE INDEX ix_dataset_records_dataset_object ON dataset_records (dataset_id, object_type)")
        )

    if not _index_exists(conn, "dataset_records", "ix_dataset_records_dataset_status"):
        conn.execute(text("CREATE INDEX ix_dataset_records_dataset_status ON dataset_records (dataset_id, status)"))


def _migration_0005_single_golden_image_per_environment(conn: Connection) -> None:
    if not _table_exists(conn, "snapshots"):
        return

    # Keep only the most recently updated golden image per environment.
    conn.execute(
        text(
            """
            UPDATE snapshots
            SET is_golden_image = :false_value
            WHERE is_golden_image = :true_value
              AND id NOT IN (
                  SELECT id FROM (
                      SELECT s.id AS id
                      FROM snapshots s
                      WHERE s.is_golden_image = :true_value
                        AND NOT EXISTS (
                            SELECT 1 FROM snapshots newer
                            WHERE newer.environment_id = s.environment_id
                              AND newer.is_golden_image = :true_value
                              AND (newer.updated_at > s.updated_at
                                   OR (newer.updated_at = s.updated_at AND newer.id > s.id))
                        )
                  ) AS keepers
              )
            """
        ),
        {"true_value": True, "false_value": False},
    )

    if _index_exists(conn, "snapshots", "uq_snapshots_golden_per_environment"):
        return

    predicate = "is_golden_image = 1" if conn.engine.dialect.name == "sqlite" else "is_golden_image"
    conn.execute(
        text(
            "CREATE UNIQUE INDEX uq_snapshots_golden_per_environment "
            f"ON snapshots (environment_id) WHERE {predicate}"
        )
    )


MIGRATIONS: tuple[MigrationStep, ...] = (
    MigrationStep(version=1, name="baseline", apply=_migration_0001_baseline),
    MigrationStep(version=2, name="jobs_claim_indexes", apply=_migration_0002_jobs_claim_indexes),
    MigrationStep(version=3, name="job_progress_message", apply=_migration_0003_job_progress_message),
    MigrationStep(version=4, name="dataset_record_indexes", apply=_migration_0004_dataset_record_indexes),
    MigrationStep(
        version=5,
        name="single_golden_image_per_environment",
        apply=_migration_0005_single_golden_image_per_environment,
    ),
)


def apply_migrations(engine: Engine) -> list[int]:
    applied: list[int] = []
    with engine.begin() as conn:
        _ensure_schema_migrations_table(conn)

        existing_versions = {
            int(row[0])
            for row in conn.execute(text("SELECT version FROM schema_migrations ORDER BY version ASC")).all()
        }

        for step in MIGRATIONS:
            if step.version in existing_versions:
                continue

            step.apply(conn)
            conn.execute(
                text("INSERT INTO schema_migrations(version, name) VALUES (:version, :name)"),
                {"version": step.version, "name": step.name},
            )
            applied.append(step.version)
    return applied
