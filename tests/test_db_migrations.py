from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine, text

from crmseed.db.migrations import MIGRATIONS, apply_migrations


def _column_names(conn, table_name: str) -> set[str]:
    rows = conn.execute(text(f"PRAGMA table_info('{table_name}')")).mappings().all()
    return {str(row["name"]) for row in rows}


def _index_names(conn, table_name: str) -> set[str]:
    rows = conn.execute(text(f"PRAGMA index_list('{table_name}')")).mappings().all()
    return {str(row["name"]) for row in rows}


def test_apply_migrations_upgrades_legacy_schema(tmp_path: Path) -> None:
    db_path = tmp_path / "legacy.sqlite3"
    engine = create_engine(f"sqlite:///{db_path.as_posix()}", future=True)

    with engine.begin() as conn:
        conn.execute(
            text(
                """
                CREATE TABLE jobs (
                    id VARCHAR(36) PRIMARY KEY,
                    kind VARCHAR(32) NOT NULL,
                    status VARCHAR(16) NOT NULL,
                    payload JSON NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL DEFAULT 3,
                    priority INTEGER NOT NULL DEFAULT 0,
                    scheduled_for DATETIME NOT NULL,
                    progress INTEGER NOT NULL DEFAULT 0,
                    worker_id VARCHAR(128),
                    lease_expires_at DATETIME,
                    error_message TEXT,
                    created_at DATETIME NOT NULL,
                    updated_at DATETIME NOT NULL
                )
                """
            )
        )
        conn.execute(
            text(
                """
                CREATE TABLE dataset_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    dataset_id VARCHAR(36) NOT NULL,
                    object_type VARCHAR(64) NOT NULL,
                    local_id VARCHAR(128) NOT NULL,
                    status VARCHAR(16) NOT NULL
                )
                """
            )
        )

    apply_migrations(engine)
    apply_migrations(engine)

    with engine.begin() as conn:
        job_columns = _column_names(conn, "jobs")
        job_indexes = _index_names(conn, "jobs")
        record_indexes = _index_names(conn, "dataset_records")
        migration_versions = [
            int(row[0])
            for row in conn.execute(text("SELECT version FROM schema_migrations ORDER BY version ASC")).all()
        ]

    assert "progress_message" in job_columns
    assert {"ix_jobs_claim", "ix_jobs_running_lease", "ix_jobs_created_id"}.issubset(job_indexes)
    assert {"ix_dataset_records_dataset_object", "ix_dataset_records_dataset_status"}.issubset(record_indexes)
    assert migration_versions == [step.version for step in MIGRATIONS]


def test_apply_migrations_keeps_newest_golden_image_per_environment(tmp_path: Path) -> None:
    db_path = tmp_path / "legacy_snapshots.sqlite3"
    engine = create_engine(f"sqlite:///{db_path.as_posix()}", future=True)

    with engine.begin() as conn:
        conn.execute(
            text(
                """
                CREATE TABLE snapshots (
                    id VARCHAR(36) PRIMARY KEY,
                    environment_id VARCHAR(128) NOT NULL,
                    is_golden_image BOOLEAN NOT NULL DEFAULT 0,
                    updated_at DATETIME NOT NULL
                )
                """
            )
        )
        conn.execute(
            text(
                """
                INSERT INTO snapshots (id, environment_id, is_golden_image, updated_at) VALUES
                    ('old', 'org-1', 1, '2024-01-01 00:00:00'),
                    ('new', 'org-1', 1, '2024-02-01 00:00:00'),
                    ('other', 'org-2', 1, '2024-01-15 00:00:00'),
                    ('plain', 'org-1', 0, '2024-03-01 00:00:00')
                """
            )
        )

    applied = apply_migrations(engine)
    assert applied == [step.version for step in MIGRATIONS]
    assert apply_migrations(engine) == []

    with engine.begin() as conn:
        golden = {
            str(row[0])
            for row in conn.execute(text("SELECT id FROM snapshots WHERE is_golden_image = 1")).all()
        }
        indexes = _index_names(conn, "snapshots")

    assert golden == {"new", "other"}
    assert "uq_snapshots_golden_per_environment" in indexes

    try:
        with engine.begin() as conn:
            conn.execute(text("UPDATE snapshots SET is_golden_image = 1 WHERE id = 'plain'"))
    except Exception as exc:
        assert "UNIQUE" in str(exc).upper()
    else:
        raise AssertionError("expected the unique golden-image index to reject a second golden row")
