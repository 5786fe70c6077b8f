"""Versioned schema migrations for the exercise store.

Migrations are applied in order at startup; the highest applied version is
recorded in ``schema_version``. A migration is never edited once released,
new schema changes get a new entry at the end of ``MIGRATIONS``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
    insert,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine

logger = logging.getLogger(__name__)

_version_metadata = MetaData()
schema_version = Table(
    "schema_version",
    _version_metadata,
    Column("version", Integer, primary_key=True),
    Column("description", String, nullable=False),
    Column("applied_at", DateTime, nullable=False),
)


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    apply: Callable[[Connection], None]


def _v1_initial_hierarchy(conn: Connection) -> None:
    metadata = MetaData()
    Table(
        "courses",
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("name", String, nullable=False, unique=True),
        Column("created_at", DateTime, server_default=text("CURRENT_TIMESTAMP")),
    )
    Table(
        "weeks",
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("course_id", Integer, ForeignKey("courses.id", ondelete="CASCADE"), nullable=False),
        Column("week_number", Integer, nullable=False),
        Column("created_at", DateTime, server_default=text("CURRENT_TIMESTAMP")),
        UniqueConstraint("course_id", "week_number", name="uq_weeks_course_week"),
    )
    Table(
        "exercises",
        metadata,
        Column("id", String, primary_key=True),
        Column("week_id", Integer, ForeignKey("weeks.id", ondelete="CASCADE"), nullable=False),
        Column("name", String, nullable=False),
        Column("tags_json", Text, nullable=False),
        Column("image_path", String),
        Column("created_at", BigInteger),
    )
    Table(
        "app_settings",
        metadata,
        Column("key", String, primary_key=True),
        Column("value", Text, nullable=False),
    )
    metadata.create_all(conn)


def _v2_exercise_details(conn: Connection) -> None:
    for column, ddl_type in (
        ("content", "TEXT"),
        ("notes", "TEXT"),
        ("page_image_path", "VARCHAR"),
        ("bounding_box_json", "TEXT"),
    ):
        conn.execute(text(f"ALTER TABLE exercises ADD COLUMN {column} {ddl_type}"))


def _v3_exercise_week_index(conn: Connection) -> None:
    conn.execute(text("CREATE INDEX IF NOT EXISTS ix_exercises_week_id ON exercises (week_id)"))


MIGRATIONS: List[Migration] = [
    Migration(1, "courses, weeks, exercises and app_settings", _v1_initial_hierarchy),
    Migration(2, "exercise content, notes, page image and bounding box", _v2_exercise_details),
    Migration(3, "index exercises by week", _v3_exercise_week_index),
]


def current_version(conn: Connection) -> int:
    _version_metadata.create_all(conn)
    return conn.execute(select(func.max(schema_version.c.version))).scalar() or 0


def apply_migrations(engine: Engine, migrations: List[Migration] = MIGRATIONS) -> int:
    """
    Bring the database up to the latest version. Each migration runs in its own
    transaction together with its version row. Returns the resulting version.
    """
    with engine.begin() as conn:
        version = current_version(conn)

    for migration in sorted(migrations, key=lambda m: m.version):
        if migration.version <= version:
            continue
        logger.info("Applying schema migration %d: %s", migration.version, migration.description)
        with engine.begin() as conn:
            migration.apply(conn)
            conn.execute(
                insert(schema_version).values(
                    version=migration.version,
                    description=migration.description,
                    applied_at=datetime.utcnow(),
                )
            )
        version = migration.version
    return version
