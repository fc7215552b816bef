"""Migration runner for Marginalia database schema evolution.

Discovers NNN_*.py modules next to this file, tracks applied versions in
``_schema_version`` and applies pending ones in order.
"""

from __future__ import annotations

import importlib
from datetime import datetime, timezone
from pathlib import Path
from types import ModuleType

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine

from marginalia.database import schema_version
from marginalia.logging import get_logger

log = get_logger("migrations")


def get_migrations() -> list[tuple[int, ModuleType]]:
    """Discover all migration modules in the migrations directory.

    Returns:
        List of (version, module) tuples, sorted by version.
    """
    migrations_dir = Path(__file__).parent
    migrations: list[tuple[int, ModuleType]] = []

    for path in sorted(migrations_dir.glob("[0-9][0-9][0-9]_*.py")):
        module = importlib.import_module(f"marginalia.migrations.{path.stem}")

        if not hasattr(module, "VERSION"):
            log.warning("migration_missing_version", file=path.stem)
            continue

        migrations.append((module.VERSION, module))

    return sorted(migrations, key=lambda item: item[0])


def get_current_version(engine: Engine) -> int:
    """Get current schema version from database, or 0 if none applied."""
    if "_schema_version" not in inspect(engine).get_table_names():
        return 0

    with engine.connect() as conn:
        result = conn.execute(text("SELECT MAX(version) FROM _schema_version")).scalar()
        return result or 0


def migrate(engine: Engine, target_version: int | None = None) -> int:
    """Apply pending migrations up to target_version.

    A migration whose ``check()`` reports it as already present (for example
    tables created by ``create_tables`` before the runner existed) is
    recorded without running ``upgrade()``.

    Args:
        engine: SQLAlchemy engine.
        target_version: Maximum version to apply. If None, apply all.

    Returns:
        New current version after migrations.
    """
    schema_version.create(engine, checkfirst=True)
    current = get_current_version(engine)
    applied_count = 0

    for version, module in get_migrations():
        if version <= current:
            continue
        if target_version is not None and version > target_version:
            break

        description = getattr(module, "DESCRIPTION", "No description")
        check = getattr(module, "check", None)

        try:
            if check is not None and check(engine):
                log.info("migration_already_present", version=version)
            else:
                log.info("applying_migration", version=version, description=description)
                module.upgrade(engine)

            with engine.connect() as conn:
                conn.execute(
                    schema_version.insert().values(
                        version=version,
                        applied_at=datetime.now(timezone.utc),
                        description=description,
                    )
                )
                conn.commit()
        except Exception as e:
            log.error("migration_failed", version=version, error=str(e))
            raise

        applied_count += 1

    if applied_count == 0:
        log.info("no_pending_migrations")
    else:
        log.info("migrations_complete", count=applied_count)

    return get_current_version(engine)
