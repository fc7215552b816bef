"""Forward-only schema migrations.

Each ``NNN_name.py`` module here defines ``VERSION``, ``DESCRIPTION`` and
``upgrade(engine)``, and may define ``check(engine)`` to adopt a database
whose tables were created before the runner tracked them. ``run`` and
``subs`` migrate on open; ``db migrate`` does it explicitly.
"""

from marginalia.migrations.runner import get_current_version, get_migrations, migrate

__all__ = ["get_current_version", "get_migrations", "migrate"]
