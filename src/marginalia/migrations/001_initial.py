"""Initial schema - subscriptions, documents and annotation/message mappings."""

from sqlalchemy import inspect

from marginalia.database import create_tables

VERSION = 1
DESCRIPTION = "Initial bridge schema"


def upgrade(engine):
    """Create all tables defined in the schema."""
    create_tables(engine)


def check(engine) -> bool:
    """Check if this migration has been applied.

    Returns True if the bridge tables exist.
    """
    inspector = inspect(engine)
    table_names = set(inspector.get_table_names())
    required = {"subscriptions", "documents", "annotation_messages"}
    return required.issubset(table_names)
