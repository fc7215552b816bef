"""Database schema and connection management for Marginalia.

Uses SQLAlchemy Core (not ORM) for explicit SQL control.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    text,
)
from sqlalchemy.engine import Engine

from marginalia.config import Config

# Shared metadata for all tables
metadata = MetaData()


# =============================================================================
# Bridge State
# =============================================================================

subscriptions = Table(
    "subscriptions",
    metadata,
    Column("token", String, nullable=False),  # Hypothesis API token
    Column("group", String, nullable=False),  # Hypothesis group id
    Column("chat_id", String, nullable=False),  # Discord channel snowflake
    Column("watermark", DateTime, nullable=False),  # Last bridged `updated` value
    Column("created_at", DateTime, nullable=False, default=datetime.utcnow),
    Index("ix_subscriptions_group_chat", "group", "chat_id", unique=True),
)

documents = Table(
    "documents",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("uri", Text, nullable=False, unique=True),
)

annotation_messages = Table(
    "annotation_messages",
    metadata,
    Column("annotation_id", String, nullable=False),
    Column("chat_id", String, nullable=False),
    Column("message_id", String, nullable=False),
    Column("references", JSON, nullable=False),  # Root first, immediate parent last
    Column("group", String, nullable=False),
    Column("document_id", Integer, ForeignKey("documents.id"), nullable=False),
    Column("created_at", DateTime, nullable=False, default=datetime.utcnow),
    Index("ix_annotation_messages_annotation_chat", "annotation_id", "chat_id", unique=True),
    Index("ix_annotation_messages_chat_message", "chat_id", "message_id", unique=True),
)


# =============================================================================
# Schema Version (for migrations)
# =============================================================================

schema_version = Table(
    "_schema_version",
    metadata,
    Column("version", Integer, primary_key=True),
    Column("applied_at", DateTime, nullable=False),
    Column("description", String, nullable=True),
)


# =============================================================================
# Helper Functions
# =============================================================================


def get_engine(config: Config) -> Engine:
    """Create SQLAlchemy engine from config.

    Args:
        config: Application configuration.

    Returns:
        SQLAlchemy Engine instance.
    """
    db_path = config.database_path

    # Ensure data directory exists
    db_path.parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(
        f"sqlite:///{db_path}",
        echo=config.log_level == "DEBUG",
    )

    # Enable WAL mode for better concurrency
    with engine.connect() as conn:
        conn.execute(text("PRAGMA journal_mode=WAL"))
        conn.execute(text("PRAGMA foreign_keys=ON"))
        conn.commit()

    return engine


def create_tables(engine: Engine) -> None:
    """Create all tables in the database.

    Args:
        engine: SQLAlchemy Engine instance.
    """
    metadata.create_all(engine)
