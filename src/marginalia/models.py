"""Pydantic models for Marginalia entities.

These models bridge between the database (SQLAlchemy Core), the Hypothesis
API and application code, providing validation and serialization.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

# "acct:alice@hypothes.is" -> "alice"
ACCOUNT_PATTERN = re.compile(r"^acct:(?P<name>[^@]+)@.+$")

TEXT_QUOTE_SELECTOR = "TextQuoteSelector"


# =============================================================================
# Helper Functions
# =============================================================================


def utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(ts: datetime) -> datetime:
    """Return ts as an aware UTC datetime.

    SQLite hands back naive datetimes; those are assumed to already be UTC.
    """
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


# =============================================================================
# Hypothesis Annotations
# =============================================================================


class Selector(BaseModel):
    """One selector of an annotation target."""

    type: str
    exact: str | None = None


class Target(BaseModel):
    """The part of a document an annotation is anchored to."""

    source: str | None = None
    selector: list[Selector] = Field(default_factory=list)


class UserInfo(BaseModel):
    """Profile details Hypothesis attaches to an annotation."""

    display_name: str | None = None


class AnnotationMetadata(BaseModel):
    """What a mapping remembers about an annotation besides its id."""

    model_config = ConfigDict(from_attributes=True)

    references: list[str] = Field(default_factory=list)
    group: str
    uri: str = ""


class Annotation(BaseModel):
    """A Hypothesis annotation as returned by the API."""

    id: str
    updated: datetime | None = None
    user: str = ""
    user_info: UserInfo | None = None
    uri: str = ""
    text: str = ""
    group: str = ""
    target: list[Target] = Field(default_factory=list)
    references: list[str] = Field(default_factory=list)

    @field_validator("references", "target", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return [] if v is None else v

    @property
    def parent_id(self) -> str | None:
        """Id of the immediate parent, or None for a top-level annotation."""
        return self.references[-1] if self.references else None

    @property
    def author(self) -> str:
        """Human-readable name of the annotation's author."""
        if self.user_info and self.user_info.display_name:
            return self.user_info.display_name
        match = ACCOUNT_PATTERN.match(self.user)
        if match:
            return match.group("name")
        return self.user or "Someone"

    def quote(self) -> str | None:
        """Text selected in the document, from the first target's first quote selector."""
        if not self.target:
            return None
        for selector in self.target[0].selector:
            if selector.type == TEXT_QUOTE_SELECTOR:
                return selector.exact
        return None

    def metadata(self) -> AnnotationMetadata:
        """Metadata recorded alongside the annotation's chat message."""
        return AnnotationMetadata(
            references=list(self.references),
            group=self.group,
            uri=self.uri,
        )


# =============================================================================
# Persisted Entities
# =============================================================================


class Subscription(BaseModel):
    """One (Hypothesis group, Discord channel) pairing to bridge."""

    model_config = ConfigDict(from_attributes=True, validate_assignment=True)

    token: str
    group: str
    chat_id: str
    watermark: datetime

    @field_validator("watermark")
    @classmethod
    def watermark_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @property
    def key(self) -> str:
        """Compact identifier used in log lines."""
        return f"{self.group}:{self.chat_id}"


T = TypeVar("T", bound=BaseModel)


def row_to_model(row, model_class: type[T]) -> T:
    """Convert SQLAlchemy row to Pydantic model.

    Args:
        row: SQLAlchemy row result.
        model_class: Target Pydantic model class.

    Returns:
        Instance of the model class.
    """
    return model_class.model_validate(row._mapping)
