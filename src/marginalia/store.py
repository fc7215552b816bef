"""Persistent mapping store for the bridge.

Holds subscriptions and annotation/message mappings in SQLite. Every read
builds fresh model instances from rows, so callers may mutate what they get
back without touching stored state.

The store also owns the single coarse ``lock`` shared by the poller and the
reply handler. Individual methods are synchronous and therefore atomic with
respect to other coroutines on the event loop; the lock exists for callers
that need a multi-step critical section spanning awaits.
"""

from __future__ import annotations

import asyncio

from sqlalchemy import and_, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from marginalia.database import annotation_messages, documents, subscriptions
from marginalia.logging import get_logger
from marginalia.models import AnnotationMetadata, Subscription, row_to_model

log = get_logger("store")


class NotFoundError(LookupError):
    """The requested mapping or subscription does not exist."""


class ConflictError(Exception):
    """An insert would violate a uniqueness constraint."""


class MappingStore:
    """SQLAlchemy-backed store for subscriptions and annotation mappings.

    Attributes:
        engine: SQLAlchemy database engine.
        lock: Store-wide mutual exclusion for multi-step critical sections.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self.lock = asyncio.Lock()

    # =========================================================================
    # Annotation <-> Message Mappings
    # =========================================================================

    def message_id_for(self, annotation_id: str, chat_id: str) -> str:
        """Get the chat message an annotation was bridged to.

        Raises:
            NotFoundError: If the annotation has no message in that chat.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                select(annotation_messages.c.message_id).where(
                    and_(
                        annotation_messages.c.annotation_id == annotation_id,
                        annotation_messages.c.chat_id == chat_id,
                    )
                )
            ).fetchone()

        if row is None:
            raise NotFoundError(f"no message for annotation {annotation_id} in chat {chat_id}")
        return row.message_id

    def annotation_id_for(self, chat_id: str, message_id: str) -> tuple[str, AnnotationMetadata]:
        """Get the annotation a chat message corresponds to.

        Returns:
            Tuple of (annotation_id, metadata).

        Raises:
            NotFoundError: If the message was never bridged.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                select(
                    annotation_messages.c.annotation_id,
                    annotation_messages.c.references,
                    annotation_messages.c.group,
                    documents.c.uri,
                )
                .select_from(
                    annotation_messages.outerjoin(
                        documents, annotation_messages.c.document_id == documents.c.id
                    )
                )
                .where(
                    and_(
                        annotation_messages.c.chat_id == chat_id,
                        annotation_messages.c.message_id == message_id,
                    )
                )
            ).fetchone()

        if row is None:
            raise NotFoundError(f"no annotation for message {message_id} in chat {chat_id}")

        meta = AnnotationMetadata(
            references=list(row.references or []),
            group=row.group,
            uri=row.uri or "",
        )
        return row.annotation_id, meta

    def create_mapping(
        self,
        annotation_id: str,
        meta: AnnotationMetadata,
        chat_id: str,
        message_id: str,
    ) -> None:
        """Record that an annotation and a chat message mirror each other.

        Mappings are immutable: there is no update path, and a second insert
        for the same annotation or the same message is rejected.

        Raises:
            ConflictError: If (annotation_id, chat_id) or (chat_id, message_id)
                is already mapped. Nothing is written in that case.
        """
        try:
            with self.engine.begin() as conn:
                document_id = self._document_id(conn, meta.uri)
                conn.execute(
                    annotation_messages.insert().values(
                        annotation_id=annotation_id,
                        chat_id=chat_id,
                        message_id=message_id,
                        references=list(meta.references),
                        group=meta.group,
                        document_id=document_id,
                    )
                )
        except IntegrityError as e:
            raise ConflictError(
                f"mapping for annotation {annotation_id} / message {message_id} "
                f"in chat {chat_id} already exists"
            ) from e

        log.debug(
            "mapping_created",
            annotation_id=annotation_id,
            chat_id=chat_id,
            message_id=message_id,
        )

    def _document_id(self, conn: Connection, uri: str) -> int:
        """Get or create the row id for a document URI."""
        conn.execute(sqlite_insert(documents).values(uri=uri).on_conflict_do_nothing(index_elements=["uri"]))
        return conn.execute(select(documents.c.id).where(documents.c.uri == uri)).scalar_one()

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def add_subscription(self, sub: Subscription) -> None:
        """Create a subscription.

        Raises:
            ConflictError: If the (group, chat_id) pair is already subscribed.
        """
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    subscriptions.insert().values(
                        token=sub.token,
                        group=sub.group,
                        chat_id=sub.chat_id,
                        watermark=sub.watermark,
                    )
                )
        except IntegrityError as e:
            raise ConflictError(f"subscription {sub.key} already exists") from e

        log.info("subscription_added", subscription=sub.key, watermark=sub.watermark.isoformat())

    def list_subscriptions(self) -> list[Subscription]:
        """Get a snapshot of every subscription."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(
                    subscriptions.c.token,
                    subscriptions.c.group,
                    subscriptions.c.chat_id,
                    subscriptions.c.watermark,
                ).order_by(subscriptions.c.created_at)
            ).fetchall()
        return [row_to_model(row, Subscription) for row in rows]

    def subscription_for(self, chat_id: str, group: str) -> Subscription:
        """Get the subscription bridging a group into a chat.

        Raises:
            NotFoundError: If no such subscription exists.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                select(
                    subscriptions.c.token,
                    subscriptions.c.group,
                    subscriptions.c.chat_id,
                    subscriptions.c.watermark,
                ).where(
                    and_(
                        subscriptions.c.group == group,
                        subscriptions.c.chat_id == chat_id,
                    )
                )
            ).fetchone()

        if row is None:
            raise NotFoundError(f"no subscription for group {group} in chat {chat_id}")
        return row_to_model(row, Subscription)

    def update_subscription(self, sub: Subscription) -> None:
        """Persist a subscription's token and watermark.

        Raises:
            NotFoundError: If the subscription was removed meanwhile.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                subscriptions.update()
                .where(
                    and_(
                        subscriptions.c.group == sub.group,
                        subscriptions.c.chat_id == sub.chat_id,
                    )
                )
                .values(token=sub.token, watermark=sub.watermark)
            )

        if result.rowcount == 0:
            raise NotFoundError(f"subscription {sub.key} not found")

    def remove_subscription(self, chat_id: str, group: str) -> None:
        """Delete a subscription. Existing mappings are kept.

        Raises:
            NotFoundError: If no such subscription exists.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                subscriptions.delete().where(
                    and_(
                        subscriptions.c.group == group,
                        subscriptions.c.chat_id == chat_id,
                    )
                )
            )

        if result.rowcount == 0:
            raise NotFoundError(f"no subscription for group {group} in chat {chat_id}")
        log.info("subscription_removed", group=group, chat_id=chat_id)
