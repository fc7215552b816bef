"""Reply handler: Discord -> Hypothesis.

When someone replies in Discord to a bridged message, the reply is posted
back to Hypothesis as an annotation reply under the same thread, and the new
annotation is mapped to the Discord reply so the poller will not bridge it a
second time.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from marginalia.logging import get_logger
from marginalia.models import AnnotationMetadata
from marginalia.store import NotFoundError

if TYPE_CHECKING:
    from marginalia.hypothesis import AnnotationClientFactory
    from marginalia.store import MappingStore

log = get_logger("replies")


def reply_annotation_text(author: str, text: str) -> str:
    return f'{author} wrote "{text}"'


class ReplyHandler:
    """Turns Discord replies to bridged messages into Hypothesis replies."""

    def __init__(self, clients: AnnotationClientFactory, store: MappingStore) -> None:
        self.clients = clients
        self.store = store

    async def on_reply(
        self,
        chat_id: str,
        message_id: str,
        reply_to_message_id: str | None,
        reply_to_chat_id: str | None,
        author: str,
        text: str,
    ) -> str | None:
        """Bridge one incoming chat message if it replies to a bridged message.

        Messages that are not replies, reply across channels, reply to a
        message that was never bridged, or belong to a removed subscription
        are ignored.

        Args:
            chat_id: Channel the reply was posted in.
            message_id: The reply's own message id.
            reply_to_message_id: Message being replied to, or None.
            reply_to_chat_id: Channel of the message being replied to.
            author: Display string for the reply's author.
            text: The reply's content.

        Returns:
            Id of the created annotation, or None if the message was ignored.

        Raises:
            AnnotationServiceError: If Hypothesis rejects the reply. No mapping
                is written and the chat message is left as is.
            ConflictError: If the mapping cannot be recorded.
        """
        if reply_to_message_id is None:
            log.debug("message_not_a_reply", chat_id=chat_id, message_id=message_id)
            return None
        if reply_to_chat_id is not None and reply_to_chat_id != chat_id:
            log.debug("reply_across_channels", chat_id=chat_id, reply_to_chat_id=reply_to_chat_id)
            return None

        try:
            parent_id, parent_meta = self.store.annotation_id_for(chat_id, reply_to_message_id)
        except NotFoundError:
            log.debug("reply_to_unbridged_message", chat_id=chat_id, reply_to_message_id=reply_to_message_id)
            return None

        try:
            sub = self.store.subscription_for(chat_id, parent_meta.group)
        except NotFoundError:
            # The subscription was removed after the parent was bridged
            log.info("reply_without_subscription", chat_id=chat_id, group=parent_meta.group)
            return None

        references = [*parent_meta.references, parent_id]
        client = self.clients.new_client(sub.token, sub.group)

        # Held until the mapping is written, so a concurrent poll that already
        # sees the new annotation cannot post it back into the channel.
        async with self.store.lock:
            try:
                annotation_id = await client.post_reply(
                    reply_annotation_text(author, text),
                    references,
                    parent_meta.uri,
                )
            except Exception as e:
                log.error("annotation_reply_failed", parent_id=parent_id, chat_id=chat_id, error=str(e))
                raise

            self.store.create_mapping(
                annotation_id,
                AnnotationMetadata(references=references, group=sub.group, uri=parent_meta.uri),
                chat_id,
                message_id,
            )

        log.info(
            "chat_reply_bridged",
            annotation_id=annotation_id,
            parent_id=parent_id,
            chat_id=chat_id,
            message_id=message_id,
        )
        return annotation_id
