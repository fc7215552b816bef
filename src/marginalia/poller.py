"""Annotation poller: Hypothesis -> Discord.

For every subscription the poller pages through the group's annotations in
ascending ``updated`` order, starting strictly after the subscription's
watermark. Each annotation is bridged into the subscribed channel, and any
ancestors that were never bridged are posted first (depth-first), so that
every chat message can be threaded as a reply to its parent's message.

The watermark is persisted after every successfully bridged annotation. When
bridging fails, the subscription is abandoned for this cycle with its
watermark left on the last success, so the failed annotation is retried on
the next cycle.

There is no push channel from Hypothesis: ``run()`` re-polls on a fixed
interval until its stop signal is set.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Protocol

from marginalia.hypothesis import AnnotationServiceError
from marginalia.logging import get_logger
from marginalia.store import NotFoundError

if TYPE_CHECKING:
    from marginalia.hypothesis import AnnotationClient, AnnotationClientFactory
    from marginalia.models import Annotation, Subscription
    from marginalia.store import MappingStore

log = get_logger("poller")

DEFAULT_LINK_URL = "https://hypothes.is/a/"


class MalformedAnnotationError(Exception):
    """Annotation data that can never be bridged as-is; retrying will not help."""


class PollCancelled(Exception):
    """The stop signal was observed at a checkpoint."""


class ChatSender(Protocol):
    """What the poller needs from the chat side."""

    async def send(self, chat_id: str, text: str) -> str: ...

    async def send_reply(self, chat_id: str, parent_message_id: str, text: str) -> str: ...


class StopSignal:
    """Cooperative cancellation shared between the poll loop and its owner.

    In-flight network calls are not interrupted; the loop exits at its next
    checkpoint.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def set(self, reason: str = "stopped") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: float | None = None) -> bool:
        """Wait up to timeout seconds for the signal. Returns True if it was set."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except TimeoutError:
            return False
        return True


def root_message_text(author: str, text: str, quote: str, link: str) -> str:
    return f'{author} selected "{quote}" and wrote "{text}"\n{link}'


def reply_message_text(author: str, text: str, link: str) -> str:
    return f'{author} wrote "{text}"\n{link}'


class AnnotationPoller:
    """Bridges new Hypothesis annotations into Discord channels.

    Attributes:
        clients: Builds a Hypothesis client per subscription.
        store: Mapping store shared with the reply handler.
        chat: Sends messages to Discord.
        interval_seconds: Pause between poll cycles.
        max_ancestor_depth: Longest reference chain followed before the
            annotation is treated as malformed.
        stop: Cancellation signal checked between steps.
    """

    def __init__(
        self,
        clients: AnnotationClientFactory,
        store: MappingStore,
        chat: ChatSender,
        interval_seconds: float = 60,
        max_ancestor_depth: int = 100,
        link_url: str = DEFAULT_LINK_URL,
        stop: StopSignal | None = None,
    ) -> None:
        self.clients = clients
        self.store = store
        self.chat = chat
        self.interval_seconds = interval_seconds
        self.max_ancestor_depth = max_ancestor_depth
        self.link_url = link_url
        self.stop = stop or StopSignal()

    def _check_stop(self) -> None:
        if self.stop.is_set():
            raise PollCancelled(self.stop.reason)

    async def run(self) -> str | None:
        """Poll forever at a fixed interval.

        Returns:
            The stop reason, once the stop signal has been set.
        """
        log.info("poller_started", interval_seconds=self.interval_seconds)
        while not self.stop.is_set():
            await self.run_once()
            log.debug("poller_sleeping", seconds=self.interval_seconds)
            if await self.stop.wait(self.interval_seconds):
                break
        log.info("poller_stopped", reason=self.stop.reason)
        return self.stop.reason

    async def run_once(self) -> Exception | None:
        """Run one poll cycle over a snapshot of all subscriptions.

        A failing subscription is logged and skipped; the rest of the cycle
        still runs.

        Returns:
            The last error encountered, or None.
        """
        try:
            subs = self.store.list_subscriptions()
        except Exception as e:
            log.error("list_subscriptions_failed", error=str(e))
            return e

        log.info("poll_cycle_start", subscriptions=len(subs))
        last_error: Exception | None = None
        for i, sub in enumerate(subs, start=1):
            log.debug("subscription_poll", index=i, total=len(subs), subscription=sub.key)
            try:
                await self.handle_sub(sub)
            except PollCancelled as e:
                log.info("poll_cycle_cancelled", subscription=sub.key, reason=self.stop.reason)
                return e
            except Exception as e:
                log.error("subscription_poll_failed", subscription=sub.key, error=str(e))
                last_error = e

        return last_error

    async def handle_sub(self, sub: Subscription) -> None:
        """Bridge everything in a subscription's group newer than its watermark.

        Pages until a fetch returns nothing. Fetch failures, malformed
        annotations and bridging failures end this subscription's turn for
        the current cycle.

        Raises:
            PollCancelled: If the stop signal is observed.
        """
        client = self.clients.new_client(sub.token, sub.group)

        while True:
            self._check_stop()

            try:
                annots = await client.fetch_updated_after(sub.watermark)
            except AnnotationServiceError as e:
                log.warning("fetch_annotations_failed", subscription=sub.key, error=str(e))
                return

            log.debug("annotations_fetched", subscription=sub.key, count=len(annots))
            if not annots:
                return

            page_start = sub.watermark
            for i, annot in enumerate(annots, start=1):
                self._check_stop()
                log.debug(
                    "annotation_processing",
                    index=i,
                    total=len(annots),
                    annotation_id=annot.id,
                )

                if annot.updated is None:
                    log.error("annotation_missing_updated", annotation_id=annot.id, subscription=sub.key)
                    return
                if annot.updated <= sub.watermark:
                    log.warning(
                        "annotation_not_after_watermark",
                        annotation_id=annot.id,
                        updated=annot.updated.isoformat(),
                        watermark=sub.watermark.isoformat(),
                    )
                    continue

                try:
                    await self.handle_annot(annot, sub.chat_id, client)
                except PollCancelled:
                    raise
                except Exception as e:
                    # Watermark stays put; this annotation is retried next cycle
                    log.error(
                        "annotation_bridge_failed",
                        annotation_id=annot.id,
                        subscription=sub.key,
                        error=str(e),
                    )
                    return

                sub.watermark = annot.updated
                self.store.update_subscription(sub)

            if sub.watermark == page_start:
                # A page with no progress would be fetched again forever
                log.warning("poll_page_without_progress", subscription=sub.key)
                return

    async def _existing_message_id(self, annotation_id: str, chat_id: str) -> str | None:
        """Look up an annotation's message, waiting out any reply in flight."""
        async with self.store.lock:
            try:
                return self.store.message_id_for(annotation_id, chat_id)
            except NotFoundError:
                return None

    async def handle_annot(
        self,
        annot: Annotation,
        chat_id: str,
        client: AnnotationClient,
        depth: int = 0,
    ) -> str:
        """Make sure an annotation, and all its ancestors, exist as chat messages.

        Idempotent: an annotation that already has a message in the chat is
        never posted again.

        Args:
            annot: Annotation to bridge.
            chat_id: Channel to post into.
            client: Hypothesis client for fetching missing ancestors.
            depth: How many ancestors deep this call is.

        Returns:
            The annotation's chat message id.
        """
        existing = await self._existing_message_id(annot.id, chat_id)
        if existing is not None:
            log.debug("annotation_already_bridged", annotation_id=annot.id, chat_id=chat_id, message_id=existing)
            return existing

        parent_message_id: str | None = None
        parent_id = annot.parent_id
        if parent_id is not None:
            parent_message_id = await self._existing_message_id(parent_id, chat_id)
            if parent_message_id is None:
                log.info("ancestor_missing", annotation_id=annot.id, parent_id=parent_id)
                parent_message_id = await self.handle_ancestor(parent_id, chat_id, client, depth + 1)

        self._check_stop()

        link = f"{self.link_url}{annot.id}"
        if parent_message_id is None:
            quote = annot.quote()
            if quote is None:
                log.warning("annotation_without_quote", annotation_id=annot.id)
                quote = ""
            text = root_message_text(annot.author, annot.text, quote, link)
            message_id = await self.chat.send(chat_id, text)
        else:
            text = reply_message_text(annot.author, annot.text, link)
            message_id = await self.chat.send_reply(chat_id, parent_message_id, text)

        self.store.create_mapping(annot.id, annot.metadata(), chat_id, message_id)
        log.info(
            "annotation_bridged",
            annotation_id=annot.id,
            chat_id=chat_id,
            message_id=message_id,
            parent_message_id=parent_message_id,
        )
        return message_id

    async def handle_ancestor(
        self,
        annotation_id: str,
        chat_id: str,
        client: AnnotationClient,
        depth: int,
    ) -> str:
        """Fetch an unbridged ancestor by id and bridge it.

        Raises:
            MalformedAnnotationError: If the chain is deeper than max_ancestor_depth.
            AnnotationServiceError: If the ancestor cannot be fetched.
        """
        if depth > self.max_ancestor_depth:
            raise MalformedAnnotationError(
                f"reference chain deeper than {self.max_ancestor_depth} at {annotation_id}"
            )
        annot = await client.fetch(annotation_id)
        return await self.handle_annot(annot, chat_id, client, depth)
