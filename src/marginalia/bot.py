"""Discord side of the bridge.

The bot plays two roles: it is the chat sender the poller posts through, and
it delivers incoming Discord replies to the reply handler. The poll loop runs
as a background task started from ``setup_hook`` once the gateway is ready.
"""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING

import discord

from marginalia.hypothesis import AnnotationClientFactory
from marginalia.logging import get_logger
from marginalia.poller import AnnotationPoller, StopSignal
from marginalia.replies import ReplyHandler

if TYPE_CHECKING:
    from marginalia.config import Config
    from marginalia.store import MappingStore

log = get_logger("bot")

# Discord rejects message content longer than this
MAX_MESSAGE_LENGTH = 2000


def truncate_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


def format_author(user: discord.abc.User) -> str:
    """Render a Discord user as "Display Name (username)"."""
    name = user.name or ""
    display = user.display_name or ""
    if display and name and display != name:
        return f"{display} ({name})"
    return name or display or "Someone"


def is_reply(message: discord.Message) -> bool:
    """True for a user reply. Pin notices and forwards also carry a reference."""
    reference = message.reference
    if reference is None or reference.message_id is None:
        return False
    if message.type != discord.MessageType.reply:
        return False
    return reference.type == discord.MessageReferenceType.reply


class MarginaliaBot(discord.Client):
    """Discord client bridging channels to Hypothesis groups.

    Attributes:
        config: Application configuration.
        store: Mapping store shared by poller and reply handler.
        poller: Annotation poller posting through this bot.
        replies: Handler for Discord replies to bridged messages.
        stop_signal: Stops the poll loop on shutdown.
    """

    def __init__(
        self,
        config: Config,
        store: MappingStore,
        clients: AnnotationClientFactory | None = None,
    ) -> None:
        intents = discord.Intents.default()
        intents.message_content = True  # Reply text is bridged verbatim

        super().__init__(intents=intents, allowed_mentions=discord.AllowedMentions.none())
        self.config = config
        self.store = store
        self._shutdown_requested = False

        clients = clients or AnnotationClientFactory(config.hypothesis)
        self.stop_signal = StopSignal()
        self.poller = AnnotationPoller(
            clients,
            store,
            self,
            interval_seconds=config.poller.interval_seconds,
            max_ancestor_depth=config.poller.max_ancestor_depth,
            link_url=config.hypothesis.link_url,
            stop=self.stop_signal,
        )
        self.replies = ReplyHandler(clients, store)
        self._poll_task: asyncio.Task | None = None

    async def setup_hook(self) -> None:
        """Start the poll loop as a background task."""
        self._poll_task = asyncio.create_task(self._run_poller())
        log.info(
            "background_task_started",
            task="poll_annotations",
            interval_seconds=self.config.poller.interval_seconds,
        )

    async def _run_poller(self) -> None:
        # Nothing can be sent before the gateway is ready
        await self.wait_until_ready()
        reason = await self.poller.run()
        log.debug("poll_task_finished", reason=reason)

    async def on_ready(self) -> None:
        log.info("discord_ready", user=str(self.user), guilds=len(self.guilds))

    async def on_disconnect(self) -> None:
        """discord.py reconnects on its own; this only logs."""
        log.warning("discord_disconnected")

    async def on_resumed(self) -> None:
        log.info("discord_resumed")

    # =========================================================================
    # Chat Sender
    # =========================================================================

    async def _channel(self, chat_id: str) -> discord.abc.Messageable:
        channel = self.get_channel(int(chat_id))
        if channel is None:
            channel = await self.fetch_channel(int(chat_id))
        return channel  # type: ignore[return-value]

    async def send(self, chat_id: str, text: str) -> str:
        """Post a new top-level message and return its id."""
        channel = await self._channel(chat_id)
        message = await channel.send(truncate_message(text))
        return str(message.id)

    async def send_reply(self, chat_id: str, parent_message_id: str, text: str) -> str:
        """Post a message as a reply to another and return its id."""
        channel = await self._channel(chat_id)
        parent = channel.get_partial_message(int(parent_message_id))  # type: ignore[attr-defined]
        message = await parent.reply(truncate_message(text), mention_author=False)
        return str(message.id)

    # =========================================================================
    # Incoming Replies
    # =========================================================================

    async def on_message(self, message: discord.Message) -> None:
        """Hand replies to bridged messages over to the reply handler."""
        if self._shutdown_requested:
            return
        if self.user is not None and message.author.id == self.user.id:
            return
        if message.author.bot and self.config.discord.ignore_bots:
            return

        if not message.content.strip():
            # Attachment or sticker only, nothing to quote
            log.debug("message_without_text", chat_id=str(message.channel.id), message_id=str(message.id))
            return

        reference = message.reference
        reply_to_message_id = None
        reply_to_chat_id = None
        if is_reply(message):
            reply_to_message_id = str(reference.message_id)
            reply_to_chat_id = str(reference.channel_id)

        try:
            await self.replies.on_reply(
                chat_id=str(message.channel.id),
                message_id=str(message.id),
                reply_to_message_id=reply_to_message_id,
                reply_to_chat_id=reply_to_chat_id,
                author=format_author(message.author),
                text=message.content,
            )
        except Exception as e:
            log.error(
                "reply_bridge_failed",
                chat_id=str(message.channel.id),
                message_id=str(message.id),
                error=str(e),
            )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def graceful_shutdown(self) -> None:
        """Stop polling at the next checkpoint, then disconnect."""
        log.info("shutdown_initiated")
        self._shutdown_requested = True
        self.stop_signal.set("shutdown")

        if self._poll_task is not None:
            try:
                await asyncio.wait_for(self._poll_task, timeout=self.config.hypothesis.timeout_seconds)
            except TimeoutError:
                self._poll_task.cancel()
                log.warning("poll_task_cancelled")
            except Exception as e:
                log.error("poll_task_failed", error=str(e))

        await self.close()
        log.info("shutdown_complete")


def setup_signal_handlers(bot: MarginaliaBot, loop: asyncio.AbstractEventLoop) -> None:
    """Setup graceful shutdown handlers for SIGINT and SIGTERM."""

    def handle_signal(sig: signal.Signals) -> None:
        log.info("signal_received", signal=sig.name)
        loop.create_task(bot.graceful_shutdown())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))

    log.debug("signal_handlers_registered", signals=["SIGINT", "SIGTERM"])


async def run_bot(config: Config, store: MappingStore) -> None:
    """Run the bridge until shutdown.

    Args:
        config: Application configuration with discord_token.
        store: Mapping store backed by the application database.
    """
    bot = MarginaliaBot(config, store)
    loop = asyncio.get_running_loop()
    setup_signal_handlers(bot, loop)

    try:
        log.info("bot_starting")
        await bot.start(config.discord_token)  # type: ignore[arg-type]
    except asyncio.CancelledError:
        log.debug("bot_cancelled")
    finally:
        if not bot.is_closed():
            await bot.close()
