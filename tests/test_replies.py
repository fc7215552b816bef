"""Tests for bridging Discord replies back to Hypothesis.

Covers:
- Reply creation with the parent's references extended by the parent id
- Messages that are ignored (not replies, cross-channel, unbridged, unsubscribed)
- Failure handling: no mapping without a created annotation
- Mutual exclusion with a concurrent poll cycle
"""

import asyncio

import pytest

from fakes import FakeAnnotationClient, FakeChat, FakeHypothesis, at, make_annotation
from marginalia.hypothesis import AnnotationServiceError
from marginalia.models import AnnotationMetadata, Subscription
from marginalia.poller import AnnotationPoller
from marginalia.replies import ReplyHandler, reply_annotation_text
from marginalia.store import ConflictError, MappingStore, NotFoundError

CHAT_ID = "42"
DOC = "https://example.com/doc"


@pytest.fixture
def handler(hypothesis: FakeHypothesis, store: MappingStore) -> ReplyHandler:
    return ReplyHandler(hypothesis, store)


@pytest.fixture
def subscribed(store: MappingStore) -> Subscription:
    sub = Subscription(token="tok", group="grp", chat_id=CHAT_ID, watermark=at(0))
    store.add_subscription(sub)
    return sub


def bridge(store: MappingStore, annotation_id: str, message_id: str, references: list[str] | None = None) -> None:
    store.create_mapping(
        annotation_id,
        AnnotationMetadata(references=references or [], group="grp", uri=DOC),
        CHAT_ID,
        message_id,
    )


class TestReplyText:
    def test_reply_annotation_text(self) -> None:
        assert reply_annotation_text("Bob (bob)", "I agree") == 'Bob (bob) wrote "I agree"'


class TestOnReply:
    """Tests for ReplyHandler.on_reply."""

    @pytest.mark.asyncio
    async def test_reply_to_root_message(self, handler, hypothesis, store, subscribed) -> None:
        """A reply to a bridged root becomes a reply annotation mapped to the chat reply."""
        bridge(store, "p", "101")

        annotation_id = await handler.on_reply(CHAT_ID, "500", "101", CHAT_ID, "bob", "hi")

        assert annotation_id == "new1"
        assert hypothesis.posted == [
            {"id": "new1", "text": 'bob wrote "hi"', "references": ["p"], "uri": DOC, "token": "tok"}
        ]
        aid, meta = store.annotation_id_for(CHAT_ID, "500")
        assert aid == "new1"
        assert meta.references == ["p"]
        assert meta.group == "grp"
        assert meta.uri == DOC
        assert store.message_id_for("new1", CHAT_ID) == "500"

    @pytest.mark.asyncio
    async def test_references_extend_parent_thread(self, handler, hypothesis, store, subscribed) -> None:
        """Replying to a message whose annotation has references [x, y] yields [x, y, parent]."""
        bridge(store, "p", "103", references=["x", "y"])

        await handler.on_reply(CHAT_ID, "500", "103", CHAT_ID, "bob", "deeper")

        assert hypothesis.posted[0]["references"] == ["x", "y", "p"]
        _, meta = store.annotation_id_for(CHAT_ID, "500")
        assert meta.references == ["x", "y", "p"]

    @pytest.mark.asyncio
    async def test_missing_reply_channel_is_same_channel(self, handler, hypothesis, store, subscribed) -> None:
        bridge(store, "p", "101")

        assert await handler.on_reply(CHAT_ID, "500", "101", None, "bob", "hi") == "new1"

    @pytest.mark.asyncio
    async def test_not_a_reply_is_ignored(self, handler, hypothesis, store, subscribed) -> None:
        bridge(store, "p", "101")

        assert await handler.on_reply(CHAT_ID, "500", None, None, "bob", "hi") is None
        assert hypothesis.posted == []

    @pytest.mark.asyncio
    async def test_cross_channel_reply_is_ignored(self, handler, hypothesis, store, subscribed) -> None:
        bridge(store, "p", "101")

        assert await handler.on_reply(CHAT_ID, "500", "101", "99", "bob", "hi") is None
        assert hypothesis.posted == []

    @pytest.mark.asyncio
    async def test_reply_to_unbridged_message_is_ignored(self, handler, hypothesis, store, subscribed) -> None:
        assert await handler.on_reply(CHAT_ID, "500", "777", CHAT_ID, "bob", "hi") is None
        assert hypothesis.posted == []
        with pytest.raises(NotFoundError):
            store.annotation_id_for(CHAT_ID, "500")

    @pytest.mark.asyncio
    async def test_reply_after_unsubscribe_is_ignored(self, handler, hypothesis, store, subscribed) -> None:
        bridge(store, "p", "101")
        store.remove_subscription(CHAT_ID, "grp")

        assert await handler.on_reply(CHAT_ID, "500", "101", CHAT_ID, "bob", "hi") is None
        assert hypothesis.posted == []

    @pytest.mark.asyncio
    async def test_post_failure_writes_no_mapping(self, handler, hypothesis, store, subscribed) -> None:
        """A rejected reply raises and leaves no mapping behind."""
        bridge(store, "p", "101")
        hypothesis.fail_post = True

        with pytest.raises(AnnotationServiceError):
            await handler.on_reply(CHAT_ID, "500", "101", CHAT_ID, "bob", "hi")

        with pytest.raises(NotFoundError):
            store.annotation_id_for(CHAT_ID, "500")
        assert not store.lock.locked()

    @pytest.mark.asyncio
    async def test_message_already_mapped_conflicts(self, handler, hypothesis, store, subscribed) -> None:
        bridge(store, "p", "101")
        bridge(store, "q", "500")

        with pytest.raises(ConflictError):
            await handler.on_reply(CHAT_ID, "500", "101", CHAT_ID, "bob", "hi")
        assert not store.lock.locked()


# =============================================================================
# Concurrency with the poller
# =============================================================================


class GatedClient(FakeAnnotationClient):
    """Creates the annotation, then blocks before returning its id."""

    async def post_reply(self, text: str, references: list[str], uri: str) -> str:
        annotation_id = await super().post_reply(text, references, uri)
        self.service.created.set()
        await self.service.release.wait()
        return annotation_id


class GatedHypothesis(FakeHypothesis):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.created = asyncio.Event()
        self.release = asyncio.Event()

    def new_client(self, token: str, group: str) -> GatedClient:
        return GatedClient(self, token, group)


class TestConcurrentPoll:
    @pytest.mark.asyncio
    async def test_poll_during_reply_does_not_echo(self, store: MappingStore, chat: FakeChat) -> None:
        """A poll that sees the new reply annotation before its mapping exists
        must not post it back into the channel."""
        hypothesis = GatedHypothesis([make_annotation("p", at(1), text="root", uri=DOC)])
        store.add_subscription(Subscription(token="tok", group="grp", chat_id=CHAT_ID, watermark=at(0)))
        poller = AnnotationPoller(hypothesis, store, chat)
        handler = ReplyHandler(hypothesis, store)

        await poller.handle_sub(store.subscription_for(CHAT_ID, "grp"))
        assert len(chat.sent) == 1
        root_message_id = chat.sent[0].message_id

        reply_task = asyncio.create_task(
            handler.on_reply(CHAT_ID, "900", root_message_id, CHAT_ID, "bob", "hi")
        )
        await asyncio.wait_for(hypothesis.created.wait(), timeout=1.0)

        # The new annotation is now searchable but not yet mapped
        poll_task = asyncio.create_task(poller.handle_sub(store.subscription_for(CHAT_ID, "grp")))
        await asyncio.sleep(0.01)
        assert not poll_task.done()

        hypothesis.release.set()
        annotation_id = await asyncio.wait_for(reply_task, timeout=1.0)
        await asyncio.wait_for(poll_task, timeout=1.0)

        assert len(chat.sent) == 1
        assert store.message_id_for(annotation_id, CHAT_ID) == "900"
        sub = store.subscription_for(CHAT_ID, "grp")
        assert sub.watermark > at(1)
