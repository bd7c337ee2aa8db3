from __future__ import annotations

import asyncio

import pytest

from branchchat.store import MemoryChatStore, StoreError
from branchchat.threads import BRANCH_THREAD_LEVEL, FetchError, assemble, branch_transcript


async def _seed(store: MemoryChatStore):
    conversation = await store.create_conversation("Trip planning")
    july = await store.send_message(conversation.id, "Where should I go in July?")
    await store.save_response(july.id, "Could you clarify that a bit?")
    budget = await store.send_message(conversation.id, "What's a good budget?")
    december = await store.edit_message(conversation.id, july.id, "Where should I go in December?", 1)
    await store.save_response(december.id, "Could you provide an example?")
    spring = await store.edit_message(conversation.id, july.id, "Where should I go in spring?", 3)
    return conversation, july, budget, december, spring


def test_assemble_orders_threads_and_branches() -> None:
    async def scenario():
        store = MemoryChatStore()
        seeded = await _seed(store)
        return seeded, await assemble(store, seeded[0].id)

    (conversation, july, budget, december, spring), threads = asyncio.run(scenario())

    assert [t.original_message_id for t in threads] == [july.id, budget.id]
    first = threads[0]
    assert [b.message_id for b in first.branches] == [july.id, december.id, spring.id]
    assert first.root.thread_level == 0
    assert all(b.thread_level == BRANCH_THREAD_LEVEL for b in first.children)
    assert all(b.parent_id == july.id for b in first.children)
    assert first.root.response.content == "Could you clarify that a bit?"
    assert first.children[0].response.content == "Could you provide an example?"
    assert first.children[1].response is None
    assert threads[1].root.response is None
    assert threads[1].children == ()


def test_assemble_is_repeatable() -> None:
    async def scenario():
        store = MemoryChatStore()
        conversation = (await _seed(store))[0]
        return await assemble(store, conversation.id), await assemble(store, conversation.id)

    first, second = asyncio.run(scenario())

    assert first == second


def test_assemble_empty_conversation() -> None:
    async def scenario():
        store = MemoryChatStore()
        conversation = await store.create_conversation("")
        return await assemble(store, conversation.id)

    assert asyncio.run(scenario()) == []


class _FailingResponseStore(MemoryChatStore):
    def __init__(self) -> None:
        super().__init__()
        self.fail_for = None

    async def fetch_response(self, message_id):
        if message_id == self.fail_for:
            raise StoreError("fetch_response", "connection reset")
        return await super().fetch_response(message_id)


def test_assemble_reports_failing_message() -> None:
    store = _FailingResponseStore()
    seeded = {}

    async def scenario():
        conversation, july, budget, december, spring = await _seed(store)
        store.fail_for = december.id
        seeded["december"] = december.id
        try:
            await assemble(store, conversation.id)
        finally:
            store.fail_for = None
        return december

    with pytest.raises(FetchError) as excinfo:
        asyncio.run(scenario())

    assert excinfo.value.message_id == seeded["december"]
    assert isinstance(excinfo.value.cause, StoreError)
    assert str(excinfo.value).startswith(f"Error fetching message {excinfo.value.message_id}:")


class _BrokenMessagesStore(MemoryChatStore):
    async def fetch_messages(self, conversation_id):
        raise StoreError("fetch_messages", "server closed the connection")


def test_assemble_reports_failing_conversation() -> None:
    with pytest.raises(FetchError) as excinfo:
        asyncio.run(assemble(_BrokenMessagesStore(), 7))

    assert excinfo.value.message_id is None
    assert excinfo.value.conversation_id == 7
    assert "Error fetching conversation 7" in str(excinfo.value)


class _SlowStore(MemoryChatStore):
    def __init__(self) -> None:
        super().__init__()
        self.in_flight = 0
        self.peak = 0

    async def fetch_response(self, message_id):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        await asyncio.sleep(0.01)
        self.in_flight -= 1
        return await super().fetch_response(message_id)


def test_assemble_issues_lookups_concurrently() -> None:
    store = _SlowStore()

    async def scenario():
        conversation = (await _seed(store))[0]
        return await assemble(store, conversation.id)

    threads = asyncio.run(scenario())

    assert len(threads) == 2
    assert store.peak > 1


def test_branch_transcript_alternates_roles() -> None:
    async def scenario():
        store = MemoryChatStore()
        conversation, july, budget, december, spring = await _seed(store)
        return december, spring, await branch_transcript(store, july.id), await branch_transcript(store, budget.id)

    december, spring, transcript, empty = asyncio.run(scenario())

    assert [(t["role"], t["content"]) for t in transcript] == [
        ("user", "Where should I go in December?"),
        ("assistant", "Could you provide an example?"),
        ("user", "Where should I go in spring?"),
    ]
    assert transcript[0]["id"] == december.id
    assert transcript[2]["id"] == spring.id
    assert empty == []
