"""Rebuild conversation threads from flat message and response rows.

A conversation is displayed as a sequence of threads, one per original
(non-branch) message.  Each thread lists the original first, followed by the
branches created by editing it, each paired with its reply when one has been
stored.  Lookups that do not depend on each other are issued together with
``asyncio.gather`` so a conversation loads in a handful of round trips
instead of one per row.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from .models import BranchView, Message, Response, Thread
from .store import ChatStore, StoreError

logger = logging.getLogger(__name__)

BRANCH_THREAD_LEVEL = 1


class FetchError(RuntimeError):
    """Raised when a thread cannot be assembled because a lookup failed."""

    def __init__(
        self,
        message_id: Optional[int],
        cause: BaseException,
        *,
        conversation_id: Optional[int] = None,
    ) -> None:
        if message_id is not None:
            target = f"message {message_id}"
        else:
            target = f"conversation {conversation_id}"
        super().__init__(f"Error fetching {target}: {cause}")
        self.message_id = message_id
        self.conversation_id = conversation_id
        self.cause = cause


async def _response_for(store: ChatStore, message_id: int) -> Optional[Response]:
    try:
        return await store.fetch_response(message_id)
    except StoreError as exc:
        raise FetchError(message_id, exc) from exc


async def _children_of(store: ChatStore, message_id: int) -> List[Message]:
    try:
        return await store.fetch_children(message_id)
    except StoreError as exc:
        raise FetchError(message_id, exc) from exc


async def _branch_pairs(store: ChatStore, parent_id: int) -> List[Tuple[Message, Optional[Response]]]:
    children = await _children_of(store, parent_id)
    responses = await asyncio.gather(*(_response_for(store, child.id) for child in children))
    return list(zip(children, responses))


async def _assemble_thread(store: ChatStore, original: Message) -> Thread:
    response, pairs = await asyncio.gather(
        _response_for(store, original.id),
        _branch_pairs(store, original.id),
    )
    root = BranchView.from_message(original, response, thread_level=0)
    # Every edit is shown one level below the original, whatever level was stored.
    children = tuple(
        BranchView.from_message(child, child_response, thread_level=BRANCH_THREAD_LEVEL)
        for child, child_response in pairs
    )
    return Thread(root=root, children=children)


async def assemble(store: ChatStore, conversation_id: int) -> List[Thread]:
    """Return the threads of ``conversation_id`` ordered by their original message.

    Raises ``FetchError`` if any lookup fails; nothing partial is returned.
    """

    try:
        originals = await store.fetch_messages(conversation_id)
    except StoreError as exc:
        raise FetchError(None, exc, conversation_id=conversation_id) from exc

    threads = await asyncio.gather(*(_assemble_thread(store, original) for original in originals))
    logger.debug(
        "Assembled %d thread(s) for conversation %s", len(threads), conversation_id
    )
    return list(threads)


async def branch_transcript(store: ChatStore, parent_id: int) -> List[Dict[str, Any]]:
    """Flatten the branches of ``parent_id`` into alternating user/assistant turns."""

    transcript: List[Dict[str, Any]] = []
    for child, response in await _branch_pairs(store, parent_id):
        transcript.append({"id": child.id, "role": "user", "content": child.content})
        if response is not None and response.content:
            transcript.append({"id": response.id, "role": "assistant", "content": response.content})
    return transcript


__all__ = ["BRANCH_THREAD_LEVEL", "FetchError", "assemble", "branch_transcript"]
