"""Per-view controller tying the store, the view-state reducer and reply timers."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from . import config
from .models import Conversation
from .responses import generate_response
from .scheduler import ResponseScheduler
from .store import ChatStore, StoreError
from .threads import assemble, branch_transcript
from .view_state import (
    BranchCreated,
    BranchNavigated,
    ConversationLoaded,
    ConversationStarted,
    ErrorRaised,
    HistoryCleared,
    MessageSent,
    ResponseResolved,
    ThreadLevelAdvanced,
    ValidationError,
    ValidationFailed,
    ViewState,
    reduce,
    validate_content,
)


class ChatSession:
    """Runs user actions for one browser view.

    ``send`` and ``edit`` are async generators: they yield the optimistic
    state as soon as the message row exists, then the state with the
    simulated reply once its timer fires.  Store failures propagate to the
    caller and leave any optimistic state in place; use :meth:`fail` to put
    the error in front of the user.
    """

    def __init__(
        self,
        store: ChatStore,
        *,
        delay: Optional[float] = None,
        generate: Callable[[], str] = generate_response,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.state = ViewState()
        self._logger = logger or logging.getLogger(__name__)
        self.scheduler = ResponseScheduler(
            config.RESPONSE_DELAY if delay is None else delay,
            generate,
            logger=self._logger,
        )

    @property
    def closed(self) -> bool:
        return self.scheduler.closed

    def dispatch(self, event: object) -> ViewState:
        self.state = reduce(self.state, event)
        return self.state

    def fail(self, exc: BaseException) -> ViewState:
        self._logger.error("Chat action failed: %s", exc)
        return self.dispatch(ErrorRaised(str(exc)))

    # ------------------------------------------------------------------
    # Send / edit
    # ------------------------------------------------------------------
    async def send(self, text: str) -> AsyncIterator[ViewState]:
        try:
            validate_content(text)
        except ValidationError as exc:
            yield self.dispatch(ValidationFailed(str(exc)))
            return

        conversation_id = self.state.conversation_id
        if conversation_id is None:
            conversation = await self.store.create_conversation(text)
            conversation_id = conversation.id
            self.dispatch(ConversationStarted(conversation_id))
            self._logger.info("Started conversation %s", conversation_id)

        message = await self.store.send_message(conversation_id, text)
        yield self.dispatch(MessageSent(message))

        async for state in self._await_reply(message.id):
            yield state

    async def edit(self, thread_id: int, text: str) -> AsyncIterator[ViewState]:
        try:
            validate_content(text)
        except ValidationError as exc:
            yield self.dispatch(ValidationFailed(str(exc)))
            return

        if self.state.conversation_id is None or self.state.thread(thread_id) is None:
            yield self.dispatch(ErrorRaised(f"Message {thread_id} is not part of this conversation."))
            return

        level = self.dispatch(ThreadLevelAdvanced()).thread_level
        message = await self.store.edit_message(self.state.conversation_id, thread_id, text, level)
        yield self.dispatch(BranchCreated(message))

        async for state in self._await_reply(message.id):
            yield state

    async def _await_reply(self, message_id: int) -> AsyncIterator[ViewState]:
        timer = self.scheduler.schedule(message_id)
        try:
            await asyncio.wait({timer})
        except asyncio.CancelledError:
            timer.cancel()
            raise
        if timer.cancelled():
            self._logger.debug("Reply for message %s dropped; view closed", message_id)
            return

        text = timer.result()
        state = self.dispatch(ResponseResolved(message_id, text))
        self.scheduler.spawn(self._persist_response(message_id, text))
        yield state

    async def _persist_response(self, message_id: int, text: str) -> None:
        try:
            response = await self.store.save_response(message_id, text)
        except StoreError as exc:
            self._logger.warning("Unable to save response for message %s: %s", message_id, exc)
            return
        self.dispatch(ResponseResolved(message_id, response.content, response.id))

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------
    async def select_conversation(self, conversation_id: int) -> ViewState:
        threads = await assemble(self.store, conversation_id)
        self._logger.info("Loaded conversation %s (%d thread(s))", conversation_id, len(threads))
        return self.dispatch(ConversationLoaded(conversation_id, threads))

    async def new_conversation(self) -> Conversation:
        conversation = await self.store.create_conversation("")
        self.dispatch(ConversationStarted(conversation.id))
        self._logger.info("Started conversation %s", conversation.id)
        return conversation

    async def list_conversations(self) -> List[Conversation]:
        return await self.store.fetch_conversations()

    async def clear_all(self) -> ViewState:
        await self.store.clear_all()
        return self.dispatch(HistoryCleared())

    def navigate(self, thread_id: int, step: int) -> ViewState:
        return self.dispatch(BranchNavigated(thread_id, step))

    async def branch_transcript(self, thread_id: int) -> List[Dict[str, Any]]:
        return await branch_transcript(self.store, thread_id)

    # ------------------------------------------------------------------
    # Lifetime
    # ------------------------------------------------------------------
    async def wait_idle(self) -> None:
        await self.scheduler.join()

    def close(self) -> None:
        self.scheduler.close()


__all__ = ["ChatSession"]
