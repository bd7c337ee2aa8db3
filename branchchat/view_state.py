"""In-memory conversation state held by the UI and the events that change it.

State is immutable; every change goes through :func:`reduce`, which returns a
new ``ViewState``.  Replies are matched to branches by message id rather than
by position, so a reply landing after other sends or edits still updates the
branch it belongs to.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Dict, FrozenSet, Mapping, Optional, Sequence, Tuple

from .models import BranchView, Message, ResponseView, Thread

EMPTY_MESSAGE_ERROR = "Please enter a message."


class ValidationError(ValueError):
    """Raised when user input is rejected before anything is sent."""


def validate_content(text: Optional[str]) -> str:
    if text is None or len(text) < 1:
        raise ValidationError(EMPTY_MESSAGE_ERROR)
    return text


@dataclass(frozen=True)
class ViewState:
    conversation_id: Optional[int] = None
    threads: Tuple[Thread, ...] = ()
    branch_index: Mapping[int, int] = field(default_factory=dict)
    thread_level: int = 0
    error: str = ""
    pending: FrozenSet[int] = frozenset()

    def thread(self, thread_id: int) -> Optional[Thread]:
        for thread in self.threads:
            if thread.original_message_id == thread_id:
                return thread
        return None

    def current_branch(self, thread: Thread) -> BranchView:
        branches = thread.branches
        index = self.branch_index.get(thread.original_message_id, 0)
        return branches[max(0, min(index, len(branches) - 1))]

    @property
    def is_empty(self) -> bool:
        return not self.threads


# ----------------------------------------------------------------------
# Events
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class ConversationLoaded:
    conversation_id: int
    threads: Sequence[Thread]


@dataclass(frozen=True)
class ConversationStarted:
    conversation_id: int


@dataclass(frozen=True)
class MessageSent:
    message: Message


@dataclass(frozen=True)
class BranchCreated:
    message: Message


@dataclass(frozen=True)
class ResponseResolved:
    message_id: int
    content: str
    response_id: Optional[int] = None


@dataclass(frozen=True)
class BranchNavigated:
    thread_id: int
    step: int


@dataclass(frozen=True)
class ThreadLevelAdvanced:
    """Raises the edit counter before a branch is written."""


@dataclass(frozen=True)
class ValidationFailed:
    message: str = EMPTY_MESSAGE_ERROR


@dataclass(frozen=True)
class ErrorRaised:
    message: str


@dataclass(frozen=True)
class HistoryCleared:
    pass


def _with_index(state: ViewState, thread_id: int, index: int) -> Dict[int, int]:
    indices = dict(state.branch_index)
    indices[thread_id] = index
    return indices


def _resolve(state: ViewState, event: ResponseResolved) -> ViewState:
    threads = list(state.threads)
    for position, thread in enumerate(threads):
        branch = thread.find(event.message_id)
        if branch is None:
            continue
        updated = branch.with_response(ResponseView(content=event.content, id=event.response_id))
        threads[position] = thread.replace_branch(event.message_id, updated)
        return replace(
            state,
            threads=tuple(threads),
            pending=state.pending - {event.message_id},
        )
    return state


def _add_branch(state: ViewState, message: Message) -> ViewState:
    if message.parent_id is None:
        return state
    threads = list(state.threads)
    for position, thread in enumerate(threads):
        if thread.original_message_id != message.parent_id:
            continue
        thread = thread.add_child(BranchView.from_message(message))
        threads[position] = thread
        return replace(
            state,
            threads=tuple(threads),
            branch_index=_with_index(state, message.parent_id, len(thread.branches) - 1),
            thread_level=message.thread_level,
            pending=state.pending | {message.id},
            error="",
        )
    return state


def _navigate(state: ViewState, event: BranchNavigated) -> ViewState:
    thread = state.thread(event.thread_id)
    if thread is None:
        return state
    last = len(thread.branches) - 1
    current = state.branch_index.get(event.thread_id, 0)
    target = max(0, min(current + event.step, last))
    if target == current:
        return state
    return replace(state, branch_index=_with_index(state, event.thread_id, target))


def reduce(state: ViewState, event: object) -> ViewState:
    """Apply ``event`` to ``state`` and return the resulting state."""

    if isinstance(event, ConversationLoaded):
        return ViewState(conversation_id=event.conversation_id, threads=tuple(event.threads))
    if isinstance(event, ConversationStarted):
        return ViewState(conversation_id=event.conversation_id)
    if isinstance(event, MessageSent):
        root = BranchView.from_message(event.message)
        return replace(
            state,
            conversation_id=event.message.conversation_id,
            threads=state.threads + (Thread(root=root),),
            pending=state.pending | {event.message.id},
            error="",
        )
    if isinstance(event, BranchCreated):
        return _add_branch(state, event.message)
    if isinstance(event, ResponseResolved):
        return _resolve(state, event)
    if isinstance(event, BranchNavigated):
        return _navigate(state, event)
    if isinstance(event, ThreadLevelAdvanced):
        return replace(state, thread_level=state.thread_level + 1)
    if isinstance(event, (ValidationFailed, ErrorRaised)):
        return replace(state, error=event.message)
    if isinstance(event, HistoryCleared):
        return ViewState()
    raise TypeError(f"Unknown view-state event: {event!r}")


__all__ = [
    "BranchCreated",
    "BranchNavigated",
    "ConversationLoaded",
    "ConversationStarted",
    "EMPTY_MESSAGE_ERROR",
    "ErrorRaised",
    "HistoryCleared",
    "MessageSent",
    "ResponseResolved",
    "ThreadLevelAdvanced",
    "ValidationError",
    "ValidationFailed",
    "ViewState",
    "reduce",
    "validate_content",
]
