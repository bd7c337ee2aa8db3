"""Rows persisted by the chat store and the thread views derived from them.

``Conversation``, ``Message`` and ``Response`` mirror the three database
tables one-to-one.  ``Thread`` and ``BranchView`` are never stored: they are
rebuilt from rows by :mod:`branchchat.threads` and kept by the UI as part of
its view-state.  A thread is an explicit tree: the original message is the
root and every edit of it is a child branch.  Only one level of children is
populated today, but ``BranchView.children`` lets deeper forks be represented
without changing the shape of the data.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Tuple


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return datetime.fromtimestamp(0, tz=timezone.utc)
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed
    return datetime.fromtimestamp(0, tz=timezone.utc)


@dataclass(frozen=True)
class Conversation:
    id: int
    title: str
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Conversation":
        return cls(
            id=int(row["id"]),
            title=str(row.get("title") or ""),
            created_at=_to_datetime(row.get("created_at")),
        )


@dataclass(frozen=True)
class Message:
    id: int
    conversation_id: int
    content: str
    is_branch: bool = False
    parent_id: Optional[int] = None
    thread_level: int = 0
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Message":
        parent = row.get("parent_id")
        return cls(
            id=int(row["id"]),
            conversation_id=int(row["conversation_id"]),
            content=str(row.get("content") or ""),
            is_branch=bool(row.get("is_branch")),
            parent_id=int(parent) if parent is not None else None,
            thread_level=int(row.get("thread_level") or 0),
            created_at=_to_datetime(row.get("created_at")),
        )


@dataclass(frozen=True)
class Response:
    id: int
    message_id: int
    content: str
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Response":
        return cls(
            id=int(row["id"]),
            message_id=int(row["message_id"]),
            content=str(row.get("content") or ""),
            created_at=_to_datetime(row.get("created_at")),
        )


@dataclass(frozen=True)
class ResponseView:
    """Reply shown under a branch; ``id`` stays ``None`` until it is stored."""

    content: str
    id: Optional[int] = None


@dataclass(frozen=True)
class BranchView:
    message_id: int
    content: str
    thread_level: int = 0
    parent_id: Optional[int] = None
    response: Optional[ResponseView] = None
    children: Tuple["BranchView", ...] = ()

    @property
    def is_branch(self) -> bool:
        return self.parent_id is not None

    @classmethod
    def from_message(
        cls,
        message: Message,
        response: Optional[Response] = None,
        *,
        thread_level: Optional[int] = None,
    ) -> "BranchView":
        return cls(
            message_id=message.id,
            content=message.content,
            thread_level=message.thread_level if thread_level is None else thread_level,
            parent_id=message.parent_id,
            response=ResponseView(content=response.content, id=response.id) if response else None,
        )

    def with_response(self, response: Optional[ResponseView]) -> "BranchView":
        return replace(self, response=response)


@dataclass(frozen=True)
class Thread:
    root: BranchView
    children: Tuple[BranchView, ...] = ()

    @property
    def original_message_id(self) -> int:
        return self.root.message_id

    @property
    def branches(self) -> Tuple[BranchView, ...]:
        return (self.root,) + tuple(self.children)

    def add_child(self, branch: BranchView) -> "Thread":
        return replace(self, children=tuple(self.children) + (branch,))

    def find(self, message_id: int) -> Optional[BranchView]:
        for branch in _walk(self.root, self.children):
            if branch.message_id == message_id:
                return branch
        return None

    def replace_branch(self, message_id: int, updated: BranchView) -> "Thread":
        """Return a copy with the branch ``message_id`` swapped for ``updated``."""

        if self.root.message_id == message_id:
            return replace(self, root=updated)
        return replace(self, children=_replace_in(self.children, message_id, updated))


def _walk(root: BranchView, children: Tuple[BranchView, ...]):
    yield root
    for child in children:
        yield from _walk(child, child.children)


def _replace_in(
    branches: Tuple[BranchView, ...], message_id: int, updated: BranchView
) -> Tuple[BranchView, ...]:
    result = []
    for branch in branches:
        if branch.message_id == message_id:
            result.append(updated)
        elif branch.children:
            result.append(replace(branch, children=_replace_in(branch.children, message_id, updated)))
        else:
            result.append(branch)
    return tuple(result)


__all__ = [
    "BranchView",
    "Conversation",
    "Message",
    "Response",
    "ResponseView",
    "Thread",
]
