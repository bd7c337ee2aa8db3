from __future__ import annotations

import html
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .models import Conversation, Thread
from .view_state import ViewState

UNTITLED_CONVERSATION = "New conversation"
PENDING_TEXT = "Thinking…"
NO_BRANCHES_TEXT = "No Branches Yet"


def safe_component(
    factory: Callable[..., Any],
    *args: Any,
    optional_keys: Tuple[str, ...] = ("type",),
    **kwargs: Any,
) -> Any:
    """Instantiate a Gradio component, dropping optional kwargs this version rejects."""

    attempt_kwargs = dict(kwargs)
    while True:
        try:
            return factory(*args, **attempt_kwargs)
        except TypeError as exc:
            message = str(exc)
            dropped = next(
                (key for key in optional_keys if key in attempt_kwargs and f"'{key}'" in message),
                None,
            )
            if dropped is None:
                raise
            attempt_kwargs.pop(dropped)


def pending_bubble(text: str = PENDING_TEXT) -> str:
    safe_text = html.escape(text).replace("\n", "<br>")
    return (
        "<div class=\"pending-response-bubble\">"
        f"<span class=\"pending-response-text\">{safe_text}</span>"
        "</div>"
    )


def _shorten_text(text: str, limit: int = 48) -> str:
    flat = " ".join((text or "").split())
    if len(flat) <= limit:
        return flat
    return flat[: limit - 1].rstrip() + "…"


def branch_marker(state: ViewState, thread: Thread) -> str:
    """``‹ i / n ›`` for threads with more than one branch, otherwise empty."""

    total = len(thread.branches)
    if total < 2:
        return ""
    index = state.branch_index.get(thread.original_message_id, 0)
    return f"‹ {min(index, total - 1) + 1} / {total} ›"


def chat_messages(state: ViewState) -> List[Dict[str, Any]]:
    """Render the visible branch of every thread as chatbot messages."""

    messages: List[Dict[str, Any]] = []
    for thread in state.threads:
        branch = state.current_branch(thread)
        marker = branch_marker(state, thread)
        content = f"{branch.content}\n\n{marker}" if marker else branch.content
        messages.append({"role": "user", "content": content})
        if branch.response is not None:
            messages.append({"role": "assistant", "content": branch.response.content})
        else:
            messages.append({"role": "assistant", "content": pending_bubble()})
    return messages


def thread_choices(state: ViewState) -> List[Tuple[str, int]]:
    choices = []
    for position, thread in enumerate(state.threads, start=1):
        label = _shorten_text(thread.root.content) or f"Message {position}"
        choices.append((f"{position}. {label}", thread.original_message_id))
    return choices


def conversation_choices(conversations: Iterable[Conversation]) -> List[Tuple[str, int]]:
    return [(conv.title or UNTITLED_CONVERSATION, conv.id) for conv in conversations]


def transcript_messages(transcript: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    messages = [
        {"role": entry["role"], "content": entry["content"]}
        for entry in transcript
        if entry.get("content")
    ]
    if not messages:
        return [{"role": "assistant", "content": NO_BRANCHES_TEXT}]
    return messages


def error_markdown(state: ViewState) -> str:
    if not state.error:
        return ""
    return f"<span class=\"branchchat-error\">{html.escape(state.error)}</span>"


def coerce_id(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


__all__ = [
    "NO_BRANCHES_TEXT",
    "PENDING_TEXT",
    "UNTITLED_CONVERSATION",
    "branch_marker",
    "chat_messages",
    "coerce_id",
    "conversation_choices",
    "error_markdown",
    "pending_bubble",
    "safe_component",
    "thread_choices",
    "transcript_messages",
]
