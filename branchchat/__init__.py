"""Internal modules that back the BranchChat Gradio application."""

from . import config as _config
from .models import BranchView, Conversation, Message, Response, ResponseView, Thread
from .responses import CANNED_RESPONSES, generate_response
from .scheduler import ResponseScheduler
from .session import ChatSession
from .store import (
    ChatStore,
    ClearError,
    MemoryChatStore,
    PgChatStore,
    StoreError,
    build_store,
)
from .threads import FetchError, assemble, branch_transcript
from .ui_utils import safe_component
from .view_state import ValidationError, ViewState, reduce

reload_from_environment = _config.reload_from_environment

__all__ = [
    "BranchView",
    "CANNED_RESPONSES",
    "ChatSession",
    "ChatStore",
    "ClearError",
    "Conversation",
    "FetchError",
    "MemoryChatStore",
    "Message",
    "PgChatStore",
    "Response",
    "ResponseScheduler",
    "ResponseView",
    "StoreError",
    "Thread",
    "ValidationError",
    "ViewState",
    "assemble",
    "branch_transcript",
    "build_store",
    "generate_response",
    "reduce",
    "reload_from_environment",
    "safe_component",
]


def __getattr__(name: str):
    if hasattr(_config, name):
        return getattr(_config, name)
    raise AttributeError(name)
