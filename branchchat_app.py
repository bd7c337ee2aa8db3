#!/usr/bin/env python3

# Copyright (c) 2025 James Baker VA7ODR
#
# Permission is hereby granted, free of charge, to any person obtaining a copy of this software
# and associated documentation files (the “Software”), to deal in the Software without
# restriction, including without limitation the rights to use, copy, modify, merge, publish,
# distribute, sublicense, and/or sell copies of the Software, and to permit persons to whom the
# Software is furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in all copies or
# substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED “AS IS”, WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL
# THE AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR
# OTHER LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE,
# ARISING FROM, OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR
# OTHER DEALINGS IN THE SOFTWARE.

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

import gradio as gr

import branchchat.config as branchchat_config
from branchchat.responses import generate_response
from branchchat.session import ChatSession
from branchchat.store import ChatStore, ClearError, StoreError, build_store
from branchchat.threads import FetchError
from branchchat.ui_utils import (
    branch_marker,
    chat_messages,
    coerce_id,
    conversation_choices,
    error_markdown,
    safe_component,
    thread_choices,
    transcript_messages,
)
from branchchat.view_state import ErrorRaised


branchchat_config.reload_from_environment()

_safe_component = safe_component

SELECT_MESSAGE_ERROR = "Select a message to edit."


@dataclass
class AppDependencies:
    store: ChatStore
    response_delay: float
    generate: Callable[[], str] = generate_response


store: ChatStore
_dependencies: AppDependencies | None = None
_sessions: Dict[str, ChatSession] = {}


def build_dependencies(
    *,
    storage: str | None = None,
    response_delay: Optional[float] = None,
    generate: Optional[Callable[[], str]] = None,
) -> AppDependencies:
    return AppDependencies(
        store=build_store(storage),
        response_delay=branchchat_config.RESPONSE_DELAY if response_delay is None else response_delay,
        generate=generate or generate_response,
    )


def get_dependencies() -> AppDependencies:
    if _dependencies is None:
        raise RuntimeError("App dependencies have not been configured")
    return _dependencies


def configure_dependencies(deps: AppDependencies) -> AppDependencies:
    global store, _dependencies
    for session in _sessions.values():
        session.close()
    _sessions.clear()
    _dependencies = deps
    store = deps.store
    return deps


configure_dependencies(build_dependencies())


def _session_key(request: Any) -> str:
    return str(getattr(request, "session_hash", None) or "default")


def _session_for(request: Any) -> ChatSession:
    key = _session_key(request)
    session = _sessions.get(key)
    if session is None or session.closed:
        deps = get_dependencies()
        session = ChatSession(
            deps.store,
            delay=deps.response_delay,
            generate=deps.generate,
            logger=logging.getLogger(__name__),
        )
        _sessions[key] = session
    return session


def _view_outputs(session: ChatSession, selected: Optional[int] = None) -> Tuple[Any, ...]:
    state = session.state
    choices = thread_choices(state)
    ids = [value for _, value in choices]
    value = selected if selected in ids else (ids[-1] if ids else None)
    thread = state.thread(value) if value is not None else None
    marker = branch_marker(state, thread) if thread is not None else ""
    return (
        chat_messages(state),
        error_markdown(state),
        gr.update(choices=choices, value=value),
        marker,
    )


async def _conversation_dropdown_update(session: ChatSession) -> Any:
    try:
        conversations = await session.list_conversations()
    except StoreError as exc:
        logging.getLogger(__name__).error("Error fetching conversations: %s", exc)
        session.dispatch(ErrorRaised("Error fetching conversations"))
        return gr.update()
    return gr.update(
        choices=conversation_choices(conversations),
        value=session.state.conversation_id,
    )


async def on_load(request: gr.Request):
    session = _session_for(request)
    dropdown = await _conversation_dropdown_update(session)
    return (*_view_outputs(session), dropdown)


async def on_refresh_conversations(request: gr.Request):
    return await _conversation_dropdown_update(_session_for(request))


async def on_send(message: str, request: gr.Request):
    session = _session_for(request)
    try:
        async for _state in session.send(message or ""):
            yield (*_view_outputs(session), "")
    except StoreError as exc:
        session.fail(exc)
        yield (*_view_outputs(session), gr.update())


async def on_edit(thread_id: Any, text: str, request: gr.Request):
    session = _session_for(request)
    target = coerce_id(thread_id)
    if target is None:
        session.dispatch(ErrorRaised(SELECT_MESSAGE_ERROR))
        yield (*_view_outputs(session), gr.update())
        return
    try:
        async for _state in session.edit(target, text or ""):
            yield (*_view_outputs(session, target), "")
    except StoreError as exc:
        session.fail(exc)
        yield (*_view_outputs(session, target), gr.update())


def on_start_edit(thread_id: Any, request: gr.Request) -> str:
    session = _session_for(request)
    target = coerce_id(thread_id)
    thread = session.state.thread(target) if target is not None else None
    if thread is None:
        return ""
    return session.state.current_branch(thread).content


def on_cancel_edit() -> str:
    return ""


def _navigate(thread_id: Any, step: int, request: Any) -> Tuple[Any, ...]:
    session = _session_for(request)
    target = coerce_id(thread_id)
    if target is not None:
        session.navigate(target, step)
    return _view_outputs(session, target)


def on_previous_branch(thread_id: Any, request: gr.Request):
    return _navigate(thread_id, -1, request)


def on_next_branch(thread_id: Any, request: gr.Request):
    return _navigate(thread_id, 1, request)


def on_thread_selected(thread_id: Any, request: gr.Request) -> str:
    session = _session_for(request)
    target = coerce_id(thread_id)
    thread = session.state.thread(target) if target is not None else None
    return branch_marker(session.state, thread) if thread is not None else ""


async def on_show_branches(thread_id: Any, request: gr.Request):
    session = _session_for(request)
    target = coerce_id(thread_id)
    if target is None:
        return transcript_messages([])
    try:
        transcript = await session.branch_transcript(target)
    except FetchError as exc:
        session.fail(exc)
        return transcript_messages([])
    return transcript_messages(transcript)


async def on_select_conversation(selected_id: Any, request: gr.Request):
    session = _session_for(request)
    conversation_id = coerce_id(selected_id)
    if conversation_id is not None:
        try:
            await session.select_conversation(conversation_id)
        except FetchError as exc:
            session.fail(exc)
    return _view_outputs(session)


async def on_new_conversation(request: gr.Request):
    session = _session_for(request)
    try:
        await session.new_conversation()
    except StoreError as exc:
        logging.getLogger(__name__).error("Error creating a new conversation: %s", exc)
        session.dispatch(ErrorRaised("Error creating a new conversation"))
    dropdown = await _conversation_dropdown_update(session)
    return (*_view_outputs(session), dropdown)


async def on_clear_conversations(request: gr.Request):
    session = _session_for(request)
    try:
        await session.clear_all()
    except ClearError as exc:
        logging.getLogger(__name__).error("Error clearing conversations: %s", exc)
        session.dispatch(ErrorRaised(f"Error clearing conversations: could not delete {exc.stage}"))
    dropdown = await _conversation_dropdown_update(session)
    return (*_view_outputs(session), dropdown)


def on_unload(request: gr.Request) -> None:
    session = _sessions.pop(_session_key(request), None)
    if session is not None:
        session.close()


with gr.Blocks(title="BranchChat") as demo:
    style_component = getattr(gr, "HTML", None) or gr.Markdown
    _safe_component(
        style_component,
        """
        <style>
        #branchchat-chat .pending-response-bubble {
            background: var(--background-fill-secondary);
            border: 1px dashed var(--border-color-primary);
            border-radius: var(--radius-lg);
            display: inline-block;
            font-size: 0.88em;
            padding: 0.4rem 0.75rem;
        }

        #branchchat-chat .pending-response-text {
            display: block;
            font-weight: 500;
            opacity: 0.75;
        }

        .branchchat-error {
            color: #ef4444;
            font-size: 0.9em;
        }
        </style>
        """,
    )

    with gr.Row():
        with gr.Column(scale=1, min_width=220):
            new_conversation_btn = gr.Button("➕ New chat")
            conversation_selector = gr.Dropdown(
                label="Conversations",
                choices=[],
                value=None,
                interactive=True,
            )
            clear_btn = gr.Button("🗑️ Clear conversations", variant="secondary")
        with gr.Column(scale=4):
            chat = _safe_component(
                gr.Chatbot,
                value=[],
                height=480,
                type="messages",
                placeholder="## BranchChat",
                elem_id="branchchat-chat",
                optional_keys=("type", "placeholder"),
            )
            error_box = gr.Markdown("")
            with gr.Row():
                user_box = gr.Textbox(
                    label="Message",
                    placeholder="Send a message...",
                    scale=5,
                )
                send_btn = gr.Button("Send", variant="primary", scale=1)

            with gr.Row():
                thread_selector = gr.Dropdown(
                    label="Message to edit",
                    choices=[],
                    value=None,
                    interactive=True,
                    scale=3,
                )
                prev_btn = gr.Button("◀", scale=0)
                branch_marker_box = gr.Markdown("")
                next_btn = gr.Button("▶", scale=0)
                edit_btn = gr.Button("✏️ Edit", scale=0)
            edit_box = gr.Textbox(label="Edited message", lines=3)
            with gr.Row():
                cancel_edit_btn = gr.Button("Cancel", variant="secondary")
                save_edit_btn = gr.Button("Save & Submit", variant="primary")

            with gr.Accordion("Branches", open=False):
                branch_view = _safe_component(
                    gr.Chatbot,
                    value=transcript_messages([]),
                    height=280,
                    type="messages",
                    optional_keys=("type",),
                )

    view_outputs = [chat, error_box, thread_selector, branch_marker_box]

    demo.load(on_load, inputs=None, outputs=view_outputs + [conversation_selector])

    for trigger in (send_btn.click, user_box.submit):
        send_event = trigger(on_send, inputs=[user_box], outputs=view_outputs + [user_box])
        send_event.then(on_refresh_conversations, inputs=None, outputs=conversation_selector)

    edit_event = save_edit_btn.click(
        on_edit,
        inputs=[thread_selector, edit_box],
        outputs=view_outputs + [edit_box],
    )
    edit_event.then(on_show_branches, inputs=thread_selector, outputs=branch_view)

    edit_btn.click(on_start_edit, inputs=thread_selector, outputs=edit_box)
    cancel_edit_btn.click(on_cancel_edit, inputs=None, outputs=edit_box)
    prev_btn.click(on_previous_branch, inputs=thread_selector, outputs=view_outputs)
    next_btn.click(on_next_branch, inputs=thread_selector, outputs=view_outputs)

    thread_event = thread_selector.change(on_thread_selected, inputs=thread_selector, outputs=branch_marker_box)
    thread_event.then(on_show_branches, inputs=thread_selector, outputs=branch_view)

    # ``input`` fires only for user picks, not for the value set after a send.
    conversation_selector.input(
        on_select_conversation,
        inputs=conversation_selector,
        outputs=view_outputs,
    )
    new_conversation_btn.click(
        on_new_conversation,
        inputs=None,
        outputs=view_outputs + [conversation_selector],
    )
    clear_btn.click(
        on_clear_conversations,
        inputs=None,
        outputs=view_outputs + [conversation_selector],
    )

    unload = getattr(demo, "unload", None)
    if callable(unload):
        unload(on_unload)


if __name__ == "__main__":
    logging.basicConfig(
        level=getattr(logging, branchchat_config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    demo.queue().launch(
        server_name=branchchat_config.SERVER_NAME,
        server_port=branchchat_config.SERVER_PORT,
        show_error=True,
    )
