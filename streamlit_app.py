from __future__ import annotations

import asyncio
import sys
from dataclasses import replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict

import streamlit as st
from loguru import logger

from dualchat.config import get_settings
from dualchat.library import ConversationLibrary
from dualchat.llm import CompletionClient
from dualchat.manager import ConversationScheduler
from dualchat.states import BotIdentity, ConversationMode, GenerationParams
from dualchat.store import ConversationStore


settings = get_settings()

AVATARS = {BotIdentity.A: "🟩", BotIdentity.B: "🟧"}
MODES = [m.value for m in ConversationMode]


def get_library() -> ConversationLibrary:
    if "_library" not in st.session_state:
        logger.remove()
        logger.add(sys.stderr, level=settings.log_level, format="{time:HH:mm:ss} | {level} | {message}")
        # no client here; run_async binds one per action and event loop
        scheduler = ConversationScheduler(turn_delay=settings.turn_delay)
        library = ConversationLibrary(ConversationStore(settings.store_path), scheduler, save_delay=settings.save_delay)
        library.open()
        st.session_state["_library"] = library
    return st.session_state["_library"]


def run_async(library: ConversationLibrary, action: Callable[[], Awaitable[Any]]) -> Any:
    """Run one scheduler coroutine on a fresh loop with a client bound to it."""

    async def runner() -> Any:
        async with CompletionClient(gateway_url=settings.gateway_url, timeout=settings.request_timeout) as client:
            library.scheduler.use_client(client)
            try:
                return await action()
            finally:
                library.save_now()

    return asyncio.run(runner())


def bot_name(library: ConversationLibrary, ident: BotIdentity) -> str:
    return library.current.bot(ident).display_name or f"Bot {ident.value}"


def render_message(library: ConversationLibrary, msg, container) -> None:
    stamp = datetime.fromtimestamp(msg.created_at / 1000).strftime("%H:%M:%S")
    with container.chat_message("user" if msg.author is BotIdentity.A else "assistant", avatar=AVATARS[msg.author]):
        st.markdown(
            f"**{bot_name(library, msg.author)}** "
            f"<span style='color:gray;font-size:smaller'>{stamp}</span>",
            unsafe_allow_html=True,
        )
        st.markdown(msg.content or "...")


st.set_page_config(page_title="Dual LLM Chat", page_icon="🤖", layout="wide")
library = get_library()
scheduler = library.scheduler
record = library.current

# ---------------------------------------------------------------- sidebar
st.sidebar.title("Conversations")
if st.sidebar.button("New chat", type="primary"):
    library.new_conversation()
    st.rerun()

for convo in library.conversations():
    cols = st.sidebar.columns([5, 1])
    label = ("▶ " if convo.id == record.id else "") + convo.title
    if cols[0].button(label, key=f"sel_{convo.id}"):
        library.select(convo.id)
        st.rerun()
    if cols[1].button("🗑", key=f"del_{convo.id}"):
        library.delete(convo.id)
        st.rerun()

with st.sidebar.expander("Rename current"):
    new_title = st.text_input("Title", value=record.title, key=f"title_{record.id}")
    if st.button("Save name"):
        library.rename(record.id, new_title)
        st.rerun()

# ---------------------------------------------------------------- header
st.title("Dual LLM Chat")
hcol1, hcol2 = st.columns([4, 1])
base_url = hcol1.text_input("Base URL", value=record.base_url, placeholder="e.g. http://127.0.0.1:1234")
if base_url != record.base_url:
    scheduler.set_base_url(base_url)
    library.save_now()
if hcol2.button("Refresh models") or "_models" not in st.session_state:
    st.session_state["_models"] = run_async(library, library.refresh_models)
models = st.session_state.get("_models") or []

# ---------------------------------------------------------------- bot settings
bot_cols = st.columns(2)
for ident, col in zip(BotIdentity, bot_cols):
    cfg = record.bot(ident)
    with col.container(border=True):
        st.subheader(f"Bot {ident.value}")
        name = st.text_input("Name", value=cfg.display_name, key=f"name_{record.id}_{ident.value}")
        options = models or [cfg.model_id]
        model = st.selectbox(
            "Model",
            options,
            index=options.index(cfg.model_id) if cfg.model_id in options else 0,
            key=f"model_{record.id}_{ident.value}",
        )
        p1, p2 = st.columns(2)
        temperature = p1.slider("Temperature", 0.0, 2.0, float(cfg.params.temperature), 0.01, key=f"temp_{record.id}_{ident.value}")
        top_p = p2.slider("Top P", 0.0, 1.0, float(cfg.params.top_p), 0.01, key=f"topp_{record.id}_{ident.value}")
        presence = p1.slider("Presence penalty", -2.0, 2.0, float(cfg.params.presence_penalty), 0.01, key=f"pres_{record.id}_{ident.value}")
        frequency = p2.slider("Frequency penalty", -2.0, 2.0, float(cfg.params.frequency_penalty), 0.01, key=f"freq_{record.id}_{ident.value}")
        max_tokens = st.number_input("Max tokens", min_value=0, value=int(cfg.params.max_tokens or 0), key=f"maxt_{record.id}_{ident.value}")
        system_prompt = st.text_area("System prompt", value=cfg.system_prompt, height=110, key=f"sys_{record.id}_{ident.value}")
        updated = replace(
            cfg,
            display_name=name,
            model_id=model,
            system_prompt=system_prompt,
            params=GenerationParams(
                temperature=temperature,
                top_p=top_p,
                presence_penalty=presence,
                frequency_penalty=frequency,
                max_tokens=int(max_tokens) or None,
            ),
        )
        if updated != cfg:
            scheduler.update_bot(ident, updated)
            library.save_now()

# ---------------------------------------------------------------- conversation
mode_value = st.radio("Mode", MODES, index=MODES.index(record.mode.value), horizontal=True, key=f"mode_{record.id}")
if mode_value != record.mode.value:
    scheduler.set_mode(ConversationMode(mode_value))
    library.save_now()
st.caption(f"Next turn: {bot_name(library, scheduler.next_speaker)}")

chat_area = st.container()
if not record.messages:
    chat_area.info("No messages yet. " + ("Add one manually." if record.mode is ConversationMode.MANUAL else "Press Start to begin."))
for m in record.messages:
    render_message(library, m, chat_area)

with st.expander("Edit a message"):
    if record.messages:
        labels = {f"{i + 1}. {bot_name(library, m.author)}: {m.content[:40]}": m.id for i, m in enumerate(record.messages)}
        choice = st.selectbox("Message", list(labels), key=f"edit_sel_{record.id}")
        target = record.find_message(labels[choice])
        draft = st.text_area("Content", value=target.content if target else "", key=f"edit_{labels[choice]}")
        if st.button("Save edit"):
            scheduler.edit_message(labels[choice], draft)
            library.save_now()
            st.rerun()

c1, c2, c3 = st.columns(3)
start_btn = c1.button("Start", disabled=record.mode is ConversationMode.MANUAL)
step_btn = c2.button("Step", disabled=record.mode is not ConversationMode.SEMI_AUTO)
stop_btn = c3.button("Stop")

if record.mode is ConversationMode.MANUAL:
    mcol1, mcol2 = st.columns([1, 4])
    author = mcol1.radio("Speaker", ["A", "B"], key=f"manual_author_{record.id}")
    with mcol2.form("manual_send", clear_on_submit=True):
        text = st.text_area("Message", height=80)
        if st.form_submit_button("Send"):
            if scheduler.send(text, BotIdentity(author)) is not None:
                library.save_now()
                st.rerun()

if stop_btn:
    scheduler.stop()
    library.save_now()
    st.rerun()

if start_btn or step_btn:
    live = chat_area.empty()
    status = st.empty()

    def on_event(event: Dict[str, Any]) -> None:
        global live
        kind = event["type"]
        if kind in ("message_appended", "message_updated"):
            msg = event["data"]
            with live.container():
                render_message(library, msg, st)
        elif kind == "turn_complete":
            status.info(f"{len(record.messages)} messages")
            # start a fresh slot below the finished message
            live = chat_area.empty()

    unsubscribe = scheduler.subscribe(on_event)
    try:
        run_async(library, scheduler.start if start_btn else scheduler.step)
    finally:
        unsubscribe()
    st.rerun()
