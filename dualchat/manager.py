from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from .agents import TurnGenerator
from .errors import Cancelled, DualChatError
from .llm import CancelToken, CompletionClient
from .states import (
    BotConfig,
    BotIdentity,
    ConversationMode,
    ConversationRecord,
    Message,
    RunSession,
    SchedulerState,
)


Listener = Callable[[Dict[str, Any]], None]


class ConversationScheduler:
    """Sequences turns for one conversation and owns the run's cancel token.

    Only one RunSession exists at a time, so at most one turn (and one
    request) is in flight. Listeners receive ``{"type": ..., "data": ...}``
    events synchronously as the conversation changes.
    """

    def __init__(
        self,
        client: Optional[CompletionClient] = None,
        record: Optional[ConversationRecord] = None,
        turn_delay: float = 0.05,
    ) -> None:
        self.client = client
        self.record = record or ConversationRecord()
        self.turn_delay = turn_delay
        self.generator = TurnGenerator(client, listener=self._on_turn_event)
        self.session: Optional[RunSession] = None
        self.state = SchedulerState.IDLE
        self._next_speaker = self.record.next_speaker()
        self._listeners: List[Listener] = []

    # ------------------------------------------------------------------
    # observers

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, kind: str, data: Any = None) -> None:
        event = {"type": kind, "data": data}
        for listener in list(self._listeners):
            listener(event)

    def _on_turn_event(self, kind: str, message: Message) -> None:
        self._emit(kind, message)

    def _set_state(self, state: SchedulerState) -> None:
        if state is self.state:
            return
        self.state = state
        self._emit("run_state", state)

    def _set_next_speaker(self, speaker: BotIdentity) -> None:
        self._next_speaker = speaker
        self._emit("speaker_changed", speaker)

    # ------------------------------------------------------------------
    # read-only views

    @property
    def running(self) -> bool:
        return self.session is not None

    @property
    def mode(self) -> ConversationMode:
        return self.record.mode

    @property
    def next_speaker(self) -> BotIdentity:
        if self.session is not None:
            return self.session.active_speaker
        return self._next_speaker

    @property
    def messages(self) -> List[Message]:
        return self.record.messages

    # ------------------------------------------------------------------
    # commands

    async def start(self, max_turns: Optional[int] = None) -> None:
        """Run full-auto turns until stopped (or ``max_turns`` is reached).

        In semi-auto mode this performs a single step; in manual mode it does nothing.
        """
        mode = self.record.mode
        if mode is ConversationMode.MANUAL:
            logger.debug("run_ignored | mode=manual")
            return
        if self.running:
            logger.debug("run_ignored | already running")
            return
        if mode is ConversationMode.SEMI_AUTO:
            await self._run(mode, max_turns=1)
            return
        await self._run(mode, max_turns=max_turns)

    async def step(self) -> None:
        """Produce exactly one turn in semi-auto mode, then return to idle."""
        if self.record.mode is not ConversationMode.SEMI_AUTO or self.running:
            return
        await self._run(ConversationMode.SEMI_AUTO, max_turns=1)

    def stop(self) -> None:
        session = self.session
        if session is None:
            return
        self.session = None
        session.token.cancel()
        logger.info(f"run_stop | mode={session.mode.value} turns={session.turns}")
        self._set_state(SchedulerState.STOPPED)

    def send(self, text: str, author: BotIdentity) -> Optional[Message]:
        """Append a manual message without any network call (manual mode only)."""
        if self.record.mode is not ConversationMode.MANUAL:
            return None
        content = (text or "").strip()
        if not content:
            return None
        message = Message(author=author, content=content)
        self.record.messages.append(message)
        self._emit("message_appended", message)
        self._set_next_speaker(author.other)
        logger.info(f"manual_send | speaker={author.value} chars={len(content)}")
        return message

    def edit_message(self, message_id: str, content: str) -> bool:
        message = self.record.find_message(message_id)
        if message is None:
            return False
        message.content = content
        self._emit("message_updated", message)
        return True

    def update_bot(self, identity: BotIdentity, config: BotConfig) -> None:
        self.record.bots[identity] = config
        self._emit("config_changed", identity)

    def set_mode(self, mode: ConversationMode) -> None:
        if mode is self.record.mode:
            return
        self.record.mode = mode
        self._emit("config_changed", mode)

    def set_next_speaker(self, speaker: BotIdentity) -> None:
        if self.running:
            return
        self._set_next_speaker(speaker)

    def set_base_url(self, base_url: str) -> None:
        self.record.base_url = base_url
        self._emit("config_changed", base_url)

    def require_client(self) -> CompletionClient:
        if self.client is None:
            raise DualChatError("no completion client bound; call use_client first")
        return self.client

    def use_client(self, client: CompletionClient) -> None:
        """Swap the completion client (e.g. one per event loop); not while running."""
        if self.running:
            return
        self.client = client
        self.generator.client = client

    def load(self, record: ConversationRecord) -> None:
        """Switch to another conversation; any active run is stopped first."""
        self.stop()
        self.record = record
        self._next_speaker = record.next_speaker()
        self._set_state(SchedulerState.IDLE)
        self._emit("conversation_loaded", record)
        logger.info(f"conversation_loaded | id={record.id} messages={len(record.messages)} next={self._next_speaker.value}")

    # ------------------------------------------------------------------
    # run loop

    async def _run(self, mode: ConversationMode, max_turns: Optional[int]) -> None:
        self.require_client()
        record = self.record
        session = RunSession(mode=mode, active_speaker=self._next_speaker, token=CancelToken())
        self.session = session
        self._set_state(SchedulerState.RUNNING)
        logger.info(f"run_start | mode={mode.value} speaker={session.active_speaker.value} max_turns={max_turns}")
        try:
            while self.session is session:
                speaker = session.active_speaker
                before = len(record.messages)
                try:
                    message = await self.generator.generate_turn(record, speaker, session.token)
                except Cancelled:
                    # the partial message stays; the next run starts with the other bot
                    self._advance(record, session, speaker)
                    logger.info(f"run_cancelled | speaker={speaker.value} turns={session.turns}")
                    break
                except BaseException:
                    # unwound from outside the token (task cancel, UI rerun)
                    self._abandon(record, session, speaker, appended=len(record.messages) > before)
                    raise
                self._advance(record, session, speaker)
                self._emit("turn_complete", message)

                if mode is ConversationMode.SEMI_AUTO:
                    break
                if record.mode is not ConversationMode.FULL_AUTO:
                    logger.info(f"run_mode_changed | mode={record.mode.value}")
                    break
                if max_turns is not None and session.turns >= max_turns:
                    logger.info(f"run_turn_cap | turns={session.turns}")
                    break
                await asyncio.sleep(self.turn_delay)
        finally:
            if self.session is session:
                self.session = None
                self._set_state(SchedulerState.IDLE)

    def _abandon(self, record: ConversationRecord, session: RunSession, speaker: BotIdentity, appended: bool) -> None:
        """Close a run interrupted mid-turn; a partial message still counts as the speaker's turn."""
        session.token.cancel()
        if appended:
            self._advance(record, session, speaker)
        logger.warning(f"run_interrupted | speaker={speaker.value} turns={session.turns}")
        if self.session is session:
            self.session = None
            self._set_state(SchedulerState.STOPPED)

    def _advance(self, record: ConversationRecord, session: RunSession, speaker: BotIdentity) -> None:
        session.turns += 1
        session.active_speaker = speaker.other
        if self.record is record and (self.session is session or self.session is None):
            self._set_next_speaker(speaker.other)
