from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, List, Optional

from loguru import logger

from .errors import DualChatError
from .manager import ConversationScheduler
from .states import BotIdentity, ConversationMode, ConversationRecord, now_ms
from .store import ConversationStore, DebouncedSaver


# scheduler events that change what gets persisted
_MUTATIONS = {"message_appended", "message_updated", "config_changed", "speaker_changed"}


class ConversationLibrary:
    """All saved conversations plus the one currently driven by the scheduler."""

    def __init__(
        self,
        store: ConversationStore,
        scheduler: ConversationScheduler,
        save_delay: float = 0.25,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.records: List[ConversationRecord] = []
        self.saver = DebouncedSaver(store, lambda: list(self.records), delay=save_delay)
        self._unsubscribe = scheduler.subscribe(self._on_event)

    @property
    def current(self) -> ConversationRecord:
        return self.scheduler.record

    def open(self) -> ConversationRecord:
        """Load the store once; resume the first conversation or start a new one."""
        self.records = self.store.load()
        logger.info(f"library_open | conversations={len(self.records)}")
        if self.records:
            return self.select(self.records[0].id) or self.new_conversation()
        return self.new_conversation()

    def conversations(self) -> List[ConversationRecord]:
        return sorted(self.records, key=lambda r: r.updated_at, reverse=True)

    def get(self, conversation_id: str) -> Optional[ConversationRecord]:
        for r in self.records:
            if r.id == conversation_id:
                return r
        return None

    def new_conversation(self, base_url: Optional[str] = None) -> ConversationRecord:
        self.scheduler.stop()
        record = ConversationRecord(
            base_url=base_url or self.scheduler.record.base_url,
            mode=ConversationMode.FULL_AUTO,
        )
        self.records.insert(0, record)
        self.save_now()
        self.scheduler.load(record)
        return record

    def select(self, conversation_id: str) -> Optional[ConversationRecord]:
        record = self.get(conversation_id)
        if record is None:
            logger.warning(f"library_select_missing | id={conversation_id}")
            return None
        self.scheduler.load(record)
        return record

    def delete(self, conversation_id: str) -> None:
        self.records = [r for r in self.records if r.id != conversation_id]
        self.save_now()
        if self.scheduler.record.id == conversation_id:
            if self.records:
                self.select(self.records[0].id)
            else:
                self.new_conversation()

    def rename(self, conversation_id: str, title: str) -> None:
        record = self.get(conversation_id)
        if record is None:
            return
        record.title = (title or "").strip() or record.title
        record.updated_at = now_ms()
        self.save_now()

    def save_now(self) -> None:
        self.saver.flush()

    def close(self) -> None:
        self._unsubscribe()
        if self.saver.pending:
            self.saver.flush()

    async def refresh_models(self) -> List[str]:
        """List upstream models and move bots off models the server does not offer."""
        record = self.current
        try:
            models = await self.scheduler.require_client().list_models(record.base_url)
        except DualChatError as e:
            logger.warning(f"models_refresh_failed | base_url={record.base_url} err={e}")
            return []
        logger.info(f"models_refreshed | base_url={record.base_url} count={len(models)}")
        if models:
            for identity in BotIdentity:
                bot = record.bot(identity)
                if bot.model_id not in models:
                    self.scheduler.update_bot(identity, replace(bot, model_id=models[0]))
        return models

    def _on_event(self, event: Dict[str, Any]) -> None:
        if event.get("type") not in _MUTATIONS:
            return
        record = self.current
        if self.get(record.id) is None:
            return
        record.updated_at = now_ms()
        record.title = record.derive_title(fallback=record.title or "Untitled")
        self.saver.schedule()
