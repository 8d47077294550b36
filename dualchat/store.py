from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from .states import ConversationRecord


STORAGE_KEY = "dual-bot-conversations-v1"


class ConversationStore:
    """Local key-value file holding every conversation under one fixed key."""

    def __init__(self, path: Path | str, key: str = STORAGE_KEY) -> None:
        self.path = Path(path)
        self.key = key

    def _read_all(self) -> Dict[str, Any]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"store_corrupt | path={self.path} err={e}")
            return {}
        return data if isinstance(data, dict) else {}

    def load(self) -> List[ConversationRecord]:
        items = self._read_all().get(self.key)
        if not isinstance(items, list):
            return []
        records: List[ConversationRecord] = []
        for obj in items:
            if not isinstance(obj, dict):
                continue
            try:
                record = ConversationRecord.from_dict(obj)
            except (TypeError, ValueError) as e:
                logger.warning(f"store_skip_record | id={obj.get('id')} err={e}")
                continue
            raw_messages = obj.get("messages")
            dropped = (len(raw_messages) if isinstance(raw_messages, list) else 0) - len(record.messages)
            if dropped:
                logger.warning(f"store_skip_messages | id={record.id} dropped={dropped}")
            records.append(record)
        logger.debug(f"store_load | path={self.path} conversations={len(records)}")
        return records

    def save(self, records: List[ConversationRecord]) -> None:
        data = self._read_all()
        data[self.key] = [r.to_dict() for r in records]
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)
        logger.debug(f"store_save | path={self.path} conversations={len(records)}")


class DebouncedSaver:
    """Coalesces bursts of saves (e.g. one per streamed token) into one write."""

    def __init__(
        self,
        store: ConversationStore,
        snapshot: Callable[[], List[ConversationRecord]],
        delay: float = 0.25,
    ) -> None:
        self.store = store
        self.snapshot = snapshot
        self.delay = delay
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop to defer on (synchronous callers)
            self.flush()
            return
        self.cancel()
        self._handle = loop.call_later(self.delay, self.flush)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def flush(self) -> None:
        self.cancel()
        self.store.save(self.snapshot())
