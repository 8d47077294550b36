from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from .llm import CancelToken


DEFAULT_BASE_URL = "http://127.0.0.1:1234"
DEFAULT_MODEL = "gpt-3.5-turbo"
DEFAULT_TITLE = "New Conversation"


class BotIdentity(Enum):
    A = "A"
    B = "B"

    @property
    def other(self) -> "BotIdentity":
        return BotIdentity.B if self is BotIdentity.A else BotIdentity.A


class ConversationMode(Enum):
    FULL_AUTO = "full-auto"
    SEMI_AUTO = "semi-auto"
    MANUAL = "manual"


class SchedulerState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id(prefix: str = "id") -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


# lenient readers for persisted dicts: a bad field falls back to its default

def _float(obj: Dict[str, Any], key: str, default: float) -> float:
    try:
        return float(obj.get(key, default))
    except (TypeError, ValueError):
        return default


def _int(obj: Dict[str, Any], key: str, default: Optional[int]) -> Optional[int]:
    value = obj.get(key, default)
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _str(obj: Dict[str, Any], key: str, default: str) -> str:
    value = obj.get(key)
    return value if isinstance(value, str) and value else default


@dataclass
class GenerationParams:
    temperature: float = 0.7
    top_p: float = 1.0
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0
    max_tokens: Optional[int] = 1024

    def effective_max_tokens(self) -> Optional[int]:
        """Return max_tokens only when it is a positive integer."""
        mt = self.max_tokens
        if isinstance(mt, bool) or not isinstance(mt, int) or mt <= 0:
            return None
        return mt

    def to_dict(self) -> Dict[str, Any]:
        return {
            "temperature": self.temperature,
            "top_p": self.top_p,
            "presence_penalty": self.presence_penalty,
            "frequency_penalty": self.frequency_penalty,
            "max_tokens": self.max_tokens,
        }

    @classmethod
    def from_dict(cls, obj: Dict[str, Any] | None) -> "GenerationParams":
        obj = obj if isinstance(obj, dict) else {}
        base = cls()
        max_tokens = obj.get("max_tokens", base.max_tokens)
        return cls(
            temperature=_float(obj, "temperature", base.temperature),
            top_p=_float(obj, "top_p", base.top_p),
            presence_penalty=_float(obj, "presence_penalty", base.presence_penalty),
            frequency_penalty=_float(obj, "frequency_penalty", base.frequency_penalty),
            max_tokens=None if max_tokens is None else _int(obj, "max_tokens", None),
        )


@dataclass
class BotConfig:
    display_name: str
    model_id: str = DEFAULT_MODEL
    system_prompt: str = ""
    params: GenerationParams = field(default_factory=GenerationParams)

    @classmethod
    def default(cls, name: str) -> "BotConfig":
        return cls(
            display_name=name,
            model_id=DEFAULT_MODEL,
            system_prompt=f"You are {name}. Be concise, helpful, and engaging.",
            params=GenerationParams(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.display_name,
            "model": self.model_id,
            "systemPrompt": self.system_prompt,
            "params": self.params.to_dict(),
        }

    @classmethod
    def from_dict(cls, obj: Dict[str, Any] | None, fallback_name: str = "Bot") -> "BotConfig":
        obj = obj if isinstance(obj, dict) else {}
        return cls(
            display_name=_str(obj, "name", fallback_name),
            model_id=_str(obj, "model", DEFAULT_MODEL),
            system_prompt=_str(obj, "systemPrompt", ""),
            params=GenerationParams.from_dict(obj.get("params")),
        )


@dataclass
class Message:
    author: BotIdentity
    content: str = ""
    id: str = field(default_factory=lambda: new_id("msg"))
    created_at: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "author": self.author.value,
            "content": self.content,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "Message":
        """Raises ValueError for an author other than A or B."""
        return cls(
            id=_str(obj, "id", "") or new_id("msg"),
            author=BotIdentity(obj.get("author", "A")),
            content=_str(obj, "content", ""),
            created_at=_int(obj, "createdAt", None) or now_ms(),
        )


@dataclass
class ConversationRecord:
    id: str = field(default_factory=lambda: new_id("convo"))
    title: str = DEFAULT_TITLE
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)
    base_url: str = DEFAULT_BASE_URL
    mode: ConversationMode = ConversationMode.FULL_AUTO
    bots: Dict[BotIdentity, BotConfig] = field(
        default_factory=lambda: {
            BotIdentity.A: BotConfig.default("Bot A"),
            BotIdentity.B: BotConfig.default("Bot B"),
        }
    )
    messages: List[Message] = field(default_factory=list)

    def bot(self, identity: BotIdentity) -> BotConfig:
        return self.bots[identity]

    def find_message(self, message_id: str) -> Optional[Message]:
        for m in self.messages:
            if m.id == message_id:
                return m
        return None

    def next_speaker(self) -> BotIdentity:
        """Complement of the last message's author, or A for an empty conversation."""
        if not self.messages:
            return BotIdentity.A
        return self.messages[-1].author.other

    def derive_title(self, fallback: Optional[str] = None) -> str:
        first = self.messages[0].content[:48].strip() if self.messages else ""
        return first or fallback or self.title or DEFAULT_TITLE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "baseUrl": self.base_url,
            "mode": self.mode.value,
            "bots": {k.value: v.to_dict() for k, v in self.bots.items()},
            "messages": [m.to_dict() for m in self.messages],
        }

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "ConversationRecord":
        """Parse a stored record field by field.

        Bad fields take their defaults and unreadable messages are dropped,
        so one corrupt value never loses the rest of the conversation.
        """
        bots = obj.get("bots")
        if not isinstance(bots, dict):
            bots = {}
        try:
            mode = ConversationMode(obj.get("mode") or ConversationMode.FULL_AUTO.value)
        except (TypeError, ValueError):
            mode = ConversationMode.FULL_AUTO
        raw_messages = obj.get("messages")
        messages: List[Message] = []
        for m in raw_messages if isinstance(raw_messages, list) else []:
            if not isinstance(m, dict):
                continue
            try:
                messages.append(Message.from_dict(m))
            except (TypeError, ValueError):
                continue
        return cls(
            id=_str(obj, "id", "") or new_id("convo"),
            title=_str(obj, "title", DEFAULT_TITLE),
            created_at=_int(obj, "createdAt", None) or now_ms(),
            updated_at=_int(obj, "updatedAt", None) or now_ms(),
            base_url=_str(obj, "baseUrl", DEFAULT_BASE_URL),
            mode=mode,
            bots={
                BotIdentity.A: BotConfig.from_dict(bots.get("A"), "Bot A"),
                BotIdentity.B: BotConfig.from_dict(bots.get("B"), "Bot B"),
            },
            messages=messages,
        )


@dataclass
class RunSession:
    """Ephemeral state of one scheduler run.

    Created when a run starts and dropped on stop, conversation load or switch.
    `token` is the only handle able to abort the in-flight request.
    """

    mode: ConversationMode
    active_speaker: BotIdentity
    token: "CancelToken"
    turns: int = 0
    started_at: int = field(default_factory=now_ms)
