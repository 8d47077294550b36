from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from loguru import logger

from .errors import Cancelled
from .llm import CancelToken, CompletionClient
from .states import BotConfig, BotIdentity, ConversationRecord, Message


# langchain message types -> OpenAI chat roles
_ROLES = {"system": "system", "ai": "assistant", "human": "user"}

TurnListener = Callable[[str, Message], None]


def build_history(record: ConversationRecord, speaker: BotIdentity) -> List[BaseMessage]:
    """The speaker's view of the conversation.

    Its own messages are assistant turns, the other bot's are user turns,
    and its system prompt leads once.
    """
    config = record.bot(speaker)
    history: List[BaseMessage] = [SystemMessage(content=config.system_prompt)]
    for m in record.messages:
        if m.author is speaker:
            history.append(AIMessage(content=m.content))
        else:
            history.append(HumanMessage(content=m.content))
    return history


def to_openai_messages(history: List[BaseMessage]) -> List[Dict[str, str]]:
    return [{"role": _ROLES[m.type], "content": m.content} for m in history]


def build_payload(config: BotConfig, messages: List[Dict[str, str]]) -> Dict[str, Any]:
    params = config.params
    payload: Dict[str, Any] = {
        "model": config.model_id,
        "messages": messages,
        "temperature": params.temperature,
        "top_p": params.top_p,
        "presence_penalty": params.presence_penalty,
        "frequency_penalty": params.frequency_penalty,
        "stream": True,
    }
    max_tokens = params.effective_max_tokens()
    if max_tokens is not None:
        payload["max_tokens"] = max_tokens
    return payload


def error_annotation(exc: BaseException) -> str:
    return f"\n\n[Error: {str(exc) or 'request failed'}]"


class TurnGenerator:
    """Produces exactly one message per call for the given speaker.

    The message is appended empty before any network I/O, filled token by
    token while streaming, and replaced by the non-streaming result when the
    stream produced nothing. ``Cancelled`` is the only error that escapes.
    """

    def __init__(self, client: Optional[CompletionClient], listener: Optional[TurnListener] = None) -> None:
        self.client = client
        self.listener = listener

    def _emit(self, kind: str, message: Message) -> None:
        if self.listener is not None:
            self.listener(kind, message)

    async def generate_turn(
        self,
        record: ConversationRecord,
        speaker: BotIdentity,
        token: CancelToken,
    ) -> Message:
        config = record.bot(speaker)
        payload = build_payload(config, to_openai_messages(build_history(record, speaker)))

        message = Message(author=speaker)
        record.messages.append(message)
        self._emit("message_appended", message)

        produced = False

        def on_token(delta: str) -> None:
            nonlocal produced
            if delta:
                produced = True
            message.content += delta
            self._emit("message_updated", message)

        t0 = time.perf_counter()
        logger.info(f"turn_start | speaker={speaker.value} model={config.model_id} history={len(record.messages) - 1}")

        stream_error: Optional[Exception] = None
        try:
            await self.client.generate_streaming(payload, record.base_url, token, on_token)
        except Cancelled:
            logger.info(f"turn_cancelled | speaker={speaker.value} chars={len(message.content)}")
            raise
        except Exception as e:
            stream_error = e
            logger.warning(f"turn_stream_failed | speaker={speaker.value} err={e}")

        if stream_error is not None or not produced:
            logger.info(f"turn_fallback | speaker={speaker.value} reason={'error' if stream_error else 'empty'}")
            try:
                text = await self.client.generate_blocking(payload, record.base_url, token)
            except Cancelled:
                logger.info(f"turn_cancelled | speaker={speaker.value} stage=fallback")
                raise
            except Exception as e:
                if stream_error is not None:
                    message.content = (message.content or "") + error_annotation(e)
                    self._emit("message_updated", message)
                    logger.error(f"turn_error | speaker={speaker.value} err={e}")
                else:
                    logger.warning(f"turn_fallback_failed | speaker={speaker.value} err={e}")
            else:
                if text:
                    message.content = text
                    self._emit("message_updated", message)

        dt = time.perf_counter() - t0
        logger.info(f"turn_done | speaker={speaker.value} dt={dt:.2f}s chars={len(message.content)}")
        return message
