"""Event-stream decoding for OpenAI-compatible completion responses.

Upstream servers speak one of two shapes:
- chat style: ``choices[0].delta.content`` (streaming) or ``choices[0].message.content``
- legacy completion style: ``choices[0].text``

Each JSON object is classified into a small tagged union so the decoder and the
client never probe optional fields ad hoc.
"""

from __future__ import annotations

import codecs
import json
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Callable, List, Optional, Union

from loguru import logger


DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class ChatDelta:
    text: str


@dataclass(frozen=True)
class CompletionText:
    text: str


@dataclass(frozen=True)
class Unrecognized:
    pass


Frame = Union[ChatDelta, CompletionText, Unrecognized]


def _first_choice(obj: Any) -> Optional[dict]:
    if not isinstance(obj, dict):
        return None
    choices = obj.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    return first if isinstance(first, dict) else None


def _classify(obj: Any, chat_key: str) -> Frame:
    choice = _first_choice(obj)
    if choice is None:
        return Unrecognized()
    nested = choice.get(chat_key)
    if isinstance(nested, dict):
        content = nested.get("content")
        if isinstance(content, str) and content:
            return ChatDelta(content)
    text = choice.get("text")
    if isinstance(text, str) and text:
        return CompletionText(text)
    return Unrecognized()


def classify_chunk(obj: Any) -> Frame:
    """Classify one streamed JSON object (``delta.content`` or ``text``)."""
    return _classify(obj, "delta")


def classify_response(obj: Any) -> Frame:
    """Classify a complete non-streaming body (``message.content`` or ``text``)."""
    return _classify(obj, "message")


def frame_text(frame: Frame) -> str:
    if isinstance(frame, (ChatDelta, CompletionText)):
        return frame.text
    return ""


class LineBuffer:
    """Incremental UTF-8 line splitter.

    Multi-byte characters split across chunks are held by the incremental
    decoder; an unterminated trailing line is kept until the next chunk.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> List[str]:
        self._pending += self._decoder.decode(chunk)
        lines = self._pending.split("\n")
        self._pending = lines.pop()
        return lines

    @property
    def pending(self) -> str:
        return self._pending


def parse_data_line(line: str) -> Optional[str]:
    """Return the payload of a ``data:`` line, or None for any other line."""
    trimmed = line.strip()
    if not trimmed.startswith(DATA_PREFIX):
        return None
    return trimmed[len(DATA_PREFIX):].strip()


class StreamDone(Exception):
    """Internal signal: the ``[DONE]`` sentinel was seen."""


def decode_payload(payload: str) -> str:
    """Map one ``data:`` payload to its delta text ("" when there is none).

    Raises StreamDone on the sentinel. Malformed JSON is dropped here.
    """
    if payload == DONE_SENTINEL:
        raise StreamDone()
    try:
        obj = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug(f"stream_skip_frame | payload={payload[:120]!r}")
        return ""
    return frame_text(classify_chunk(obj))


async def iter_deltas(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Yield non-empty token deltas from an event-stream byte source.

    Ends at ``[DONE]`` or at end of input. Not restartable.
    """
    buf = LineBuffer()
    async for chunk in chunks:
        if not chunk:
            continue
        for line in buf.feed(chunk):
            payload = parse_data_line(line)
            if payload is None:
                continue
            try:
                delta = decode_payload(payload)
            except StreamDone:
                return
            if delta:
                yield delta


async def decode_stream(chunks: AsyncIterable[bytes], on_token: Callable[[str], None]) -> int:
    """Drive ``on_token`` for every delta; return how many were emitted."""
    count = 0
    deltas = iter_deltas(chunks)
    try:
        async for delta in deltas:
            count += 1
            on_token(delta)
    finally:
        await deltas.aclose()
    return count
