"""Test doubles for the completion gateway and event-stream bodies."""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Union

import httpx


GATEWAY_URL = "http://gateway.test"


def chat_chunk(text: str) -> str:
    return json.dumps({"choices": [{"delta": {"content": text}}]})


def completion_chunk(text: str) -> str:
    return json.dumps({"choices": [{"text": text}]})


def sse(*payloads: str) -> bytes:
    return "".join(f"data: {p}\n\n" for p in payloads).encode("utf-8")


def stream_response(*tokens: str) -> httpx.Response:
    return httpx.Response(
        200,
        content=sse(*(chat_chunk(t) for t in tokens), "[DONE]"),
        headers={"content-type": "text/event-stream"},
    )


def hanging_stream(*tokens: str) -> httpx.Response:
    """Streams ``tokens`` and then never finishes."""

    async def body():
        for t in tokens:
            yield sse(chat_chunk(t))
        await asyncio.Event().wait()

    return httpx.Response(200, content=body(), headers={"content-type": "text/event-stream"})


def chat_reply(text: str) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": text}}]})


Scripted = Union[httpx.Response, Callable[[httpx.Request], httpx.Response], Exception]


class FakeGateway:
    """Plays back queued responses for /api/chat and serves /api/models.

    Queues are per mode (streaming vs blocking). An empty stream queue answers
    with an immediate ``[DONE]``; an empty blocking queue with an empty reply.
    """

    def __init__(self) -> None:
        self.requests: List[Dict[str, Any]] = []
        self.streaming: List[Scripted] = []
        self.blocking: List[Scripted] = []
        self.models: List[str] = ["local-model"]

    def stream_calls(self) -> List[Dict[str, Any]]:
        return [r for r in self.requests if r.get("payload", {}).get("stream") is True]

    def blocking_calls(self) -> List[Dict[str, Any]]:
        return [r for r in self.requests if r.get("payload", {}).get("stream") is False]

    def _play(self, queue: List[Scripted], request: httpx.Request, default: httpx.Response) -> httpx.Response:
        item: Optional[Scripted] = queue.pop(0) if queue else default
        if isinstance(item, Exception):
            raise item
        if callable(item) and not isinstance(item, httpx.Response):
            return item(request)
        return item

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/models":
            return httpx.Response(200, json={"object": "list", "data": [{"id": m} for m in self.models]})
        body = json.loads(request.content)
        self.requests.append(body)
        if body["payload"].get("stream") is True:
            return self._play(self.streaming, request, stream_response())
        return self._play(self.blocking, request, chat_reply(""))


