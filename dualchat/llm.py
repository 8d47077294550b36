from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set

import httpx
from loguru import logger

from .errors import Cancelled, UpstreamError
from .stream import classify_response, decode_stream, frame_text


_IN_PROCESS_URL = "http://dualchat.gateway"


class CancelToken:
    """Cooperative cancellation handle shared by one run.

    Requests wrap their network I/O in ``scope()``; ``cancel()`` aborts every
    task currently inside a scope and the scope re-raises as ``Cancelled``.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._tasks: Set[asyncio.Task] = set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        for task in list(self._tasks):
            task.cancel()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise Cancelled()

    @asynccontextmanager
    async def scope(self) -> AsyncIterator[None]:
        self.raise_if_cancelled()
        task = asyncio.current_task()
        if task is not None:
            self._tasks.add(task)
        try:
            yield
        except asyncio.CancelledError:
            if not self._cancelled or task is None:
                raise
            task.uncancel()
            raise Cancelled() from None
        finally:
            if task is not None:
                self._tasks.discard(task)
        if self._cancelled:
            # cancel() ran inside this task after its last await; absorb it here
            try:
                await asyncio.sleep(0)
            except asyncio.CancelledError:
                if task is not None:
                    task.uncancel()
            raise Cancelled()


def _response_text(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace") if raw else ""


class CompletionClient:
    """One generation exchange per call, routed through the completion gateway.

    With no ``gateway_url`` and no ``transport`` the gateway app is mounted
    in-process over ASGI.
    """

    def __init__(
        self,
        gateway_url: Optional[str] = None,
        timeout: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if transport is None and not gateway_url:
            from .gateway import create_app

            transport = httpx.ASGITransport(app=create_app())
            gateway_url = _IN_PROCESS_URL
        self.gateway_url = (gateway_url or _IN_PROCESS_URL).rstrip("/")
        self._http = httpx.AsyncClient(
            base_url=self.gateway_url,
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )
        logger.debug(f"Initializing completion client gateway={self.gateway_url} timeout={timeout}")

    async def __aenter__(self) -> "CompletionClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def generate_streaming(
        self,
        payload: Dict[str, Any],
        endpoint: str,
        token: CancelToken,
        on_token: Callable[[str], None],
    ) -> int:
        """Stream one completion, calling ``on_token`` per delta.

        Returns the number of deltas; zero is a valid outcome.
        """
        body = {"baseUrl": endpoint, "payload": {**payload, "stream": True}}
        async with token.scope():
            try:
                async with self._http.stream("POST", "/api/chat", json=body) as resp:
                    if not resp.is_success:
                        raw = await resp.aread()
                        raise UpstreamError(resp.status_code, _response_text(raw))
                    return await decode_stream(resp.aiter_bytes(), on_token)
            except httpx.HTTPError as e:
                raise UpstreamError(0, str(e) or e.__class__.__name__) from e

    async def generate_blocking(
        self,
        payload: Dict[str, Any],
        endpoint: str,
        token: CancelToken,
    ) -> str:
        """Fetch one completion with streaming disabled and return its text."""
        body = {"baseUrl": endpoint, "payload": {**payload, "stream": False}}
        async with token.scope():
            try:
                resp = await self._http.post("/api/chat", json=body)
            except httpx.HTTPError as e:
                raise UpstreamError(0, str(e) or e.__class__.__name__) from e
        if not resp.is_success:
            raise UpstreamError(resp.status_code, resp.text)
        try:
            data = resp.json()
        except ValueError:
            logger.warning(f"completion_non_json | status={resp.status_code} bytes={len(resp.content)}")
            return ""
        return frame_text(classify_response(data))

    async def list_models(self, endpoint: str) -> List[str]:
        try:
            resp = await self._http.get("/api/models", params={"baseUrl": endpoint})
        except httpx.HTTPError as e:
            raise UpstreamError(0, str(e) or e.__class__.__name__) from e
        if not resp.is_success:
            raise UpstreamError(resp.status_code, resp.text)
        try:
            data = resp.json()
        except ValueError:
            return []
        items = data.get("data") if isinstance(data, dict) else None
        if not isinstance(items, list):
            return []
        return [m["id"] for m in items if isinstance(m, dict) and isinstance(m.get("id"), str)]
