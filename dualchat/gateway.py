"""Pass-through HTTP gateway to a local OpenAI-compatible server.

Routes:
- POST /api/chat    body ``{"baseUrl": ..., "payload": {...}}``
- GET  /api/models  ``?baseUrl=...``

Run with ``python -m dualchat.gateway``.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from loguru import logger
from starlette.background import BackgroundTask

from .states import DEFAULT_BASE_URL


_UPSTREAM_TIMEOUT = 300.0

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
}


def upstream_root(base_url: Optional[str]) -> str:
    return (base_url or DEFAULT_BASE_URL).rstrip("/")


def completions_fallback_body(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Legacy /v1/completions request for servers without a chat endpoint."""
    messages = payload.get("messages")
    if isinstance(messages, list):
        prompt = "\n".join(f"{m.get('role')}: {m.get('content')}" for m in messages if isinstance(m, dict))
    else:
        prompt = payload.get("prompt") or ""
    return {
        "model": payload.get("model"),
        "prompt": prompt,
        "temperature": payload.get("temperature"),
        "top_p": payload.get("top_p"),
        "max_tokens": payload.get("max_tokens"),
        "stream": payload.get("stream") is True,
    }


def _passthrough(upstream: httpx.Response, text: str) -> Response:
    try:
        return JSONResponse(json.loads(text), status_code=upstream.status_code)
    except ValueError:
        return Response(
            content=text,
            status_code=upstream.status_code,
            media_type=upstream.headers.get("content-type") or "application/json",
        )


def create_app(transport: Optional[httpx.AsyncBaseTransport] = None) -> FastAPI:
    """Build the gateway app; ``transport`` replaces the real upstream connection."""
    app = FastAPI(title="dualchat gateway")

    def upstream_client(timeout: float = _UPSTREAM_TIMEOUT) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=10.0), transport=transport)

    @app.post("/api/chat")
    async def chat(request: Request) -> Response:
        client: Optional[httpx.AsyncClient] = None
        upstream: Optional[httpx.Response] = None
        try:
            body = await request.json()
            payload = body.get("payload") or {}
            root = upstream_root(body.get("baseUrl"))
            wants_stream = payload.get("stream") is True

            client = upstream_client()
            req = client.build_request("POST", f"{root}/v1/chat/completions", json=payload)
            upstream = await client.send(req, stream=True)

            if upstream.status_code == 404:
                await upstream.aclose()
                logger.info(f"gateway_completions_fallback | root={root}")
                req = client.build_request("POST", f"{root}/v1/completions", json=completions_fallback_body(payload))
                upstream = await client.send(req, stream=True)

            if not upstream.is_success:
                text = (await upstream.aread()).decode("utf-8", errors="replace")
                logger.warning(f"gateway_upstream_error | status={upstream.status_code} root={root}")
                return Response(content=text or "Upstream error", status_code=upstream.status_code or 500)

            if wants_stream:
                stream_client, stream_upstream = client, upstream
                client = upstream = None

                async def close_upstream() -> None:
                    await stream_upstream.aclose()
                    await stream_client.aclose()

                return StreamingResponse(
                    stream_upstream.aiter_raw(),
                    media_type="text/event-stream; charset=utf-8",
                    headers=SSE_HEADERS,
                    background=BackgroundTask(close_upstream),
                )

            text = (await upstream.aread()).decode("utf-8", errors="replace")
            return _passthrough(upstream, text)
        except Exception as e:
            logger.error(f"gateway_chat_failed | err={e}")
            return JSONResponse({"error": str(e) or "Failed to proxy chat"}, status_code=500)
        finally:
            if upstream is not None:
                await upstream.aclose()
            if client is not None:
                await client.aclose()

    @app.get("/api/models")
    async def models(baseUrl: Optional[str] = None) -> Response:
        root = upstream_root(baseUrl)
        try:
            async with upstream_client(30.0) as client:
                # no caching so newly loaded local models show up
                upstream = await client.get(f"{root}/v1/models", headers={"Cache-Control": "no-store"})
            return _passthrough(upstream, upstream.text)
        except Exception as e:
            logger.error(f"gateway_models_failed | root={root} err={e}")
            return JSONResponse({"error": str(e) or "Failed to fetch models"}, status_code=500)

    return app


def main() -> None:
    import argparse
    import sys

    import uvicorn

    p = argparse.ArgumentParser(description="Serve the completion gateway")
    p.add_argument("--host", type=str, default="127.0.0.1")
    p.add_argument("--port", type=int, default=8000)
    p.add_argument("--log-level", type=str, default="INFO")
    args = p.parse_args()

    logger.remove()
    logger.add(sys.stdout, level=args.log_level.upper(), format="{time:HH:mm:ss} | {level} | {message}")
    uvicorn.run(create_app(), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
