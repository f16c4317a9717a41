"""
OpenAI-compatible chat completion service backed by the z.ai chat upstream.

Exposed model:
  id=MODEL_NAME (default "GLM-4.5")

Every inbound request maps to exactly one upstream call. Upstream thinking
output is rendered per THINK_TAGS_MODE (think | pure | raw).
"""

from __future__ import annotations

import contextlib
import json
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, AsyncIterator, Dict, Optional

import httpx
from fastapi import FastAPI, Header, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from config import load_config
from logger import setup_logging_from_config
from models import ChatCompletionRequest
from sse_handler import ResponseEmitter, sse_done
from upstream import UpstreamClient, UpstreamError, build_upstream_payload, new_chat_ids
from utils import dump_config, load_env_files

# Load environment
load_env_files()

# Load configuration
config = load_config()
config.validate()

# Initialize logging
log = setup_logging_from_config(config)
dump_config(config)

upstream_client = UpstreamClient(config)


def _new_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(config.request_timeout_s),
        proxy=upstream_client.get_proxy_url(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Own the shared upstream HTTP client for the process lifetime."""
    app.state.http_client = _new_http_client()
    log.info(
        "z.ai proxy started model=%s upstream=%s mode=%s",
        config.model_name,
        config.upstream_url,
        config.think_tags_mode.value,
    )

    yield  # Application is running

    client = getattr(app.state, "http_client", None)
    if client is not None:
        with contextlib.suppress(Exception):
            await client.aclose()


app = FastAPI(
    title="zai-openai-proxy",
    version="0.3.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


def get_http_client() -> httpx.AsyncClient:
    """Shared client; created on first use when the lifespan did not run."""
    client = getattr(app.state, "http_client", None)
    if client is None or client.is_closed:
        client = _new_http_client()
        app.state.http_client = client
    return client


def check_api_key(authorization: Optional[str]) -> None:
    """Require `Authorization: Bearer <DEFAULT_KEY>`."""
    if not authorization or not authorization.startswith("Bearer "):
        log.debug("Missing or invalid Authorization header")
        raise HTTPException(status_code=401, detail="Missing or invalid Authorization header")
    api_key = authorization[len("Bearer "):]
    if api_key != config.default_key:
        log.debug("Invalid API key")
        raise HTTPException(status_code=401, detail="Invalid API key")


@app.options("/{path:path}")
async def preflight(path: str) -> Response:
    """Answer bare OPTIONS requests that the CORS middleware does not handle."""
    return Response(status_code=200)


@app.get("/healthz")
async def healthz() -> Dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/v1/models")
async def v1_models(authorization: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    """List the single exposed model."""
    check_api_key(authorization)
    return {
        "object": "list",
        "data": [
            {
                "id": config.model_name,
                "object": "model",
                "created": int(time.time()),
                "owned_by": "z.ai",
            }
        ],
    }


async def _read_chat_request(request: Request) -> ChatCompletionRequest:
    # Request size guard.
    cl = request.headers.get("content-length")
    if cl:
        try:
            n = int(cl)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid Content-Length header: {cl!r}")
        if n < 0:
            raise HTTPException(status_code=400, detail="Invalid Content-Length: must be non-negative")
        if n > config.max_request_bytes:
            raise HTTPException(
                status_code=413,
                detail=f"Request too large: {n} bytes (max {config.max_request_bytes})",
            )

    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        log.debug("Invalid JSON body")
        raise HTTPException(status_code=400, detail="Invalid JSON")

    try:
        return ChatCompletionRequest.from_payload(body)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


async def _stream_body(
    resp: httpx.Response,
    emitter: ResponseEmitter,
    request: Request,
) -> AsyncGenerator[bytes, None]:
    try:
        async for frame in emitter.stream(resp.aiter_lines(), request.is_disconnected):
            yield frame
    except httpx.HTTPError as e:
        # Headers are already sent; end the stream cleanly.
        log.warning("Upstream read failed id=%s err=%r", emitter.completion_id, e)
        yield emitter.finish_frame()
        yield sse_done()
    finally:
        with contextlib.suppress(Exception):
            await resp.aclose()


@app.post("/v1/chat/completions")
async def v1_chat_completions(
    request: Request,
    authorization: Optional[str] = Header(default=None),
) -> Response:
    """Handle chat completion requests."""
    check_api_key(authorization)
    chat_req = await _read_chat_request(request)

    client_ip = request.client.host if request.client else "unknown"
    chat_id, message_id = new_chat_ids()
    log.info(
        "Incoming chat chat_id=%s from=%s model=%r stream=%s messages=%d",
        chat_id,
        client_ip,
        chat_req.model,
        chat_req.stream,
        len(chat_req.messages),
    )

    payload = build_upstream_payload(chat_req, config, chat_id, message_id)
    client = get_http_client()
    token = await upstream_client.resolve_token(client)

    try:
        resp = await upstream_client.chat_completion(client, payload, chat_id, token)
    except UpstreamError as e:
        log.warning("Upstream call failed chat_id=%s err=%s", chat_id, e)
        raise HTTPException(status_code=502, detail="Failed to call upstream")

    if resp.status_code != 200:
        snippet = await upstream_client.read_error_snippet(resp)
        await resp.aclose()
        log.debug("Upstream error body chat_id=%s: %s", chat_id, snippet)
        raise HTTPException(status_code=502, detail="Upstream error")

    emitter = ResponseEmitter(config.model_name, config.think_tags_mode)

    if chat_req.stream:
        return StreamingResponse(
            _stream_body(resp, emitter, request),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
        )

    try:
        result = await emitter.aggregate(resp.aiter_lines())
    except httpx.HTTPError as e:
        log.warning("Upstream read failed chat_id=%s err=%r", chat_id, e)
        raise HTTPException(status_code=502, detail="Upstream error")
    finally:
        await resp.aclose()
    return JSONResponse(result)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=config.port, reload=False)
