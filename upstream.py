"""Upstream z.ai chat API communication."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Dict, Tuple

import httpx

from config import AppConfig
from logger import mask_secret
from models import ChatCompletionRequest

log = logging.getLogger("zai_proxy")

# Browser identity of the upstream web frontend.
X_FE_VERSION = "prod-fe-1.0.76"
BROWSER_UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/139.0.0.0"
SEC_CH_UA = '"Not;A=Brand";v="99", "Edge";v="139"'
SEC_CH_UA_MOBILE = "?0"
SEC_CH_UA_PLATFORM = '"Windows"'


class UpstreamError(Exception):
    """Upstream could not be reached or returned an unusable answer."""


def new_chat_ids() -> Tuple[str, str]:
    """Synthesize (chat_id, message_id) for a fresh upstream conversation."""
    ns = time.time_ns()
    return f"{ns}-{ns // 1_000_000_000}", str(time.time_ns())


def build_upstream_payload(
    request: ChatCompletionRequest,
    config: AppConfig,
    chat_id: str,
    message_id: str,
    now: datetime | None = None,
) -> Dict[str, Any]:
    """
    Translate an OpenAI chat request into the upstream request shape.

    The upstream always streams and always thinks; sampling parameters are
    not part of its API.
    """
    now = now or datetime.now()
    return {
        "stream": True,
        "model": config.upstream_model_id,
        "messages": [m.to_dict() for m in request.messages],
        "params": {},
        "features": {"enable_thinking": True},
        "background_tasks": {"title_generation": False, "tags_generation": False},
        "chat_id": chat_id,
        "id": message_id,
        "mcp_servers": [],
        "model_item": {
            "id": config.upstream_model_id,
            "name": config.upstream_model_name,
            "owned_by": "openai",
        },
        "tool_servers": [],
        "variables": {
            "{{USER_NAME}}": "User",
            "{{USER_LOCATION}}": "Unknown",
            "{{CURRENT_DATETIME}}": now.strftime("%Y-%m-%d %H:%M:%S"),
        },
    }


class UpstreamClient:
    """Handle communication with the upstream chat service."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    def browser_headers(self) -> Dict[str, str]:
        """Headers the upstream expects from its own web frontend."""
        origin = self._config.upstream_origin
        return {
            "User-Agent": BROWSER_UA,
            "Accept-Language": "zh-CN,zh;q=0.9",
            "X-FE-Version": X_FE_VERSION,
            "sec-ch-ua": SEC_CH_UA,
            "sec-ch-ua-mobile": SEC_CH_UA_MOBILE,
            "sec-ch-ua-platform": SEC_CH_UA_PLATFORM,
            "Origin": origin,
            "Referer": origin + "/",
        }

    def get_headers(self, chat_id: str, token: str) -> Dict[str, str]:
        """Headers for the chat completion call."""
        headers = self.browser_headers()
        headers.update(
            {
                "Content-Type": "application/json",
                "Accept": "application/json, text/event-stream",
                "Authorization": f"Bearer {token}",
                "Referer": f"{self._config.upstream_origin}/c/{chat_id}",
            }
        )
        return headers

    def get_proxy_url(self) -> str | None:
        """
        Get proxy URL for httpx AsyncClient.

        Returns HTTPS proxy if set (preferred for HTTPS API calls),
        otherwise HTTP proxy if set, or None if no proxy configured.
        """
        if self._config.https_proxy:
            log.info("HTTPS proxy configured: %s", self._config.https_proxy)
            return self._config.https_proxy
        if self._config.http_proxy:
            log.info("HTTP proxy configured: %s", self._config.http_proxy)
            return self._config.http_proxy
        return None

    async def fetch_anonymous_token(self, client: httpx.AsyncClient) -> str:
        """Fetch a one-time anonymous token so conversations do not share memory."""
        headers = self.browser_headers()
        headers["Accept"] = "*/*"
        try:
            r = await client.get(
                f"{self._config.upstream_origin}/api/v1/auths/",
                headers=headers,
                timeout=self._config.token_timeout_s,
            )
        except httpx.HTTPError as e:
            raise UpstreamError(f"anon token request failed: {type(e).__name__}: {e}") from e

        if r.status_code != 200:
            raise UpstreamError(f"anon token status={r.status_code}")
        try:
            body = r.json()
        except ValueError as e:
            raise UpstreamError("anon token response is not JSON") from e
        token = body.get("token") if isinstance(body, dict) else None
        if not isinstance(token, str) or not token:
            raise UpstreamError("anon token empty")
        return token

    async def resolve_token(self, client: httpx.AsyncClient) -> str:
        """Anonymous token when enabled, the configured token otherwise or on failure."""
        if self._config.anon_token_enabled:
            try:
                token = await self.fetch_anonymous_token(client)
                log.debug("Anonymous token acquired: %s", mask_secret(token))
                return token
            except UpstreamError as e:
                log.debug("Anonymous token unavailable, using static token: %s", e)
        return self._config.upstream_token

    async def chat_completion(
        self,
        client: httpx.AsyncClient,
        payload: Dict[str, Any],
        chat_id: str,
        token: str,
    ) -> httpx.Response:
        """
        Send the chat request upstream; the response body is left unread.

        The caller must close the response.
        """
        log.debug(
            "Upstream request url=%s chat_id=%s model=%s messages=%d",
            self._config.upstream_url,
            chat_id,
            payload.get("model"),
            len(payload.get("messages") or []),
        )

        t0 = time.time()
        req = client.build_request(
            "POST",
            self._config.upstream_url,
            headers=self.get_headers(chat_id, token),
            json=payload,
            timeout=self._config.request_timeout_s,
        )
        try:
            resp = await client.send(req, stream=True)
        except httpx.HTTPError as e:
            raise UpstreamError(f"upstream request failed: {type(e).__name__}: {e}") from e

        dt = (time.time() - t0) * 1000
        log.info("Upstream chat chat_id=%s status=%s ms=%.1f", chat_id, resp.status_code, dt)

        if resp.status_code != 200:
            log.warning(
                "Upstream chat error chat_id=%s status=%s content-type=%s",
                chat_id,
                resp.status_code,
                resp.headers.get("content-type", ""),
            )

        return resp

    @staticmethod
    async def read_error_snippet(
        resp: httpx.Response, limit: int = 2000, timeout_s: float = 2.0
    ) -> str:
        """Best-effort: read small error body without risking a hang."""
        try:
            raw = await asyncio.wait_for(resp.aread(), timeout=timeout_s)
        except (asyncio.TimeoutError, httpx.HTTPError):
            return ""
        return raw.decode("utf-8", errors="replace")[:limit]
