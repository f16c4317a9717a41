"""
Tests for upstream communication.

Tests cover:
- Request adaptation to the upstream shape
- Browser identity and auth headers
- Anonymous token acquisition and fallback
- Error propagation from the chat call
"""

import json
from dataclasses import replace
from datetime import datetime

import httpx
import pytest

from config import load_config
from models import ChatCompletionRequest
from upstream import (
    UpstreamClient,
    UpstreamError,
    build_upstream_payload,
    new_chat_ids,
)


@pytest.fixture
def config():
    return replace(
        load_config(),
        upstream_url="https://upstream.test/api/chat/completions",
        upstream_origin="https://upstream.test",
        upstream_token="static-token",
        anon_token_enabled=True,
    )


def _mock_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ============================================================================
# Request Adapter
# ============================================================================

class TestBuildUpstreamPayload:
    """Test OpenAI -> upstream request translation."""

    def test_shape(self, config):
        req = ChatCompletionRequest.from_payload(
            {
                "model": "GLM-4.5",
                "messages": [
                    {"role": "system", "content": "be brief"},
                    {"role": "user", "content": "hi"},
                ],
                "stream": True,
                "temperature": 0.2,
                "max_tokens": 100,
            }
        )
        payload = build_upstream_payload(
            req, config, "chat-1", "msg-1", now=datetime(2025, 8, 1, 12, 30, 5)
        )

        assert payload["stream"] is True
        assert payload["model"] == config.upstream_model_id
        assert payload["messages"] == [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "hi"},
        ]
        assert payload["chat_id"] == "chat-1"
        assert payload["id"] == "msg-1"
        assert payload["params"] == {}
        assert payload["features"] == {"enable_thinking": True}
        assert payload["background_tasks"] == {"title_generation": False, "tags_generation": False}
        assert payload["model_item"] == {
            "id": config.upstream_model_id,
            "name": config.upstream_model_name,
            "owned_by": "openai",
        }
        assert payload["variables"]["{{CURRENT_DATETIME}}"] == "2025-08-01 12:30:05"
        assert payload["variables"]["{{USER_NAME}}"] == "User"
        assert "temperature" not in payload
        assert "max_tokens" not in payload

    def test_non_streaming_request_still_streams_upstream(self, config):
        req = ChatCompletionRequest.from_payload({"messages": [{"role": "user", "content": "x"}]})
        assert build_upstream_payload(req, config, "c", "m")["stream"] is True

    def test_text_parts_flattened(self, config):
        req = ChatCompletionRequest.from_payload(
            {
                "messages": [
                    {
                        "role": "user",
                        "content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}],
                    }
                ]
            }
        )
        payload = build_upstream_payload(req, config, "c", "m")
        assert payload["messages"][0]["content"] == "a\nb"


def test_new_chat_ids():
    chat_id, message_id = new_chat_ids()
    nanos, _, seconds = chat_id.partition("-")
    assert nanos.isdigit() and seconds.isdigit()
    assert message_id.isdigit()


# ============================================================================
# Upstream Client
# ============================================================================

class TestHeaders:
    """Test header construction."""

    def test_chat_headers(self, config):
        headers = UpstreamClient(config).get_headers("chat-9", "tok")
        assert headers["Authorization"] == "Bearer tok"
        assert headers["Referer"] == "https://upstream.test/c/chat-9"
        assert headers["Origin"] == "https://upstream.test"
        assert headers["X-FE-Version"].startswith("prod-fe-")
        assert "Mozilla" in headers["User-Agent"]
        assert headers["Accept"] == "application/json, text/event-stream"


class TestAnonymousToken:
    """Test anonymous token acquisition."""

    @pytest.mark.asyncio
    async def test_fetch_success(self, config):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json={"token": "anon-123"})

        async with _mock_client(handler) as client:
            token = await UpstreamClient(config).fetch_anonymous_token(client)

        assert token == "anon-123"
        assert seen["url"] == "https://upstream.test/api/v1/auths/"
        assert seen["auth"] is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(500, text="boom"),
            httpx.Response(200, json={"token": ""}),
            httpx.Response(200, text="not json"),
        ],
    )
    async def test_fetch_failures_raise(self, config, response):
        async with _mock_client(lambda request: response) as client:
            with pytest.raises(UpstreamError):
                await UpstreamClient(config).fetch_anonymous_token(client)

    @pytest.mark.asyncio
    async def test_resolve_falls_back_to_static(self, config):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with _mock_client(handler) as client:
            token = await UpstreamClient(config).resolve_token(client)
        assert token == "static-token"

    @pytest.mark.asyncio
    async def test_resolve_disabled_skips_fetch(self, config):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"token": "anon"})

        cfg = replace(config, anon_token_enabled=False)
        async with _mock_client(handler) as client:
            token = await UpstreamClient(cfg).resolve_token(client)
        assert token == "static-token"
        assert calls == []


class TestChatCompletion:
    """Test the upstream chat call."""

    @pytest.mark.asyncio
    async def test_posts_payload(self, config):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["authorization"]
            seen["referer"] = request.headers["referer"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, text='data: {"data": {"phase": "done", "done": true}}\n')

        async with _mock_client(handler) as client:
            resp = await UpstreamClient(config).chat_completion(
                client, {"stream": True, "messages": []}, "chat-1", "tok"
            )
            lines = [line async for line in resp.aiter_lines()]
            await resp.aclose()

        assert resp.status_code == 200
        assert seen["method"] == "POST"
        assert seen["url"] == "https://upstream.test/api/chat/completions"
        assert seen["auth"] == "Bearer tok"
        assert seen["referer"] == "https://upstream.test/c/chat-1"
        assert seen["body"] == {"stream": True, "messages": []}
        assert lines == ['data: {"data": {"phase": "done", "done": true}}']

    @pytest.mark.asyncio
    async def test_non_200_returned(self, config):
        async with _mock_client(lambda request: httpx.Response(403, text="forbidden")) as client:
            upstream = UpstreamClient(config)
            resp = await upstream.chat_completion(client, {}, "c", "t")
            snippet = await upstream.read_error_snippet(resp)
            await resp.aclose()
        assert resp.status_code == 403
        assert snippet == "forbidden"

    @pytest.mark.asyncio
    async def test_transport_error_raises(self, config):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        async with _mock_client(handler) as client:
            with pytest.raises(UpstreamError):
                await UpstreamClient(config).chat_completion(client, {}, "c", "t")
