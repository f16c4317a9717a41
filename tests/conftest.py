"""
Pytest configuration and shared fixtures.

Environment variables are set before any project module is imported,
because the service loads its config at import time.
"""

import json
import os
import sys
from pathlib import Path

import pytest

# Add parent directory to Python path so tests can import project modules
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

os.environ.setdefault("DEFAULT_KEY", "sk-test")
os.environ.setdefault("UPSTREAM_TOKEN", "static-token")
os.environ.setdefault("ANON_TOKEN_ENABLED", "true")
os.environ.setdefault("THINK_TAGS_MODE", "think")
os.environ.setdefault("MODEL_NAME", "GLM-4.5")
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("LOG_PATH", "/tmp/zai_proxy_test.log")
os.environ.setdefault("LOG_COLOR", "false")


def upstream_line(
    phase="answer",
    delta="",
    edit="",
    done=False,
    error=None,
    inner_error=None,
    top_error=None,
    usage=None,
):
    """Build one upstream pushed-event line."""
    data = {"delta_content": delta, "edit_content": edit, "phase": phase, "done": done}
    if error is not None:
        data["error"] = error
    if inner_error is not None:
        data["data"] = {"error": inner_error}
    if usage is not None:
        data["usage"] = usage
    obj = {"type": "chat:completion", "data": data}
    if top_error is not None:
        obj["error"] = top_error
    return "data: " + json.dumps(obj, ensure_ascii=False)


async def aiter_lines(lines):
    for line in lines:
        yield line


def sse_payloads(raw: bytes):
    """Split SSE bytes into decoded data payloads ("[DONE]" kept as a string)."""
    out = []
    for event in raw.decode("utf-8").split("\n\n"):
        for line in event.splitlines():
            if not line.startswith("data:"):
                continue
            data = line[len("data:"):].strip()
            out.append(data if data == "[DONE]" else json.loads(data))
    return out


def sse_content(payloads) -> str:
    parts = []
    for p in payloads:
        if p == "[DONE]":
            continue
        for choice in p.get("choices", []):
            content = (choice.get("delta") or {}).get("content")
            if isinstance(content, str):
                parts.append(content)
    return "".join(parts)


@pytest.fixture(scope="session")
def project_root_path():
    """Get project root path."""
    return project_root
