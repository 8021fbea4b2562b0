import os
import sys
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parent.parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from nim_proxy.app import create_app  # noqa: E402
from nim_proxy.config import ProxyConfig  # noqa: E402

UPSTREAM_BASE = "http://upstream.test/v1"
ENV_ALIASES = ("PORT", "NVIDIA_API_KEY", "NVIDIA_BASE_URL", "NODE_ENV")


@pytest.fixture(autouse=True)
def clear_proxy_env(monkeypatch, tmp_path):
    """Keep the developer's shell and config file out of every test."""

    for key in list(os.environ.keys()):
        if key.startswith("NIM_PROXY_") or key in ENV_ALIASES:
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("NIM_PROXY_CONFIG_FILE", str(tmp_path / "missing.toml"))
    yield


@pytest.fixture
def make_cfg():
    def _make(**overrides) -> ProxyConfig:
        values = {"api_key": "nvapi-test-key", "base_url": UPSTREAM_BASE}
        values.update(overrides)
        return ProxyConfig(**values)

    return _make


@pytest.fixture
def proxy_client(make_cfg):
    """Build a TestClient whose upstream is answered by ``handler``."""

    def _make(handler, **overrides) -> TestClient:
        app = create_app(make_cfg(**overrides), transport=httpx.MockTransport(handler))
        return TestClient(app, raise_server_exceptions=False)

    return _make


@pytest.fixture
def chat_body():
    def _make(**extra):
        body = {"messages": [{"role": "user", "content": "Hi"}]}
        body.update(extra)
        return body

    return _make


@pytest.fixture
def completion():
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 1,
        "model": "deepseek-ai/deepseek-r1-0528",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": "Hello"},
                "finish_reason": "stop",
            }
        ],
        "usage": {"prompt_tokens": 3, "completion_tokens": 1, "total_tokens": 4},
    }
