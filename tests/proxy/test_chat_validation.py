import json

import httpx
import pytest


def _no_upstream(request):  # pragma: no cover - must never be reached
    raise AssertionError(f"upstream called for invalid request: {request.url}")


@pytest.mark.parametrize(
    "body",
    [
        {},
        {"messages": []},
        {"messages": None},
        {"messages": "hello"},
        {"messages": {"role": "user", "content": "Hi"}},
    ],
)
def test_missing_or_empty_messages_rejected(proxy_client, body):
    client = proxy_client(_no_upstream)
    r = client.post("/v1/chat/completions", json=body)
    assert r.status_code == 400
    err = r.json()["error"]
    assert err["type"] == "invalid_request_error"
    assert err["code"] == "invalid_messages"
    assert err["param"] == "messages"


@pytest.mark.parametrize(
    "bad_message",
    [
        {"content": "no role"},
        {"role": "user"},
        {"role": "", "content": "empty role"},
        {"role": "user", "content": ""},
        {"role": "user", "content": None},
        {"role": "user", "content": 0},
        "just a string",
    ],
)
def test_message_without_role_or_content_names_index(proxy_client, bad_message):
    client = proxy_client(_no_upstream)
    r = client.post(
        "/v1/chat/completions",
        json={
            "messages": [
                {"role": "system", "content": "Be brief."},
                {"role": "user", "content": "Hi"},
                bad_message,
            ]
        },
    )
    assert r.status_code == 400
    err = r.json()["error"]
    assert err["type"] == "invalid_request_error"
    assert err["param"] == "messages[2]"
    assert "index 2" in err["message"]


def test_malformed_json_body_rejected(proxy_client):
    client = proxy_client(_no_upstream)
    r = client.post(
        "/v1/chat/completions",
        content=b'{"messages": [',
        headers={"Content-Type": "application/json"},
    )
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "invalid_json"


def test_non_object_body_rejected(proxy_client):
    client = proxy_client(_no_upstream)
    r = client.post("/v1/chat/completions", json=[{"role": "user", "content": "Hi"}])
    assert r.status_code == 400
    assert r.json()["error"]["type"] == "invalid_request_error"


def test_wrongly_typed_sampling_parameter_rejected(proxy_client, chat_body):
    client = proxy_client(_no_upstream)
    r = client.post("/v1/chat/completions", json=chat_body(temperature="warm"))
    assert r.status_code == 400
    err = r.json()["error"]
    assert err["code"] == "invalid_parameter"
    assert err["param"] == "temperature"


def test_oversized_body_rejected(proxy_client, chat_body):
    client = proxy_client(_no_upstream, max_body_bytes=256)
    body = chat_body()
    body["messages"][0]["content"] = "x" * 1024
    r = client.post("/v1/chat/completions", json=body)
    assert r.status_code == 413
    assert r.json()["error"]["code"] == "payload_too_large"


@pytest.mark.parametrize("content", [[], [{"type": "text", "text": "Hi"}]])
def test_list_content_is_accepted_and_forwarded(proxy_client, completion, content):
    captured = {}

    def handler(request):
        captured["json"] = json.loads(request.content)
        return httpx.Response(200, json=completion)

    client = proxy_client(handler)
    r = client.post(
        "/v1/chat/completions",
        json={"messages": [{"role": "user", "content": content}]},
    )
    assert r.status_code == 200
    assert captured["json"]["messages"][0]["content"] == content
