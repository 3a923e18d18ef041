"""Tests for the OpenAI-compatible HTTP surface."""

import json

import httpx
from fastapi.testclient import TestClient

from glmgate.config import (
    Config,
    CredentialsConfig,
    ServeConfig,
    ToolsConfig,
    UpstreamConfig,
)
from glmgate.server import create_app

ORIGIN = "https://chat.example"


def _sse(*payloads):
    return "".join(f"data: {json.dumps(p)}\n\n" for p in payloads)


def _delta(phase, text):
    return {"type": "chat:completion", "data": {"phase": phase, "delta_content": text}}


OK_STREAM = _sse(
    _delta("thinking", '<details type="reasoning">\n> plan\n</details>'),
    _delta("answer", "Hi"),
    {"type": "chat:completion", "data": {"phase": "done", "done": True, "usage": {"total_tokens": 4}}},
)

ERROR_STREAM = _sse(
    _delta("answer", "par"),
    {"type": "chat:completion", "data": {"error": {"detail": "model overloaded", "code": 503}}},
)


class DroppedConnectionStream(httpx.AsyncByteStream):
    """Body that delivers one answer delta and then loses the connection."""

    async def __aiter__(self):
        yield _sse(_delta("answer", "par")).encode()
        raise httpx.ReadError("connection reset")


class FakeUpstream:
    """MockTransport handler recording chat payloads."""

    def __init__(self, body=OK_STREAM, status=200, stream_factory=None):
        self.body = body
        self.stream_factory = stream_factory
        self.status = status
        self.payloads = []
        self.paths = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.paths.append(request.url.path)
        if request.url.path == "/api/chat/completions":
            self.payloads.append(json.loads(request.content))
            if self.stream_factory is not None:
                return httpx.Response(
                    self.status,
                    stream=self.stream_factory(),
                    headers={"content-type": "text/event-stream"},
                )
            return httpx.Response(
                self.status, text=self.body, headers={"content-type": "text/event-stream"}
            )
        return httpx.Response(200, text="<script src='/prod-fe-1.2.3/app.js'></script>")


def _client(upstream=None, tool_executor=None, **overrides):
    upstream = upstream or FakeUpstream()
    config = Config(
        serve=overrides.get("serve", ServeConfig()),
        upstream=UpstreamConfig(base_url=ORIGIN),
        credentials=overrides.get(
            "credentials", CredentialsConfig(tokens=["tok-a"], guest_enabled=False)
        ),
        tools=overrides.get("tools", ToolsConfig()),
    )
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    app = create_app(
        preloaded_config=config, http_client=http_client, tool_executor=tool_executor
    )
    return TestClient(app), upstream


def _chat(client, stream=False, headers=None, **body):
    payload = {
        "model": "glm-4.5",
        "messages": [{"role": "user", "content": "hello"}],
        "stream": stream,
        **body,
    }
    return client.post("/v1/chat/completions", json=payload, headers=headers or {})


def _stream_chunks(response):
    lines = [line for line in response.text.split("\n") if line.startswith("data: ")]
    assert lines[-1] == "data: [DONE]"
    return [json.loads(line[6:]) for line in lines[:-1]]


def test_health_reports_pool_counts():
    client, _ = _client()
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["think_mode"] == "think"
    assert body["credentials"]["configured"] == 1
    assert body["credentials"]["valid"] == 1


def test_models_listed_on_both_paths():
    client, _ = _client()
    for path in ("/v1/models", "/models"):
        ids = [m["id"] for m in client.get(path).json()["data"]]
        assert "0727-360B-API" in ids
        assert "glm-4.5v" in ids


def test_non_stream_completion():
    client, upstream = _client()
    response = _chat(client)
    assert response.status_code == 200
    body = response.json()
    assert body["object"] == "chat.completion"
    assert body["model"] == "glm-4.5"
    message = body["choices"][0]["message"]
    assert message["content"] == "<think>\nplan\n</think>Hi"
    assert body["usage"] == {"total_tokens": 4}

    sent = upstream.payloads[0]
    assert sent["model"] == "0727-360B-API"
    assert sent["stream"] is True


def test_stream_completion_emits_chunks_and_done():
    client, upstream = _client()
    response = _chat(client, stream=True)
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")

    chunks = _stream_chunks(response)
    assert chunks[0]["choices"][0]["delta"] == {"role": "assistant"}
    content = "".join(c["choices"][0]["delta"].get("content", "") for c in chunks)
    assert content == "<think>\nplan\n</think>Hi"
    assert chunks[-1]["choices"][0]["finish_reason"] == "stop"
    assert chunks[-1]["usage"] == {"total_tokens": 4}
    assert upstream.payloads[0]["stream"] is True


def test_think_mode_header_selects_separate_reasoning():
    client, _ = _client()
    response = _chat(client, headers={"X-Think-Tags-Mode": "separate"})
    message = response.json()["choices"][0]["message"]
    assert message["reasoning_content"] == "plan"
    assert message["content"] == "Hi"


def test_feature_headers_override_envelope_features():
    client, upstream = _client()
    _chat(
        client,
        headers={"X-Feature-Thinking": "false", "X-Feature-Web-Search": "yes"},
    )
    features = upstream.payloads[0]["features"]
    assert features["enable_thinking"] is False
    assert features["web_search"] is True


def test_upstream_error_event_non_stream_returns_502():
    client, _ = _client(FakeUpstream(body=ERROR_STREAM))
    response = _chat(client)
    assert response.status_code == 502
    error = response.json()["error"]
    assert error["message"] == "model overloaded"
    assert error["code"] == "503"


def test_upstream_error_event_stream_ends_with_error_chunk():
    client, _ = _client(FakeUpstream(body=ERROR_STREAM))
    chunks = _stream_chunks(_chat(client, stream=True))
    last = chunks[-1]
    assert last["choices"][0]["finish_reason"] == "error"
    assert last["error"]["message"] == "model overloaded"


def test_upstream_status_error_returns_502():
    client, _ = _client(FakeUpstream(body='{"detail": "nope"}', status=500))
    response = _chat(client)
    assert response.status_code == 502
    assert response.json()["error"]["code"] == "upstream_500"


def test_missing_user_text_returns_400():
    client, upstream = _client()
    response = _chat(client, messages=[{"role": "system", "content": "rules only"}])
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "missing_user_message"
    assert upstream.payloads == []


def test_api_key_is_enforced():
    client, _ = _client(serve=ServeConfig(api_key="secret"))
    assert _chat(client).status_code == 401
    ok = _chat(client, headers={"Authorization": "Bearer secret"})
    assert ok.status_code == 200
    assert client.get("/v1/pool-status").status_code == 401


def test_pool_status_masks_tokens():
    client, _ = _client()
    body = client.get("/v1/pool-status").json()
    assert body["failure_threshold"] == 3
    assert body["guest_enabled"] is False
    assert len(body["credentials"]) == 1
    assert body["credentials"][0]["token"] == "tok-..."
    assert body["credentials"][0]["is_valid"] is True


def test_tool_call_in_answer_is_executed_when_enabled():
    calls = []

    async def executor(name, args_json):
        calls.append((name, json.loads(args_json)))
        return {"ok": True}

    body = _sse(
        _delta("answer", 'function_call: ping({"host": "a"})'),
        {"type": "chat:completion", "data": {"phase": "done", "done": True}},
    )
    client, _ = _client(
        FakeUpstream(body=body), tool_executor=executor, tools=ToolsConfig(enabled=True)
    )
    message = _chat(client).json()["choices"][0]["message"]
    assert calls == [("ping", {"host": "a"})]
    assert message["tool_calls"][0]["function"]["name"] == "ping"
    assert json.loads(message["content"]) == {"ok": True}


def test_missing_user_text_in_guest_mode_makes_no_network_calls():
    client, upstream = _client(credentials=CredentialsConfig(tokens=[], guest_enabled=True))
    response = _chat(client, messages=[{"role": "system", "content": "rules only"}])
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "missing_user_message"
    assert upstream.paths == []


def test_connection_drop_mid_response_non_stream_returns_502():
    client, _ = _client(FakeUpstream(stream_factory=DroppedConnectionStream))
    response = _chat(client)
    assert response.status_code == 502
    error = response.json()["error"]
    assert error["type"] == "upstream_transport_error"
    assert error["code"] == "bad_gateway"


def test_connection_drop_mid_response_stream_ends_with_error_chunk():
    client, _ = _client(FakeUpstream(stream_factory=DroppedConnectionStream))
    response = _chat(client, stream=True)
    assert response.status_code == 200

    chunks = _stream_chunks(response)
    content = "".join(c["choices"][0]["delta"].get("content", "") for c in chunks)
    assert content == "par"
    last = chunks[-1]
    assert last["choices"][0]["finish_reason"] == "error"
    assert last["error"]["type"] == "upstream_transport_error"
