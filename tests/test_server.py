import asyncio
import json
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from claude_gateway import server
from claude_gateway.claude_cli import CliState
from claude_gateway.openai_compat import ChatCompletionRequest

SIMPLE = {"messages": [{"role": "system", "content": "Be terse"}, {"role": "user", "content": "2+2?"}]}


@pytest.fixture
def gateway(monkeypatch, fake_claude, tmp_path):
    def _configure(**overrides) -> TestClient:
        values = dict(
            claude_bin=fake_claude,
            workspace=str(tmp_path),
            bearer_token=None,
            sse_keepalive_seconds=0,
            timeout_seconds=30,
            log_stats=False,
        )
        values.update(overrides)
        monkeypatch.setattr(server, "settings", replace(server.settings, **values))
        monkeypatch.setattr(server, "_semaphore", None)
        return TestClient(server.app)

    return _configure


def _frames(body: str) -> list:
    frames = []
    for block in body.split("\n\n"):
        if not block.startswith("data: "):
            continue
        data = block[len("data: ") :]
        frames.append(data if data == "[DONE]" else json.loads(data))
    return frames


def test_buffered_completion(gateway, claude_record):
    resp = gateway().post("/v1/chat/completions", json=SIMPLE)
    assert resp.status_code == 200
    body = resp.json()
    assert body["object"] == "chat.completion"
    assert body["model"] == "opus"
    assert body["choices"][0]["message"] == {"role": "assistant", "content": "echo: 2+2?"}
    assert body["usage"] == {"prompt_tokens": 5, "completion_tokens": 5, "total_tokens": 10}

    seen = claude_record()
    assert seen["stdin"] == "2+2?"
    argv = seen["argv"]
    assert argv[argv.index("--model") + 1] == "opus"
    assert argv[argv.index("--append-system-prompt") + 1] == "Be terse"
    assert "2+2?" not in argv


def test_model_and_session_forwarded(gateway, claude_record):
    payload = {**SIMPLE, "model": "anyprovider/claude-sonnet-4-5", "user": "conv-1"}
    resp = gateway().post("/v1/chat/completions", json=payload)
    assert resp.status_code == 200
    assert resp.json()["model"] == "anyprovider/claude-sonnet-4-5"
    argv = claude_record()["argv"]
    assert argv[argv.index("--model") + 1] == "sonnet"
    assert argv[argv.index("--resume") + 1] == "conv-1"


def test_streaming_completion(gateway):
    resp = gateway().post("/v1/chat/completions", json={**SIMPLE, "stream": True})
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")

    frames = _frames(resp.text)
    assert frames[-1] == "[DONE]"
    chunks = frames[:-1]
    assert chunks[0]["choices"][0]["delta"] == {"role": "assistant"}
    text = "".join(c["choices"][0]["delta"].get("content", "") for c in chunks)
    assert text == "echo: 2+2?"
    assert [("usage" in c) for c in chunks] == [False] * (len(chunks) - 1) + [True]
    assert chunks[-1]["choices"][0]["finish_reason"] == "stop"
    assert chunks[-1]["usage"]["total_tokens"] == 10


def test_streaming_without_partial_messages(gateway, monkeypatch):
    monkeypatch.setenv("FAKE_CLAUDE_MODE", "no_partial")
    resp = gateway(partial_messages=False).post("/v1/chat/completions", json={**SIMPLE, "stream": True})
    chunks = _frames(resp.text)[:-1]
    deltas = [c["choices"][0]["delta"]["content"] for c in chunks if "content" in c["choices"][0]["delta"]]
    assert deltas == ["echo: 2+2?"]


def test_streaming_failure_ends_with_error_frame(gateway, monkeypatch):
    monkeypatch.setenv("FAKE_CLAUDE_MODE", "fail_late")
    resp = gateway().post("/v1/chat/completions", json={**SIMPLE, "stream": True})
    assert resp.status_code == 200

    frames = _frames(resp.text)
    assert "[DONE]" not in frames
    assert all("usage" not in f for f in frames)
    *chunks, last = frames
    assert last["error"]["type"] == "claude_cli_error"
    assert "claude crashed" in last["error"]["message"]
    text = "".join(c["choices"][0]["delta"].get("content", "") for c in chunks)
    assert text == "echo: 2+2?"


def test_buffered_failure_reports_no_partial_text(gateway, monkeypatch):
    monkeypatch.setenv("FAKE_CLAUDE_MODE", "fail_late")
    resp = gateway().post("/v1/chat/completions", json=SIMPLE)
    assert resp.status_code == 500
    body = resp.json()
    assert "choices" not in body
    assert "claude crashed" in body["error"]["message"]


def test_upstream_status_is_propagated(gateway, monkeypatch):
    monkeypatch.setenv("FAKE_CLAUDE_MODE", "fail_early")
    resp = gateway().post("/v1/chat/completions", json=SIMPLE)
    assert resp.status_code == 429
    assert resp.json()["error"]["type"] == "claude_cli_error"


def test_missing_cli_is_503(gateway, tmp_path):
    resp = gateway(claude_bin=str(tmp_path / "nope")).post("/v1/chat/completions", json=SIMPLE)
    assert resp.status_code == 503
    assert resp.json()["error"]["type"] == "cli_unavailable"


def test_missing_cli_while_streaming_is_503(gateway, tmp_path):
    client = gateway(claude_bin=str(tmp_path / "nope"))
    resp = client.post("/v1/chat/completions", json={**SIMPLE, "stream": True})
    assert resp.status_code == 503
    assert resp.headers["content-type"].startswith("application/json")
    assert resp.json()["error"]["type"] == "cli_unavailable"
    # The slot taken for the stream is given back.
    assert not server._semaphore.locked()



def test_timeout_is_504(gateway, monkeypatch):
    monkeypatch.setenv("FAKE_CLAUDE_MODE", "hang")
    resp = gateway(timeout_seconds=1).post("/v1/chat/completions", json=SIMPLE)
    assert resp.status_code == 504
    assert resp.json()["error"]["type"] == "timeout_error"


def test_malformed_request_is_400(gateway, claude_record):
    client = gateway()
    resp = client.post("/v1/chat/completions", json={"model": "opus"})
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"]["type"] == "invalid_request_error"
    assert "messages" in body["error"]["message"]

    resp = client.post("/v1/chat/completions", json={"messages": [{"role": "robot", "content": "x"}]})
    assert resp.status_code == 400
    with pytest.raises(FileNotFoundError):
        claude_record()


def test_prompt_too_large_is_413(gateway):
    resp = gateway(max_prompt_chars=3).post("/v1/chat/completions", json=SIMPLE)
    assert resp.status_code == 413


def test_reject_policy_when_saturated(gateway, monkeypatch):
    client = gateway(admission_policy="reject", max_concurrency=1)
    monkeypatch.setattr(server, "_semaphore", asyncio.Semaphore(0))
    resp = client.post("/v1/chat/completions", json=SIMPLE)
    assert resp.status_code == 429
    assert resp.json()["error"]["type"] == "rate_limit_error"


def test_bearer_auth(gateway):
    client = gateway(bearer_token="s3cret")
    assert client.get("/v1/models").status_code == 401
    assert client.get("/v1/models", headers={"Authorization": "Bearer wrong"}).status_code == 403
    assert client.post("/v1/chat/completions", json=SIMPLE).status_code == 401
    ok = client.get("/v1/models", headers={"Authorization": "Bearer s3cret"})
    assert ok.status_code == 200


def test_models_and_health(gateway):
    client = gateway()
    ids = [m["id"] for m in client.get("/v1/models").json()["data"]]
    assert "claude-sonnet-4" in ids and "haiku" in ids
    for path in ("/healthz", "/health"):
        body = client.get(path).json()
        assert body["ok"] is True
        assert body["provider"] == "claude-code-cli"


def test_debug_config_redacts_token(gateway):
    client = gateway(bearer_token="s3cret")
    body = client.get("/debug/config", headers={"Authorization": "Bearer s3cret"}).json()
    assert "bearer_token" not in body
    assert body["auth_enabled"] is True
    assert "s3cret" not in json.dumps(body)


class _Client:
    """Stands in for the incoming request; reports a disconnect once `gone` is set."""

    def __init__(self) -> None:
        self.gone = False

    async def is_disconnected(self) -> bool:
        return self.gone


def _request(**extra) -> ChatCompletionRequest:
    return ChatCompletionRequest.model_validate({**SIMPLE, **extra})


def _track_runs(monkeypatch) -> list:
    runs = []
    original = server._new_run

    def _tracking(invocation, resp_id):
        run = original(invocation, resp_id)
        runs.append(run)
        return run

    monkeypatch.setattr(server, "_new_run", _tracking)
    return runs


def test_reject_policy_under_concurrent_load(gateway, monkeypatch):
    monkeypatch.setenv("FAKE_CLAUDE_MODE", "hang")
    gateway(admission_policy="reject", max_concurrency=1, timeout_seconds=1)
    client = _Client()

    async def _burst():
        return await asyncio.gather(*(server.chat_completions(_request(), client, None) for _ in range(3)))

    statuses = sorted(resp.status_code for resp in asyncio.run(_burst()))
    assert statuses == [429, 429, 504]
    assert not server._semaphore.locked()


def test_reject_policy_counts_open_streams(gateway, monkeypatch):
    monkeypatch.setenv("FAKE_CLAUDE_MODE", "hang")
    gateway(admission_policy="reject", max_concurrency=1)
    runs = _track_runs(monkeypatch)
    client = _Client()

    async def _go():
        stream = await server.chat_completions(_request(stream=True), client, None)
        first = await stream.body_iterator.__anext__()
        second = await server.chat_completions(_request(), client, None)
        await stream.body_iterator.aclose()
        return first, second

    first, second = asyncio.run(_go())
    assert first.startswith("data: ")
    assert second.status_code == 429
    assert len(runs) == 1
    assert runs[0].state is CliState.KILLED
    assert not server._semaphore.locked()


def test_queue_policy_waits_for_a_slot(gateway, claude_record):
    gateway(admission_policy="queue", max_concurrency=1)
    client = _Client()

    async def _go():
        sem = server._get_semaphore()
        await sem.acquire()
        task = asyncio.create_task(server.chat_completions(_request(), client, None))
        await asyncio.sleep(0.5)
        waiting = not task.done()
        with pytest.raises(FileNotFoundError):
            claude_record()
        sem.release()
        return waiting, await task

    waiting, body = asyncio.run(_go())
    assert waiting
    assert body["choices"][0]["message"]["content"] == "echo: 2+2?"
    assert claude_record()["stdin"] == "2+2?"


def test_buffered_disconnect_kills_cli(gateway, monkeypatch):
    monkeypatch.setenv("FAKE_CLAUDE_MODE", "hang")
    gateway()
    monkeypatch.setattr(server, "_DISCONNECT_POLL_SECONDS", 0.1)
    runs = _track_runs(monkeypatch)
    client = _Client()

    async def _go():
        task = asyncio.create_task(server.chat_completions(_request(), client, None))
        while not runs or runs[0].state is not CliState.RUNNING:
            await asyncio.sleep(0.05)
        client.gone = True
        return await task

    resp = asyncio.run(asyncio.wait_for(_go(), timeout=10))
    assert resp.status_code == 499
    assert runs[0].state is CliState.KILLED
    assert runs[0].returncode is not None and runs[0].returncode < 0
    assert not server._semaphore.locked()


def test_streaming_disconnect_kills_cli(gateway, monkeypatch):
    monkeypatch.setenv("FAKE_CLAUDE_MODE", "hang")
    gateway()
    runs = _track_runs(monkeypatch)
    client = _Client()

    async def _go():
        resp = await server.chat_completions(_request(stream=True), client, None)
        frames = resp.body_iterator
        first = await frames.__anext__()
        client.gone = True
        rest = [frame async for frame in frames]
        return first, rest

    first, rest = asyncio.run(asyncio.wait_for(_go(), timeout=10))
    assert json.loads(first[len("data: ") :])["choices"][0]["delta"] == {"role": "assistant"}
    assert rest == []
    assert runs[0].state is CliState.KILLED
    assert runs[0].returncode is not None and runs[0].returncode < 0
    assert not server._semaphore.locked()
