from __future__ import annotations

import asyncio
import logging
import re
import shutil
import time
from contextlib import aclosing, suppress
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .claude_cli import (
    ClaudeCliRun,
    CliTimeoutError,
    CliUnavailableError,
    build_claude_run,
    collect_claude_text_and_usage,
)
from .config import settings
from .models import advertised_models
from .openai_compat import ChatCompletionRequest, CliInput, openai_to_cli
from .openai_responses import (
    SSE_DONE,
    SSE_PING,
    ChunkBuilder,
    chat_completion,
    error_payload,
    new_completion_id,
    sse_frame,
)
from .stream_json_cli import (
    TextAssembler,
    extract_claude_delta,
    extract_session_id,
    extract_usage_from_claude_result,
)

app = FastAPI(title="claude-cli-to-api", version="0.1.0")
logger = logging.getLogger("uvicorn.error")

if settings.cors_origins.strip():
    origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )


_semaphore: asyncio.Semaphore | None = None
_active_requests = 0  # Track current concurrent requests
_DISCONNECT_POLL_SECONDS = 1.0


def _get_semaphore() -> asyncio.Semaphore:
    global _semaphore
    if _semaphore is None:
        _semaphore = asyncio.Semaphore(max(settings.max_concurrency, 1))
    return _semaphore


def _check_auth(authorization: str | None) -> None:
    token = settings.bearer_token
    if not token:
        return
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing Authorization: Bearer <token>")
    if authorization.removeprefix("Bearer ").strip() != token:
        raise HTTPException(status_code=403, detail="Invalid token")


def _openai_error(message: str, *, status_code: int = 500, error_type: str = "claude_gateway_error") -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error_payload(message, error_type=error_type))


_UPSTREAM_STATUS_RE = re.compile(r"(?:\bAPI Error:\s*|\bfailed:\s*)(\d{3})\b")
_GENERIC_STATUS_RE = re.compile(r"\bstatus\s*[=:]\s*(\d{3})\b")


def _extract_upstream_status_code(err: BaseException) -> int | None:
    msg = str(err or "").strip()
    if not msg:
        return None
    for rx in (_UPSTREAM_STATUS_RE, _GENERIC_STATUS_RE):
        m = rx.search(msg)
        if m:
            code = int(m.group(1))
            if 400 <= code <= 599:
                return code
    return None


def _classify_error(err: BaseException) -> tuple[int, str]:
    """HTTP status and OpenAI error type for a failed invocation."""
    if isinstance(err, CliTimeoutError):
        return 504, "timeout_error"
    if isinstance(err, CliUnavailableError):
        return 503, "cli_unavailable"
    return _extract_upstream_status_code(err) or 500, "claude_cli_error"


def _truncate_for_log(text: str) -> str:
    limit = settings.log_max_chars
    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    return f"{text[:limit]}\n... (truncated, {len(text)} chars total)"


_RICH_CONSOLE: Console | None = None


def _console() -> Console:
    global _RICH_CONSOLE
    if _RICH_CONSOLE is None:
        # stderr matches uvicorn's default logging stream.
        _RICH_CONSOLE = Console(stderr=True)
    return _RICH_CONSOLE


def _short_id(resp_id: str) -> str:
    """Extract short ID from chatcmpl-xxx format."""
    if resp_id.startswith("chatcmpl-"):
        return resp_id[9:17]
    return resp_id[:8]


# ─────────────────────────────────────────────────────────────────────────────
# Request Statistics Tracking
# ─────────────────────────────────────────────────────────────────────────────
@dataclass
class RequestStats:
    """Track request statistics for periodic reporting."""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    cancelled_requests: int = 0
    total_duration_ms: int = 0
    total_prompt_tokens: int = 0
    total_completion_tokens: int = 0
    last_report_time: float = field(default_factory=time.time)

    def record_success(self, duration_ms: int, usage: dict[str, int] | None) -> None:
        self.total_requests += 1
        self.successful_requests += 1
        self.total_duration_ms += duration_ms
        if usage:
            self.total_prompt_tokens += usage.get("prompt_tokens", 0)
            self.total_completion_tokens += usage.get("completion_tokens", 0)

    def record_failure(self) -> None:
        self.total_requests += 1
        self.failed_requests += 1

    def record_cancelled(self) -> None:
        self.total_requests += 1
        self.cancelled_requests += 1

    def avg_duration_ms(self) -> float:
        if self.successful_requests == 0:
            return 0
        return self.total_duration_ms / self.successful_requests

    def reset(self) -> "RequestStats":
        """Return current stats and reset counters."""
        snapshot = RequestStats(
            total_requests=self.total_requests,
            successful_requests=self.successful_requests,
            failed_requests=self.failed_requests,
            cancelled_requests=self.cancelled_requests,
            total_duration_ms=self.total_duration_ms,
            total_prompt_tokens=self.total_prompt_tokens,
            total_completion_tokens=self.total_completion_tokens,
            last_report_time=self.last_report_time,
        )
        self.total_requests = 0
        self.successful_requests = 0
        self.failed_requests = 0
        self.cancelled_requests = 0
        self.total_duration_ms = 0
        self.total_prompt_tokens = 0
        self.total_completion_tokens = 0
        self.last_report_time = time.time()
        return snapshot


_request_stats = RequestStats()
_STATS_INTERVAL_SECONDS = 60  # Report every 60 seconds


def _maybe_print_stats() -> None:
    """Print stats summary if interval has passed."""
    if not settings.log_stats:
        return
    elapsed = time.time() - _request_stats.last_report_time
    if elapsed < _STATS_INTERVAL_SECONDS or _request_stats.total_requests == 0:
        return

    stats = _request_stats.reset()

    table = Table(title=f"Stats Summary (last {int(elapsed)}s)", border_style="dim")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green", justify="right")

    table.add_row("Total Requests", str(stats.total_requests))
    table.add_row("Successful", str(stats.successful_requests))
    table.add_row("Failed", str(stats.failed_requests))
    table.add_row("Cancelled", str(stats.cancelled_requests))
    table.add_row("Avg Duration", f"{stats.avg_duration_ms():.0f}ms")
    table.add_row("Prompt Tokens", f"{stats.total_prompt_tokens:,}")
    table.add_row("Completion Tokens", f"{stats.total_completion_tokens:,}")

    _console().print(table)


def _print_error_panel(resp_id: str, error_msg: str, status_code: int = 500) -> None:
    """Print error in a red panel for visibility."""
    _console().print(
        Panel(
            Text(_truncate_for_log(error_msg), style="bold white"),
            title=f"Error [{_short_id(resp_id)}] HTTP {status_code}",
            border_style="red",
            expand=False,
        )
    )


def _record_failure(resp_id: str, err: BaseException) -> tuple[int, str]:
    status, error_type = _classify_error(err)
    logger.error("[%s] error status=%d type=%s %s", resp_id, status, error_type, _truncate_for_log(str(err)))
    _request_stats.record_failure()
    _print_error_panel(resp_id, str(err), status)
    _maybe_print_stats()
    return status, error_type


class ClientDisconnected(Exception):
    pass


class _RunStreamingResponse(StreamingResponse):
    """SSE response that releases its CLI run and slot however the response ends."""

    def __init__(self, content, *, on_close, **kwargs) -> None:
        super().__init__(content, **kwargs)
        self._on_close = on_close

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self._on_close()


async def _cancel_on_disconnect(request: Request, aw):
    """Await `aw`, cancelling it (and so killing its subprocess) if the client goes away."""
    task = asyncio.ensure_future(aw)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=_DISCONNECT_POLL_SECONDS)
            if done:
                return task.result()
            if await request.is_disconnected():
                raise ClientDisconnected()
    finally:
        if not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        problems.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    message = "Invalid request: " + "; ".join(problems)
    return _openai_error(message, status_code=400, error_type="invalid_request_error")


@app.on_event("startup")
async def _log_startup_config() -> None:
    # Intentionally omit secrets (tokens).
    resolved_bin = shutil.which(settings.claude_bin)
    items: list[tuple[str, object]] = [
        ("claude_bin", f"{settings.claude_bin} ({resolved_bin or 'NOT FOUND'})"),
        ("workspace", settings.workspace),
        ("session_flag", settings.session_flag),
        ("skip_permissions", settings.skip_permissions),
        ("partial_messages", settings.partial_messages),
        ("max_concurrency", settings.max_concurrency),
        ("admission_policy", settings.admission_policy),
        ("timeout_seconds", settings.timeout_seconds),
        ("sse_keepalive_seconds", settings.sse_keepalive_seconds),
        ("auth", "bearer" if settings.bearer_token else "off"),
    ]
    width = max(len(k) for k, _ in items)
    rendered = "Gateway config:\n" + "\n".join(f"  {k:<{width}} = {v}" for k, v in items)
    logger.info(rendered)
    if resolved_bin is None:
        logger.warning("claude CLI %r not found on PATH; chat requests will fail with 503", settings.claude_bin)


@app.get("/healthz")
@app.get("/health")
async def healthz():
    return {
        "ok": True,
        "status": "ok",
        "provider": "claude-code-cli",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/v1/models")
async def list_models(authorization: str | None = Header(default=None)):
    _check_auth(authorization)
    return {
        "object": "list",
        "data": [{"id": m, "object": "model", "created": 0, "owned_by": "anthropic"} for m in advertised_models()],
    }


@app.get("/debug/config")
async def debug_config(authorization: str | None = Header(default=None)):
    """
    Return the effective runtime configuration (secrets redacted).

    If `CLAUDE_GATEWAY_TOKEN` is set, this endpoint requires `Authorization: Bearer <token>`.
    """
    _check_auth(authorization)
    config = asdict(settings)
    config.pop("bearer_token", None)
    config["auth_enabled"] = bool(settings.bearer_token)
    return config


def _new_run(invocation: CliInput, resp_id: str) -> ClaudeCliRun:
    def _stderr_log(text: str) -> None:
        if settings.log_prompts:
            logger.warning("[%s] claude stderr: %s", resp_id, _truncate_for_log(text))

    return build_claude_run(
        invocation,
        claude_bin=settings.claude_bin,
        session_flag=settings.session_flag,
        skip_permissions=settings.skip_permissions,
        partial_messages=settings.partial_messages,
        extra_args=settings.extra_args,
        cwd=settings.workspace,
        timeout_seconds=settings.timeout_seconds,
        stream_limit=settings.subprocess_stream_limit,
        stderr_callback=_stderr_log,
    )


@app.post("/v1/chat/completions")
async def chat_completions(
    req: ChatCompletionRequest,
    request: Request,
    authorization: str | None = Header(default=None),
):
    global _active_requests
    _check_auth(authorization)

    invocation = openai_to_cli(req)
    if len(invocation.prompt) > settings.max_prompt_chars:
        return _openai_error(
            f"Prompt too large ({len(invocation.prompt)} chars)",
            status_code=413,
            error_type="invalid_request_error",
        )

    sem = _get_semaphore()
    held = False
    if settings.admission_policy == "reject":
        if sem.locked():
            return _openai_error(
                f"Too many concurrent requests (limit {settings.max_concurrency})",
                status_code=429,
                error_type="rate_limit_error",
            )
        # Acquiring a free semaphore does not suspend, so check and take are one step.
        await sem.acquire()
        held = True

    created = int(time.time())
    resp_id = new_completion_id()
    response_model = (req.model or "").strip() or invocation.model
    t0 = time.time()

    logger.info(
        "[%s] ▶ model=%s cli_model=%s stream=%s session=%s active=%d",
        resp_id,
        response_model,
        invocation.model,
        req.stream,
        "yes" if invocation.session_id is not None else "no",
        _active_requests,
    )
    if settings.log_prompts:
        if invocation.system_prompt:
            logger.info("[%s] SYSTEM:\n%s", resp_id, _truncate_for_log(invocation.system_prompt))
        logger.info("[%s] PROMPT:\n%s", resp_id, _truncate_for_log(invocation.prompt))

    if not req.stream:
        _active_requests += 1
        try:

            async def _collect():
                run = _new_run(invocation, resp_id)
                async with aclosing(run.iter_events()) as events:
                    return await collect_claude_text_and_usage(events)

            async def _run_once():
                if held:
                    return await _collect()
                async with sem:
                    return await _collect()

            result = await _cancel_on_disconnect(request, _run_once())
        except ClientDisconnected:
            logger.info("[%s] client disconnected; claude run killed", resp_id)
            _request_stats.record_cancelled()
            return Response(status_code=499)
        except Exception as e:
            status, error_type = _record_failure(resp_id, e)
            return _openai_error(str(e), status_code=status, error_type=error_type)
        finally:
            _active_requests -= 1
            if held:
                sem.release()

        duration_ms = int((time.time() - t0) * 1000)
        usage_str = f" usage={result.usage}" if isinstance(result.usage, dict) else ""
        logger.info(
            "[%s] response status=200 duration_ms=%d chars=%d session=%s%s",
            resp_id,
            duration_ms,
            len(result.text),
            result.session_id or "-",
            usage_str,
        )
        if settings.log_prompts and result.text:
            logger.info("[%s] RESPONSE:\n%s", resp_id, _truncate_for_log(result.text))
        _request_stats.record_success(duration_ms, result.usage)
        _maybe_print_stats()

        return chat_completion(
            resp_id=resp_id,
            created=created,
            model=response_model,
            text=result.text,
            usage=result.usage,
        )

    # Streaming: take a slot and spawn the CLI before the 200 goes out, so a missing
    # binary is still answered with a plain 503.
    run = _new_run(invocation, resp_id)
    try:
        if not held:
            await sem.acquire()
            held = True
        await run.start()
    except CliUnavailableError as e:
        sem.release()
        status, error_type = _record_failure(resp_id, e)
        return _openai_error(str(e), status_code=status, error_type=error_type)
    except BaseException:
        if held:
            sem.release()
        raise

    async def _finish_run() -> None:
        nonlocal held
        # The pump may never have started the event iterator.
        await run.terminate()
        if held:
            held = False
            sem.release()

    async def sse_gen():
        global _active_requests
        chunks = ChunkBuilder(resp_id=resp_id, model=response_model, created=created)
        assembler = TextAssembler()
        usage: dict[str, int] | None = None
        session_id: str | None = None
        outcome = "cancelled"
        _active_requests += 1
        try:
            yield sse_frame(chunks.role())
            keepalive = max(settings.sse_keepalive_seconds, 0)
            events = run.iter_events()
            queue: asyncio.Queue[dict | None] = asyncio.Queue()
            result_text: str | None = None

            async def _pump_events() -> None:
                try:
                    async with aclosing(events):
                        async for evt in events:
                            await queue.put(evt)
                except Exception as e:
                    await queue.put({"_gateway_error": e})
                finally:
                    await queue.put(None)

            pump_task = asyncio.create_task(_pump_events())
            try:
                while True:
                    if await request.is_disconnected():
                        logger.info("[%s] client disconnected; claude run killed", resp_id)
                        return

                    try:
                        if keepalive > 0:
                            evt = await asyncio.wait_for(queue.get(), timeout=keepalive)
                        else:
                            evt = await queue.get()
                    except TimeoutError:
                        yield SSE_PING
                        continue

                    if evt is None:
                        break

                    if "_gateway_error" in evt:
                        err = evt["_gateway_error"]
                        outcome = "failed"
                        _, error_type = _record_failure(resp_id, err)
                        # Everything produced so far has been sent; close with one error frame.
                        yield sse_frame(chunks.error(str(err), error_type=error_type))
                        return

                    maybe_usage = extract_usage_from_claude_result(evt)
                    if maybe_usage:
                        usage = maybe_usage
                    if evt.get("type") == "result" and not evt.get("is_error") and isinstance(evt.get("result"), str):
                        result_text = evt["result"]
                    session_id = extract_session_id(evt) or session_id

                    delta = extract_claude_delta(evt, assembler)
                    if delta:
                        yield sse_frame(chunks.content(delta))
            finally:
                pump_task.cancel()
                with suppress(asyncio.CancelledError):
                    await pump_task

            if not assembler.text and result_text:
                yield sse_frame(chunks.content(assembler.add(result_text)))
            outcome = "ok"
            yield sse_frame(chunks.final(usage))
            yield SSE_DONE
        finally:
            await _finish_run()
            _active_requests -= 1
            duration_ms = int((time.time() - t0) * 1000)
            if outcome == "ok":
                usage_str = f" usage={usage}" if isinstance(usage, dict) else ""
                logger.info(
                    "[%s] response status=200 duration_ms=%d chars=%d session=%s%s",
                    resp_id,
                    duration_ms,
                    len(assembler.text),
                    session_id or "-",
                    usage_str,
                )
                if settings.log_prompts and assembler.text:
                    logger.info("[%s] RESPONSE:\n%s", resp_id, _truncate_for_log(assembler.text))
                _request_stats.record_success(duration_ms, usage)
                _maybe_print_stats()
            elif outcome == "cancelled":
                _request_stats.record_cancelled()

    return _RunStreamingResponse(sse_gen(), on_close=_finish_run, media_type="text/event-stream")
