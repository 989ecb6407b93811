from __future__ import annotations

import asyncio
import enum
import json
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import suppress
from dataclasses import dataclass

from .openai_compat import CliInput
from .stream_json_cli import (
    TextAssembler,
    extract_claude_delta,
    extract_error_from_claude_result,
    extract_session_id,
    extract_usage_from_claude_result,
)

logger = logging.getLogger("uvicorn.error")

_STDERR_KEEP_BYTES = 64_000


class CliState(str, enum.Enum):
    SPAWNING = "spawning"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    KILLED = "killed"


_TRANSITIONS: dict[CliState, frozenset[CliState]] = {
    CliState.SPAWNING: frozenset({CliState.RUNNING, CliState.FAILED, CliState.KILLED}),
    CliState.RUNNING: frozenset({CliState.SUCCEEDED, CliState.FAILED, CliState.TIMED_OUT, CliState.KILLED}),
}


class ClaudeCliError(RuntimeError):
    pass


class CliUnavailableError(ClaudeCliError):
    """The CLI binary could not be started (missing, not executable, bad workspace)."""


class CliProcessError(ClaudeCliError):
    def __init__(self, message: str, *, returncode: int | None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class CliTimeoutError(ClaudeCliError, TimeoutError):
    pass


@dataclass(frozen=True)
class CliResult:
    text: str
    usage: dict[str, int] | None
    session_id: str | None = None


def build_claude_cmd(
    invocation: CliInput,
    *,
    claude_bin: str,
    session_flag: str,
    skip_permissions: bool,
    partial_messages: bool,
    extra_args: list[str],
) -> list[str]:
    # The prompt is never part of argv: it goes through stdin so ARG_MAX does not apply.
    cmd: list[str] = [claude_bin, "-p", "--output-format", "stream-json", "--verbose"]
    if partial_messages:
        cmd.append("--include-partial-messages")
    cmd.extend(["--model", invocation.model])
    if invocation.system_prompt:
        cmd.extend(["--append-system-prompt", invocation.system_prompt])
    if invocation.session_id is not None:
        cmd.extend([session_flag, invocation.session_id])
    if skip_permissions:
        cmd.append("--dangerously-skip-permissions")
    cmd.extend(extra_args)
    return cmd


class ClaudeCliRun:
    """
    One `claude -p` subprocess and its lifecycle.

    `start()` spawns the process (`iter_events()` calls it when the caller has not), so
    a missing binary can be reported before any output is promised. `iter_events()` feeds
    the prompt on stdin and yields the decoded stream-json events from stdout as they
    arrive. `terminate()` kills a run nobody is reading. The run ends in exactly one terminal
    state: SUCCEEDED (exit 0), FAILED (spawn error or non-zero exit), TIMED_OUT (deadline
    reached, process killed) or KILLED (consumer stopped early, process killed).
    """

    def __init__(
        self,
        cmd: list[str],
        *,
        prompt: str,
        timeout_seconds: float,
        stream_limit: int,
        cwd: str | None = None,
        stderr_callback: Callable[[str], None] | None = None,
    ) -> None:
        self.cmd = cmd
        self.prompt = prompt
        self.timeout_seconds = timeout_seconds
        self.stream_limit = stream_limit
        self.cwd = cwd
        self.stderr_callback = stderr_callback
        self.state = CliState.SPAWNING
        self.returncode: int | None = None
        self.last_error: str | None = None
        self._stderr_buf = bytearray()
        self._proc: asyncio.subprocess.Process | None = None
        self._deadline = 0.0
        self._started = False
        self._consumed = False

    @property
    def stderr_text(self) -> str:
        return bytes(self._stderr_buf).decode(errors="ignore").strip()

    def _transition(self, new: CliState) -> None:
        if new not in _TRANSITIONS.get(self.state, frozenset()):
            raise RuntimeError(f"invalid claude run transition: {self.state.value} -> {new.value}")
        logger.debug("claude run %s -> %s", self.state.value, new.value)
        self.state = new

    async def _kill(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            with suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
        self.returncode = proc.returncode

    async def _feed_stdin(self, proc: asyncio.subprocess.Process) -> None:
        if proc.stdin is None:
            return
        try:
            proc.stdin.write(self.prompt.encode("utf-8", errors="replace"))
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            # The CLI exited without reading its input; the exit status reports why.
            logger.debug("claude stdin closed before the prompt was fully written")
        finally:
            with suppress(BrokenPipeError, ConnectionResetError):
                proc.stdin.close()

    async def _drain_stderr(self, proc: asyncio.subprocess.Process) -> None:
        if proc.stderr is None:
            return
        while True:
            chunk = await proc.stderr.read(4096)
            if not chunk:
                return
            self._stderr_buf.extend(chunk)
            if len(self._stderr_buf) > _STDERR_KEEP_BYTES:
                del self._stderr_buf[:-_STDERR_KEEP_BYTES]
            if self.stderr_callback is not None:
                text = chunk.decode(errors="ignore").strip()
                if text:
                    self.stderr_callback(text)

    async def _until_deadline(self, aw, deadline: float, proc: asyncio.subprocess.Process):
        remaining = max(deadline - asyncio.get_running_loop().time(), 0)
        try:
            return await asyncio.wait_for(aw, timeout=remaining)
        except TimeoutError:
            await self._kill(proc)
            self._transition(CliState.TIMED_OUT)
            raise CliTimeoutError(f"claude timed out after {self.timeout_seconds}s") from None

    async def start(self) -> None:
        """Spawn the CLI. Raises `CliUnavailableError` when it cannot be started."""
        if self._started:
            raise RuntimeError("ClaudeCliRun is single-use; build a new run per request")
        self._started = True

        self._deadline = asyncio.get_running_loop().time() + self.timeout_seconds
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                limit=self.stream_limit,
            )
        except OSError as e:
            self._transition(CliState.FAILED)
            raise CliUnavailableError(f"claude CLI is not available ({self.cmd[0]}): {e}") from e
        except asyncio.CancelledError:
            self._transition(CliState.KILLED)
            raise
        self._transition(CliState.RUNNING)

    async def terminate(self) -> None:
        """Kill the CLI if it is still running. A finished run is left as it is."""
        if self._proc is not None and self._proc.returncode is None:
            await self._kill(self._proc)
        if self.state is CliState.RUNNING:
            self._transition(CliState.KILLED)

    async def iter_events(self) -> AsyncIterator[dict]:
        if self._consumed:
            raise RuntimeError("ClaudeCliRun is single-use; build a new run per request")
        self._consumed = True
        if self._proc is None:
            await self.start()
        proc = self._proc
        deadline = self._deadline

        feed_task = asyncio.create_task(self._feed_stdin(proc))
        drain_task = asyncio.create_task(self._drain_stderr(proc))

        try:
            if proc.stdout is None:
                raise RuntimeError("claude stdout not available")

            while True:
                try:
                    line = await self._until_deadline(proc.stdout.readline(), deadline, proc)
                except ValueError as e:
                    await self._kill(proc)
                    self._transition(CliState.FAILED)
                    raise CliProcessError(
                        f"claude output line exceeded {self.stream_limit} bytes", returncode=proc.returncode
                    ) from e

                if not line:
                    break

                line = line.strip()
                if not line:
                    continue
                try:
                    evt = json.loads(line.decode(errors="ignore"))
                except ValueError:
                    continue
                if not isinstance(evt, dict):
                    continue

                err = extract_error_from_claude_result(evt)
                if err:
                    self.last_error = err
                yield evt

            rc = await self._until_deadline(proc.wait(), deadline, proc)
            self.returncode = rc
            await feed_task
            await drain_task
            if rc != 0:
                self._transition(CliState.FAILED)
                stderr = self.stderr_text
                raise CliProcessError(
                    stderr or self.last_error or f"claude exited with status {rc}",
                    returncode=rc,
                    stderr=stderr,
                )
            self._transition(CliState.SUCCEEDED)
        finally:
            # Consumer went away (client disconnect, cancellation) before the CLI finished.
            await self.terminate()
            for task in (feed_task, drain_task):
                if not task.done():
                    task.cancel()


def build_claude_run(
    invocation: CliInput,
    *,
    claude_bin: str,
    session_flag: str,
    skip_permissions: bool,
    partial_messages: bool,
    extra_args: list[str],
    cwd: str | None,
    timeout_seconds: float,
    stream_limit: int,
    stderr_callback: Callable[[str], None] | None = None,
) -> ClaudeCliRun:
    cmd = build_claude_cmd(
        invocation,
        claude_bin=claude_bin,
        session_flag=session_flag,
        skip_permissions=skip_permissions,
        partial_messages=partial_messages,
        extra_args=extra_args,
    )
    return ClaudeCliRun(
        cmd,
        prompt=invocation.prompt,
        timeout_seconds=timeout_seconds,
        stream_limit=stream_limit,
        cwd=cwd,
        stderr_callback=stderr_callback,
    )


async def collect_claude_text_and_usage(events: AsyncIterator[dict]) -> CliResult:
    assembler = TextAssembler()
    usage: dict[str, int] | None = None
    fallback_text: str | None = None
    session_id: str | None = None

    async for evt in events:
        extract_claude_delta(evt, assembler)
        maybe_usage = extract_usage_from_claude_result(evt)
        if maybe_usage:
            usage = maybe_usage
        if evt.get("type") == "result" and not evt.get("is_error") and isinstance(evt.get("result"), str):
            fallback_text = evt["result"]
        session_id = extract_session_id(evt) or session_id

    return CliResult(text=(assembler.text or fallback_text or "").strip(), usage=usage, session_id=session_id)
