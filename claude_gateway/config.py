from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Literal

AdmissionPolicy = Literal["queue", "reject"]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    raw = raw.strip().lower()
    return raw in {"1", "true", "t", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw


def _env_csv(name: str) -> list[str]:
    raw = os.environ.get(name)
    if not raw:
        return []
    items: list[str] = []
    for part in raw.split(","):
        part = part.strip()
        if part:
            items.append(part)
    return items


def _env_admission(name: str) -> AdmissionPolicy:
    raw = _env_str(name, "queue").strip().lower()
    if raw == "reject":
        return "reject"
    return "queue"


@dataclass(frozen=True)
class Settings:
    host: str = os.environ.get("CLAUDE_GATEWAY_HOST", "127.0.0.1")
    port: int = _env_int("CLAUDE_GATEWAY_PORT", 3456)

    # If set, requests must include `Authorization: Bearer <token>`.
    bearer_token: str | None = os.environ.get("CLAUDE_GATEWAY_TOKEN")

    # Claude CLI binary and working directory for the subprocess.
    claude_bin: str = _env_str("CLAUDE_BIN", "claude")
    workspace: str = os.environ.get("CLAUDE_WORKSPACE", os.getcwd())

    # Flag used to hand the request's `user` field to the CLI (`--resume` or `--session-id`).
    session_flag: str = _env_str("CLAUDE_SESSION_FLAG", "--resume")
    # Unattended deployments have nobody to answer permission prompts.
    skip_permissions: bool = _env_bool("CLAUDE_SKIP_PERMISSIONS", False)
    # Token-level deltas (`--include-partial-messages`); off means one delta per assistant message.
    partial_messages: bool = _env_bool("CLAUDE_PARTIAL_MESSAGES", True)
    extra_args: list[str] = field(default_factory=lambda: _env_csv("CLAUDE_EXTRA_ARGS"))

    # Hard safety caps.
    max_prompt_chars: int = _env_int("CLAUDE_MAX_PROMPT_CHARS", 1_000_000)
    timeout_seconds: int = _env_int("CLAUDE_TIMEOUT_SECONDS", 600)
    max_concurrency: int = _env_int("CLAUDE_MAX_CONCURRENCY", 4)
    admission_policy: AdmissionPolicy = _env_admission("CLAUDE_ADMISSION_POLICY")
    # asyncio StreamReader line limit; a single stream-json line can carry a whole answer.
    subprocess_stream_limit: int = _env_int("CLAUDE_SUBPROCESS_STREAM_LIMIT", 8 * 1024 * 1024)
    sse_keepalive_seconds: int = _env_int("CLAUDE_SSE_KEEPALIVE_SECONDS", 15)

    # CORS (comma-separated origins). Empty disables CORS.
    cors_origins: str = os.environ.get("CLAUDE_GATEWAY_CORS_ORIGINS", "")

    # Logging.
    log_prompts: bool = _env_bool("CLAUDE_LOG_PROMPTS", False)
    log_max_chars: int = _env_int("CLAUDE_LOG_MAX_CHARS", 4000)
    log_stats: bool = _env_bool("CLAUDE_LOG_STATS", True)


settings = Settings()
