from __future__ import annotations

import json
import time
import uuid
from typing import Any

from .openai_compat import ErrorResponse

SSE_DONE = "data: [DONE]\n\n"
SSE_PING = ": ping\n\n"


def new_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex}"


def normalize_usage(usage: dict[str, int] | None) -> dict[str, int]:
    """Usage is always reported; a CLI that sent none counts as zero tokens."""
    usage = usage or {}
    prompt_tokens = int(usage.get("prompt_tokens") or 0)
    completion_tokens = int(usage.get("completion_tokens") or 0)
    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": prompt_tokens + completion_tokens,
    }


def error_payload(message: str, *, error_type: str = "claude_gateway_error", code: str | None = None) -> dict[str, Any]:
    return ErrorResponse(
        error={
            "message": message,
            "type": error_type,
            "param": None,
            "code": code,
        }
    ).model_dump()


def chat_completion(
    *,
    resp_id: str,
    created: int,
    model: str,
    text: str,
    usage: dict[str, int] | None,
) -> dict[str, Any]:
    return {
        "id": resp_id,
        "object": "chat.completion",
        "created": created,
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": text},
                "finish_reason": "stop",
            }
        ],
        "usage": normalize_usage(usage),
    }


class ChunkBuilder:
    """Builds the `chat.completion.chunk` frames of one streamed response."""

    def __init__(self, *, resp_id: str, model: str, created: int | None = None) -> None:
        self.resp_id = resp_id
        self.model = model
        self.created = created if created is not None else int(time.time())
        self.finished = False

    def _chunk(self, delta: dict[str, Any], finish_reason: str | None) -> dict[str, Any]:
        return {
            "id": self.resp_id,
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": self.model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }

    def role(self) -> dict[str, Any]:
        return self._chunk({"role": "assistant"}, None)

    def content(self, delta: str) -> dict[str, Any]:
        return self._chunk({"content": delta}, None)

    def final(self, usage: dict[str, int] | None) -> dict[str, Any]:
        # Usage is only known once the CLI has finished, so it rides on the last chunk only.
        if self.finished:
            raise RuntimeError("stream already finished")
        self.finished = True
        chunk = self._chunk({}, "stop")
        chunk["usage"] = normalize_usage(usage)
        return chunk

    def error(self, message: str, *, error_type: str = "claude_gateway_error", code: str | None = None) -> dict[str, Any]:
        if self.finished:
            raise RuntimeError("stream already finished")
        self.finished = True
        return error_payload(message, error_type=error_type, code=code)


def sse_frame(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"
