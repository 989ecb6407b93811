from __future__ import annotations

from typing import Any


class TextAssembler:
    """Accumulates the answer text and remembers whether token deltas were seen."""

    def __init__(self) -> None:
        self._parts: list[str] = []
        self.saw_partial = False

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def add(self, delta: str) -> str:
        if delta:
            self._parts.append(delta)
        return delta


def _assistant_text(evt: dict[str, Any]) -> str:
    message = evt.get("message")
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    texts: list[str] = []
    for block in content:
        if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str):
            texts.append(block["text"])
    return "".join(texts)


def extract_claude_delta(evt: dict[str, Any], assembler: TextAssembler) -> str:
    """
    Return the new text carried by one `claude -p --output-format stream-json` event.

    With `--include-partial-messages` the text arrives as `stream_event` deltas and the
    later `assistant` event repeats it, so assistant text is only used when no partial
    deltas have been seen.
    """
    t = evt.get("type")
    if t == "stream_event":
        inner = evt.get("event")
        if not isinstance(inner, dict) or inner.get("type") != "content_block_delta":
            return ""
        delta = inner.get("delta")
        if isinstance(delta, dict) and delta.get("type") == "text_delta" and isinstance(delta.get("text"), str):
            assembler.saw_partial = True
            return assembler.add(delta["text"])
        return ""
    if t == "assistant" and not assembler.saw_partial:
        return assembler.add(_assistant_text(evt))
    return ""


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def extract_usage_from_claude_result(evt: dict[str, Any]) -> dict[str, int] | None:
    if evt.get("type") != "result":
        return None
    raw = evt.get("usage")
    if not isinstance(raw, dict):
        return None
    # Cached input still counts towards the prompt the model saw.
    prompt_tokens = (
        _as_int(raw.get("input_tokens"))
        + _as_int(raw.get("cache_read_input_tokens"))
        + _as_int(raw.get("cache_creation_input_tokens"))
    )
    completion_tokens = _as_int(raw.get("output_tokens"))
    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": prompt_tokens + completion_tokens,
    }


def extract_error_from_claude_result(evt: dict[str, Any]) -> str | None:
    if evt.get("type") != "result" or not evt.get("is_error"):
        return None
    for key in ("result", "error"):
        value = evt.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    subtype = evt.get("subtype")
    return f"claude reported {subtype}" if isinstance(subtype, str) else "claude reported an error"


def extract_session_id(evt: dict[str, Any]) -> str | None:
    if evt.get("type") in {"system", "result"} and isinstance(evt.get("session_id"), str):
        return evt["session_id"]
    return None
