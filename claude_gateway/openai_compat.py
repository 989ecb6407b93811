from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from .models import ClaudeModel, resolve_model

_SYSTEM_ROLES = frozenset({"system", "developer"})


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant", "tool", "developer"]
    content: Any = None


class ChatCompletionRequest(BaseModel):
    model: str | None = None
    messages: list[ChatMessage]
    user: str | None = None
    stream: bool = False

    # Accept extra fields from clients (temperature, max_tokens, etc.).
    model_config = ConfigDict(extra="allow", frozen=True)


class ErrorResponse(BaseModel):
    error: dict[str, Any] = Field(default_factory=dict)


@dataclass(frozen=True)
class CliInput:
    prompt: str
    model: ClaudeModel
    system_prompt: str | None = None
    session_id: str | None = None


def _part_to_text(part: Any) -> str:
    if isinstance(part, str):
        return part
    if isinstance(part, dict) and part.get("type") == "text":
        text = part.get("text")
        if isinstance(text, str):
            return text
    return ""


def normalize_message_content(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, (list, tuple)):
        parts = [_part_to_text(part) for part in content]
        return "\n".join(p for p in parts if p)
    try:
        return str(content)
    except Exception:
        return ""


def extract_system_prompt(messages: list[ChatMessage]) -> str | None:
    """Join system instructions with blank lines; None when there is nothing to send."""
    texts = [
        normalize_message_content(m.content)
        for m in messages
        if m.role in _SYSTEM_ROLES
    ]
    texts = [t for t in texts if t]
    return "\n\n".join(texts) if texts else None


def messages_to_prompt(messages: list[ChatMessage]) -> str:
    """
    Flatten the conversation into the single prompt `claude -p` expects.

    System messages travel separately via `--append-system-prompt`. Earlier assistant
    turns are wrapped in <previous_response> tags so the model does not read them as
    new instructions.
    """
    parts: list[str] = []
    for message in messages:
        if message.role == "user":
            parts.append(normalize_message_content(message.content))
        elif message.role == "assistant":
            text = normalize_message_content(message.content)
            parts.append(f"<previous_response>\n{text}\n</previous_response>\n")
    return "\n".join(parts).strip()


def openai_to_cli(req: ChatCompletionRequest) -> CliInput:
    return CliInput(
        prompt=messages_to_prompt(req.messages),
        model=resolve_model(req.model),
        system_prompt=extract_system_prompt(req.messages),
        # OpenAI's `user` field doubles as the CLI session handle.
        session_id=req.user,
    )
