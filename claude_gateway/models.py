from __future__ import annotations

from types import MappingProxyType
from typing import Literal

ClaudeModel = Literal["opus", "sonnet", "haiku"]

DEFAULT_MODEL: ClaudeModel = "opus"

MODEL_MAP: MappingProxyType[str, ClaudeModel] = MappingProxyType(
    {
        # Canonical ids.
        "claude-opus-4": "opus",
        "claude-opus-4-6": "opus",
        "claude-sonnet-4": "sonnet",
        "claude-sonnet-4-5": "sonnet",
        "claude-haiku-4": "haiku",
        "claude-haiku-4-5": "haiku",
        # CLI aliases.
        "opus": "opus",
        "sonnet": "sonnet",
        "haiku": "haiku",
    }
)


def resolve_model(model: str | None) -> ClaudeModel:
    """
    Map a client-sent model id onto a CLI alias.

    Accepts canonical ids, bare aliases, and either of those behind a single
    `<provider>/` prefix (e.g. `openrouter/claude-sonnet-4`). Anything else falls
    back to opus. Never raises.
    """
    if not model or not isinstance(model, str):
        return DEFAULT_MODEL

    alias = MODEL_MAP.get(model)
    if alias is not None:
        return alias

    head, sep, stripped = model.partition("/")
    if sep and head:
        alias = MODEL_MAP.get(stripped)
        if alias is not None:
            return alias

    return DEFAULT_MODEL


def advertised_models() -> list[str]:
    """Model ids listed by `/v1/models` (canonical names first, then aliases)."""
    canonical = [m for m in MODEL_MAP if m.startswith("claude-")]
    aliases = [m for m in MODEL_MAP if not m.startswith("claude-")]
    return canonical + aliases
