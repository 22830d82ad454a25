from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import Any, Literal

Role = Literal["system", "user", "assistant"]
FragmentKind = Literal["start", "content", "stop"]

VALID_ROLES = ("system", "user", "assistant")

# Session credentials are treated as expired this long before the server says so.
SESSION_SAFETY_BUFFER_SECONDS = 5 * 60


@dataclass(frozen=True)
class LongLivedCredential:
    token: str
    timestamp: str | None = None
    source: str = "store"


@dataclass(frozen=True)
class SessionCredential:
    token: str
    expires_at: float
    endpoint: str | None = None

    def is_fresh(self, now: float | None = None, buffer_seconds: float = SESSION_SAFETY_BUFFER_SECONDS) -> bool:
        current = time.time() if now is None else now
        return current < self.expires_at - buffer_seconds


@dataclass(frozen=True)
class ChatMessage:
    role: Role
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class ChatRequest:
    messages: list[ChatMessage]
    model: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    stop: list[str] | None = None
    stream: bool = False

    def __post_init__(self) -> None:
        if not self.messages:
            raise ValueError("ChatRequest requires at least one message")
        for message in self.messages:
            if message.role not in VALID_ROLES:
                raise ValueError(f"Unknown message role: {message.role!r}")

    @classmethod
    def from_dicts(cls, messages: list[dict[str, Any]], **params: Any) -> ChatRequest:
        converted = [
            ChatMessage(role=m.get("role", "user"), content=_content_to_text(m.get("content", "")))
            for m in messages
        ]
        return cls(messages=converted, **params)

    def to_payload(self, default_model: str, *, stream: bool | None = None) -> dict[str, Any]:
        """Build an OpenAI-style chat completions body."""
        payload: dict[str, Any] = {
            "model": self.model or default_model,
            "messages": [m.to_dict() for m in self.messages],
        }
        if self.max_tokens is not None:
            payload["max_tokens"] = self.max_tokens
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        if self.top_p is not None:
            payload["top_p"] = self.top_p
        if self.stop:
            payload["stop"] = list(self.stop)
        if stream if stream is not None else self.stream:
            payload["stream"] = True
        return payload

    def flatten_prompt(self) -> str:
        """Collapse the conversation into a single prompt for the web chat UI."""
        parts: list[str] = []
        for message in self.messages:
            if message.role == "system":
                parts.append(f"[System] {message.content}")
            elif message.role == "assistant":
                parts.append(f"[Assistant] {message.content}")
            else:
                parts.append(message.content)
        return "\n\n".join(parts)


def _content_to_text(content: Any) -> str:
    # OpenAI clients may send content as a list of typed parts.
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            part.get("text", "") for part in content if isinstance(part, dict) and part.get("type") == "text"
        )
    return "" if content is None else str(content)


@dataclass(frozen=True)
class StreamFragment:
    kind: FragmentKind
    text: str = ""
    finish_reason: str | None = None

    @classmethod
    def start(cls) -> StreamFragment:
        return cls(kind="start")

    @classmethod
    def content(cls, text: str) -> StreamFragment:
        return cls(kind="content", text=text)

    @classmethod
    def stop(cls, finish_reason: str = "stop") -> StreamFragment:
        return cls(kind="stop", finish_reason=finish_reason)


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Usage:
        if not data:
            return cls()
        return cls(
            prompt_tokens=int(data.get("prompt_tokens", 0) or 0),
            completion_tokens=int(data.get("completion_tokens", 0) or 0),
            total_tokens=int(data.get("total_tokens", 0) or 0),
        )

    @classmethod
    def estimate(cls, prompt: str, completion: str) -> Usage:
        """Rough 4-chars-per-token estimate for backends that report nothing."""
        return cls(
            prompt_tokens=math.ceil(len(prompt) / 4),
            completion_tokens=math.ceil(len(completion) / 4),
            total_tokens=math.ceil((len(prompt) + len(completion)) / 4),
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(frozen=True)
class CodeCompletions:
    """Alternative suggestions for one insertion point, with their choice indices."""

    completions: list[str]
    indices: list[int]


@dataclass
class ChatResult:
    id: str
    model: str
    content: str
    messages: list[ChatMessage]
    finish_reason: str = "stop"
    usage: Usage = field(default_factory=Usage)


@dataclass(frozen=True)
class ModelInfo:
    id: str
    name: str = ""
    vendor: str = ""
    context_window: int | None = None
    supports_streaming: bool = True
    supports_tool_calls: bool = False
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> ModelInfo:
        capabilities = data.get("capabilities") or {}
        limits = capabilities.get("limits") or {}
        supports = capabilities.get("supports") or {}
        context_window = limits.get("max_context_window_tokens")
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name") or data.get("id", "")),
            vendor=str(data.get("vendor") or data.get("owned_by") or ""),
            context_window=int(context_window) if context_window is not None else None,
            supports_streaming=bool(supports.get("streaming", True)),
            supports_tool_calls=bool(supports.get("tool_calls", False)),
            raw=dict(data),
        )
