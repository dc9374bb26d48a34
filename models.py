"""Data model shared by the normalizer, builders and stream relay."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Tuple, Union

SYSTEM_ROLE = "system"
USER_ROLE = "user"
ASSISTANT_ROLE = "assistant"


@dataclass(frozen=True)
class ChatImage:
    """Image attached to a message: base64 payload or data URI."""

    data: str
    mime_type: Optional[str] = None


@dataclass(frozen=True)
class ChatMessage:
    """Canonical message; content is trimmed and never empty."""

    role: str
    content: str
    images: Tuple[ChatImage, ...] = ()

    @property
    def is_system(self) -> bool:
        return self.role == SYSTEM_ROLE


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class Finish:
    reason: str


StreamEvent = Union[TextDelta, Finish]


# Top-level request fields interpreted by the normalizer; everything else lands in extras.
_RECOGNIZED_FIELDS = ("messages", "inputText", "promptContent", "systemPrompt", "model", "stream")


@dataclass
class ChatPayload:
    """Client request body, parsed once at the boundary.

    Recognized fields are typed; any field they do not cover (generation parameters,
    tools, provider-specific blocks) is preserved verbatim in ``extras`` for the
    request builders to pick from.
    """

    messages: Optional[List[Any]] = None
    input_text: str = ""
    prompt_content: str = ""
    system_prompt: Optional[str] = None
    model: Optional[str] = None
    stream: bool = False
    extras: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> ChatPayload:
        messages = data.get("messages")
        input_text = data.get("inputText")
        prompt_content = data.get("promptContent")
        system_prompt = data.get("systemPrompt")
        model = data.get("model")

        return cls(
            messages=messages if isinstance(messages, list) else None,
            input_text=input_text if isinstance(input_text, str) else "",
            prompt_content=prompt_content if isinstance(prompt_content, str) else "",
            system_prompt=system_prompt if isinstance(system_prompt, str) else None,
            model=model if isinstance(model, str) else None,
            stream=data.get("stream") is True,
            extras={k: v for k, v in data.items() if k not in _RECOGNIZED_FIELDS},
        )

    def passthrough(self, key: str) -> Any:
        """Return a field value as the client sent it, recognized or not."""
        if key == "model":
            return self.model
        return self.extras.get(key)


@dataclass
class Diagnostics:
    """Counters for input that was dropped instead of failing the request."""

    dropped_messages: int = 0
    dropped_images: int = 0
    skipped_inline_images: int = 0

    def any(self) -> bool:
        return bool(self.dropped_messages or self.dropped_images or self.skipped_inline_images)

    def as_dict(self) -> Dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


class DiagnosticTotals:
    """Process-wide sum of per-request diagnostics."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._totals = Diagnostics()
        self._requests = 0

    def add(self, diagnostics: Diagnostics) -> None:
        with self._lock:
            self._requests += 1
            for f in fields(diagnostics):
                setattr(self._totals, f.name, getattr(self._totals, f.name) + getattr(diagnostics, f.name))

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            out = self._totals.as_dict()
            out["requests"] = self._requests
            return out
