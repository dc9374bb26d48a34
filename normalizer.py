"""Normalization of loosely-typed client payloads into ChatMessage lists."""

from __future__ import annotations

import logging
import math
from typing import Any, List, Optional

from models import ChatImage, ChatMessage, ChatPayload, Diagnostics, SYSTEM_ROLE, USER_ROLE

log = logging.getLogger("chat_relay")

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."


def to_plain_text(value: Any) -> Optional[str]:
    """
    Reduce message content to text.

    Accepts a plain string, a list of ``{"text": ...}`` parts (joined with a space)
    or a single ``{"text": ...}`` object. Returns None for anything else.
    """
    if isinstance(value, str):
        return value

    if isinstance(value, list):
        texts = [
            item["text"]
            for item in value
            if isinstance(item, dict) and isinstance(item.get("text"), str) and item["text"]
        ]
        if texts:
            return " ".join(texts)
        return None

    if isinstance(value, dict) and isinstance(value.get("text"), str):
        return value["text"]

    return None


def to_number(value: Any) -> Optional[float]:
    """Parse a finite number from a number or numeric string; bools are not numbers."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value)
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def build_messages(payload: ChatPayload) -> Optional[List[Any]]:
    """
    Select the raw message entries for a request.

    An explicit ``messages`` list wins. Otherwise ``inputText`` alone becomes a single
    user message; with ``promptContent`` or ``systemPrompt`` a system message is added
    and the user message is ``promptContent`` followed by ``inputText``.
    """
    if payload.messages is not None:
        return payload.messages

    if not payload.input_text and not payload.prompt_content:
        return None

    if not payload.prompt_content and payload.system_prompt is None:
        return [{"role": USER_ROLE, "content": payload.input_text}]

    user_content = " ".join(p for p in (payload.prompt_content, payload.input_text) if p).strip()
    system_message = payload.system_prompt if payload.system_prompt is not None else DEFAULT_SYSTEM_PROMPT
    return [
        {"role": SYSTEM_ROLE, "content": system_message},
        {"role": USER_ROLE, "content": user_content},
    ]


def _normalize_images(raw: Any, diagnostics: Diagnostics) -> tuple[ChatImage, ...]:
    if not isinstance(raw, list):
        return ()
    out: List[ChatImage] = []
    for item in raw:
        if isinstance(item, dict) and isinstance(item.get("data"), str):
            mime = item.get("mimeType")
            out.append(ChatImage(data=item["data"], mime_type=mime if isinstance(mime, str) else None))
        else:
            diagnostics.dropped_images += 1
    return tuple(out)


def normalize_chat_messages(raw_messages: List[Any], diagnostics: Diagnostics) -> List[ChatMessage]:
    """Convert raw entries to ChatMessage, dropping entries without a role or usable text."""
    out: List[ChatMessage] = []
    for message in raw_messages:
        if not isinstance(message, dict) or not isinstance(message.get("role"), str):
            diagnostics.dropped_messages += 1
            continue

        content = to_plain_text(message.get("content"))
        if content is None or not content.strip():
            diagnostics.dropped_messages += 1
            continue

        out.append(
            ChatMessage(
                role=message["role"],
                content=content.strip(),
                images=_normalize_images(message.get("images"), diagnostics),
            )
        )
    return out


def normalize_payload(payload: ChatPayload, diagnostics: Diagnostics) -> Optional[List[ChatMessage]]:
    """Return the canonical message list, or None when the payload has no usable messages."""
    raw = build_messages(payload)
    if raw is None:
        return None

    messages = normalize_chat_messages(raw, diagnostics)
    if diagnostics.dropped_messages:
        log.debug(
            "Normalizer dropped %d of %d message(s)",
            diagnostics.dropped_messages,
            len(raw),
        )
    return messages or None
