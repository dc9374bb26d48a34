"""Non-streaming upstream calls mapped to a flat {message, rawProviderResponse} result."""

from __future__ import annotations

import contextlib
import logging
from typing import Any, Callable, Dict, Optional

import httpx

from upstream import UpstreamClient

log = logging.getLogger("chat_relay")


def extract_openai_message(data: Any) -> Optional[str]:
    """Return choices[0].message.content trimmed, or None."""
    if not isinstance(data, dict):
        return None
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    message = choices[0].get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    return content.strip() if isinstance(content, str) else None


def extract_gemini_text(data: Any) -> Optional[str]:
    """Join every candidates[*].content.parts[*].text with newlines; None when empty."""
    if not isinstance(data, dict):
        return None
    candidates = data.get("candidates")
    if not isinstance(candidates, list):
        return None

    texts = []
    for candidate in candidates:
        if not isinstance(candidate, dict):
            continue
        content = candidate.get("content")
        if not isinstance(content, dict) or not isinstance(content.get("parts"), list):
            continue
        for part in content["parts"]:
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                texts.append(part["text"])

    combined = "\n".join(texts).strip()
    return combined or None


async def _dispatch(
    upstream: UpstreamClient,
    body: Dict[str, Any],
    model_id: str,
    extract: Callable[[Any], Optional[str]],
    client: httpx.AsyncClient | None = None,
) -> Dict[str, Any]:
    owns_client = client is None
    if client is None:
        client = upstream.new_http_client(stream=False)
    try:
        resp = await upstream.chat_completion(client, body, model_id)
        await upstream.raise_for_status(resp)
        try:
            data = resp.json()
        except ValueError:
            log.warning("Upstream %s returned a non-JSON body model=%s", upstream.provider, model_id)
            data = resp.text
    finally:
        if owns_client:
            with contextlib.suppress(Exception):
                await client.aclose()

    return {"message": extract(data), "rawProviderResponse": data}


async def dispatch_openai(
    upstream: UpstreamClient,
    body: Dict[str, Any],
    client: httpx.AsyncClient | None = None,
) -> Dict[str, Any]:
    """Single /chat/completions call; message is null when the provider sent no content."""
    return await _dispatch(upstream, body, body["model"], extract_openai_message, client)


async def dispatch_gemini(
    upstream: UpstreamClient,
    model_id: str,
    body: Dict[str, Any],
    client: httpx.AsyncClient | None = None,
) -> Dict[str, Any]:
    """Single generateContent call; ``message`` is omitted when no text came back."""
    result = await _dispatch(upstream, body, model_id, extract_gemini_text, client)
    if result["message"] is None:
        del result["message"]
        log.info("Gemini response carried no text model=%s", model_id)
    return result
