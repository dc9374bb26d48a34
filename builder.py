"""Per-provider message projection and upstream request construction."""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from config import AppConfig
from models import ASSISTANT_ROLE, ChatMessage, ChatPayload, Diagnostics
from normalizer import to_number

log = logging.getLogger("chat_relay")

OPENAI_ALLOWED_KEYS = (
    "model",
    "temperature",
    "top_p",
    "n",
    "max_tokens",
    "stop",
    "presence_penalty",
    "frequency_penalty",
    "logit_bias",
    "user",
    "response_format",
    "tools",
    "tool_choice",
    "functions",
    "function_call",
    "seed",
)

OPENAI_DEFAULT_TEMPERATURE = 0.5

_DATA_URI_RE = re.compile(r"^data:([^;,]+);base64,(.+)$", re.S)


def model_matches_marker(model: str, markers: Iterable[str]) -> bool:
    """Check if model name contains any forced-unity-temperature marker (case-insensitive)."""
    low = (model or "").lower()
    return any(m.lower() in low for m in markers if m)


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------

def to_openai_messages(messages: List[ChatMessage]) -> List[Dict[str, Any]]:
    """
    Project messages to OpenAI chat shape.

    Messages with images get multi-part content: the text part first, then one
    image_url part per image in original order.
    """
    out: List[Dict[str, Any]] = []
    for m in messages:
        if not m.images:
            out.append({"role": m.role, "content": m.content})
            continue
        parts: List[Dict[str, Any]] = [{"type": "text", "text": m.content}]
        for image in m.images:
            parts.append({"type": "image_url", "image_url": {"url": image.data}})
        out.append({"role": m.role, "content": parts})
    return out


def build_openai_request(
    payload: ChatPayload,
    messages: List[ChatMessage],
    config: AppConfig,
    *,
    stream: bool = False,
) -> Dict[str, Any]:
    """Build the /chat/completions body from allow-listed client fields and server policy."""
    body: Dict[str, Any] = {"messages": to_openai_messages(messages)}

    for key in OPENAI_ALLOWED_KEYS:
        value = payload.passthrough(key)
        if value is not None:
            body[key] = value

    requested_model = payload.model
    if requested_model and requested_model in config.openai_allowed_models:
        body["model"] = requested_model
    else:
        if requested_model:
            log.info(
                "Model %r not allowed, using default %r",
                requested_model,
                config.openai_default_model,
            )
        body["model"] = config.openai_default_model

    if body.get("temperature") is None:
        body["temperature"] = OPENAI_DEFAULT_TEMPERATURE

    if model_matches_marker(body["model"], config.openai_unity_temperature_markers):
        requested_temp = to_number(body["temperature"])
        if requested_temp != 1:
            log.info(
                "Overriding temperature from %r to 1 for model=%s",
                body["temperature"],
                body["model"],
            )
            body["temperature"] = 1

    if stream:
        body["stream"] = True

    return body


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------

def to_gemini_contents(
    messages: List[ChatMessage],
    diagnostics: Diagnostics,
) -> Tuple[Optional[Dict[str, Any]], List[Dict[str, Any]]]:
    """
    Project messages to Gemini ``contents`` plus an optional ``systemInstruction``.

    System messages are pulled out and newline-joined in input order. Images are
    inlined only when given as ``data:<mime>;base64,<payload>`` URIs.
    """
    system_texts: List[str] = []
    contents: List[Dict[str, Any]] = []

    for m in messages:
        if m.is_system:
            system_texts.append(m.content)
            continue

        parts: List[Dict[str, Any]] = [{"text": m.content}]
        for image in m.images:
            match = _DATA_URI_RE.match(image.data)
            if not match:
                diagnostics.skipped_inline_images += 1
                continue
            parts.append({"inline_data": {"mime_type": match.group(1), "data": match.group(2)}})

        contents.append({
            "role": "model" if m.role == ASSISTANT_ROLE else "user",
            "parts": parts,
        })

    system_instruction = None
    if system_texts:
        system_instruction = {"role": "system", "parts": [{"text": "\n".join(system_texts)}]}
    return system_instruction, contents


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def build_gemini_generation_config(extras: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Map recognized numeric generation fields to Gemini's generationConfig; None when empty."""
    generation_config: Dict[str, Any] = {}

    if _is_number(extras.get("temperature")):
        generation_config["temperature"] = extras["temperature"]
    if _is_number(extras.get("top_p")):
        generation_config["topP"] = extras["top_p"]
    if _is_number(extras.get("top_k")):
        generation_config["topK"] = extras["top_k"]

    if _is_number(extras.get("max_output_tokens")):
        generation_config["maxOutputTokens"] = extras["max_output_tokens"]
    elif _is_number(extras.get("max_tokens")):
        generation_config["maxOutputTokens"] = extras["max_tokens"]

    return generation_config or None


def extract_requested_temperature(
    extras: Dict[str, Any],
    generation_config: Optional[Dict[str, Any]] = None,
) -> Optional[float]:
    """
    Resolve the caller's temperature: top-level field first, then the built
    generationConfig, then a raw ``generationConfig``/``generation_config`` object.
    """
    direct = to_number(extras.get("temperature"))
    if direct is not None:
        return direct

    raw = extras.get("generationConfig")
    if not isinstance(raw, dict):
        raw = extras.get("generation_config")
    if not isinstance(raw, dict):
        raw = None

    for source in (generation_config, raw):
        if not source:
            continue
        candidate = to_number(source.get("temperature"))
        if candidate is not None:
            return candidate
    return None


def build_gemini_request(
    payload: ChatPayload,
    messages: List[ChatMessage],
    config: AppConfig,
    diagnostics: Diagnostics,
) -> Tuple[str, Dict[str, Any]]:
    """Build the generateContent body. Returns (model, body); the model goes in the URL."""
    model = payload.model if payload.model and payload.model.strip() else config.gemini_default_model

    system_instruction, contents = to_gemini_contents(messages, diagnostics)
    extras = payload.extras

    generation_config = build_gemini_generation_config(extras)
    requested_temperature = extract_requested_temperature(extras, generation_config)
    forced = model_matches_marker(model, config.gemini_unity_temperature_markers)
    log.info(
        "Gemini request: model=%s requested_temperature=%s unity_override=%s",
        model,
        requested_temperature,
        forced,
    )

    if forced and requested_temperature is not None and requested_temperature != 1:
        log.info("Overriding temperature from %s to 1 for model=%s", requested_temperature, model)
        generation_config = dict(generation_config or {})
        generation_config["temperature"] = 1

    body: Dict[str, Any] = {"contents": contents}
    if system_instruction is not None:
        body["systemInstruction"] = system_instruction
    if generation_config:
        body["generationConfig"] = generation_config

    if isinstance(extras.get("safetySettings"), list):
        body["safetySettings"] = extras["safetySettings"]
    if isinstance(extras.get("tools"), list):
        body["tools"] = extras["tools"]

    tool_config = extras.get("toolConfig")
    if tool_config is None:
        tool_config = extras.get("tool_config")
    if isinstance(tool_config, dict):
        body["toolConfig"] = tool_config

    if isinstance(extras.get("responseSchema"), dict):
        body["responseSchema"] = extras["responseSchema"]
    if isinstance(extras.get("responseMimeType"), str):
        body["responseMimeType"] = extras["responseMimeType"]

    return model, body
