"""
Chat relay service: OpenAI-compatible and Gemini-compatible upstreams behind one API.

Endpoints:
  POST /v1/chat/completions  -> OpenAI-compatible /chat/completions
  POST /v1/gemini/chat       -> Gemini generateContent / streamGenerateContent

With "stream": true the answer is relayed as tagged lines:
  0:"text delta"
  d:{"finishReason":"stop"}
  3:"error message"
"""

from __future__ import annotations

import json
import uuid
from typing import Any, Dict, List, Optional

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from builder import build_gemini_request, build_openai_request
from config import AppConfig, load_config
from dispatcher import dispatch_gemini, dispatch_openai
from errors import ClientInputError, RelayError, RequestTooLarge, Unauthorized
from logger import setup_logging
from models import ChatMessage, ChatPayload, DiagnosticTotals, Diagnostics
from normalizer import normalize_payload
from sse_handler import RelayResponse, StreamRelay, decode_gemini_chunk, decode_openai_chunk
from upstream import GeminiUpstream, OpenAIUpstream
from utils import dump_config, load_env_files

# Load environment
load_env_files()

# Load configuration
config = load_config()
config.validate()

# Initialize logging
log = setup_logging(config.log_path)
dump_config(config)

diagnostic_totals = DiagnosticTotals()

# Transport for outbound calls; None means the real network.
upstream_transport: Optional[httpx.AsyncBaseTransport] = None

_REJECTED_METHODS = ["GET", "HEAD", "PUT", "PATCH", "DELETE"]


app = FastAPI(title="chat-relay", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(config.allowed_origins) or ["*"],
    allow_methods=["POST", "OPTIONS"],
    allow_headers=["Content-Type", "x-proxy-key"],
)


@app.exception_handler(RelayError)
async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    if exc.status_code >= 500:
        log.error("Request failed status=%s error=%s details=%r", exc.status_code, exc.message, exc.details)
    else:
        log.info("Request rejected status=%s error=%s", exc.status_code, exc.message)
    return JSONResponse(exc.to_body(), status_code=exc.status_code)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    log.exception("Unexpected error: %s", exc)
    return JSONResponse({"error": str(exc)}, status_code=500)


def verify_client_key(request: Request, cfg: AppConfig) -> bool:
    """Accept the request when no client keys are configured or x-proxy-key matches one."""
    if not cfg.client_keys:
        return True
    provided = (request.headers.get("x-proxy-key") or "").strip()
    if provided and provided in cfg.client_keys:
        return True
    log.warning("Unauthorized proxy request rejected has_key=%s", bool(provided))
    return False


def _request_id(request: Request) -> str:
    return (
        (request.headers.get("x-request-id") or "").strip()
        or (request.headers.get("x-correlation-id") or "").strip()
        or (request.headers.get("x-trace-id") or "").strip()
        or uuid.uuid4().hex
    )


async def _read_payload(request: Request) -> ChatPayload:
    """Parse the JSON body once into a ChatPayload."""
    # Basic request size guard (prevents trivial DoS via huge JSON bodies).
    cl = request.headers.get("content-length")
    if cl:
        try:
            n = int(cl)
        except ValueError:
            raise ClientInputError(f"Invalid Content-Length header: {cl!r}")
        if n > config.max_request_bytes:
            raise RequestTooLarge(f"Request too large: {n} bytes (max {config.max_request_bytes})")

    raw = await request.body()
    if not raw:
        return ChatPayload.from_json({})
    try:
        body = json.loads(raw)
    except ValueError:
        raise ClientInputError("Invalid JSON payload")
    if not isinstance(body, dict):
        raise ClientInputError("Invalid JSON payload: expected object")
    return ChatPayload.from_json(body)


def _record_diagnostics(diagnostics: Diagnostics, req_id: str) -> None:
    diagnostic_totals.add(diagnostics)
    if diagnostics.any():
        log.info("Dropped malformed input req_id=%s %s", req_id, diagnostics.as_dict())


def _normalize(payload: ChatPayload, diagnostics: Diagnostics) -> List[ChatMessage]:
    messages = normalize_payload(payload, diagnostics)
    if messages is None:
        if payload.messages is None:
            raise ClientInputError("Request must include messages or inputText")
        raise ClientInputError("No usable messages found")
    return messages


def _log_incoming(request: Request, req_id: str, provider: str, payload: ChatPayload) -> None:
    client_ip = request.client.host if request.client else "unknown"
    log.info(
        "Incoming chat req_id=%s provider=%s from=%s request_model=%r stream=%s",
        req_id,
        provider,
        client_ip,
        payload.model,
        payload.stream,
    )


@app.get("/healthz")
async def healthz() -> Dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/debug/diagnostics")
async def debug_diagnostics() -> Dict[str, Any]:
    """Totals of input silently dropped by normalization since process start."""
    return diagnostic_totals.snapshot()


@app.post("/v1/chat/completions")
async def openai_chat(request: Request) -> Response:
    """Handle chat requests for the OpenAI-compatible upstream."""
    if not verify_client_key(request, config):
        raise Unauthorized()

    upstream = OpenAIUpstream(config, transport=upstream_transport)
    upstream.require_api_key()

    req_id = _request_id(request)
    payload = await _read_payload(request)
    _log_incoming(request, req_id, upstream.provider, payload)

    diagnostics = Diagnostics()
    try:
        messages = _normalize(payload, diagnostics)
    finally:
        _record_diagnostics(diagnostics, req_id)
    body = build_openai_request(payload, messages, config, stream=payload.stream)

    if payload.stream:
        relay = StreamRelay(upstream, body, body["model"], decode_openai_chunk, req_id=req_id)
        return RelayResponse(relay)

    return JSONResponse(await dispatch_openai(upstream, body))


@app.post("/v1/gemini/chat")
async def gemini_chat(request: Request) -> Response:
    """Handle chat requests for the Gemini-compatible upstream."""
    if not verify_client_key(request, config):
        raise Unauthorized()

    upstream = GeminiUpstream(config, transport=upstream_transport)
    upstream.require_api_key()

    req_id = _request_id(request)
    payload = await _read_payload(request)
    _log_incoming(request, req_id, upstream.provider, payload)

    diagnostics = Diagnostics()
    try:
        messages = _normalize(payload, diagnostics)
        model, body = build_gemini_request(payload, messages, config, diagnostics)
    finally:
        _record_diagnostics(diagnostics, req_id)
    if not body["contents"]:
        raise ClientInputError("No user or assistant messages found")

    if payload.stream:
        relay = StreamRelay(upstream, body, model, decode_gemini_chunk, req_id=req_id)
        return RelayResponse(relay)

    return JSONResponse(await dispatch_gemini(upstream, model, body))


@app.options("/v1/chat/completions")
@app.options("/v1/gemini/chat")
async def chat_options() -> Response:
    return Response(status_code=204)


@app.api_route("/v1/chat/completions", methods=_REJECTED_METHODS, include_in_schema=False)
@app.api_route("/v1/gemini/chat", methods=_REJECTED_METHODS, include_in_schema=False)
async def chat_method_not_allowed() -> Response:
    return Response("Method not allowed", status_code=405, headers={"Allow": "POST, OPTIONS"})


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=config.port, reload=False)
