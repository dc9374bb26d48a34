"""Stream relay: upstream SSE decoding, client frame encoding and relay lifecycle."""

from __future__ import annotations

import contextlib
import json
import logging
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional

import anyio
import httpx
from starlette.responses import JSONResponse, Response
from starlette.types import Receive, Scope, Send

from errors import RelayError, UpstreamStreamError
from models import Finish, StreamEvent, TextDelta
from upstream import UpstreamClient, extract_provider_message

log = logging.getLogger("chat_relay")

SSEEventLines = List[str]
ChunkDecoder = Callable[[Any], List[StreamEvent]]

TEXT_TAG = "0"
FINISH_TAG = "d"
ERROR_TAG = "3"

RELAY_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Transfer-Encoding": "chunked",
    "X-Vercel-AI-Data-Stream": "v1",
    "X-Accel-Buffering": "no",
}
RELAY_MEDIA_TYPE = "text/plain; charset=utf-8"

BENIGN_DISCONNECT_SIGNATURES = (
    "broken pipe",
    "epipe",
    "connection reset",
    "econnreset",
    "write after end",
    "write after close",
    "client disconnected",
)

_OPENAI_FINISH_REASONS = {
    "stop": "stop",
    "length": "length",
    "content_filter": "content-filter",
    "tool_calls": "tool-calls",
    "function_call": "tool-calls",
}

_GEMINI_FINISH_REASONS = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content-filter",
    "RECITATION": "content-filter",
    "BLOCKLIST": "content-filter",
    "PROHIBITED_CONTENT": "content-filter",
    "SPII": "content-filter",
    "IMAGE_SAFETY": "content-filter",
}


# ---------------------------------------------------------------------------
# SSE parsing
# ---------------------------------------------------------------------------

def sse_event_data_text(lines: SSEEventLines) -> str:
    """
    Join all `data:` lines in an SSE event into a single payload.

    Multiple data lines are concatenated with '\n'.
    """
    parts: List[str] = []
    for ln in lines:
        if ln.startswith("data:"):
            parts.append(ln[len("data:"):].lstrip())
    return "\n".join(parts)


def is_sse_activity_line(line: str) -> bool:
    """
    SSE field/comment/continuation line.
    Fields: data, event, id, retry; comments ":"; and (rare) continuation lines that start with space.
    """
    return (
        line.startswith("data:")
        or line.startswith("event:")
        or line.startswith("id:")
        or line.startswith("retry:")
        or line.startswith(":")
        or line.startswith(" ")
    )


def sse_event_has_non_activity_lines(lines: SSEEventLines) -> bool:
    """Return True if any event line violates the SSE field/comment/continuation format."""
    return any(ln and not is_sse_activity_line(ln) for ln in lines)


async def read_next_sse_event(aiter: AsyncIterator[str]) -> SSEEventLines | None:
    """
    Read one SSE event (blank-line delimited) from an async line iterator.

    Returns:
    - list[str]: event lines excluding the terminating blank line (may be empty for keepalive)
    - None: EOF (no more data)
    """
    lines: SSEEventLines = []
    while True:
        try:
            raw = await aiter.__anext__()  # type: ignore[attr-defined]
        except StopAsyncIteration:
            if lines:
                return lines
            return None

        line = raw.rstrip("\r\n")
        if line == "":
            return lines
        lines.append(line)


# ---------------------------------------------------------------------------
# Provider chunk decoders
# ---------------------------------------------------------------------------

def _raise_if_error_chunk(obj: Any) -> None:
    if isinstance(obj, dict) and obj.get("error") is not None:
        raise UpstreamStreamError(extract_provider_message(obj) or "Upstream stream error")


def decode_openai_chunk(obj: Any) -> List[StreamEvent]:
    """Decode one chat.completion.chunk into text deltas and finish events."""
    _raise_if_error_chunk(obj)
    out: List[StreamEvent] = []
    if not isinstance(obj, dict):
        return out

    for ch in (obj.get("choices") or []):
        if not isinstance(ch, dict):
            continue
        delta = ch.get("delta") or {}
        if isinstance(delta, dict):
            content = delta.get("content")
            if isinstance(content, str) and content:
                out.append(TextDelta(content))
        finish = ch.get("finish_reason")
        if isinstance(finish, str) and finish:
            out.append(Finish(_OPENAI_FINISH_REASONS.get(finish, "other")))
    return out


def decode_gemini_chunk(obj: Any) -> List[StreamEvent]:
    """Decode one GenerateContentResponse chunk into text deltas and finish events."""
    _raise_if_error_chunk(obj)
    out: List[StreamEvent] = []
    if not isinstance(obj, dict):
        return out

    candidates = obj.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        feedback = obj.get("promptFeedback")
        if isinstance(feedback, dict) and feedback.get("blockReason"):
            out.append(Finish("content-filter"))
        return out

    for candidate in candidates:
        if not isinstance(candidate, dict):
            continue
        content = candidate.get("content")
        parts = content.get("parts") if isinstance(content, dict) else None
        for part in (parts if isinstance(parts, list) else []):
            # Thought summaries are not part of the answer text.
            if not isinstance(part, dict) or part.get("thought") is True:
                continue
            text = part.get("text")
            if isinstance(text, str) and text:
                out.append(TextDelta(text))
        finish = candidate.get("finishReason")
        if isinstance(finish, str) and finish and finish != "FINISH_REASON_UNSPECIFIED":
            out.append(Finish(_GEMINI_FINISH_REASONS.get(finish, "other")))
    return out


async def iter_stream_events(
    lines: AsyncIterator[str],
    decode_chunk: ChunkDecoder,
) -> AsyncIterator[StreamEvent]:
    """Read upstream SSE events and yield decoded StreamEvents in arrival order."""
    while True:
        event_lines = await read_next_sse_event(lines)
        if event_lines is None:
            return

        if not event_lines:
            continue  # keepalive / blank event separator

        if sse_event_has_non_activity_lines(event_lines):
            raise UpstreamStreamError(f"Non-SSE line from upstream stream: {event_lines[0][:200]!r}")

        data = sse_event_data_text(event_lines).strip()
        if not data:
            continue
        if data == "[DONE]":
            return

        try:
            obj = json.loads(data)
        except json.JSONDecodeError:
            log.debug("Skipping non-JSON SSE data: %r", data[:200])
            continue

        for event in decode_chunk(obj):
            yield event


# ---------------------------------------------------------------------------
# Client frame encoding
# ---------------------------------------------------------------------------

def encode_frame(event: StreamEvent) -> bytes:
    """Encode a StreamEvent as one tagged, newline-terminated line."""
    if isinstance(event, TextDelta):
        return f"{TEXT_TAG}:{json.dumps(event.text, ensure_ascii=False)}\n".encode("utf-8")
    if isinstance(event, Finish):
        payload = json.dumps({"finishReason": event.reason}, separators=(",", ":"))
        return f"{FINISH_TAG}:{payload}\n".encode("utf-8")
    raise TypeError(f"Unknown stream event: {event!r}")


def encode_error_frame(message: str) -> bytes:
    return f"{ERROR_TAG}:{json.dumps(message, ensure_ascii=False)}\n".encode("utf-8")


def is_benign_disconnect(exc: BaseException) -> bool:
    """Check if an exception only says the client went away."""
    if isinstance(exc, (BrokenPipeError, ConnectionResetError)):
        return True
    text = str(exc).lower()
    return any(sig in text for sig in BENIGN_DISCONNECT_SIGNATURES)


# ---------------------------------------------------------------------------
# Output sinks
# ---------------------------------------------------------------------------

class OutputSink:
    """Downstream connection seen by the relay."""

    closed: bool = False

    async def write(self, data: bytes) -> None:
        raise NotImplementedError

    async def flush(self) -> None:
        """Push buffered output to the client. No-op for transports without buffering control."""
        return None

    async def close(self) -> None:
        raise NotImplementedError


class ASGISink(OutputSink):
    """Writes response body messages to an ASGI ``send`` callable."""

    def __init__(self, send: Send) -> None:
        self._send = send
        self.closed = False
        self.disconnected = False

    async def write(self, data: bytes) -> None:
        if self.closed:
            raise RuntimeError("write after close")
        if self.disconnected:
            raise ConnectionResetError("client disconnected")
        await self._send({"type": "http.response.body", "body": data, "more_body": True})

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.disconnected:
            return
        await self._send({"type": "http.response.body", "body": b"", "more_body": False})


# ---------------------------------------------------------------------------
# Relay
# ---------------------------------------------------------------------------

class RelayState(str, Enum):
    IDLE = "idle"
    CONNECTING = "upstream-connecting"
    RELAYING = "relaying"
    FINISHED = "finished"
    ABORTED = "aborted"


_TERMINAL_STATES = (RelayState.FINISHED, RelayState.ABORTED)


class StreamRelay:
    """
    One upstream stream relayed to one client as tagged lines.

    Lifecycle: ``connect()`` opens the upstream stream (errors surface before any byte
    is written), then ``run(sink)`` decodes, re-encodes and writes every event in order.
    The upstream response and HTTP client are always released and the sink is closed
    exactly once.
    """

    def __init__(
        self,
        upstream: UpstreamClient,
        body: Dict[str, Any],
        model_id: str,
        decode_chunk: ChunkDecoder,
        *,
        req_id: str = "",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._upstream = upstream
        self._body = body
        self._model_id = model_id
        self._decode_chunk = decode_chunk
        self._req_id = req_id
        self._client = client
        self._resp: httpx.Response | None = None
        self._client_gone = False
        self.state = RelayState.IDLE
        self.frames_written = 0

    @property
    def client_gone(self) -> bool:
        return self._client_gone

    async def connect(self) -> None:
        """Open the upstream stream; raises UpstreamError (state aborted) on failure."""
        self.state = RelayState.CONNECTING
        if self._client is None:
            self._client = self._upstream.new_http_client(stream=True)
        try:
            resp = await self._upstream.chat_completion(
                self._client, self._body, self._model_id, stream=True
            )
            await self._upstream.raise_for_status(resp)
        except BaseException:
            self.state = RelayState.ABORTED
            await self._teardown()
            raise
        self._resp = resp

    async def run(self, sink: OutputSink) -> RelayState:
        """Relay upstream events to the sink until the stream ends or either side fails."""
        if self._resp is None:
            raise RuntimeError("connect() must succeed before run()")

        self.state = RelayState.RELAYING
        finish_seen = False
        try:
            async for event in iter_stream_events(self._resp.aiter_lines(), self._decode_chunk):
                if isinstance(event, Finish):
                    finish_seen = True
                if not await self._emit(sink, encode_frame(event)):
                    self.state = RelayState.ABORTED
                    return self.state

            if not finish_seen and not await self._emit(sink, encode_frame(Finish("unknown"))):
                self.state = RelayState.ABORTED
                return self.state

            self.state = RelayState.FINISHED
            log.info(
                "Relay finished req_id=%s model=%s frames=%d",
                self._req_id,
                self._model_id,
                self.frames_written,
            )
        except (httpx.HTTPError, UpstreamStreamError) as e:
            self.state = RelayState.ABORTED
            message = str(e) or type(e).__name__
            log.warning(
                "Upstream stream failed req_id=%s model=%s err=%s: %s",
                self._req_id,
                self._model_id,
                type(e).__name__,
                message,
            )
            await self._emit(sink, encode_error_frame(message))
        except Exception as e:
            self.state = RelayState.ABORTED
            if not is_benign_disconnect(e):
                raise
            self._client_gone = True
            log.info("Relay ended by client disconnect req_id=%s err=%r", self._req_id, e)
        finally:
            if self.state not in _TERMINAL_STATES:
                # cancelled from outside (client disconnect seen by the server)
                self.state = RelayState.ABORTED
            with anyio.CancelScope(shield=True):
                await self._teardown()
                await self._close_sink(sink)
        return self.state

    async def _emit(self, sink: OutputSink, frame: bytes) -> bool:
        """Write and flush one frame; False means the client is gone and nothing more may be written."""
        if self._client_gone or sink.closed:
            return False
        try:
            await sink.write(frame)
            await sink.flush()
        except Exception as e:
            self._client_gone = True
            log.info(
                "Client write failed, tearing down upstream req_id=%s model=%s err=%r",
                self._req_id,
                self._model_id,
                e,
            )
            return False
        self.frames_written += 1
        return True

    async def _close_sink(self, sink: OutputSink) -> None:
        if sink.closed:
            return
        try:
            await sink.close()
        except Exception as e:
            if not (self._client_gone or is_benign_disconnect(e)):
                raise
            log.debug("Ignoring close error after disconnect req_id=%s err=%r", self._req_id, e)

    async def _teardown(self) -> None:
        if self._resp is not None:
            with contextlib.suppress(Exception):
                await self._resp.aclose()
        if self._client is not None:
            with contextlib.suppress(Exception):
                await self._client.aclose()


class RelayResponse(Response):
    """
    Starlette response driving a StreamRelay.

    The upstream is connected before the status line is sent so provider errors can
    still be answered as JSON with the provider status. The protocol headers go out
    before the first upstream body byte is read.
    """

    media_type = RELAY_MEDIA_TYPE

    def __init__(self, relay: StreamRelay, headers: Optional[Mapping[str, str]] = None) -> None:
        self.relay = relay
        self.status_code = 200
        self.background = None
        self.init_headers({**RELAY_HEADERS, **(headers or {})})

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await self.relay.connect()
        except RelayError as e:
            error_response = JSONResponse(e.to_body(), status_code=e.status_code)
            await error_response(scope, receive, send)
            return

        await send({"type": "http.response.start", "status": self.status_code, "headers": self.raw_headers})
        sink = ASGISink(send)

        async with anyio.create_task_group() as task_group:

            async def run_relay() -> None:
                await self.relay.run(sink)
                task_group.cancel_scope.cancel()

            task_group.start_soon(run_relay)
            await self._listen_for_disconnect(receive, sink)
            task_group.cancel_scope.cancel()

    @staticmethod
    async def _listen_for_disconnect(receive: Receive, sink: ASGISink) -> None:
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                sink.disconnected = True
                return
