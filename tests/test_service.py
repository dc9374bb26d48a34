"""
End-to-end tests for the chat relay service.

Tests cover:
- Non-streaming OpenAI and Gemini endpoints
- Streaming relay headers and frames
- Client key checks, method handling and error responses
- Diagnostics counters
"""

import json
from dataclasses import replace

import httpx
import pytest

import chat_relay_service
from chat_relay_service import app
from models import DiagnosticTotals


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def service_config(test_config, monkeypatch):
    """Run every request against the test configuration and fresh counters."""
    monkeypatch.setattr(chat_relay_service, "config", test_config)
    monkeypatch.setattr(chat_relay_service, "diagnostic_totals", DiagnosticTotals())
    monkeypatch.setattr(chat_relay_service, "upstream_transport", None)
    return test_config


@pytest.fixture
def upstream(monkeypatch):
    """Install a mocked upstream; returns the list of captured requests."""
    captured = []

    def install(responder):
        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return responder(request)

        monkeypatch.setattr(chat_relay_service, "upstream_transport", httpx.MockTransport(handler))
        return captured

    return install


@pytest.fixture
async def client():
    """Create an in-process ASGI client."""
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


def _sse(*objs) -> bytes:
    return b"".join(f"data: {json.dumps(obj)}\n\n".encode("utf-8") for obj in objs) + b"data: [DONE]\n\n"


def _openai_chunk(content=None, finish=None) -> dict:
    delta = {} if content is None else {"content": content}
    return {"choices": [{"index": 0, "delta": delta, "finish_reason": finish}]}


# ============================================================================
# Basic Endpoint Tests
# ============================================================================

class TestBasicEndpoints:
    @pytest.mark.asyncio
    async def test_healthz(self, client):
        response = await client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    @pytest.mark.asyncio
    async def test_method_not_allowed(self, client):
        for method in ("GET", "PUT", "DELETE"):
            response = await client.request(method, "/v1/chat/completions")
            assert response.status_code == 405
            assert response.headers["allow"] == "POST, OPTIONS"

        response = await client.get("/v1/gemini/chat")
        assert response.status_code == 405
        assert response.headers["allow"] == "POST, OPTIONS"

    @pytest.mark.asyncio
    async def test_options(self, client):
        response = await client.options("/v1/gemini/chat")
        assert response.status_code == 204
        assert response.content == b""


# ============================================================================
# Request Validation Tests
# ============================================================================

class TestValidation:
    @pytest.mark.asyncio
    async def test_invalid_json(self, client, upstream):
        captured = upstream(lambda request: httpx.Response(500))
        response = await client.post(
            "/v1/chat/completions",
            content="invalid json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid JSON payload"}
        assert captured == []

    @pytest.mark.asyncio
    async def test_non_object_json(self, client):
        response = await client.post("/v1/chat/completions", json=["a"])
        assert response.status_code == 400
        assert "expected object" in response.json()["error"]

    @pytest.mark.asyncio
    async def test_empty_messages_rejected(self, client, upstream):
        captured = upstream(lambda request: httpx.Response(500))
        response = await client.post("/v1/chat/completions", json={"messages": []})
        assert response.status_code == 400
        assert response.json() == {"error": "No usable messages found"}
        assert captured == []

    @pytest.mark.asyncio
    async def test_missing_input_rejected(self, client):
        response = await client.post("/v1/gemini/chat", json={"model": "gemini-2.5-pro"})
        assert response.status_code == 400
        assert response.json() == {"error": "Request must include messages or inputText"}

    @pytest.mark.asyncio
    async def test_request_too_large(self, client, service_config, monkeypatch):
        monkeypatch.setattr(chat_relay_service, "config", replace(service_config, max_request_bytes=100))
        body = json.dumps({"messages": [{"role": "user", "content": "x" * 500}]})
        response = await client.post(
            "/v1/chat/completions",
            content=body,
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 413
        assert "Request too large" in response.json()["error"]

    @pytest.mark.asyncio
    async def test_gemini_system_only_rejected(self, client):
        response = await client.post(
            "/v1/gemini/chat",
            json={"messages": [{"role": "system", "content": "rules only"}]},
        )
        assert response.status_code == 400
        assert response.json() == {"error": "No user or assistant messages found"}


# ============================================================================
# Access Control and Configuration Tests
# ============================================================================

class TestAccess:
    @pytest.mark.asyncio
    async def test_client_key_required_when_configured(self, client, service_config, monkeypatch, upstream):
        monkeypatch.setattr(
            chat_relay_service, "config", replace(service_config, client_keys=frozenset({"secret"}))
        )
        captured = upstream(lambda request: httpx.Response(200, json={"choices": []}))

        response = await client.post("/v1/chat/completions", json={"inputText": "Hello"})
        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}
        assert captured == []

        response = await client.post(
            "/v1/chat/completions",
            json={"inputText": "Hello"},
            headers={"x-proxy-key": "secret"},
        )
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_missing_provider_key(self, client, service_config, monkeypatch):
        monkeypatch.setattr(chat_relay_service, "config", replace(service_config, openai_api_key=""))
        response = await client.post("/v1/chat/completions", json={"inputText": "Hello"})
        assert response.status_code == 500
        assert response.json() == {"error": "Server misconfiguration: OpenAI key missing"}

    @pytest.mark.asyncio
    async def test_missing_key_does_not_affect_other_provider(self, client, service_config, monkeypatch, upstream):
        monkeypatch.setattr(chat_relay_service, "config", replace(service_config, openai_api_key=""))
        upstream(lambda request: httpx.Response(200, json={"candidates": []}))
        response = await client.post("/v1/gemini/chat", json={"inputText": "Hello"})
        assert response.status_code == 200


# ============================================================================
# OpenAI Endpoint Tests
# ============================================================================

class TestOpenAIChat:
    @pytest.mark.asyncio
    async def test_input_text_non_streaming(self, client, upstream):
        raw = {"id": "chatcmpl-1", "choices": [{"message": {"role": "assistant", "content": " Hi there "}}]}
        captured = upstream(lambda request: httpx.Response(200, json=raw))

        response = await client.post("/v1/chat/completions", json={"inputText": "Hello"})

        assert response.status_code == 200
        assert response.json() == {"message": "Hi there", "rawProviderResponse": raw}

        [request] = captured
        body = json.loads(request.content)
        assert body["messages"] == [{"role": "user", "content": "Hello"}]
        assert body["model"] == "gpt-5-mini"
        assert body["temperature"] == 1
        assert "stream" not in body

    @pytest.mark.asyncio
    async def test_upstream_error_status_propagates(self, client, upstream):
        upstream(lambda request: httpx.Response(429, json={"error": {"message": "Rate limit reached"}}))
        response = await client.post("/v1/chat/completions", json={"inputText": "Hello"})
        assert response.status_code == 429
        assert response.json() == {
            "error": "Rate limit reached",
            "details": {"error": {"message": "Rate limit reached"}},
        }

    @pytest.mark.asyncio
    async def test_upstream_transport_failure(self, client, monkeypatch):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        monkeypatch.setattr(chat_relay_service, "upstream_transport", httpx.MockTransport(handler))
        response = await client.post("/v1/chat/completions", json={"inputText": "Hello"})
        assert response.status_code == 500
        assert response.json() == {"error": "connection refused"}

    @pytest.mark.asyncio
    async def test_streaming_relay(self, client, upstream):
        content = _sse(_openai_chunk("Hel"), _openai_chunk("lo"), _openai_chunk(None, "stop"))
        captured = upstream(lambda request: httpx.Response(200, content=content))

        response = await client.post(
            "/v1/chat/completions",
            json={"messages": [{"role": "user", "content": "Hi"}], "stream": True, "model": "unknown-model"},
        )

        assert response.status_code == 200
        assert response.headers["content-type"] == "text/plain; charset=utf-8"
        assert response.headers["x-vercel-ai-data-stream"] == "v1"
        assert response.headers["cache-control"] == "no-cache"
        assert response.text == '0:"Hel"\n0:"lo"\nd:{"finishReason":"stop"}\n'

        body = json.loads(captured[0].content)
        assert body["model"] == "gpt-5-mini"
        assert body["stream"] is True

    @pytest.mark.asyncio
    async def test_streaming_headers_sent_before_upstream_body(self, upstream):
        events = []

        class OrderedStream(httpx.AsyncByteStream):
            async def __aiter__(self):
                events.append("upstream-body")
                yield _sse(_openai_chunk("Hi", "stop"))

        upstream(lambda request: httpx.Response(200, stream=OrderedStream()))

        async def recording_app(scope, receive, send):
            async def recording_send(message):
                events.append(message["type"])
                await send(message)

            await app(scope, receive, recording_send)

        transport = httpx.ASGITransport(app=recording_app, raise_app_exceptions=False)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
            response = await c.post(
                "/v1/chat/completions",
                json={"messages": [{"role": "user", "content": "Hi"}], "stream": True, "model": "unknown-model"},
            )

        assert response.status_code == 200
        assert events.index("http.response.start") < events.index("upstream-body")

    @pytest.mark.asyncio
    async def test_streaming_upstream_error_is_json(self, client, upstream):
        upstream(lambda request: httpx.Response(400, json={"error": {"message": "Unsupported parameter"}}))
        response = await client.post(
            "/v1/chat/completions",
            json={"inputText": "Hello", "stream": True},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "Unsupported parameter"

    @pytest.mark.asyncio
    async def test_streaming_without_finish(self, client, upstream):
        upstream(lambda request: httpx.Response(200, content=b'data: {"choices":[{"delta":{"content":"x"}}]}\n\n'))
        response = await client.post("/v1/chat/completions", json={"inputText": "Hello", "stream": True})
        assert response.text == '0:"x"\nd:{"finishReason":"unknown"}\n'


# ============================================================================
# Gemini Endpoint Tests
# ============================================================================

class TestGeminiChat:
    @pytest.mark.asyncio
    async def test_non_streaming(self, client, upstream):
        raw = {"candidates": [{"content": {"parts": [{"text": "Bonjour"}]}, "finishReason": "STOP"}]}
        captured = upstream(lambda request: httpx.Response(200, json=raw))

        response = await client.post(
            "/v1/gemini/chat",
            json={"inputText": "Hello", "systemPrompt": "Answer in French.", "temperature": 0.2},
        )

        assert response.status_code == 200
        assert response.json() == {"message": "Bonjour", "rawProviderResponse": raw}

        [request] = captured
        assert request.url.path == "/v1beta/models/gemini-3-flash-preview:generateContent"
        body = json.loads(request.content)
        assert body["systemInstruction"] == {"role": "system", "parts": [{"text": "Answer in French."}]}
        assert body["contents"] == [{"role": "user", "parts": [{"text": "Hello"}]}]
        assert body["generationConfig"] == {"temperature": 1}

    @pytest.mark.asyncio
    async def test_no_text_omits_message(self, client, upstream):
        upstream(lambda request: httpx.Response(200, json={"candidates": []}))
        response = await client.post("/v1/gemini/chat", json={"inputText": "Hello"})
        assert response.status_code == 200
        assert "message" not in response.json()

    @pytest.mark.asyncio
    async def test_streaming(self, client, upstream):
        chunks = [
            {"candidates": [{"content": {"parts": [{"text": "Bon"}]}}]},
            {"candidates": [{"content": {"parts": [{"text": "jour"}]}, "finishReason": "MAX_TOKENS"}]},
        ]
        content = b"".join(f"data: {json.dumps(c)}\r\n\r\n".encode("utf-8") for c in chunks)
        captured = upstream(lambda request: httpx.Response(200, content=content))

        response = await client.post(
            "/v1/gemini/chat",
            json={"inputText": "Hello", "stream": True, "model": "gemini-2.5-pro"},
        )

        assert response.status_code == 200
        assert response.text == '0:"Bon"\n0:"jour"\nd:{"finishReason":"length"}\n'
        assert captured[0].url.path == "/v1beta/models/gemini-2.5-pro:streamGenerateContent"
        assert captured[0].url.params["alt"] == "sse"

    @pytest.mark.asyncio
    async def test_skipped_images_are_counted(self, client, upstream):
        captured = upstream(lambda request: httpx.Response(200, json={"candidates": []}))
        payload = {
            "messages": [{
                "role": "user",
                "content": "What is this?",
                "images": [
                    {"data": "data:image/png;base64,iVBORw0KGgo="},
                    {"data": "https://example.com/cat.png"},
                    {"mimeType": "image/png"},
                ],
            }]
        }
        response = await client.post("/v1/gemini/chat", json=payload)
        assert response.status_code == 200

        parts = json.loads(captured[0].content)["contents"][0]["parts"]
        assert parts == [
            {"text": "What is this?"},
            {"inline_data": {"mime_type": "image/png", "data": "iVBORw0KGgo="}},
        ]

        diagnostics = (await client.get("/debug/diagnostics")).json()
        assert diagnostics == {
            "dropped_messages": 0,
            "dropped_images": 1,
            "skipped_inline_images": 1,
            "requests": 1,
        }
