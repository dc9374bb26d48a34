"""Upstream provider API communication (OpenAI-compatible and Gemini-compatible)."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from config import AppConfig
from errors import ServerMisconfigured, UpstreamError
from logger import logged_once

log = logging.getLogger("chat_relay")


def extract_provider_message(details: Any) -> Optional[str]:
    """Return ``error.message`` from a provider error body, if present."""
    # streamGenerateContent wraps errors in a one-element list
    if isinstance(details, list) and details:
        details = details[0]
    if not isinstance(details, dict):
        return None
    error_info = details.get("error")
    if isinstance(error_info, dict) and isinstance(error_info.get("message"), str):
        return error_info["message"].strip()
    return None


class UpstreamClient:
    """Common request plumbing shared by provider clients."""

    provider = ""

    def __init__(self, config: AppConfig, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._config = config
        self._transport = transport

    @property
    def api_key(self) -> str:
        raise NotImplementedError

    def require_api_key(self) -> str:
        """Return the provider key or raise a server misconfiguration (logged once)."""
        key = self.api_key
        if not key:
            if logged_once.first(f"missing-key:{self.provider}"):
                log.error("%s API key unavailable", self.provider)
            raise ServerMisconfigured(f"Server misconfiguration: {self.provider} key missing")
        return key

    def get_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "User-Agent": self._config.user_agent,
        }

    def get_params(self, stream: bool = False) -> Dict[str, str]:
        return {}

    def chat_url(self, model_id: str, stream: bool) -> str:
        raise NotImplementedError

    def new_http_client(self, *, stream: bool) -> httpx.AsyncClient:
        """
        Create the per-request HTTP client.

        Streams get no read timeout to avoid killing long generation pauses.
        """
        connect_timeout = min(30.0, float(self._config.request_timeout_s))
        if stream:
            timeout = httpx.Timeout(
                connect=connect_timeout, write=connect_timeout, pool=connect_timeout, read=None
            )
        else:
            timeout = httpx.Timeout(self._config.request_timeout_s, connect=connect_timeout)
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def chat_completion(
        self,
        client: httpx.AsyncClient,
        body: Dict[str, Any],
        model_id: str,
        *,
        stream: bool = False,
    ) -> httpx.Response:
        """
        Send a chat request upstream.

        For streaming requests the response body is left unread so it can be relayed.
        Transport failures are raised as UpstreamError.
        """
        t0 = time.time()
        req = client.build_request(
            "POST",
            self.chat_url(model_id, stream),
            headers=self.get_headers(),
            params=self.get_params(stream),
            json=body,
        )
        try:
            resp = await client.send(req, stream=stream)
        except httpx.HTTPError as e:
            log.warning(
                "Upstream %s transport error model=%s err=%s: %s",
                self.provider,
                model_id,
                type(e).__name__,
                e,
            )
            raise UpstreamError(self.provider, str(e) or type(e).__name__) from e

        dt = (time.time() - t0) * 1000
        log.info(
            "Upstream %s chat model=%s stream=%s status=%s ms=%.1f",
            self.provider,
            model_id,
            stream,
            resp.status_code,
            dt,
        )
        return resp

    async def raise_for_status(self, resp: httpx.Response) -> None:
        """Map a non-2xx upstream response to UpstreamError (reads and closes the body)."""
        if resp.is_success:
            return

        log.warning(
            "Upstream %s error status=%s content-type=%s",
            self.provider,
            resp.status_code,
            resp.headers.get("content-type", ""),
        )
        snippet = await self.read_error_snippet(resp)
        await resp.aclose()

        details: Any = snippet or None
        if snippet:
            try:
                details = json.loads(snippet)
            except ValueError:
                pass

        message = extract_provider_message(details) or f"Upstream error {resp.status_code}"
        raise UpstreamError(self.provider, message, status_code=resp.status_code, details=details)

    @staticmethod
    async def read_error_snippet(
        resp: httpx.Response, limit: int = 2000, timeout_s: float = 2.0
    ) -> str:
        """Best-effort: read small error body without risking a hang."""
        try:
            raw = await asyncio.wait_for(resp.aread(), timeout=timeout_s)
        except (asyncio.TimeoutError, httpx.HTTPError):
            return ""
        return raw.decode("utf-8", errors="replace")[:limit]


class OpenAIUpstream(UpstreamClient):
    """OpenAI-compatible /chat/completions with bearer auth."""

    provider = "OpenAI"

    @property
    def api_key(self) -> str:
        return self._config.openai_api_key

    def get_headers(self) -> Dict[str, str]:
        headers = super().get_headers()
        headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def chat_url(self, model_id: str, stream: bool) -> str:
        return f"{self._config.openai_base_url}/chat/completions"


class GeminiUpstream(UpstreamClient):
    """Gemini generateContent / streamGenerateContent with an API-key query parameter."""

    provider = "Gemini"

    @property
    def api_key(self) -> str:
        return self._config.gemini_api_key

    def get_params(self, stream: bool = False) -> Dict[str, str]:
        params = {"key": self.api_key}
        if stream:
            params["alt"] = "sse"
        return params

    def chat_url(self, model_id: str, stream: bool) -> str:
        # Caller-supplied model names must stay a single path segment.
        method = "streamGenerateContent" if stream else "generateContent"
        return f"{self._config.gemini_base_url}/models/{quote(model_id, safe='')}:{method}"
