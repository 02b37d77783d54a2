"""Backend drivers: the one seam between the executor and a model.

The executor calls any object matching the protocol:

    async def generate(self, request: GenerateRequest) -> GenerateResponse: ...

Two implementations are provided:

    HttpDriver  real HTTP client, supports OpenAI-compatible chat backends
                  and KoboldCpp. Selected by provider_format.
    EchoDriver  returns the text of the last user message. Useful for
                  smoke-testing a narrative without a running model.

Rate limiting, retries and provider-specific quirks belong to the driver, not
the engine: a DriverError ends the run.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Literal, Protocol

import httpx
from pydantic import BaseModel, Field

from botticelli.models import Message, TokenUsage
from botticelli.prompts import PromptError, render_transcript

logger = logging.getLogger(__name__)


class GenerateRequest(BaseModel):
    messages: list[Message]
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None


class GenerateResponse(BaseModel):
    text: str
    model: str | None = None
    usage: TokenUsage | None = None
    duration_ms: int = 0
    raw: dict[str, Any] = Field(default_factory=dict, exclude=True)


# ---------------------------------------------------------------------------
# Protocol: every driver implementation must match this signature
# ---------------------------------------------------------------------------

class Driver(Protocol):
    async def generate(self, request: GenerateRequest) -> GenerateResponse: ...


# ---------------------------------------------------------------------------
# HttpDriver: connects to a real backend
# ---------------------------------------------------------------------------

ProviderFormat = Literal["koboldcpp", "openai"]


class HttpDriver:
    """Async HTTP client for model backends.

    Supported formats:
      "openai"     POST /v1/chat/completions  {"model", "messages", ...}
                     Response: {"choices": [{"message": {"content": "..."}}], "usage": {...}}
      "koboldcpp"  POST /api/v1/generate      {"prompt": ...}
                     Response: {"results": [{"text": "..."}]}
                     The conversation is flattened with the transcript template.

    Args:
        provider_url:    Base URL of the backend, e.g. "http://localhost:5001".
        api_key:         Bearer token, or empty string if not required.
        provider_format: Wire format to use. Defaults to "koboldcpp".
        model:           Fallback model identifier when the request names none.
        timeout:         HTTP timeout in seconds. Defaults to 120.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "koboldcpp",
        model: str = "",
        timeout: float = 120.0,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._model = model
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _chat_message(self, message: Message) -> dict[str, Any]:
        images = [
            p for p in message.parts
            if p.kind == "media" and (p.mime or "").startswith("image/") and p.source
        ]
        if not images:
            return {"role": message.role, "content": message.text}
        content: list[dict[str, Any]] = []
        text = "\n\n".join(p.text for p in message.parts if p.text and p not in images)
        if text:
            content.append({"type": "text", "text": text})
        for part in images:
            content.append({"type": "image_url", "image_url": {"url": part.source}})
        return {"role": message.role, "content": content}

    def _build_request(self, request: GenerateRequest) -> tuple[str, dict]:
        """Return (url, body) for the configured format."""
        model = request.model or self._model
        if self._format == "openai":
            url = f"{self._base_url}/v1/chat/completions"
            body: dict = {"messages": [self._chat_message(m) for m in request.messages]}
            if model:
                body["model"] = model
            if request.temperature is not None:
                body["temperature"] = request.temperature
            if request.max_tokens is not None:
                body["max_tokens"] = request.max_tokens
            return url, body

        # koboldcpp (default)
        url = f"{self._base_url}/api/v1/generate"
        body = {"prompt": render_transcript(request.messages)}
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.max_tokens is not None:
            body["max_length"] = request.max_tokens
        return url, body

    def _parse_response(self, data: Any, model: str | None) -> GenerateResponse:
        """Extract the completion text and usage from the response body."""
        if not isinstance(data, dict):
            raise DriverError(f"Unexpected response format from {self._base_url}: body is not an object")

        if self._format == "openai":
            choices = data.get("choices")
            first = choices[0] if isinstance(choices, list) and choices else None
            message = first.get("message") if isinstance(first, dict) else None
            if not isinstance(message, dict) or "content" not in message:
                raise DriverError("Unexpected response format from OpenAI-compatible backend")
            usage = None
            if isinstance(data.get("usage"), dict):
                usage = TokenUsage.model_validate(data["usage"])
            return GenerateResponse(
                text=message["content"] or "",
                model=data.get("model") or model,
                usage=usage,
                raw=data,
            )

        # koboldcpp
        results = data.get("results")
        first = results[0] if isinstance(results, list) and results else None
        if not isinstance(first, dict) or not isinstance(first.get("text"), str):
            raise DriverError("Unexpected response format from KoboldCpp backend")
        return GenerateResponse(text=first["text"], model=model, raw=data)

    async def generate(self, request: GenerateRequest) -> GenerateResponse:
        try:
            url, body = self._build_request(request)
        except PromptError as e:
            raise DriverError(f"Cannot render prompt: {e}") from e
        logger.debug("driver call url=%s messages=%d", url, len(request.messages))

        started = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise DriverError(f"Cannot connect to model backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise DriverError(
                f"Model backend returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise DriverError(f"Model backend timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise DriverError(
                f"Request to model backend at {self._base_url} failed: {type(e).__name__}: {e}"
            ) from e

        try:
            data = resp.json()
        except ValueError as e:
            raise DriverError("Model backend returned a non-JSON body") from e

        response = self._parse_response(data, body.get("model") or request.model)
        response.duration_ms = int((time.perf_counter() - started) * 1000)
        logger.debug("driver response len=%d duration_ms=%d", len(response.text), response.duration_ms)
        return response


# ---------------------------------------------------------------------------
# EchoDriver: returns the last user message; useful for smoke tests
# ---------------------------------------------------------------------------

class EchoDriver:
    """Returns the text of the last user message. No network calls.

    Lets you verify that a narrative's wiring (resource resolution, history,
    carousel loops, processors) works end-to-end without a running model.
    """

    async def generate(self, request: GenerateRequest) -> GenerateResponse:
        user_messages = [m for m in request.messages if m.role == "user"]
        text = user_messages[-1].text if user_messages else ""
        logger.debug("EchoDriver messages=%d len=%d", len(request.messages), len(text))
        return GenerateResponse(text=text, model=request.model or "echo")


# ---------------------------------------------------------------------------
# DriverError: raised by drivers for all connection and protocol failures
# ---------------------------------------------------------------------------

class DriverError(RuntimeError):
    """Raised when the model backend cannot be reached or returns an error."""
