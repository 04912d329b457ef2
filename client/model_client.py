"""Async client for the Anthropic Messages API.

Wraps an ``httpx.AsyncClient`` and adds the behaviour the chat core relies on:

1. Builds the Messages API request body from a chat request.
2. Bounds every attempt with a timeout and retries transient failures
   (network errors and 5xx responses) with linear backoff.
3. Never retries 4xx responses -- those are caller errors.
4. Maps remote error bodies to ``ApiError`` and transport failures to
   ``NetworkError``.
5. Decodes ``stream=true`` responses incrementally, yielding text deltas in
   arrival order.

Only the request/handshake is retried. Once a stream has started delivering
bytes, a failure ends that stream with ``StreamError``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union

import httpx

from chatwrap_constants import (
    ANTHROPIC_BASE_URL,
    ANTHROPIC_VERSION,
    AVAILABLE_MODELS,
    DEFAULT_MODEL,
    MESSAGES_ENDPOINT,
    PROBE_MODEL,
)
from client.errors import INVALID_RESPONSE, ApiError, NetworkError, StreamError
from client.sse import SSEDecoder, extract_text_delta

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4000
DEFAULT_TEMPERATURE = 0.7

ChunkCallback = Callable[[str], Union[None, Awaitable[None]]]
ErrorCallback = Callable[[ApiError], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class ClientOptions:
    api_key: str
    base_url: str = ANTHROPIC_BASE_URL
    timeout: float = 60.0  # seconds, per attempt
    retry_attempts: int = 3
    retry_delay: float = 1.0  # seconds, multiplied by the attempt number


@dataclass
class MessageRequest:
    """A chat request: ordered role/content pairs plus generation settings."""

    messages: List[Dict[str, str]]
    model: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    system_prompt: Optional[str] = None


@dataclass
class ApiResponse:
    data: Dict[str, Any]
    text: str
    model: str
    tokens: int = 0
    duration_ms: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


def _first_text(data: Dict[str, Any]) -> str:
    """Pull ``content[0].text`` out of a Messages API response."""
    content = data.get("content") or []
    if content and isinstance(content[0], dict):
        return content[0].get("text") or ""
    return ""


class ModelClient:
    """Request/response and streaming calls against the Messages API.

    Holds only static configuration, so one instance can serve any number of
    concurrent calls.

    Usage:
        client = ModelClient(ClientOptions(api_key="sk-..."))
        reply = await client.send_message(MessageRequest(messages=[...]))
        async for delta in client.stream_text(request):
            ...
    """

    def __init__(
        self,
        options: ClientOptions,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.options = options
        self._client = httpx.AsyncClient(
            base_url=options.base_url,
            timeout=httpx.Timeout(options.timeout),
            transport=transport,
        )

    async def __aenter__(self) -> "ModelClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # -- Request building -----------------------------------------------------

    def _headers(self, stream: bool = False) -> Dict[str, str]:
        headers = {
            "x-api-key": self.options.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        if stream:
            headers["accept"] = "text/event-stream"
        return headers

    @staticmethod
    def _build_body(request: MessageRequest, stream: bool) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": request.model or DEFAULT_MODEL,
            "max_tokens": request.max_tokens if request.max_tokens is not None else DEFAULT_MAX_TOKENS,
            "temperature": request.temperature if request.temperature is not None else DEFAULT_TEMPERATURE,
            "messages": [{"role": m["role"], "content": m["content"]} for m in request.messages],
            "stream": stream,
        }
        if request.system_prompt:
            body["system"] = request.system_prompt
        return body

    @staticmethod
    def _error_from_response(response: httpx.Response) -> ApiError:
        """Map a non-2xx response to ApiError using the remote error body."""
        try:
            data = response.json()
        except ValueError:
            data = None

        error = data.get("error") if isinstance(data, dict) else None
        if isinstance(error, dict):
            return ApiError(
                error.get("message") or "API request failed",
                status_code=response.status_code,
                code=error.get("type"),
                details=error,
            )
        return ApiError(
            response.text[:500] or "API request failed",
            status_code=response.status_code,
            details=data,
        )

    # -- Retry loop -----------------------------------------------------------

    async def _make_request(self, body: Dict[str, Any], stream: bool = False) -> httpx.Response:
        """POST the body, retrying network failures and 5xx responses.

        Returns the last response as-is (the caller inspects the status).
        Raises NetworkError if the final attempt failed at the transport level.
        When ``stream`` is set the returned response body is left unread.
        """
        attempts = max(1, self.options.retry_attempts)

        for attempt in range(1, attempts + 1):
            request = self._client.build_request(
                "POST", MESSAGES_ENDPOINT, json=body, headers=self._headers(stream)
            )
            try:
                # Deadline for the whole attempt; for streams, the handshake only
                response = await asyncio.wait_for(
                    self._client.send(request, stream=stream), self.options.timeout
                )
            except (httpx.RequestError, asyncio.TimeoutError) as e:
                if isinstance(e, asyncio.TimeoutError):
                    reason = f"timed out after {self.options.timeout}s"
                else:
                    reason = str(e) or type(e).__name__
                if attempt == attempts:
                    logger.error("Model API unreachable after %d attempt(s): %s", attempts, reason)
                    raise NetworkError(reason, details=e) from e
                delay = self.options.retry_delay * attempt
                logger.warning(
                    "Model API request failed (%s), attempt %d/%d, retrying in %.2fs",
                    reason, attempt, attempts, delay,
                )
                await asyncio.sleep(delay)
                continue

            status = response.status_code
            # Client errors are the caller's fault -- never retried
            if 400 <= status < 500:
                return response
            if response.is_success or attempt == attempts:
                return response

            if stream:
                await response.aclose()
            delay = self.options.retry_delay * attempt
            logger.warning(
                "Model API returned HTTP %d, attempt %d/%d, retrying in %.2fs",
                status, attempt, attempts, delay,
            )
            await asyncio.sleep(delay)

        raise NetworkError("Max retry attempts reached")

    # -- Public API -----------------------------------------------------------

    async def send_message(self, request: MessageRequest) -> ApiResponse:
        """Single non-streaming completion. Raises ApiError on failure."""
        start = time.monotonic()
        body = self._build_body(request, stream=False)
        response = await self._make_request(body)

        if not response.is_success:
            raise self._error_from_response(response)

        try:
            data = response.json()
        except ValueError as e:
            raise ApiError(
                "Model API returned a non-JSON body",
                status_code=response.status_code,
                code=INVALID_RESPONSE,
                details=response.text[:500],
            ) from e

        duration_ms = int((time.monotonic() - start) * 1000)
        model = body["model"]
        tokens = (data.get("usage") or {}).get("output_tokens") or 0
        return ApiResponse(
            data=data,
            text=_first_text(data),
            model=model,
            tokens=tokens,
            duration_ms=duration_ms,
            metadata={"model": model, "tokens": tokens, "duration_ms": duration_ms},
        )

    async def stream_text(self, request: MessageRequest) -> AsyncIterator[str]:
        """Yield text deltas of a streamed completion in arrival order.

        Raises ApiError/NetworkError if the handshake fails and StreamError if
        the body breaks off mid-stream.
        """
        body = self._build_body(request, stream=True)
        response = await self._make_request(body, stream=True)
        try:
            if not response.is_success:
                await response.aread()
                raise self._error_from_response(response)

            decoder = SSEDecoder()
            try:
                async for chunk in response.aiter_text():
                    for event in decoder.feed(chunk):
                        delta = extract_text_delta(event)
                        if delta is not None:
                            yield delta
                    if decoder.done:
                        break
                for event in decoder.flush():
                    delta = extract_text_delta(event)
                    if delta is not None:
                        yield delta
            except httpx.HTTPError as e:
                raise StreamError(f"Stream interrupted: {e}", details=e) from e

            if decoder.skipped_frames:
                logger.warning("Skipped %d malformed SSE frame(s) in stream", decoder.skipped_frames)
        finally:
            await response.aclose()

    async def send_message_stream(
        self,
        request: MessageRequest,
        on_chunk: ChunkCallback,
        on_complete: ChunkCallback,
        on_error: ErrorCallback,
    ) -> None:
        """Callback form of ``stream_text``.

        ``on_chunk`` fires for every delta in order; then exactly one of
        ``on_complete(full_response)`` or ``on_error(error)`` fires.
        Callbacks may be plain functions or coroutine functions.
        """
        parts: List[str] = []
        stream = self.stream_text(request)
        try:
            async for delta in stream:
                parts.append(delta)
                await _maybe_await(on_chunk(delta))
        except ApiError as e:
            await _maybe_await(on_error(e))
            return
        except Exception as e:
            logger.error("Stream callback failed: %s", e)
            await _maybe_await(on_error(StreamError(str(e) or type(e).__name__, details=e)))
            return
        finally:
            await stream.aclose()

        await _maybe_await(on_complete("".join(parts)))

    async def validate_api_key(self) -> bool:
        """Probe the API with a minimal request. Never raises."""
        body = self._build_body(
            MessageRequest(
                messages=[{"role": "user", "content": "test"}],
                model=PROBE_MODEL,
                max_tokens=10,
            ),
            stream=False,
        )
        try:
            response = await self._make_request(body)
        except ApiError as e:
            logger.debug("API key probe failed: %s", e)
            return False
        return response.is_success

    @staticmethod
    def get_models() -> List[str]:
        """The Messages API has no listing endpoint; return the supported set."""
        return list(AVAILABLE_MODELS)
