"""Fake Messages API for client and store tests.

Runs in-process behind ``httpx.MockTransport``: no sockets, no event-loop
fixtures. Responses are scripted per test; when the script runs out the
fake answers every request with a canned reply (streamed if the request
asked for ``stream: true``).

Usage::

    api = FakeModelAPI()
    api.queue(error_response(529, "overloaded_error", "Overloaded"))
    client = ModelClient(ClientOptions(api_key="test"), transport=api.transport)
    reply = await client.send_message(request)
    assert len(api.requests) == 2
"""

import asyncio
import json
from collections import deque
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Union

import httpx

DEFAULT_REPLY = "Hello from the fake model"

Scripted = Union[httpx.Response, Exception, Callable[[httpx.Request], httpx.Response]]


def message_response(text: str = DEFAULT_REPLY, output_tokens: int = 5, model: str = "fake-model") -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "id": "msg_fake",
            "type": "message",
            "role": "assistant",
            "model": model,
            "content": [{"type": "text", "text": text}],
            "usage": {"input_tokens": 10, "output_tokens": output_tokens},
        },
    )


def error_response(status: int, error_type: str = "api_error", message: str = "Something went wrong") -> httpx.Response:
    return httpx.Response(status, json={"type": "error", "error": {"type": error_type, "message": message}})


def sse_frame(payload: Any) -> str:
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return f"data: {data}\n\n"


def delta_frame(text: str) -> str:
    return sse_frame({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}})


def sse_response(chunks: Iterable[str], done: bool = True, extra: Iterable[str] = ()) -> httpx.Response:
    """A text/event-stream response delivering ``chunks`` as content deltas.

    ``extra`` frames are raw text inserted after the first delta, e.g. a
    malformed ``data:`` line.
    """
    frames: List[str] = [sse_frame({"type": "message_start", "message": {"id": "msg_fake"}})]
    for i, chunk in enumerate(chunks):
        frames.append(delta_frame(chunk))
        if i == 0:
            frames.extend(extra)
    frames.append(sse_frame({"type": "message_stop"}))
    if done:
        frames.append(sse_frame("[DONE]"))
    return httpx.Response(200, headers={"content-type": "text/event-stream"}, content="".join(frames).encode("utf-8"))


async def _stall() -> None:
    await asyncio.Event().wait()


def stalled_response(head: bytes = b"{\"content\": [") -> httpx.Response:
    """A 200 whose body sends ``head`` and then never finishes."""

    async def body():
        yield head
        await _stall()

    return httpx.Response(200, content=body())


def stalled_handshake(request: httpx.Request):
    """Scripted handler that never answers at all."""

    async def never():
        await _stall()

    return never()


def broken_sse_response(chunks: Iterable[str], error: Exception) -> httpx.Response:
    """An event stream that delivers ``chunks`` and then fails with ``error``."""

    async def body():
        for chunk in chunks:
            yield delta_frame(chunk).encode("utf-8")
        raise error

    return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body())


class FakeModelAPI:
    """Scripted stand-in for POST /messages."""

    def __init__(self, reply: str = DEFAULT_REPLY):
        self.reply = reply
        self.requests: List[httpx.Request] = []
        self.bodies: List[Dict[str, Any]] = []
        self._script: Deque[Scripted] = deque()

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def queue(self, *responses: Scripted) -> None:
        self._script.extend(responses)

    @property
    def last_body(self) -> Optional[Dict[str, Any]]:
        return self.bodies[-1] if self.bodies else None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        body = json.loads(request.content or b"{}")
        self.bodies.append(body)

        if self._script:
            scripted = self._script.popleft()
            if isinstance(scripted, Exception):
                raise scripted
            if callable(scripted) and not isinstance(scripted, httpx.Response):
                return scripted(request)
            return scripted

        if body.get("stream"):
            return sse_response([self.reply])
        return message_response(self.reply)
