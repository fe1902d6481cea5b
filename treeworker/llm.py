"""Client for model requests that are proxied through the worker's output pipe.

A request is handed to a ``send`` callable, and its responses come back
through :meth:`WorkerLlmClient.route`. Each request gets an :class:`LlmStream`
that yields text chunks and finally assembles a :class:`ChatResponse`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Union

from treeworker.entries import Message, ToolCall

logger = logging.getLogger(__name__)


def _empty_usage() -> dict:
    return {
        "prompt_tokens": 0,
        "completion_tokens": 0,
        "total_tokens": 0,
        "cached_prompt_tokens": None,
    }


@dataclass
class ChatResponse:
    """The assembled result of a streamed model request."""

    text: str
    tool_calls: list[ToolCall] | None
    finish_reason: str
    usage: dict = field(default_factory=_empty_usage)


class LlmError(Exception):
    """A model request failed."""


class LlmApiError(LlmError):
    """The server reported an error for a model request."""

    def __init__(self, message: str) -> None:
        super().__init__(f"LLM error: {message}")
        self.message = message


@dataclass
class LlmRequest:
    """A model request sent out through the pipe."""

    id: int
    messages: list[Message]
    tools: list[Any]
    routing_id: str | None = None


@dataclass(frozen=True)
class LlmChunk:
    """One raw streamed chunk for request ``id``."""

    id: int
    data: str


@dataclass(frozen=True)
class LlmDone:
    """The stream for request ``id`` is complete."""

    id: int


@dataclass(frozen=True)
class LlmFailure:
    """The request ``id`` failed with ``message``."""

    id: int
    message: str


LlmResponse = Union[LlmChunk, LlmDone, LlmFailure]


def _stop_reason_name(reason: str) -> str:
    return "".join(part.capitalize() for part in reason.split("_"))


def _parse_chunk(data: str) -> dict | None:
    """Parse a chat chunk, or return None when ``data`` is not one."""
    try:
        chunk = json.loads(data)
    except ValueError:
        return None
    if not isinstance(chunk, dict):
        return None
    delta_text = chunk.get("delta_text")
    finish_reason = chunk.get("finish_reason")
    usage = chunk.get("usage")
    deltas = chunk.get("tool_call_delta", [])
    if deltas is None:
        deltas = []
    if delta_text is not None and not isinstance(delta_text, str):
        return None
    if finish_reason is not None and not isinstance(finish_reason, str):
        return None
    if usage is not None and not isinstance(usage, dict):
        return None
    if not isinstance(deltas, list) or not all(isinstance(d, dict) for d in deltas):
        return None
    return {
        "delta_text": delta_text,
        "finish_reason": finish_reason,
        "usage": usage,
        "tool_call_delta": deltas,
    }


class ResponseBuilder:
    """Accumulates streamed chunks into a :class:`ChatResponse`."""

    def __init__(self) -> None:
        self.text = ""
        self.tool_calls: list[ToolCall] = []
        self.finish_reason: str | None = None
        self.usage: dict | None = None

    def apply_chunk(self, data: str) -> None:
        """Fold one raw chunk into the response; chunks that do not parse are ignored."""
        chunk = _parse_chunk(data)
        if chunk is None:
            return
        if chunk["delta_text"] is not None:
            self.text += chunk["delta_text"]
        if chunk["finish_reason"] is not None:
            self.finish_reason = _stop_reason_name(chunk["finish_reason"])
        if chunk["usage"] is not None:
            self.usage = chunk["usage"]
        for delta in chunk["tool_call_delta"]:
            function = delta.get("function") or {}
            call_id = delta.get("id")
            name = function.get("name")
            if call_id is not None and name is not None:
                self.tool_calls.append(ToolCall(id=call_id, name=name, arguments=None))
            args = function.get("arguments")
            if args is not None and self.tool_calls:
                last = self.tool_calls[-1]
                if last.arguments is None:
                    try:
                        last.arguments = json.loads(args)
                    except (ValueError, TypeError):
                        last.arguments = args

    def finish(self) -> ChatResponse:
        return ChatResponse(
            text=self.text,
            tool_calls=list(self.tool_calls) if self.tool_calls else None,
            finish_reason=self.finish_reason if self.finish_reason is not None else "stop",
            usage=self.usage if self.usage is not None else _empty_usage(),
        )


def _chunk_text(data: str) -> str:
    chunk = _parse_chunk(data)
    if chunk is None:
        return data
    return chunk["delta_text"] if chunk["delta_text"] is not None else ""


class LlmStream:
    """Async iterator over the text chunks of one in-flight request."""

    def __init__(
        self,
        request_id: int,
        queue: asyncio.Queue,
        on_close: Callable[[], None],
    ) -> None:
        self.id = request_id
        self._queue = queue
        self._builder: ResponseBuilder | None = ResponseBuilder()
        self._on_close: Callable[[], None] | None = on_close
        self._ended = False

    def __aiter__(self) -> "LlmStream":
        return self

    async def __anext__(self) -> str:
        if self._ended:
            raise StopAsyncIteration
        response = await self._queue.get()
        if isinstance(response, LlmDone):
            self._ended = True
            raise StopAsyncIteration
        if isinstance(response, LlmFailure):
            raise LlmApiError(response.message)
        if self._builder is not None:
            self._builder.apply_chunk(response.data)
        return _chunk_text(response.data)

    async def __aenter__(self) -> "LlmStream":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()

    def finish(self) -> ChatResponse:
        """Return the assembled response and release the request."""
        if self._builder is None:
            raise RuntimeError("finish called after finish")
        builder, self._builder = self._builder, None
        self.close()
        return builder.finish()

    def close(self) -> None:
        """Stop receiving responses for this request."""
        if self._on_close is not None:
            on_close, self._on_close = self._on_close, None
            on_close()


class WorkerLlmClient:
    """Sends model requests through ``send`` and routes responses to their streams."""

    def __init__(self, send: Callable[[LlmRequest], Any]) -> None:
        self._send = send
        self._pending: dict[int, asyncio.Queue] = {}
        self._next_id = 0

    @property
    def pending_ids(self) -> frozenset[int]:
        """Ids of requests whose streams are still open."""
        return frozenset(self._pending)

    def request(
        self,
        messages: Sequence[Message],
        tools: Sequence[Any] = (),
        routing: str | None = None,
    ) -> LlmStream:
        """Send a request and return the stream its responses arrive on."""
        self._next_id += 1
        request_id = self._next_id
        queue: asyncio.Queue = asyncio.Queue()
        self._pending[request_id] = queue
        request = LlmRequest(
            id=request_id,
            messages=list(messages),
            tools=list(tools),
            routing_id=routing,
        )
        try:
            self._send(request)
        except Exception as exc:  # a closed pipe means the worker is shutting down
            logger.debug("Dropping LLM request %d: %s", request_id, exc)
        return LlmStream(request_id, queue, lambda: self._pending.pop(request_id, None))

    async def complete(
        self, messages: Sequence[Message], tools: Sequence[Any] = ()
    ) -> ChatResponse:
        """Run a request to completion and return the assembled response."""
        stream = self.request(messages, tools, None)
        try:
            async for _ in stream:
                pass
            return stream.finish()
        finally:
            stream.close()

    def route(self, response: LlmResponse) -> None:
        """Deliver a response to its stream; responses for unknown ids are dropped."""
        queue = self._pending.get(response.id)
        if queue is not None:
            queue.put_nowait(response)