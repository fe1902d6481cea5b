import json

import pytest

from treeworker.entries import Message, MessageRole
from treeworker.llm import (
    ChatResponse,
    LlmApiError,
    LlmChunk,
    LlmDone,
    LlmError,
    LlmFailure,
    LlmRequest,
    LlmStream,
    ResponseBuilder,
    WorkerLlmClient,
)

TEXT_CHUNK = (
    '{"delta_text":"Hello! I am an AI assistant.","delta_reasoning":null,'
    '"tool_call_delta":[],"finish_reason":null,"usage":null}'
)
FINISH_CHUNK = (
    '{"delta_text":null,"delta_reasoning":null,"tool_call_delta":[],'
    '"finish_reason":"stop","usage":{"prompt_tokens":10,"completion_tokens":5,'
    '"total_tokens":15}}'
)


def _tool_chunk(deltas, finish=None):
    return json.dumps(
        {"delta_text": None, "tool_call_delta": deltas, "finish_reason": finish, "usage": None}
    )


def _messages():
    return [Message(role=MessageRole.USER, content="hi")]


def _client():
    sent = []
    return WorkerLlmClient(sent.append), sent


def test_request_sends_with_increasing_ids():
    client, sent = _client()
    first = client.request(_messages(), [], "tree-1")
    second = client.request(_messages(), [])
    assert [r.id for r in sent] == [1, 2]
    assert first.id == sent[0].id and second.id == sent[1].id
    assert isinstance(sent[0], LlmRequest)
    assert sent[0].routing_id == "tree-1"
    assert sent[1].routing_id is None
    assert sent[0].messages[0].content == "hi"
    assert client.pending_ids == {first.id, second.id}


@pytest.mark.asyncio
async def test_stream_yields_text_and_assembles_response():
    client, sent = _client()
    stream = client.request(_messages(), [])
    for data in (TEXT_CHUNK, "", FINISH_CHUNK, ""):
        client.route(LlmChunk(stream.id, data))
    client.route(LlmDone(stream.id))

    pieces = [piece async for piece in stream]
    assert pieces == ["Hello! I am an AI assistant.", "", "", ""]

    response = stream.finish()
    assert response.text == "Hello! I am an AI assistant."
    assert response.finish_reason == "Stop"
    assert response.usage["prompt_tokens"] == 10
    assert response.usage["total_tokens"] == 15
    assert response.tool_calls is None
    assert client.pending_ids == frozenset()


@pytest.mark.asyncio
async def test_unparseable_chunk_is_yielded_raw():
    client, _ = _client()
    stream = client.request(_messages(), [])
    client.route(LlmChunk(stream.id, "not json"))
    client.route(LlmDone(stream.id))
    pieces = [piece async for piece in stream]
    assert pieces == ["not json"]
    assert stream.finish().text == ""


@pytest.mark.asyncio
async def test_failure_raises_api_error():
    client, _ = _client()
    stream = client.request(_messages(), [])
    client.route(LlmFailure(stream.id, "boom"))
    with pytest.raises(LlmApiError) as excinfo:
        await stream.__anext__()
    assert excinfo.value.message == "boom"
    assert str(excinfo.value) == "LLM error: boom"
    assert isinstance(excinfo.value, LlmError)


@pytest.mark.asyncio
async def test_responses_for_other_ids_are_not_delivered():
    client, _ = _client()
    first = client.request(_messages(), [])
    second = client.request(_messages(), [])
    client.route(LlmChunk(second.id, TEXT_CHUNK))
    client.route(LlmDone(second.id))
    client.route(LlmDone(first.id))
    assert [p async for p in first] == []
    assert [p async for p in second] == ["Hello! I am an AI assistant."]


def test_builder_accumulates_tool_calls():
    builder = ResponseBuilder()
    builder.apply_chunk(
        _tool_chunk([{"id": "c1", "function": {"name": "bash", "arguments": '{"command": "ls"}'}}])
    )
    builder.apply_chunk(_tool_chunk([], finish="tool_calls"))
    response = builder.finish()
    assert response.finish_reason == "ToolCalls"
    assert len(response.tool_calls) == 1
    call = response.tool_calls[0]
    assert (call.id, call.name) == ("c1", "bash")
    assert call.arguments == {"command": "ls"}


def test_builder_keeps_partial_arguments_as_string():
    builder = ResponseBuilder()
    builder.apply_chunk(
        _tool_chunk([{"id": "c1", "function": {"name": "read", "arguments": '{"pa'}}])
    )
    assert builder.finish().tool_calls[0].arguments == '{"pa'


def test_builder_only_fills_arguments_once():
    builder = ResponseBuilder()
    builder.apply_chunk(_tool_chunk([{"id": "c1", "function": {"name": "read"}}]))
    builder.apply_chunk(_tool_chunk([{"function": {"arguments": '{"a": 1}'}}]))
    builder.apply_chunk(_tool_chunk([{"function": {"arguments": '{"a": 2}'}}]))
    assert builder.finish().tool_calls[0].arguments == {"a": 1}


def test_builder_ignores_arguments_without_a_call():
    builder = ResponseBuilder()
    builder.apply_chunk(_tool_chunk([{"function": {"arguments": "{}"}}]))
    assert builder.finish().tool_calls is None


def test_builder_defaults():
    response = ResponseBuilder().finish()
    assert isinstance(response, ChatResponse)
    assert response.text == ""
    assert response.finish_reason == "stop"
    assert response.usage["prompt_tokens"] == 0
    assert response.usage["completion_tokens"] == 0
    assert response.usage["total_tokens"] == 0


def test_finish_twice_raises():
    client, _ = _client()
    stream = client.request(_messages(), [])
    stream.finish()
    with pytest.raises(RuntimeError):
        stream.finish()


def test_close_releases_request_and_route_is_ignored():
    client, _ = _client()
    stream = client.request(_messages(), [])
    assert isinstance(stream, LlmStream)
    assert client.pending_ids == {stream.id}
    stream.close()
    assert client.pending_ids == frozenset()
    client.route(LlmChunk(stream.id, TEXT_CHUNK))
    assert client.pending_ids == frozenset()


@pytest.mark.asyncio
async def test_complete_returns_assembled_response():
    client = None

    def send(request):
        for data in (TEXT_CHUNK, FINISH_CHUNK):
            client.route(LlmChunk(request.id, data))
        client.route(LlmDone(request.id))

    client = WorkerLlmClient(send)
    response = await client.complete(_messages(), [])
    assert response.text == "Hello! I am an AI assistant."
    assert response.usage["completion_tokens"] == 5
    assert client.pending_ids == frozenset()


@pytest.mark.asyncio
async def test_complete_raises_on_failure():
    client = None

    def send(request):
        client.route(LlmFailure(request.id, "rate limited"))

    client = WorkerLlmClient(send)
    with pytest.raises(LlmApiError, match="rate limited"):
        await client.complete(_messages())
    assert client.pending_ids == frozenset()


def test_send_failure_is_ignored():
    def send(request):
        raise OSError("pipe closed")

    client = WorkerLlmClient(send)
    stream = client.request(_messages(), [])
    assert client.pending_ids == {stream.id}