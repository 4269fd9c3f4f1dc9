from __future__ import annotations

import asyncio
import json

import pytest

from relay.core.memory import ASSISTANT, USER
from relay.relay import RelayState, RequestContext, parse_line, split_lines
from tests.fakes import BrokenStream, FakeOllama, ndjson, parse_events


async def collect(relay, session_id, message, ctx=None):
    body = "".join([event async for event in relay.stream_chat(session_id, message, ctx)])
    return parse_events(body)


@pytest.mark.anyio
async def test_streams_tokens_skipping_malformed_line(make_relay, store):
    backend = FakeOllama(chunks=[
        ndjson({"response": "A"}, {"response": "B"}),
        b"this is not json\n",
        ndjson({"response": "C"}, {"response": "", "done": True}),
    ])
    relay = make_relay(backend)
    ctx = RequestContext()

    events = await collect(relay, "s1", "hello", ctx)

    assert events == ["A", "B", "C", "[DONE]"]
    assert store.get("s1").turns[-1].role == ASSISTANT
    assert store.get("s1").turns[-1].content == "ABC"
    assert ctx.state is RelayState.DONE


@pytest.mark.anyio
async def test_reassembles_object_split_across_chunks(make_relay, store):
    body = ndjson({"response": "Hel"}, {"response": "lo"}, {"done": True})
    backend = FakeOllama(chunks=[body[:7], body[7:25], body[25:]])

    events = await collect(make_relay(backend), "s1", "hi")

    assert events == ["Hel", "lo", "[DONE]"]
    assert store.get("s1").turns[-1].content == "Hello"


@pytest.mark.anyio
async def test_sends_prompt_with_history(make_relay, settings):
    backend = FakeOllama()
    relay = make_relay(backend)

    await collect(relay, "s1", "first")
    await collect(relay, "s1", "second")

    payload = backend.generate_payloads[-1]
    assert payload["model"] == settings.model
    assert payload["stream"] is True
    prompt = payload["prompt"]
    assert prompt.count(settings.system_prompt) == 1
    assert prompt.index("user\nfirst") < prompt.index("assistant\nok") < prompt.index("user\nsecond")
    assert prompt.endswith("<|im_start|>assistant")


@pytest.mark.anyio
async def test_unreachable_backend_emits_single_error(make_relay, store):
    backend = FakeOllama(down=True)
    ctx = RequestContext()

    events = await collect(make_relay(backend), "s1", "hello", ctx)

    assert len(events) == 1
    assert events[0].startswith("[ERROR] ")
    assert "Connection refused" in events[0]
    assert "s1" not in store
    assert ctx.state is RelayState.ERRORED


@pytest.mark.anyio
async def test_error_status_is_fatal_without_commit(make_relay, store):
    store.append_user_turn("s1", "q0")
    store.append_assistant_turn("s1", "a0")
    backend = FakeOllama(status_code=500)

    events = await collect(make_relay(backend), "s1", "hello")

    assert events == ["[ERROR] API error: 500"]
    assert backend.generate_attempts == 1
    assert [t.content for t in store.get("s1").turns] == ["q0", "a0"]


@pytest.mark.anyio
async def test_mid_stream_failure_discards_partial_reply(make_relay, store):
    backend = BrokenStream(chunks=[ndjson({"response": "partial"})])

    events = await collect(make_relay(backend), "s1", "hello")

    assert events[0] == "partial"
    assert events[-1].startswith("[ERROR] ")
    assert len(events) == 2
    assert "s1" not in store


@pytest.mark.anyio
async def test_retries_before_streaming(make_relay, store):
    backend = FakeOllama(fail_times=2)

    events = await collect(make_relay(backend), "s1", "hello")

    assert events == ["ok", "[DONE]"]
    assert backend.generate_attempts == 3


@pytest.mark.anyio
async def test_client_disconnect_commits_nothing(make_relay, store):
    backend = FakeOllama(chunks=[ndjson({"response": "one"}), ndjson({"response": "two"})])
    stream = make_relay(backend).stream_chat("s1", "hello")

    first = await stream.__anext__()
    await stream.aclose()

    assert parse_events(first) == ["one"]
    assert "s1" not in store


def echo_reply(payload):
    last_user = payload["prompt"].rsplit("<|im_start|>user\n", 1)[1].split("\n<|im_end|>")[0]
    return [ndjson({"response": char}) for char in f"re:{last_user}"]


@pytest.mark.anyio
async def test_concurrent_sessions_do_not_mix(make_relay, store):
    relay = make_relay(FakeOllama(reply=echo_reply))

    results = await asyncio.gather(*[
        collect(relay, f"session-{i}", f"message-{i}") for i in range(4)
    ])

    for i, events in enumerate(results):
        assert "".join(events[:-1]) == f"re:message-{i}"
        turns = store.get(f"session-{i}").turns
        assert [(t.role, t.content) for t in turns] == [
            (USER, f"message-{i}"),
            (ASSISTANT, f"re:message-{i}"),
        ]


@pytest.mark.anyio
async def test_same_session_requests_are_serialized(make_relay, store):
    relay = make_relay(FakeOllama(reply=echo_reply))

    await asyncio.gather(collect(relay, "s1", "one"), collect(relay, "s1", "two"))

    turns = store.get("s1").turns
    assert [t.role for t in turns] == [USER, ASSISTANT, USER, ASSISTANT]
    assert turns[1].content == f"re:{turns[0].content}"
    assert turns[3].content == f"re:{turns[2].content}"


@pytest.mark.anyio
async def test_multiline_token_is_one_event(make_relay, store):
    backend = FakeOllama(chunks=[ndjson({"response": "line1\nline2"})])

    events = await collect(make_relay(backend), "s1", "hello")

    assert events == ["line1\nline2", "[DONE]"]


@pytest.mark.parametrize(
    "line, expected",
    [
        ('{"response": "hi"}', "hi"),
        ('{"response": ""}', None),
        ('{"done": true}', None),
        ("   ", None),
        ("{broken", None),
        (json.dumps([1, 2]), None),
        ('{"response": 5}', None),
    ],
)
def test_parse_line(line, expected):
    assert parse_line(line) == expected


@pytest.mark.anyio
@pytest.mark.parametrize("separator", ["\u0085", "\u2028"])
async def test_raw_line_separator_inside_token_survives(make_relay, store, separator):
    token = f"a{separator}b"
    line = json.dumps({"response": token}, ensure_ascii=False).encode() + b"\n"
    backend = FakeOllama(chunks=[line, ndjson({"done": True})])

    events = await collect(make_relay(backend), "s1", "hello")

    assert store.get("s1").turns[-1].content == token
    assert events[-1] == "[DONE]"
    assert len(events) == 2


@pytest.mark.anyio
async def test_split_lines_only_breaks_on_newline():
    async def chunks():
        for chunk in ['{"a": 1}\n{"b"', ': "x\u2028y"}\n', '{"c": 3}']:
            yield chunk

    lines = [line async for line in split_lines(chunks())]

    assert lines == ['{"a": 1}', '{"b": "x\u2028y"}', '{"c": 3}']
