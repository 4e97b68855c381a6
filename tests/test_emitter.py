"""
Tests for the chunk emitter: simulated segmentation, pacing, faults,
disconnects and pass-through relaying.
"""

import time

import httpx
import orjson
import pytest

from chatrelay.emitter import DONE, NO_RESPONSE, ChunkEmitter, extract_answer, segment
from chatrelay.errors import StreamFault
from chatrelay.upstream import UpstreamStream

MODEL = "meta-llama/Llama-3.1-8B-Instruct:fireworks-ai"


def body_with(content):
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


async def collect(agen):
    return [item async for item in agen]


def decode(records):
    assert records[-1] == DONE
    return [orjson.loads(record[len(b"data: "):]) for record in records[:-1]]


class FakeStreamResponse:
    def __init__(self, pieces, error=None):
        self._pieces = pieces
        self._error = error
        self.closed = False

    async def aiter_bytes(self):
        for piece in self._pieces:
            yield piece
        if self._error is not None:
            raise self._error

    async def aclose(self):
        self.closed = True


def test_segment_adds_leading_space_after_first_word():
    assert segment("Hello  big\n\tworld ") == ["Hello", " big", " world"]
    assert segment("   ") == []


def test_extract_answer():
    assert extract_answer(body_with("Hi")) == "Hi"
    assert extract_answer(body_with("")) == NO_RESPONSE
    assert extract_answer({"choices": [{"message": {}}]}) == NO_RESPONSE
    assert extract_answer({}) == NO_RESPONSE
    with pytest.raises(StreamFault):
        extract_answer("plain text")


@pytest.mark.asyncio
async def test_simulate_reconstructs_text():
    text = "The quick brown fox jumps over the lazy dog"
    emitter = ChunkEmitter(MODEL, delay_seconds=0)

    chunks = await collect(emitter.simulate(body_with(text)))

    *content, terminal = chunks
    assert "".join(chunk.content for chunk in content) == text
    assert all(chunk.finish_reason is None for chunk in content)
    assert terminal.finish_reason == "stop"
    assert terminal.choices[0].delta == {}
    assert len({chunk.id for chunk in chunks}) == len(chunks)


@pytest.mark.asyncio
async def test_simulated_stream_frames_records():
    emitter = ChunkEmitter(MODEL, delay_seconds=0, clock=lambda: 1700000000.5)

    records = await collect(emitter.simulated_stream(body_with("Hello friend")))

    assert all(record.startswith(b"data: ") and record.endswith(b"\n\n") for record in records)
    chunks = decode(records)
    assert [chunk["choices"][0]["delta"] for chunk in chunks] == [{"content": "Hello"}, {"content": " friend"}, {}]
    assert chunks[0]["created"] == 1700000000
    assert chunks[0]["id"].startswith("simulated-")
    assert chunks[0]["model"] == MODEL


@pytest.mark.asyncio
async def test_pacing_between_content_chunks():
    stamps = []
    emitter = ChunkEmitter(MODEL, delay_seconds=0.05)

    async for _ in emitter.simulated_stream(body_with("one two three")):
        stamps.append(time.perf_counter())

    gaps = [later - earlier for earlier, later in zip(stamps, stamps[1:])]
    assert gaps[0] >= 0.04
    assert gaps[1] >= 0.04
    # no pause before the terminal chunk or the sentinel
    assert gaps[2] < 0.04
    assert gaps[3] < 0.04


@pytest.mark.asyncio
async def test_fault_yields_error_chunk_then_done():
    emitter = ChunkEmitter(MODEL, delay_seconds=0)

    chunks = decode(await collect(emitter.simulated_stream(42)))

    assert len(chunks) == 1
    assert chunks[0]["choices"][0]["finish_reason"] == "error"
    assert chunks[0]["choices"][0]["delta"]["content"].startswith("Error: upstream body is int")


@pytest.mark.asyncio
async def test_disconnect_stops_emission_without_terminator():
    polls = []

    async def is_disconnected():
        polls.append(True)
        return len(polls) >= 2

    emitter = ChunkEmitter(MODEL, delay_seconds=0, is_disconnected=is_disconnected)

    records = await collect(emitter.simulated_stream(body_with("a b c d e")))

    assert emitter.abandoned is True
    assert DONE not in records
    assert len(records) == 2


@pytest.mark.asyncio
async def test_relay_passes_bytes_and_closes_source():
    source = FakeStreamResponse([b"data: {}\n\n", b"", b"data: [DONE]\n\n"])
    emitter = ChunkEmitter(MODEL)

    out = await collect(emitter.relay(UpstreamStream(200, "text/event-stream", source)))

    assert b"".join(out) == b"data: {}\n\ndata: [DONE]\n\n"
    assert source.closed is True


@pytest.mark.asyncio
async def test_relay_error_on_record_boundary():
    source = FakeStreamResponse([b"data: {}\n\n"], error=httpx.RemoteProtocolError("peer closed"))
    emitter = ChunkEmitter(MODEL)

    out = await collect(emitter.relay(UpstreamStream(200, "text/event-stream", source)))

    assert out[0] == b"data: {}\n\n"
    assert out[-1] == DONE
    error = orjson.loads(out[1][len(b"data: "):])
    assert error["choices"][0]["finish_reason"] == "error"
    assert source.closed is True


@pytest.mark.asyncio
async def test_relay_error_mid_record_closes_the_record_first():
    source = FakeStreamResponse([b"data: {\"par"], error=httpx.ReadError("reset"))
    emitter = ChunkEmitter(MODEL)

    out = await collect(emitter.relay(UpstreamStream(200, "text/event-stream", source)))

    assert out[1] == b"\n\n"
    assert out[-1] == DONE
