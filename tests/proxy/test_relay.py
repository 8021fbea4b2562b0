import asyncio

import httpx

from nim_proxy.relay import StreamRelay

REQUEST = httpx.Request("POST", "http://upstream.test/v1/chat/completions")


def _response(body):
    return httpx.Response(200, content=body, request=REQUEST)


def test_relay_preserves_chunk_boundaries():
    chunks = [b"data: 1\n\n", b"data: 2\n\n", b"data: [DONE]\n\n"]

    async def upstream():
        for chunk in chunks:
            yield chunk

    async def run():
        relay = StreamRelay(_response(upstream()), max_chunks=1)
        received = [chunk async for chunk in relay.stream()]
        return relay, received

    relay, received = asyncio.run(run())
    assert received == chunks
    assert relay.chunks_relayed == 3
    assert relay.bytes_relayed == sum(len(c) for c in chunks)
    assert relay.closed


def test_relay_pauses_upstream_for_slow_consumer():
    produced = []

    async def upstream():
        for index in range(50):
            produced.append(index)
            yield f"chunk-{index}\n".encode()

    async def run():
        relay = StreamRelay(_response(upstream()), max_chunks=2)
        stream = relay.stream()
        first = await stream.__anext__()
        for _ in range(20):
            await asyncio.sleep(0)
        seen = len(produced)
        await stream.aclose()
        return relay, first, seen

    relay, first, seen = asyncio.run(run())
    assert first == b"chunk-0\n"
    # One consumed, two queued, one held by the blocked producer (plus slack).
    assert seen <= 5
    assert relay.closed


def test_relay_stops_when_upstream_fails_mid_stream():
    async def upstream():
        yield b"data: partial\n\n"
        raise httpx.ReadError("connection reset")

    async def run():
        relay = StreamRelay(_response(upstream()))
        received = [chunk async for chunk in relay.stream()]
        return relay, received

    relay, received = asyncio.run(run())
    assert received == [b"data: partial\n\n"]
    assert isinstance(relay.upstream_error, httpx.ReadError)
    assert relay.closed


def test_relay_closes_idle_upstream():
    async def upstream():
        yield b"data: first\n\n"
        await asyncio.sleep(30)
        yield b"data: never\n\n"

    async def run():
        relay = StreamRelay(_response(upstream()), idle_timeout_s=0.05)
        received = [chunk async for chunk in relay.stream()]
        return relay, received

    relay, received = asyncio.run(run())
    assert received == [b"data: first\n\n"]
    assert relay.closed


def test_relay_aclose_cancels_producer_and_closes_upstream():
    async def upstream():
        yield b"data: first\n\n"
        await asyncio.sleep(30)
        yield b"data: never\n\n"

    async def run():
        response = _response(upstream())
        relay = StreamRelay(response)
        stream = relay.stream()
        first = await stream.__anext__()
        producer = relay._producer
        await relay.aclose()
        return relay, response, producer, first

    relay, response, producer, first = asyncio.run(run())
    assert first == b"data: first\n\n"
    assert producer.done()
    assert response.is_closed
    assert relay.closed
