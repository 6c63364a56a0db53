"""Tests for NDJSON event streams and their manager."""

import asyncio
import json

from cycloud.market_api.streams import NDJSON_MEDIA_TYPE, StreamManager


async def collect(stream, keepalive=5.0):
    return [chunk async for chunk in stream.frames(keepalive=keepalive)]


async def test_frames_are_newline_delimited_json():
    manager = StreamManager()
    stream = manager.open(1, "bidder")
    stream.publish({"data": "starting connection"})
    stream.publish({"data": "connection ended"})
    stream.close()

    chunks = await asyncio.wait_for(collect(stream), 2)
    assert [json.loads(c) for c in chunks] == [
        {"data": "starting connection"},
        {"data": "connection ended"},
    ]
    assert all(c.endswith("\n") for c in chunks)
    assert manager.get_stream_stats()["current_streams"] == 0


async def test_keepalive_lines_during_silence():
    manager = StreamManager()
    stream = manager.open(1, "loaner")

    async def finish_later():
        await asyncio.sleep(0.25)
        stream.publish({"data": "no bids for resource"})
        stream.close()

    task = asyncio.create_task(finish_later())
    chunks = await asyncio.wait_for(collect(stream, keepalive=0.05), 2)
    await task

    assert "\n" in chunks
    assert json.loads(chunks[-1]) == {"data": "no bids for resource"}


async def test_publish_after_cancel_is_dropped():
    manager = StreamManager()
    stream = manager.open(1, "bidder")
    stream.cancel()

    assert stream.publish({"data": "rejected", "reason": "x"}) is False
    assert stream.sent == []
    assert manager.get_stream_stats()["dropped_frames"] == 1


async def test_abandoned_consumer_counts_as_disconnect():
    manager = StreamManager()
    stream = manager.open(1, "bidder")
    stream.publish({"data": "starting connection"})

    frames = stream.frames(keepalive=5.0)
    assert json.loads(await frames.__anext__()) == {"data": "starting connection"}
    await frames.aclose()

    assert stream.cancelled
    assert stream.publish({"data": "connection ended"}) is False
    stats = manager.get_stream_stats()
    assert stats["client_disconnects"] == 1
    assert stats["current_streams"] == 0


async def test_manager_statistics_and_close_all():
    manager = StreamManager()
    streams = [manager.open(uid, "bidder") for uid in range(3)]
    stats = manager.get_stream_stats()
    assert stats["total_streams_ever"] == 3
    assert stats["max_concurrent_streams"] == 3

    manager.close_all()
    assert all(s.closed for s in streams)
    for s in streams:
        await asyncio.wait_for(collect(s), 2)
    stats = manager.get_stream_stats()
    assert stats["current_streams"] == 0
    assert stats["max_concurrent_streams"] == 3


async def test_response_headers():
    manager = StreamManager(keepalive_seconds=1.0)
    stream = manager.open(1, "bidder")
    response = manager.response(stream, request=None, status_code=201)

    assert response.status_code == 201
    assert response.media_type == NDJSON_MEDIA_TYPE
    assert response.headers["cache-control"] == "no-cache"
    stream.close()
