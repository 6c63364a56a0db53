"""
Per-client push channels for auction events.

Each streaming request gets an EventStream. The coordinator and registry
publish frames into it; the HTTP response drains it as newline-delimited
JSON. A client disconnect cancels the stream only: later publishes are
dropped and the auction carries on.
"""

import asyncio
import json
import logging
import uuid
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import Request
from fastapi.responses import StreamingResponse

from .metrics import decrement_open_streams, increment_open_streams

logger = logging.getLogger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson"

_END = object()


class EventStream:
    """A queue of JSON frames bound to one client request."""

    def __init__(self, owner_uid: int, kind: str, manager: Optional["StreamManager"] = None):
        self.stream_id = uuid.uuid4().hex
        self.owner_uid = owner_uid
        self.kind = kind
        self.opened_at = datetime.now()
        self.sent: list = []
        self._manager = manager
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._cancelled = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def active(self) -> bool:
        return not (self._closed or self._cancelled)

    def publish(self, frame: Dict[str, Any]) -> bool:
        """Queue a frame for the client. Returns False if nobody will read it."""
        if not self.active:
            logger.debug("Dropping frame for %s stream %s: %s", self.kind, self.stream_id, frame)
            if self._manager is not None:
                self._manager.record_drop()
            return False
        self.sent.append(frame)
        self._queue.put_nowait(frame)
        return True

    def close(self):
        """Finish the stream after the frames already queued."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_END)

    def cancel(self):
        """Mark the client as gone."""
        self._cancelled = True

    async def frames(self, request: Optional[Request] = None, keepalive: float = 15.0) -> AsyncIterator[str]:
        """
        Yield encoded frames until the stream is closed or the client leaves.

        A blank line is sent every ``keepalive`` seconds of silence.
        """
        finished = False
        try:
            while True:
                if request is not None and await request.is_disconnected():
                    break
                try:
                    frame = await asyncio.wait_for(self._queue.get(), timeout=keepalive)
                except asyncio.TimeoutError:
                    yield "\n"
                    continue
                if frame is _END:
                    finished = True
                    break
                yield json.dumps(frame) + "\n"
        finally:
            if not finished:
                self.cancel()
            if self._manager is not None:
                self._manager.detach(self, reason="normal" if finished else "client_disconnect")


class StreamManager:
    """Tracks open event streams and keeps lifetime statistics."""

    def __init__(self, keepalive_seconds: float = 15.0):
        self.keepalive_seconds = keepalive_seconds
        self.active_streams: Dict[str, EventStream] = {}
        self.pool_status = {
            "total_streams_ever": 0,
            "max_concurrent_streams": 0,
            "client_disconnects": 0,
            "dropped_frames": 0,
        }

    def open(self, owner_uid: int, kind: str) -> EventStream:
        stream = EventStream(owner_uid, kind, manager=self)
        self.active_streams[stream.stream_id] = stream

        self.pool_status["total_streams_ever"] += 1
        current = len(self.active_streams)
        if current > self.pool_status["max_concurrent_streams"]:
            self.pool_status["max_concurrent_streams"] = current

        logger.info("Opened %s stream %s for user %s. Open streams: %d", kind, stream.stream_id, owner_uid, current)
        increment_open_streams()
        return stream

    def detach(self, stream: EventStream, reason: str = "normal"):
        if self.active_streams.pop(stream.stream_id, None) is None:
            return
        if reason != "normal":
            self.pool_status["client_disconnects"] += 1
            logger.warning("Client of %s stream %s went away: %s", stream.kind, stream.stream_id, reason)
        else:
            logger.info("Closed %s stream %s", stream.kind, stream.stream_id)
        decrement_open_streams()

    def record_drop(self):
        self.pool_status["dropped_frames"] += 1

    def close_all(self):
        for stream in list(self.active_streams.values()):
            stream.close()

    def get_stream_stats(self) -> Dict[str, Any]:
        stats = self.pool_status.copy()
        stats["current_streams"] = len(self.active_streams)
        return stats

    def response(self, stream: EventStream, request: Request, status_code: int = 200) -> StreamingResponse:
        """Wrap a stream into a long-lived NDJSON response."""
        return StreamingResponse(
            stream.frames(request, keepalive=self.keepalive_seconds),
            status_code=status_code,
            media_type=NDJSON_MEDIA_TYPE,
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )


def get_stream_manager(request: Request) -> StreamManager:
    return request.app.state.streams
