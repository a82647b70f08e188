"""
Progress Bridge — fan-out of live job status to subscribed clients.

Every event is addressed to two rooms:
  brand:{brandId}   — any tab watching the brand
  job:{jobId}       — a client that only knows the job id

A subscriber that joined both rooms receives each event once. Delivery is
best-effort: a disconnected client misses events and recovers the final
state by polling the persisted job record, not by replay.

Envelope on the wire:
  {"event": "job:progress" | "job:complete" | "job:failed", "data": {...}}
"""
from __future__ import annotations

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from typing import Any, Optional

import structlog

from models.schemas import ProgressEvent, ProgressEventType

logger = structlog.get_logger()


def brand_room(brand_id: str) -> str:
    return f"brand:{brand_id}"


def job_room(job_id: str) -> str:
    return f"job:{job_id}"


def rooms_for(event: ProgressEvent) -> list[str]:
    return [brand_room(event.brand_id), job_room(event.job_id)]


# ══════════════════════════════════════════════════════════════
#  SUBSCRIBERS
# ══════════════════════════════════════════════════════════════

class Subscriber(ABC):
    """A reader of progress envelopes."""

    def __init__(self):
        self.id = uuid.uuid4().hex[:12]
        self.rooms: set[str] = set()

    @abstractmethod
    async def deliver(self, envelope: dict[str, Any]) -> None:
        ...

    async def close(self) -> None:
        pass


class QueueSubscriber(Subscriber):
    """
    In-process subscriber backed by a bounded asyncio.Queue.
    When the buffer is full the oldest envelope is dropped.
    """

    def __init__(self, maxsize: int = 100):
        super().__init__()
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    async def deliver(self, envelope: dict[str, Any]) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(envelope)

    async def get(self, timeout: Optional[float] = None) -> dict[str, Any]:
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    def pending(self) -> int:
        return self._queue.qsize()

    def __aiter__(self):
        return self

    async def __anext__(self) -> dict[str, Any]:
        return await self._queue.get()


class WebSocketSubscriber(Subscriber):
    """Tracks a single WebSocket connection (FastAPI / Starlette)."""

    def __init__(self, ws: Any):
        super().__init__()
        self.ws = ws
        self.sent = 0

    async def deliver(self, envelope: dict[str, Any]) -> None:
        await self.ws.send_text(json.dumps(envelope))
        self.sent += 1

    async def close(self) -> None:
        try:
            await self.ws.close()
        except Exception:
            pass


# ══════════════════════════════════════════════════════════════
#  BRIDGE
# ══════════════════════════════════════════════════════════════

class ProgressBridge:
    """
    Single writer of progress events; subscribers are the readers.

    Usage:
        bridge = ProgressBridge()
        sub = bridge.subscribe(brand_room(brand_id))
        await bridge.publish(event, ProgressEventType.COMPLETE)
        envelope = await sub.get(timeout=5)
    """

    def __init__(self, relay=None, subscriber_buffer: int = 100):
        self._rooms: dict[str, set[Subscriber]] = {}
        self._subscribers: dict[str, Subscriber] = {}
        self._relay = relay
        self._subscriber_buffer = subscriber_buffer
        self.published = 0

    # ── Membership ────────────────────────────────────────────

    def join(self, subscriber: Subscriber, room: str) -> None:
        self._subscribers[subscriber.id] = subscriber
        self._rooms.setdefault(room, set()).add(subscriber)
        subscriber.rooms.add(room)

    def leave(self, subscriber: Subscriber, room: str) -> None:
        members = self._rooms.get(room)
        if members is not None:
            members.discard(subscriber)
            if not members:
                del self._rooms[room]
        subscriber.rooms.discard(room)

    def detach(self, subscriber: Subscriber) -> None:
        for room in list(subscriber.rooms):
            self.leave(subscriber, room)
        self._subscribers.pop(subscriber.id, None)

    def subscribe(self, *rooms: str) -> QueueSubscriber:
        subscriber = QueueSubscriber(maxsize=self._subscriber_buffer)
        for room in rooms:
            self.join(subscriber, room)
        return subscriber

    def attach_websocket(self, ws: Any, rooms: list[str]) -> WebSocketSubscriber:
        subscriber = WebSocketSubscriber(ws)
        for room in rooms:
            self.join(subscriber, room)
        logger.info("progress_ws_attached", subscriber=subscriber.id, rooms=rooms)
        return subscriber

    def room_size(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    # ── Publish ───────────────────────────────────────────────

    async def publish(
        self,
        event: ProgressEvent,
        kind: ProgressEventType = ProgressEventType.PROGRESS,
    ) -> None:
        """Broadcast to brand:{id} and job:{id}. Never raises."""
        envelope = {"event": kind.value, "rooms": rooms_for(event), "data": event.to_wire()}
        self.published += 1

        if self._relay is not None:
            try:
                await self._relay.publish(envelope)
                return
            except Exception as e:
                logger.warning("progress_relay_publish_failed", job_id=event.job_id, error=str(e))

        await self.deliver_local(envelope)

    async def deliver_local(self, envelope: dict[str, Any]) -> int:
        """Deliver an envelope to local members of its rooms, once per subscriber."""
        targets: dict[str, Subscriber] = {}
        for room in envelope.get("rooms", []):
            for subscriber in self._rooms.get(room, ()):
                targets[subscriber.id] = subscriber

        outgoing = {"event": envelope["event"], "data": envelope["data"]}
        delivered = 0
        for subscriber in targets.values():
            try:
                await subscriber.deliver(outgoing)
                delivered += 1
            except Exception as e:
                # broken connection — drop it
                logger.info("progress_subscriber_dropped", subscriber=subscriber.id, error=str(e))
                self.detach(subscriber)
        return delivered

    async def close(self) -> None:
        for subscriber in list(self._subscribers.values()):
            self.detach(subscriber)
            await subscriber.close()
