"""Per-job event fanout.

Every live subscriber owns a bounded queue. Publishing never blocks: a
subscriber whose queue is full is treated as a dead connection and pruned.
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field


logger = logging.getLogger(__name__)

JOB_CREATED = "job_created"
SNAPSHOT = "snapshot"
SEGMENT_UPLOADED = "segment_uploaded"
SEGMENT_TRANSCRIBING = "segment_transcribing"
SEGMENT_COMPLETED = "segment_completed"
SEGMENT_ERROR = "segment_error"
JOB_PROGRESS = "job_progress"
JOB_COMPLETED = "job_completed"


@dataclass(frozen=True)
class Event:
    name: str
    data: dict = field(default_factory=dict)

    def encode(self) -> str:
        return f"event: {self.name}\ndata: {json.dumps(self.data)}\n\n"


class Subscription:
    def __init__(self, registry: "SubscriberRegistry", job_id: str, maxsize: int):
        self.job_id = job_id
        self._registry = registry
        self._queue: asyncio.Queue[Event | None] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, event: Event) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def close(self):
        """End the stream once already queued events have been drained."""
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            pass
        self._registry.unsubscribe(self)

    async def next_event(self) -> Event | None:
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def __aiter__(self):
        return self

    async def __anext__(self) -> Event:
        event = await self.next_event()
        if event is None:
            raise StopAsyncIteration
        return event


class SubscriberRegistry:
    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscribers: dict[str, set[Subscription]] = {}

    def subscribe(self, job_id: str, snapshot: dict | None = None) -> Subscription:
        subscription = Subscription(self, job_id, self._queue_size)
        if snapshot is not None:
            subscription.deliver(Event(SNAPSHOT, snapshot))
        self._subscribers.setdefault(job_id, set()).add(subscription)
        logger.debug("Subscriber added to job %s (%d total)", job_id, self.count(job_id))
        return subscription

    def unsubscribe(self, subscription: Subscription):
        subscribers = self._subscribers.get(subscription.job_id)
        if not subscribers:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._subscribers[subscription.job_id]

    def publish(self, job_id: str, name: str, payload: dict) -> int:
        event = Event(name, payload)
        sent = 0
        for subscription in list(self._subscribers.get(job_id, ())):
            if subscription.deliver(event):
                sent += 1
            else:
                logger.warning("Pruning stalled subscriber of job %s", job_id)
                subscription.close()
        logger.debug("Event %s sent to %d subscribers of job %s", name, sent, job_id)
        return sent

    def close_job(self, job_id: str):
        for subscription in list(self._subscribers.get(job_id, ())):
            subscription.close()

    def count(self, job_id: str) -> int:
        return len(self._subscribers.get(job_id, ()))
