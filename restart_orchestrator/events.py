import asyncio
from dataclasses import dataclass
from typing import Optional

from .logger import get_logger
from .models import ErrorRecord, Stage


@dataclass(frozen=True)
class TransitionEvent:
    host_id: str
    old_stage: Stage
    new_stage: Stage
    timestamp: float
    error: Optional[ErrorRecord] = None

    @classmethod
    def from_transition(cls, host_id, change):
        return cls(host_id, change.old_stage, change.new_stage, change.timestamp, change.error)


class EventStream:
    """Push-only fan-out of host stage transitions.

    Sinks are plain callables invoked inline. They must not block; a sink that
    raises is logged and the rollout carries on.
    """

    def __init__(self, sinks=None):
        self.sinks = list(sinks or [])
        self.logger = get_logger("events")

    def subscribe(self, sink):
        self.sinks.append(sink)
        return sink

    def unsubscribe(self, sink):
        if sink in self.sinks:
            self.sinks.remove(sink)

    def publish(self, event):
        for sink in list(self.sinks):
            try:
                sink(event)
            except Exception:
                self.logger.exception(f"Event sink {sink!r} failed on {event.host_id}")

    def observer(self, host_id, change):
        """Adapter matching HostState.observer"""
        self.publish(TransitionEvent.from_transition(host_id, change))


class QueueSink:
    """Buffers events on an asyncio.Queue for an async consumer.

    When the queue is full the event is dropped and counted rather than
    making the rollout wait on the consumer.
    """

    def __init__(self, maxsize=1000):
        self.queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def __call__(self, event):
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1

    def drain(self):
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events


class LoggingSink:
    def __init__(self, name="transitions"):
        self.logger = get_logger(name)

    def __call__(self, event):
        suffix = f" ({event.error.kind}: {event.error.message})" if event.error else ""
        self.logger.debug(
            f"{event.host_id}: {event.old_stage.value} -> {event.new_stage.value}{suffix}"
        )
