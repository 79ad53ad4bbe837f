"""Subscriber registry, fan-out channel and fixed-interval broadcast loop."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from ..errors import OptionDeskError

logger = logging.getLogger(__name__)

# Queued to a writer to make it close its socket
CLOSE = None


@dataclass(frozen=True, slots=True)
class Event:
    """One server → client message.

    ``topic=None`` goes to every connection. A topical event goes to
    connections subscribed to that topic, and also to connections with no
    subscriptions at all unless ``requires_subscription`` is set.
    """

    name: str
    data: Any
    topic: str | None = None
    requires_subscription: bool = False

    def to_message(self) -> dict:
        return {"event": self.name, "data": self.data}


@dataclass(eq=False, slots=True)
class Subscriber:
    """State of one connection. Only the hub mutates it; the connection drains ``queue``."""

    id: str
    queue: asyncio.Queue
    connected_at: float
    last_active: float
    symbols: set[str] = field(default_factory=set)

    def wants(self, event: Event) -> bool:
        if event.topic is None or event.topic in self.symbols:
            return True
        return not self.symbols and not event.requires_subscription


def normalize_symbols(symbols: Iterable[Any]) -> list[str]:
    return sorted({str(s).strip().upper() for s in symbols if str(s).strip()})


class SubscriberHub:
    """Registry of live connections and the channel the schedulers publish to.

    Each subscriber owns a bounded queue; when a slow client lets it fill up,
    the oldest queued message is dropped so a newer snapshot gets through.
    Everything runs on the event loop, so no locking is needed.
    """

    def __init__(self, queue_size: int = 100, clock: Callable[[], float] = time.time) -> None:
        self._subscribers: dict[str, Subscriber] = {}
        self._queue_size = queue_size
        self._clock = clock

    def connect(self, client_id: str | None = None) -> Subscriber:
        now = self._clock()
        sub = Subscriber(
            id=client_id or uuid.uuid4().hex,
            queue=asyncio.Queue(maxsize=self._queue_size),
            connected_at=now,
            last_active=now,
        )
        self._subscribers[sub.id] = sub
        logger.info("Client connected: %s (%d active)", sub.id, len(self._subscribers))
        return sub

    def disconnect(self, client_id: str) -> bool:
        removed = self._subscribers.pop(client_id, None) is not None
        if removed:
            logger.info("Client disconnected: %s (%d active)", client_id, len(self._subscribers))
        return removed

    def get(self, client_id: str) -> Subscriber | None:
        return self._subscribers.get(client_id)

    def touch(self, client_id: str) -> None:
        sub = self._subscribers.get(client_id)
        if sub is not None:
            sub.last_active = self._clock()

    def subscribe(self, client_id: str, symbols: Iterable[Any]) -> list[str]:
        added = normalize_symbols(symbols)
        sub = self._subscribers.get(client_id)
        if sub is not None:
            sub.symbols.update(added)
            logger.info("Client %s subscribed to: %s", client_id, ", ".join(added))
        return added

    def unsubscribe(self, client_id: str, symbols: Iterable[Any]) -> list[str]:
        removed = normalize_symbols(symbols)
        sub = self._subscribers.get(client_id)
        if sub is not None:
            sub.symbols.difference_update(removed)
            logger.info("Client %s unsubscribed from: %s", client_id, ", ".join(removed))
        return removed

    def topics(self) -> set[str]:
        """Union of every connection's subscriptions."""
        return {symbol for sub in self._subscribers.values() for symbol in sub.symbols}

    def idle(self, max_idle: float) -> list[Subscriber]:
        """Connections with no keep-alive for ``max_idle`` seconds."""
        cutoff = self._clock() - max_idle
        return [sub for sub in self._subscribers.values() if sub.last_active < cutoff]

    def reap_idle(self, max_idle: float) -> list[str]:
        """Drop connections silent for ``max_idle`` seconds and tell their writers to close."""
        reaped = []
        for sub in self.idle(max_idle):
            del self._subscribers[sub.id]
            self._offer(sub, CLOSE)
            reaped.append(sub.id)
        if reaped:
            logger.info("Reaped %d idle client(s): %s", len(reaped), ", ".join(reaped))
        return reaped

    def publish(self, event: Event) -> int:
        """Queue ``event`` for every interested connection. Returns the recipient count."""
        message = event.to_message()
        delivered = 0
        for sub in list(self._subscribers.values()):
            if sub.wants(event):
                self._offer(sub, message)
                delivered += 1
        return delivered

    def send(self, client_id: str, message: dict) -> bool:
        """Queue a direct reply to one connection."""
        sub = self._subscribers.get(client_id)
        if sub is None:
            return False
        self._offer(sub, message)
        return True

    @staticmethod
    def _offer(sub: Subscriber, message: dict | None) -> None:
        try:
            sub.queue.put_nowait(message)
        except asyncio.QueueFull:
            sub.queue.get_nowait()
            sub.queue.put_nowait(message)
            logger.debug("Client %s is lagging, dropped oldest message", sub.id)

    def __len__(self) -> int:
        return len(self._subscribers)

    def __contains__(self, client_id: str) -> bool:
        return client_id in self._subscribers


Producer = Callable[[set[str]], Awaitable[list[Event]]]


class BroadcastScheduler:
    """Polls upstream once per interval and fans the result out to every connection.

    With zero connections a tick makes no upstream call at all. A failed
    cycle is logged and the loop simply waits for the next tick. On-demand
    client requests never go through here, so they don't move the timer.
    With ``max_idle`` set, each tick first reaps connections silent that long.
    """

    def __init__(
        self,
        hub: SubscriberHub,
        produce: Producer,
        interval: float,
        name: str = "broadcast",
        cycle_timeout: float | None = None,
        max_idle: float | None = None,
    ) -> None:
        self._hub = hub
        self._produce = produce
        self._interval = interval
        self._name = name
        self._cycle_timeout = cycle_timeout
        self._max_idle = max_idle
        self._task: asyncio.Task | None = None
        self.cycles = 0
        self.failures = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run_loop(), name=f"{self._name}-scheduler")
        logger.info("%s scheduler started: %.1fs interval", self._name, self._interval)

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("%s scheduler stopped", self._name)

    async def tick(self) -> int:
        """Run one cycle now. Returns how many deliveries were queued."""
        if self._max_idle:
            self._hub.reap_idle(self._max_idle)
        if len(self._hub) == 0:
            logger.debug("%s: no subscribers, skipping upstream call", self._name)
            return 0
        produce = self._produce(self._hub.topics())
        if self._cycle_timeout is not None:
            events = await asyncio.wait_for(produce, timeout=self._cycle_timeout)
        else:
            events = await produce
        self.cycles += 1
        return sum(self._hub.publish(event) for event in events)

    async def _run_loop(self) -> None:
        loop = asyncio.get_running_loop()
        next_at = loop.time() + self._interval
        while True:
            await asyncio.sleep(max(0.0, next_at - loop.time()))
            try:
                await self.tick()
            except (OptionDeskError, asyncio.TimeoutError) as e:
                self.failures += 1
                logger.error("%s cycle failed: %s", self._name, str(e) or type(e).__name__)
            except Exception:
                self.failures += 1
                logger.exception("%s cycle failed", self._name)
            next_at += self._interval
            if next_at <= loop.time():
                # Slow cycle: skip the missed ticks instead of bunching them up
                next_at = loop.time() + self._interval
