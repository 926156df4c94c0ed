"""
Change Feed — row-level change notifications from the record store
===================================================================

Services publish a ChangeEvent after each committed insert/update/delete.
Consumers (websocket sessions, EntitlementMonitor, category lists)
subscribe with a table + predicate filter and receive events on their own
event loop. publish() may be called from any thread (sync route handlers
run in the threadpool).

The push channel is a convenience, not the source of truth: consumers
keep state in a LiveRecordSet, which applies events idempotently (last
event per key wins, stale sequence numbers are ignored) and can be
rebuilt from a full fetch with reconcile() after a reconnect or overflow.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000


class ChangeKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    kind: ChangeKind
    key: str
    row: Optional[Dict[str, Any]] = None
    old: Optional[Dict[str, Any]] = None
    owner_id: Optional[str] = None
    seq: int = 0


Predicate = Callable[[ChangeEvent], bool]


class FeedSubscription:
    """One consumer's queue of matching events. Async-iterable."""

    def __init__(
        self,
        feed: "ChangeFeed",
        table: Optional[str],
        predicate: Optional[Predicate],
        maxsize: int = DEFAULT_QUEUE_SIZE,
    ):
        self._feed = feed
        self.table = table
        self._predicate = predicate
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.overflowed = False
        self.closed = False

    def matches(self, event: ChangeEvent) -> bool:
        if self.table is not None and event.table != self.table:
            return False
        return self._predicate is None or self._predicate(event)

    def _put(self, event: ChangeEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            # Consumer must reconcile with a full fetch
            if not self.overflowed:
                logger.warning("Change feed subscriber overflowed on table %s", self.table)
            self.overflowed = True

    def deliver(self, event: ChangeEvent) -> bool:
        """Hand *event* to the subscriber's loop. False if that loop is gone."""
        try:
            self._loop.call_soon_threadsafe(self._put, event)
            return True
        except RuntimeError:
            return False

    async def get(self) -> ChangeEvent:
        return await self._queue.get()

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        if self.closed:
            raise StopAsyncIteration
        return await self.get()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._feed.unsubscribe(self)


class ChangeFeed:
    """In-process publish/subscribe hub for record-store changes."""

    def __init__(self) -> None:
        self._subscribers: List[FeedSubscription] = []
        self._lock = threading.Lock()
        self._counter = itertools.count(1)
        self._last_seq = 0

    @property
    def last_seq(self) -> int:
        return self._last_seq

    def subscribe(
        self,
        table: Optional[str] = None,
        predicate: Optional[Predicate] = None,
        maxsize: int = DEFAULT_QUEUE_SIZE,
    ) -> FeedSubscription:
        """Register a subscriber. Must be called from inside a running loop."""
        sub = FeedSubscription(self, table, predicate, maxsize=maxsize)
        with self._lock:
            self._subscribers.append(sub)
        logger.debug("Change feed subscribe table=%s (%d subscribers)", table, len(self._subscribers))
        return sub

    def unsubscribe(self, sub: FeedSubscription) -> None:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)
        sub.closed = True

    def publish(
        self,
        table: str,
        kind: ChangeKind,
        key: str,
        row: Optional[Dict[str, Any]] = None,
        old: Optional[Dict[str, Any]] = None,
        owner_id: Optional[str] = None,
    ) -> ChangeEvent:
        with self._lock:
            seq = next(self._counter)
            self._last_seq = seq
            subscribers = list(self._subscribers)

        event = ChangeEvent(
            table=table, kind=ChangeKind(kind), key=key,
            row=row, old=old, owner_id=owner_id, seq=seq,
        )
        dead = []
        for sub in subscribers:
            if sub.matches(event) and not sub.deliver(event):
                dead.append(sub)
        for sub in dead:
            logger.info("Dropping change feed subscriber on closed loop (table=%s)", sub.table)
            self.unsubscribe(sub)
        return event

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)


class LiveRecordSet:
    """Key → row mirror that tolerates duplicate, late and missed events."""

    def __init__(
        self,
        key: Callable[[Dict[str, Any]], str],
        loader: Callable[[], Iterable[Dict[str, Any]]],
    ):
        self._key = key
        self._loader = loader
        self._rows: Dict[str, Dict[str, Any]] = {}
        self._seqs: Dict[str, int] = {}
        self._floor = 0

    def reconcile(self, as_of_seq: int = 0) -> None:
        """Replace state with a full fetch.

        Pass the feed's ``last_seq`` read *before* the fetch: events up to
        that number are already reflected in the fetched rows.
        """
        rows = {self._key(row): row for row in self._loader()}
        self._rows = rows
        self._seqs = {}
        self._floor = as_of_seq
        logger.debug("LiveRecordSet reconciled: %d rows (as_of_seq=%d)", len(rows), as_of_seq)

    def apply(self, event: ChangeEvent) -> bool:
        """Apply *event*; returns False when it is stale or a duplicate."""
        if event.seq and event.seq <= max(self._floor, self._seqs.get(event.key, 0)):
            return False
        if event.kind == ChangeKind.DELETE:
            self._rows.pop(event.key, None)
        elif event.row is not None:
            self._rows[event.key] = dict(event.row)
        if event.seq:
            self._seqs[event.key] = event.seq
        return True

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        return self._rows.get(key)

    def keys(self):
        return self._rows.keys()

    def values(self):
        return self._rows.values()

    def __contains__(self, key: str) -> bool:
        return key in self._rows

    def __len__(self) -> int:
        return len(self._rows)


# Module-level singleton
change_feed = ChangeFeed()
