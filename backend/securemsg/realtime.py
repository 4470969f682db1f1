"""
Change feed: pub/sub of row-level insert/update events.

Writers publish a ChangeEvent after their transaction commits; readers
subscribe by table plus an optional row filter and get whole-row snapshots.
Delivery is at-least-once from the reader's point of view, so consumers
upsert by identity (see securemsg.client.live.LiveList).
"""
import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event_type: str
    row: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"table": self.table, "type": self.event_type, "row": self.row}


class Subscription:
    """A scoped registration; release it with unsubscribe() or a with-block."""

    def __init__(
        self,
        feed: "ChangeFeed",
        table: str,
        callback: Callable[[ChangeEvent], Any],
        filters: Optional[Dict[str, Any]] = None,
        event_types: Optional[List[str]] = None,
        predicate: Optional[Callable[[dict], bool]] = None,
    ):
        self.feed = feed
        self.table = table
        self.callback = callback
        self.filters = dict(filters or {})
        self.event_types = set(event_types) if event_types else None
        self.predicate = predicate
        self.active = True

    def matches(self, event: ChangeEvent) -> bool:
        if not self.active or event.table != self.table:
            return False
        if self.event_types and event.event_type not in self.event_types:
            return False
        for key, expected in self.filters.items():
            if event.row.get(key) != expected:
                return False
        if self.predicate is not None and not self.predicate(event.row):
            return False
        return True

    async def deliver(self, event: ChangeEvent):
        result = self.callback(event)
        if inspect.isawaitable(result):
            await result

    def unsubscribe(self):
        if self.active:
            self.active = False
            self.feed.unsubscribe(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.unsubscribe()
        return False

    def __repr__(self):
        return f"<Subscription table={self.table} filters={self.filters} active={self.active}>"


class ChangeFeed(ABC):

    @abstractmethod
    def subscribe(
        self,
        table: str,
        callback: Callable[[ChangeEvent], Any],
        filters: Optional[Dict[str, Any]] = None,
        event_types: Optional[List[str]] = None,
        predicate: Optional[Callable[[dict], bool]] = None,
    ) -> Subscription:
        ...

    @abstractmethod
    def unsubscribe(self, subscription: Subscription) -> None:
        ...

    @abstractmethod
    async def publish(self, event: ChangeEvent) -> int:
        """Delivers the event to every matching subscription; returns how many got it."""


class InProcessChangeFeed(ChangeFeed):

    def __init__(self):
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(self, table, callback, filters=None, event_types=None, predicate=None) -> Subscription:
        sub = Subscription(self, table, callback, filters, event_types, predicate)
        self._subscriptions.setdefault(table, []).append(sub)
        logger.debug(f"[FEED] subscribe {sub!r}")
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.active = False
        subs = self._subscriptions.get(subscription.table, [])
        if subscription in subs:
            subs.remove(subscription)
            logger.debug(f"[FEED] unsubscribe {subscription!r}")
        if not subs:
            self._subscriptions.pop(subscription.table, None)

    def subscription_count(self, table: Optional[str] = None) -> int:
        if table is not None:
            return len(self._subscriptions.get(table, []))
        return sum(len(subs) for subs in self._subscriptions.values())

    async def publish(self, event: ChangeEvent) -> int:
        delivered = 0
        dead = []
        for sub in list(self._subscriptions.get(event.table, [])):
            try:
                if not sub.matches(event):
                    continue
                await sub.deliver(event)
                delivered += 1
            except Exception as exc:
                logger.warning(f"[FEED] dropping {sub!r} after callback failure: {exc}")
                dead.append(sub)
        for sub in dead:
            sub.unsubscribe()
        return delivered


feed = InProcessChangeFeed()


def row_snapshot(model) -> dict:
    """JSON-safe snapshot of a table row; the metadata column keeps its public name."""
    row = model.model_dump(mode="json")
    if "meta" in row:
        row["metadata"] = row.pop("meta")
    return row
