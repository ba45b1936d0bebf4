"""
In-process change feed.

Handlers publish a ``RowChange`` after committing a write; subscribers
(notification fan-out, websocket bridges, tests) receive it synchronously
and re-fetch whatever they display. A failing subscriber is logged and
does not affect the publisher or the other subscribers.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable

from coachdesk.core.timeutils import utcnow

logger = logging.getLogger(__name__)

INSERT = "insert"
UPDATE = "update"
DELETE = "delete"


@dataclass(frozen=True)
class RowChange:
    table: str
    action: str
    row_id: int
    audience: tuple[int, ...] = ()
    ts: float = field(default_factory=lambda: utcnow().timestamp())


Subscriber = Callable[[RowChange], None]


class EventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)

    def subscribe(self, table: str, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback`` for changes on ``table``; returns an unsubscribe function."""
        self._subscribers[table].append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers[table]:
                self._subscribers[table].remove(callback)

        return unsubscribe

    def publish(self, change: RowChange) -> None:
        logger.debug("Row change: %s %s #%s", change.action, change.table, change.row_id)
        for callback in list(self._subscribers.get(change.table, ())):
            try:
                callback(change)
            except Exception:
                logger.exception("Subscriber failed for %s change on %s", change.action, change.table)

    def clear(self) -> None:
        self._subscribers.clear()


bus = EventBus()


def emit(table: str, action: str, row_id: int, audience=()) -> None:
    bus.publish(RowChange(table=table, action=action, row_id=row_id, audience=tuple(audience)))
