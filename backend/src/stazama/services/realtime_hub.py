"""In-process fan-out of ``inspection_requests`` row changes.

Subscribers register under a caller identity and only receive changes to rows
that identity may read: admins and agents see every row, users see rows they
own, guests see nothing. The WebSocket route and ``LocalBackendClient`` both
subscribe here.
"""

import inspect
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from stazama.domain.enums import ChangeEvent
from stazama.services.permissions import Caller

logger = logging.getLogger(__name__)

REQUESTS_TABLE = "inspection_requests"


@dataclass
class ChangePayload:
    """A row change: ``new`` snapshot always, ``old`` for updates."""

    event: ChangeEvent
    new: dict[str, Any]
    old: Optional[dict[str, Any]] = None
    table: str = REQUESTS_TABLE

    def as_dict(self) -> dict[str, Any]:
        return {
            "eventType": self.event.value,
            "table": self.table,
            "new": self.new,
            "old": self.old,
        }


Listener = Callable[[ChangePayload], Union[None, Awaitable[None]]]


@dataclass
class _Subscriber:
    caller: Caller
    listener: Listener
    table: str = REQUESTS_TABLE


def can_see_row(caller: Caller, row: dict[str, Any]) -> bool:
    """Row-level read policy for ``inspection_requests``."""
    if caller.permissions.can_view_all_requests:
        return True
    return caller.user_id is not None and row.get("user_id") == caller.user_id


class RealtimeHub:
    """Subscribers keyed by id, each filtered by its caller's read policy."""

    def __init__(self):
        self._subscribers: dict[int, _Subscriber] = {}
        self._ids = itertools.count(1)

    def subscribe(
        self, caller: Caller, listener: Listener, table: str = REQUESTS_TABLE
    ) -> int:
        """Register ``listener``; returns an id for ``unsubscribe``."""
        sub_id = next(self._ids)
        self._subscribers[sub_id] = _Subscriber(caller=caller, listener=listener, table=table)
        logger.debug("Realtime subscribe #%d user=%s role=%s", sub_id, caller.user_id, caller.role)
        return sub_id

    def unsubscribe(self, sub_id: int) -> None:
        self._subscribers.pop(sub_id, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, payload: ChangePayload) -> int:
        """Deliver ``payload`` to every subscriber allowed to see it.

        Listener failures are logged and do not stop delivery to others.
        Returns the number of listeners notified.
        """
        delivered = 0
        for sub_id, sub in list(self._subscribers.items()):
            if sub.table != payload.table or not can_see_row(sub.caller, payload.new):
                continue
            try:
                result = sub.listener(payload)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as e:
                logger.warning("Realtime listener #%d failed: %s", sub_id, e)
        return delivered

    def clear(self) -> None:
        self._subscribers.clear()


realtime_hub = RealtimeHub()
