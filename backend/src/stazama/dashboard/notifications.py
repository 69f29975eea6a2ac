"""User-facing toast notifications raised by dashboard actions."""

import logging
from collections import deque
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT = "default"
DESTRUCTIVE = "destructive"

MAX_NOTIFICATIONS = 100


@dataclass(frozen=True)
class Notification:
    title: str
    description: str = ""
    variant: str = DEFAULT


class Notifier:
    """Keeps the most recent toasts in order. Each toast is also logged."""

    def __init__(self, max_notifications: int = MAX_NOTIFICATIONS):
        self.notifications: deque[Notification] = deque(maxlen=max_notifications)

    def toast(self, title: str, description: str = "", variant: str = DEFAULT) -> Notification:
        notification = Notification(title=title, description=description, variant=variant)
        self.notifications.append(notification)
        if variant == DESTRUCTIVE:
            logger.warning("Toast [%s] %s", title, description)
        else:
            logger.info("Toast [%s] %s", title, description)
        return notification

    def error(self, description: str, title: str = "Error") -> Notification:
        return self.toast(title, description, DESTRUCTIVE)

    @property
    def last(self) -> Notification | None:
        return self.notifications[-1] if self.notifications else None

    def titles(self) -> list[str]:
        return [n.title for n in self.notifications]

    def clear(self) -> None:
        self.notifications.clear()
