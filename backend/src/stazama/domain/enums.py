"""Domain enumerations for Stazama.

All enums use the (str, Enum) pattern to ensure JSON serialization compatibility.
"""

import logging
from enum import Enum

logger = logging.getLogger(__name__)


class UserRole(str, Enum):
    """Role held by a platform account. Exactly one per user."""

    ADMIN = "admin"
    AGENT = "agent"
    USER = "user"

    @classmethod
    def parse(cls, value) -> "UserRole":
        """Parse a raw role value, defaulting unknown values to USER."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            logger.warning("Unrecognized role %r, treating as 'user'", value)
            return cls.USER


class RequestStatus(str, Enum):
    """Lifecycle status of an inspection request."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def label(self) -> str:
        return _STATUS_LABELS[self]


_STATUS_LABELS = {
    RequestStatus.PENDING: "Pending",
    RequestStatus.ASSIGNED: "Assigned",
    RequestStatus.IN_PROGRESS: "In Progress",
    RequestStatus.COMPLETED: "Completed",
    RequestStatus.CANCELLED: "Cancelled",
}


class ServiceTier(str, Enum):
    """Service level chosen by the customer at submission."""

    INSPECTION = "inspection"
    INSPECTION_PAYMENT = "inspection-payment"
    FULL_SERVICE = "full-service"

    @property
    def label(self) -> str:
        return _TIER_LABELS[self]

    @property
    def requires_payment(self) -> bool:
        """Whether payment must be received before the request can complete."""
        return self is not ServiceTier.INSPECTION


_TIER_LABELS = {
    ServiceTier.INSPECTION: "Inspection Only",
    ServiceTier.INSPECTION_PAYMENT: "Inspection + Payment",
    ServiceTier.FULL_SERVICE: "Full Service",
}


class RequestAction(str, Enum):
    """Lifecycle actions that move a request between statuses."""

    ASSIGN = "assign"
    SELF_ASSIGN = "self_assign"
    UNASSIGN = "unassign"
    REASSIGN = "reassign"
    START = "start"
    COMPLETE = "complete"
    CANCEL = "cancel"
    REVERT = "revert"


class ChangeEvent(str, Enum):
    """Row change events delivered on the realtime channel."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"


class RequestFilter(str, Enum):
    """Dashboard request list filters."""

    ALL = "all"
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DashboardTab(str, Enum):
    """Top-level dashboard tabs."""

    OVERVIEW = "overview"
    REQUESTS = "requests"
    MY_REQUESTS = "my-requests"
    AVAILABLE = "available"
    CLIENTS = "clients"
    USERS = "users"
    AGENTS = "agents"
    PROFILE = "profile"


class ModalTab(str, Enum):
    """Tabs inside the request detail modal."""

    DETAILS = "details"
    ACTIONS = "actions"
    PAYMENT = "payment"


class ViewMode(str, Enum):
    """Request list layout."""

    TABLE = "table"
    CARDS = "cards"


class ReceiptFormat(str, Enum):
    """Downloadable receipt formats."""

    PDF = "pdf"
    JSON = "json"
