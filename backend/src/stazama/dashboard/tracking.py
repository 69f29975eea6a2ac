"""Account-free order tracking: look up, edit or cancel by tracking id."""

import logging
from typing import Optional

from stazama.dashboard.backend_client import BackendClient, BackendError
from stazama.dashboard.notifications import Notifier
from stazama.domain.enums import RequestStatus
from stazama.domain.schemas import InspectionRequestRecord, TrackedOrderUpdate
from stazama.services.request_state_machine import TERMINAL_STATES

logger = logging.getLogger(__name__)


class OrderTracker:
    """State of the tracking page for one visitor."""

    def __init__(self, backend: BackendClient, notifier: Optional[Notifier] = None):
        self.backend = backend
        self.notifier = notifier or Notifier()
        self.request: Optional[InspectionRequestRecord] = None

    @property
    def can_edit_or_cancel(self) -> bool:
        return self.request is not None and self.request.status not in TERMINAL_STATES

    async def lookup(self, tracking_id: str) -> Optional[InspectionRequestRecord]:
        tracking_id = tracking_id.strip()
        if not tracking_id:
            return None
        try:
            row = await self.backend.track_order_by_id(tracking_id)
        except BackendError as e:
            logger.error("Error tracking %s: %s", tracking_id, e)
            self.notifier.error("Failed to track request. Please try again.")
            return None

        if row is None:
            self.request = None
            self.notifier.error("No request found with this tracking ID.", title="Not Found")
            return None
        self.request = InspectionRequestRecord.model_validate(row)
        return self.request

    async def update(self, fields: TrackedOrderUpdate) -> bool:
        if not self.can_edit_or_cancel:
            self.notifier.error("This request can no longer be edited")
            return False
        try:
            row = await self.backend.update_tracked_order(self.request.tracking_id, fields)
        except BackendError as e:
            logger.error("Error updating tracked order %s: %s", self.request.tracking_id, e)
            self.notifier.error("Failed to update request. Please try again.")
            return False
        self.request = InspectionRequestRecord.model_validate(row)
        self.notifier.toast("Updated", "Your request has been updated successfully.")
        return True

    async def cancel(self) -> bool:
        if not self.can_edit_or_cancel:
            self.notifier.error("This request can no longer be cancelled")
            return False
        try:
            row = await self.backend.cancel_tracked_order(self.request.tracking_id)
        except BackendError as e:
            logger.error("Error cancelling tracked order %s: %s", self.request.tracking_id, e)
            self.notifier.error("Failed to cancel request. Please try again.")
            return False
        self.request = InspectionRequestRecord.model_validate(row)
        if self.request.status == RequestStatus.CANCELLED:
            self.notifier.toast("Request Cancelled", "Your request has been cancelled.")
        return True
