"""Tests for guest submission and account-free order tracking."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from stazama.dashboard.backend_client import BackendError, LocalBackendClient
from stazama.dashboard.notifications import Notifier
from stazama.dashboard.submission import submit_request
from stazama.dashboard.tracking import OrderTracker
from stazama.domain.enums import RequestStatus, ServiceTier, UserRole
from stazama.domain.schemas import InspectionRequestCreate, TrackedOrderUpdate
from stazama.services.permissions import GUEST


def _form(**overrides) -> InspectionRequestCreate:
    data = {
        "customer_name": "Jane Banda",
        "whatsapp": "+265991234567",
        "store_name": "Game Stores",
        "store_location": "Area 3, Lilongwe",
        "product_details": "Samsung 55 inch television, check the screen",
    }
    data.update(overrides)
    return InspectionRequestCreate(**data)


def _update() -> TrackedOrderUpdate:
    return TrackedOrderUpdate(
        customer_name="Jane B",
        whatsapp="+265888000111",
        store_name="Shoprite",
        store_location="City Centre, Lilongwe",
        product_details="Hisense fridge, check the compressor",
    )


class SlowBackend:
    caller = GUEST

    def __init__(self, delay: float):
        self.delay = delay
        self.inserted = []

    async def insert_request(self, data):
        await asyncio.sleep(self.delay)
        self.inserted.append(data)
        return data.model_dump()


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------


class TestSubmission:
    async def test_guest_submission_then_tracking(self, session_factory, hub):
        client = LocalBackendClient(session_factory, GUEST, hub)
        result = await submit_request(client, _form())

        assert result.success
        assert result.row["user_id"] is None
        assert result.row["status"] == "pending"
        assert result.row["service_fee"] == 7000
        assert result.row["tracking_id"] == result.tracking_id

        tracker = OrderTracker(client)
        record = await tracker.lookup(result.tracking_id)
        assert record.id == result.row["id"]
        assert tracker.can_edit_or_cancel

    @pytest.mark.parametrize(
        "tier, fee",
        [
            (ServiceTier.INSPECTION, 7000),
            (ServiceTier.INSPECTION_PAYMENT, 10000),
            (ServiceTier.FULL_SERVICE, 10000),
        ],
    )
    async def test_fee_follows_tier(self, tier, fee):
        backend = SlowBackend(0)
        result = await submit_request(backend, _form(service_tier=tier))
        assert result.success
        assert backend.inserted[0].service_fee == fee

    async def test_signed_in_user_owns_submission(self, session_factory, hub, make_profile):
        user = await make_profile(UserRole.USER)
        client = LocalBackendClient(session_factory, user, hub)
        result = await submit_request(client, _form())
        assert result.row["user_id"] == user.user_id

    async def test_timeout_keeps_insert_running(self):
        backend = SlowBackend(0.2)
        result = await submit_request(backend, _form(), timeout=0.01)
        assert not result.success
        assert result.error == "Insert operation timed out"
        assert result.tracking_id
        await asyncio.sleep(0.3)
        assert [d.tracking_id for d in backend.inserted] == [result.tracking_id]

    async def test_timeout_toast(self):
        notifier = Notifier()
        await submit_request(SlowBackend(0.05), _form(), notifier=notifier, timeout=0.001)
        await asyncio.sleep(0.1)
        assert notifier.last.description == "Failed to submit request: Insert operation timed out"

    async def test_backend_error(self):
        backend = SimpleNamespace(
            caller=GUEST,
            insert_request=AsyncMock(side_effect=BackendError("Database error", 500)),
        )
        notifier = Notifier()
        result = await submit_request(backend, _form(), notifier=notifier)
        assert not result.success
        assert result.tracking_id is None
        assert notifier.last.description == "Failed to submit request: Database error"

    def test_form_validation(self):
        with pytest.raises(ValueError):
            _form(whatsapp="call me")
        with pytest.raises(ValueError):
            _form(product_details="tv")


# ---------------------------------------------------------------------------
# Tracking
# ---------------------------------------------------------------------------


class TestTracking:
    async def test_unknown_tracking_id(self, session_factory, hub):
        tracker = OrderTracker(LocalBackendClient(session_factory, GUEST, hub))
        assert await tracker.lookup("STZ-NOPE-000000") is None
        assert tracker.notifier.last.title == "Not Found"

    async def test_blank_tracking_id_is_ignored(self, session_factory, hub):
        tracker = OrderTracker(LocalBackendClient(session_factory, GUEST, hub))
        assert await tracker.lookup("   ") is None
        assert not tracker.notifier.notifications

    async def test_edit_then_cancel(self, session_factory, hub, make_request):
        await make_request(tracking_id="STZ-EDIT-000001")
        tracker = OrderTracker(LocalBackendClient(session_factory, GUEST, hub))
        await tracker.lookup("STZ-EDIT-000001")

        assert await tracker.update(_update())
        assert tracker.request.store_name == "Shoprite"
        assert tracker.notifier.last.title == "Updated"

        assert await tracker.cancel()
        assert tracker.request.status == RequestStatus.CANCELLED
        assert tracker.notifier.last.title == "Request Cancelled"
        assert not tracker.can_edit_or_cancel

        assert not await tracker.update(_update())
        assert tracker.notifier.last.description == "This request can no longer be edited"

    async def test_cancelled_request_is_locked(self, session_factory, hub, make_request):
        await make_request(tracking_id="STZ-DONE-000001", status="cancelled")
        tracker = OrderTracker(LocalBackendClient(session_factory, GUEST, hub))
        await tracker.lookup("STZ-DONE-000001")
        assert not await tracker.cancel()
        assert tracker.notifier.last.description == "This request can no longer be cancelled"

    async def test_lookup_failure(self):
        backend = SimpleNamespace(
            track_order_by_id=AsyncMock(side_effect=BackendError("Database error", 500))
        )
        tracker = OrderTracker(backend)
        assert await tracker.lookup("STZ-ABC-123") is None
        assert tracker.notifier.last.description == "Failed to track request. Please try again."

    async def test_update_failure(self):
        backend = SimpleNamespace(
            track_order_by_id=AsyncMock(
                return_value={
                    "id": "req-1",
                    "tracking_id": "STZ-ABC-123",
                    "customer_name": "Jane Banda",
                    "whatsapp": "+265991234567",
                    "store_name": "Game Stores",
                    "store_location": "Area 3, Lilongwe",
                    "product_details": "Samsung 55 inch television",
                    "status": "pending",
                }
            ),
            update_tracked_order=AsyncMock(side_effect=BackendError("Request is completed", 409)),
        )
        tracker = OrderTracker(backend)
        await tracker.lookup("STZ-ABC-123")
        assert not await tracker.update(_update())
        assert tracker.notifier.last.description == "Failed to update request. Please try again."
