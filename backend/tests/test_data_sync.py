"""Tests for DashboardData: role-scoped fetching, caching, patches and realtime."""

import asyncio

import pytest

from stazama.dashboard.backend_client import BackendError, LocalBackendClient
from stazama.dashboard.data_sync import DashboardData, DashboardStats
from stazama.domain.enums import ChangeEvent, DashboardTab, RequestStatus, UserRole
from stazama.domain.schemas import InspectionRequestRecord
from stazama.services.permissions import GUEST, Caller
from stazama.services.realtime_hub import ChangePayload


def _row(request_id: str, **fields) -> dict:
    row = {
        "id": request_id,
        "tracking_id": f"STZ-{request_id.upper()}-ABC",
        "customer_name": "Jane Banda",
        "whatsapp": "+265991234567",
        "store_name": "Game Stores",
        "store_location": "Area 3, Lilongwe",
        "product_details": "Samsung 55 inch television",
        "service_tier": "inspection",
        "service_fee": 7000,
        "status": "pending",
        "assigned_agent_id": None,
        "user_id": None,
    }
    row.update(fields)
    return row


class FakeBackend:
    """Records calls and serves canned rows."""

    def __init__(self, caller: Caller, rows=None):
        self.caller = caller
        self.rows = list(rows or [])
        self.calls: list[str] = []
        self.fail_with: BackendError | None = None
        self.listener = None
        self.unsubscribed = False
        self.gate: asyncio.Event | None = None

    async def list_requests(self, owner_id=None):
        self.calls.append("list_requests")
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with:
            raise self.fail_with
        return [dict(r) for r in self.rows]

    async def get_request(self, request_id):
        self.calls.append("get_request")
        return next((dict(r) for r in self.rows if r["id"] == request_id), None)

    async def list_users(self):
        self.calls.append("list_users")
        return [{"id": "u1", "role": "user"}]

    async def list_clients(self):
        self.calls.append("list_clients")
        return [{"id": "c1"}, {"id": "c2"}]

    async def list_agents(self):
        self.calls.append("list_agents")
        if self.fail_with:
            raise self.fail_with
        return [{"id": "agent-1", "full_name": "Ali Agent"}]

    def subscribe(self, listener):
        self.listener = listener
        backend = self

        class _Sub:
            def unsubscribe(self):
                backend.unsubscribed = True

        return _Sub()


ADMIN = Caller("admin-1", UserRole.ADMIN)
AGENT = Caller("agent-1", UserRole.AGENT)
USER = Caller("user-1", UserRole.USER)


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------


class TestStats:
    def test_counts(self):
        requests = [
            InspectionRequestRecord.model_validate(_row("a")),
            InspectionRequestRecord.model_validate(
                _row("b", status="assigned", assigned_agent_id="agent-1")
            ),
            InspectionRequestRecord.model_validate(
                _row("c", status="completed", assigned_agent_id="agent-1")
            ),
            InspectionRequestRecord.model_validate(_row("d", status="cancelled")),
        ]
        stats = DashboardStats.from_collections(requests, [{"id": "c1"}])
        assert stats.total_requests == 4
        assert stats.total_clients == 1
        assert stats.active_requests == 1
        assert stats.completed_requests == 1
        assert stats.cancelled_requests == 1
        assert stats.pending_requests == stats.unassigned_requests == 2

    def test_empty(self):
        assert DashboardStats.from_collections([], []) == DashboardStats()


# ---------------------------------------------------------------------------
# Fetching
# ---------------------------------------------------------------------------


class TestFetching:
    async def test_admin_fetches_all_requests(self, cache):
        backend = FakeBackend(ADMIN, [_row("a"), _row("b", user_id="someone")])
        data = DashboardData(backend, cache=cache)
        assert await data.fetch_requests()
        assert [r.id for r in data.requests] == ["a", "b"]

    async def test_user_rows_filtered_to_owner(self, cache):
        backend = FakeBackend(USER, [_row("a", user_id="user-1"), _row("b", user_id="other")])
        data = DashboardData(backend, cache=cache)
        await data.fetch_requests()
        assert [r.id for r in data.requests] == ["a"]

    async def test_guest_never_fetches(self, cache):
        backend = FakeBackend(GUEST, [_row("a")])
        data = DashboardData(backend, cache=cache)
        assert not await data.fetch_requests()
        assert backend.calls == []

    async def test_second_fetch_served_from_cache(self, cache):
        backend = FakeBackend(ADMIN, [_row("a")])
        data = DashboardData(backend, cache=cache)
        await data.fetch_requests()
        await data.fetch_requests()
        assert backend.calls == ["list_requests"]

    async def test_without_cache_always_fetches(self, cache):
        backend = FakeBackend(ADMIN, [_row("a")])
        data = DashboardData(backend, cache=cache, use_cache=False)
        await data.fetch_requests()
        await data.fetch_requests()
        assert backend.calls == ["list_requests", "list_requests"]

    async def test_failure_raises_toast(self, cache):
        backend = FakeBackend(ADMIN)
        backend.fail_with = BackendError("boom", 500)
        data = DashboardData(backend, cache=cache)
        assert not await data.fetch_requests()
        assert data.notifier.last.description == "Failed to load requests: boom"

    async def test_agent_fetch_failure_is_silent(self, cache):
        backend = FakeBackend(ADMIN)
        backend.fail_with = BackendError("boom", 500)
        data = DashboardData(backend, cache=cache)
        assert not await data.fetch_agents()
        assert not data.notifier.notifications

    @pytest.mark.parametrize(
        "caller, users, clients, agents",
        [
            (ADMIN, True, True, True),
            (AGENT, False, False, True),
            (USER, False, False, False),
        ],
    )
    async def test_directory_fetches_by_role(self, cache, caller, users, clients, agents):
        data = DashboardData(FakeBackend(caller), cache=cache)
        assert await data.fetch_users() is users
        assert await data.fetch_clients() is clients
        assert await data.fetch_agents() is agents

    async def test_concurrent_fetches_are_deduplicated(self, cache):
        backend = FakeBackend(ADMIN, [_row("a")])
        backend.gate = asyncio.Event()
        data = DashboardData(backend, cache=cache, use_cache=False)
        first = asyncio.create_task(data.fetch_requests())
        await asyncio.sleep(0)
        assert not await data.fetch_requests()
        backend.gate.set()
        assert await first
        assert backend.calls == ["list_requests"]

    async def test_load_for_tab_skips_loaded(self, cache):
        backend = FakeBackend(ADMIN, [_row("a")])
        data = DashboardData(backend, cache=cache, use_cache=False)
        await data.load_for_tab(DashboardTab.OVERVIEW)
        await data.load_for_tab(DashboardTab.REQUESTS)
        assert backend.calls == ["list_requests", "list_clients", "list_agents"]
        await data.load_for_tab(DashboardTab.REQUESTS, force=True)
        assert backend.calls[-2:] == ["list_requests", "list_agents"]

    async def test_result_discarded_after_close(self, cache):
        backend = FakeBackend(ADMIN, [_row("a")])
        backend.gate = asyncio.Event()
        data = DashboardData(backend, cache=cache, use_cache=False)
        task = asyncio.create_task(data.fetch_requests())
        await asyncio.sleep(0)
        data.close()
        backend.gate.set()
        assert not await task
        assert data.requests == []


# ---------------------------------------------------------------------------
# Local reconciliation
# ---------------------------------------------------------------------------


class TestReconciliation:
    async def test_apply_patch(self, cache):
        data = DashboardData(FakeBackend(ADMIN, [_row("a")]), cache=cache)
        await data.fetch_requests()
        changes = []
        data.add_listener(lambda: changes.append(True))
        patched = data.apply_patch("a", {"status": "assigned", "assigned_agent_id": "agent-1"})
        assert patched.status == RequestStatus.ASSIGNED
        assert data.find_request("a").assigned_agent_id == "agent-1"
        assert changes == [True]

    def test_apply_patch_unknown_id(self, cache):
        data = DashboardData(FakeBackend(ADMIN), cache=cache)
        assert data.apply_patch("missing", {"status": "assigned"}) is None

    async def test_refresh_request_replaces_row(self, cache):
        backend = FakeBackend(ADMIN, [_row("a")])
        data = DashboardData(backend, cache=cache)
        await data.fetch_requests()
        backend.rows = [_row("a", receipt_number="RCT-1")]
        record = await data.refresh_request("a")
        assert record.receipt_number == "RCT-1"
        assert data.find_request("a").receipt_number == "RCT-1"

    def test_failing_listener_is_contained(self, cache):
        data = DashboardData(FakeBackend(ADMIN), cache=cache)

        def broken():
            raise RuntimeError("listener bug")

        data.add_listener(broken)
        data.replace_request(_row("a"))
        assert data.find_request("a") is not None


# ---------------------------------------------------------------------------
# Realtime
# ---------------------------------------------------------------------------


class TestRealtime:
    async def test_insert_notifies_admin_and_refetches(self, cache):
        backend = FakeBackend(ADMIN, [])
        data = DashboardData(backend, cache=cache)
        data.subscribe()
        await data.fetch_requests()
        backend.rows = [_row("a", customer_name="Mike Phiri")]
        await backend.listener(ChangePayload(ChangeEvent.INSERT, backend.rows[0]))
        assert data.notifier.last.title == "New Request"
        assert data.notifier.last.description == "New inspection request from Mike Phiri"
        assert [r.id for r in data.requests] == ["a"]

    async def test_owner_notified_of_status_change(self, cache):
        backend = FakeBackend(USER, [_row("a", user_id="user-1", status="assigned")])
        data = DashboardData(backend, cache=cache)
        data.subscribe()
        await backend.listener(
            ChangePayload(
                ChangeEvent.UPDATE,
                _row("a", user_id="user-1", status="in_progress"),
                _row("a", user_id="user-1", status="assigned"),
            )
        )
        assert data.notifier.last.description == "Your request status changed to: In Progress"

    async def test_same_status_update_is_quiet(self, cache):
        backend = FakeBackend(USER, [])
        data = DashboardData(backend, cache=cache)
        data.subscribe()
        await backend.listener(
            ChangePayload(
                ChangeEvent.UPDATE,
                _row("a", user_id="user-1", payment_received=True),
                _row("a", user_id="user-1"),
            )
        )
        assert not data.notifier.notifications

    async def test_event_during_fetch_queues_one_refetch(self, cache):
        backend = FakeBackend(ADMIN, [])
        backend.gate = asyncio.Event()
        data = DashboardData(backend, cache=cache, use_cache=False)
        data.subscribe()
        task = asyncio.create_task(data.fetch_requests())
        await asyncio.sleep(0)
        backend.rows = [_row("a")]
        await backend.listener(ChangePayload(ChangeEvent.UPDATE, _row("a"), _row("a")))
        backend.gate.set()
        await task
        assert backend.calls == ["list_requests", "list_requests"]
        assert [r.id for r in data.requests] == ["a"]

    async def test_close_unsubscribes_and_ignores_events(self, cache):
        backend = FakeBackend(ADMIN, [_row("a")])
        data = DashboardData(backend, cache=cache)
        data.subscribe()
        listener = backend.listener
        data.close()
        assert backend.unsubscribed
        await listener(ChangePayload(ChangeEvent.INSERT, _row("a")))
        assert backend.calls == []
        assert not data.notifier.notifications


# ---------------------------------------------------------------------------
# In-process backend
# ---------------------------------------------------------------------------


class TestWithLocalBackend:
    async def test_agent_sees_admin_update_in_realtime(
        self, session_factory, hub, cache, make_profile, make_request
    ):
        admin = await make_profile(UserRole.ADMIN)
        agent = await make_profile(UserRole.AGENT)
        request_id = await make_request()

        data = DashboardData(LocalBackendClient(session_factory, agent, hub), cache=cache)
        data.subscribe()
        await data.fetch_requests()
        assert data.find_request(request_id).status == RequestStatus.PENDING

        admin_client = LocalBackendClient(session_factory, admin, hub)
        await admin_client.update_request(
            request_id, {"status": "assigned", "assigned_agent_id": agent.user_id}
        )
        record = data.find_request(request_id)
        assert record.status == RequestStatus.ASSIGNED
        assert record.assigned_agent_id == agent.user_id
        data.close()

    async def test_store_errors_become_backend_errors(self, session_factory, hub, make_profile):
        user = await make_profile(UserRole.USER)
        client = LocalBackendClient(session_factory, user, hub)
        with pytest.raises(BackendError) as exc_info:
            await client.list_users()
        assert exc_info.value.status_code == 403
