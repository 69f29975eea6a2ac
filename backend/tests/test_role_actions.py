"""Tests for RoleActions: permission gate, lifecycle guard, backend update, toast."""

from types import SimpleNamespace
from unittest.mock import AsyncMock

from stazama.dashboard.backend_client import BackendError, LocalBackendClient
from stazama.dashboard.data_sync import DashboardData
from stazama.dashboard.role_actions import RoleActions
from stazama.domain.enums import ChangeEvent, RequestStatus, UserRole
from stazama.services.permissions import Caller
from stazama.services.realtime_hub import ChangePayload

ADMIN = Caller("admin-1", UserRole.ADMIN)
AGENT = Caller("agent-1", UserRole.AGENT)
USER = Caller("user-1", UserRole.USER)


def _row(**fields) -> dict:
    row = {
        "id": "req-1",
        "tracking_id": "STZ-ABC-123",
        "customer_name": "Jane Banda",
        "whatsapp": "+265991234567",
        "store_name": "Game Stores",
        "store_location": "Area 3, Lilongwe",
        "product_details": "Samsung 55 inch television",
        "service_tier": "inspection",
        "service_fee": 7000,
        "status": "pending",
        "assigned_agent_id": None,
        "payment_received": False,
        "user_id": "user-1",
    }
    row.update(fields)
    return row


def _actions(caller: Caller, cache, **row_fields):
    backend = SimpleNamespace(
        caller=caller,
        get_request=AsyncMock(return_value=None),
        update_request=AsyncMock(return_value={}),
        update_user_role=AsyncMock(),
        list_agents=AsyncMock(return_value=[{"id": "agent-1"}, {"id": "agent-2"}]),
    )
    data = DashboardData(backend, cache=cache)
    data.replace_request(_row(**row_fields))
    return RoleActions(data), backend, data


# ---------------------------------------------------------------------------
# Status updates
# ---------------------------------------------------------------------------


class TestUpdateStatus:
    async def test_user_denied_without_backend_call(self, cache):
        actions, backend, _ = _actions(USER, cache)
        assert not await actions.update_status("req-1", "cancelled")
        assert actions.notifier.last.title == "Access Denied"
        backend.update_request.assert_not_awaited()

    async def test_unknown_status(self, cache):
        actions, backend, _ = _actions(ADMIN, cache)
        assert not await actions.update_status("req-1", "archived")
        assert actions.notifier.last.title == "Invalid Status"

    async def test_agent_starts_own_request(self, cache):
        actions, backend, data = _actions(AGENT, cache, status="assigned", assigned_agent_id="agent-1")
        assert await actions.update_status("req-1", RequestStatus.IN_PROGRESS)
        backend.update_request.assert_awaited_once_with(
            "req-1", {"status": RequestStatus.IN_PROGRESS}
        )
        assert data.find_request("req-1").status == RequestStatus.IN_PROGRESS
        assert actions.notifier.last.description == "Request status updated to In Progress"

    async def test_skipping_a_step_is_rejected(self, cache):
        actions, backend, _ = _actions(ADMIN, cache)
        assert not await actions.update_status("req-1", "in_progress")
        assert actions.notifier.last.title == "Action Not Allowed"
        backend.update_request.assert_not_awaited()

    async def test_admin_needs_an_agent_to_assign(self, cache):
        actions, backend, _ = _actions(ADMIN, cache)
        assert not await actions.update_status("req-1", "assigned")
        assert actions.notifier.last.description == "Select an agent to assign this request"

    async def test_agent_assigning_claims_for_self(self, cache):
        actions, backend, _ = _actions(AGENT, cache)
        assert await actions.update_status("req-1", "assigned")
        backend.update_request.assert_awaited_once_with(
            "req-1", {"assigned_agent_id": "agent-1", "status": RequestStatus.ASSIGNED}
        )

    async def test_in_progress_steps_back_to_assigned(self, cache):
        actions, backend, _ = _actions(
            AGENT, cache, status="in_progress", assigned_agent_id="agent-1"
        )
        assert await actions.update_status("req-1", "assigned")
        backend.update_request.assert_awaited_once_with(
            "req-1", {"assigned_agent_id": "agent-1", "status": RequestStatus.ASSIGNED}
        )

    async def test_completed_is_locked(self, cache):
        actions, _, _ = _actions(AGENT, cache, status="completed", assigned_agent_id="agent-1")
        assert not await actions.update_status("req-1", "cancelled")
        assert actions.notifier.last.title == "Request Already Completed"

    async def test_paid_tier_needs_payment_before_completion(self, cache):
        actions, _, _ = _actions(
            ADMIN, cache, status="in_progress", assigned_agent_id="agent-1",
            service_tier="full-service",
        )
        assert not await actions.complete_request("req-1")
        assert actions.notifier.last.title == "Payment Not Verified"

    async def test_backend_failure_keeps_local_copy(self, cache):
        actions, backend, data = _actions(AGENT, cache, status="assigned", assigned_agent_id="agent-1")
        backend.update_request.side_effect = BackendError("boom", 500)
        assert not await actions.update_status("req-1", "in_progress")
        assert actions.notifier.last.description == "Failed to update request status: boom"
        assert data.find_request("req-1").status == RequestStatus.ASSIGNED

    async def test_request_resolved_from_backend(self, cache):
        actions, backend, _ = _actions(ADMIN, cache)
        assert not await actions.cancel_request("missing")
        assert actions.notifier.last.description == "Request not found"
        backend.get_request.return_value = _row(id="req-2")
        assert await actions.cancel_request("req-2")
        backend.update_request.assert_awaited_once_with(
            "req-2", {"status": RequestStatus.CANCELLED}
        )


# ---------------------------------------------------------------------------
# Assignment
# ---------------------------------------------------------------------------


class TestAssignment:
    async def test_agent_cannot_assign_others(self, cache):
        actions, _, _ = _actions(AGENT, cache)
        assert not await actions.assign_agent("req-1", "agent-2")
        assert actions.notifier.last.description == "Only admins can assign agents"

    async def test_admin_assigns(self, cache):
        actions, backend, _ = _actions(ADMIN, cache)
        assert await actions.assign_agent("req-1", "agent-1")
        backend.list_agents.assert_awaited_once()
        backend.update_request.assert_awaited_once_with(
            "req-1", {"assigned_agent_id": "agent-1", "status": RequestStatus.ASSIGNED}
        )
        assert actions.notifier.last.title == "Agent Assigned"

    async def test_unknown_agent_rejected(self, cache):
        actions, backend, data = _actions(ADMIN, cache)
        data.agents = [{"id": "agent-1"}]
        assert not await actions.assign_agent("req-1", "ghost")
        backend.list_agents.assert_not_awaited()
        backend.update_request.assert_not_awaited()

    async def test_unknown_agent_rejected_before_directory_loaded(self, cache):
        actions, backend, data = _actions(ADMIN, cache)
        assert data.agents == []
        assert not await actions.assign_agent("req-1", "no-such-agent")
        backend.list_agents.assert_awaited_once()
        backend.update_request.assert_not_awaited()
        assert actions.notifier.last.title == "Action Not Allowed"
        assert data.find_request("req-1").status == RequestStatus.PENDING

    async def test_assignment_rejected_when_directory_fails(self, cache):
        actions, backend, _ = _actions(ADMIN, cache)
        backend.list_agents.side_effect = BackendError("Database error", 500)
        assert not await actions.assign_agent("req-1", "agent-1")
        backend.update_request.assert_not_awaited()

    async def test_agent_self_assigns_pending_request(self, cache):
        actions, backend, data = _actions(AGENT, cache)
        assert await actions.assign_self("req-1")
        backend.update_request.assert_awaited_once_with(
            "req-1", {"assigned_agent_id": "agent-1", "status": RequestStatus.ASSIGNED}
        )
        record = data.find_request("req-1")
        assert record.status == RequestStatus.ASSIGNED
        assert record.assigned_agent_id == "agent-1"
        assert actions.notifier.last.description == "You have been assigned to this request"

    async def test_self_assign_refused_when_taken(self, cache):
        actions, backend, _ = _actions(AGENT, cache, status="assigned", assigned_agent_id="agent-2")
        assert not await actions.assign_self("req-1")
        backend.update_request.assert_not_awaited()

    async def test_unassign_returns_to_pending(self, cache):
        actions, backend, _ = _actions(ADMIN, cache, status="assigned", assigned_agent_id="agent-1")
        assert await actions.assign_agent("req-1", None)
        backend.update_request.assert_awaited_once_with(
            "req-1", {"assigned_agent_id": None, "status": RequestStatus.PENDING}
        )
        assert actions.notifier.last.description == "Request unassigned"

    async def test_self_assign_requires_agent(self, cache):
        actions, _, _ = _actions(ADMIN, cache)
        assert not await actions.assign_self("req-1")
        assert actions.notifier.last.title == "Access Denied"

    async def test_revert_is_admin_only(self, cache):
        actions, _, _ = _actions(AGENT, cache, status="completed", assigned_agent_id="agent-1")
        assert not await actions.revert_request("req-1")
        assert actions.notifier.last.title == "Access Denied"

    async def test_revert_clears_payment_and_receipt(self, cache):
        actions, backend, data = _actions(
            ADMIN, cache, status="completed", assigned_agent_id="agent-1",
            payment_received=True, receipt_number="RCT-1",
        )
        assert await actions.revert_request("req-1")
        record = data.find_request("req-1")
        assert record.status == RequestStatus.PENDING
        assert record.assigned_agent_id is None
        assert record.receipt_number is None


# ---------------------------------------------------------------------------
# Payments and fees
# ---------------------------------------------------------------------------


class TestPayments:
    async def test_process_payment(self, cache):
        actions, backend, data = _actions(ADMIN, cache, status="in_progress", assigned_agent_id="agent-1")
        assert await actions.process_payment("req-1", "12000", "airtel-money")
        patch = backend.update_request.await_args.args[1]
        assert patch["payment_received"] is True
        assert patch["payment_method"] == "airtel-money"
        assert patch["service_fee"] == 12000.0
        assert patch["receipt_number"].startswith("RCT-")
        assert actions.notifier.last.description == "Payment of MWK 12,000.00 marked as received"

    async def test_process_payment_invalid_amount(self, cache):
        actions, backend, _ = _actions(ADMIN, cache)
        assert not await actions.process_payment("req-1", "lots", "cash")
        assert actions.notifier.last.title == "Invalid Amount"

    async def test_agent_cannot_process_payment(self, cache):
        actions, _, _ = _actions(AGENT, cache, status="assigned", assigned_agent_id="agent-1")
        assert not await actions.process_payment("req-1", 100, "cash")
        assert actions.notifier.last.title == "Access Denied"

    async def test_assigned_agent_marks_payment(self, cache):
        actions, backend, data = _actions(AGENT, cache, status="in_progress", assigned_agent_id="agent-1")
        assert await actions.mark_payment_received("req-1")
        record = data.find_request("req-1")
        assert record.payment_received is True
        assert actions.notifier.last.description.endswith(record.receipt_number)

    async def test_second_payment_rejected(self, cache):
        actions, backend, _ = _actions(
            ADMIN, cache, status="in_progress", assigned_agent_id="agent-1", payment_received=True
        )
        assert not await actions.mark_payment_received("req-1")
        assert actions.notifier.last.title == "Payment Already Received"
        backend.update_request.assert_not_awaited()

    async def test_user_cannot_mark_payment(self, cache):
        actions, _, _ = _actions(USER, cache)
        assert not await actions.mark_payment_received("req-1")
        assert actions.notifier.last.title == "Access Denied"

    async def test_update_fees_totals(self, cache):
        actions, backend, _ = _actions(ADMIN, cache)
        assert await actions.update_fees("req-1", "7000", "500", "Transport")
        backend.update_request.assert_awaited_once_with(
            "req-1", {"service_fee": 7500.0, "fee_notes": "Transport"}
        )
        assert actions.notifier.last.description == "Total amount updated to MWK 7,500.00"

    async def test_fees_locked_after_completion(self, cache):
        actions, backend, _ = _actions(ADMIN, cache, status="completed", assigned_agent_id="agent-1")
        assert not await actions.update_fees("req-1", 100)
        assert actions.notifier.last.title == "Request Already Completed"

    async def test_agent_cannot_update_fees(self, cache):
        actions, _, _ = _actions(AGENT, cache)
        assert not await actions.update_fees("req-1", 100)
        assert actions.notifier.last.description == "Only admins can update fees"


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


class TestUserRoles:
    async def test_update_role_patches_directory(self, cache):
        actions, backend, data = _actions(ADMIN, cache)
        data.users = [{"id": "u1", "role": "user"}, {"id": "u2", "role": "user"}]
        backend.update_user_role.return_value = {"id": "u1", "role": "agent"}
        assert await actions.update_user_role("u1", "agent")
        assert data.users == [{"id": "u1", "role": "agent"}, {"id": "u2", "role": "user"}]
        assert actions.notifier.last.description == "User role changed to agent"

    async def test_unknown_role(self, cache):
        actions, backend, _ = _actions(ADMIN, cache)
        assert not await actions.update_user_role("u1", "owner")
        backend.update_user_role.assert_not_awaited()

    async def test_agent_cannot_change_roles(self, cache):
        actions, _, _ = _actions(AGENT, cache)
        assert not await actions.update_user_role("u1", "admin")
        assert actions.notifier.last.title == "Access Denied"


# ---------------------------------------------------------------------------
# Full lifecycle against the in-process backend
# ---------------------------------------------------------------------------


class TestLifecycleEndToEnd:
    async def test_paid_request_from_pending_to_completed(
        self, session_factory, hub, cache, make_profile, make_request
    ):
        admin = await make_profile(UserRole.ADMIN)
        agent = await make_profile(UserRole.AGENT)
        request_id = await make_request(service_tier="inspection-payment")

        admin_data = DashboardData(LocalBackendClient(session_factory, admin, hub), cache=cache)
        await admin_data.fetch_agents()
        await admin_data.fetch_requests()
        admin_actions = RoleActions(admin_data)

        agent_data = DashboardData(LocalBackendClient(session_factory, agent, hub), cache=cache)
        agent_data.subscribe()
        await agent_data.fetch_requests()
        agent_actions = RoleActions(agent_data)

        assert await admin_actions.assign_agent(request_id, agent.user_id)
        assert await agent_actions.update_status(request_id, "in_progress")
        assert not await agent_actions.complete_request(request_id)
        assert await agent_actions.mark_payment_received(request_id)
        assert await agent_actions.complete_request(request_id)

        row = await LocalBackendClient(session_factory, admin, hub).get_request(request_id)
        assert row["status"] == "completed"
        assert row["payment_received"] is True
        assert row["receipt_number"].startswith("RCT-")
        agent_data.close()

    async def test_self_assign_then_identical_push_changes_nothing(
        self, session_factory, hub, cache, make_profile, make_request
    ):
        agent = await make_profile(UserRole.AGENT)
        request_id = await make_request()
        client = LocalBackendClient(session_factory, agent, hub)

        data = DashboardData(client, cache=cache)
        data.subscribe()
        await data.fetch_requests()
        actions = RoleActions(data)

        assert await actions.assign_self(request_id)
        record = data.find_request(request_id)
        assert record.status == RequestStatus.ASSIGNED
        assert record.assigned_agent_id == agent.user_id

        toasts = len(data.notifier.notifications)
        row = await client.get_request(request_id)
        await hub.publish(ChangePayload(event=ChangeEvent.UPDATE, new=row, old=row))

        assert data.find_request(request_id) == record
        assert len(data.notifier.notifications) == toasts
        data.close()
