"""Mutating dashboard actions.

Every action runs the same pipeline and returns a bool:

    permission gate -> lifecycle guard -> backend update by id
        -> local patch -> toast

Rejections (gate or guard) happen before any backend call and surface one
toast with a specific title. Backend failures surface one "Error" toast.
Nothing is retried.
"""

import logging
from typing import Any, Optional, Union

from stazama.dashboard.backend_client import BackendError
from stazama.dashboard.data_sync import DashboardData
from stazama.dashboard.notifications import DESTRUCTIVE, Notifier
from stazama.domain.enums import RequestAction, RequestStatus, UserRole
from stazama.domain.schemas import InspectionRequestRecord
from stazama.services.request_state_machine import (
    InvalidTransitionError,
    LifecycleError,
    RequestAlreadyCompletedError,
    RequestStateMachine,
    request_state_machine,
    resolve_status_action,
)

logger = logging.getLogger(__name__)


class RoleActions:
    """Role-gated request and user mutations for one dashboard session."""

    def __init__(
        self,
        data: DashboardData,
        notifier: Optional[Notifier] = None,
        state_machine: Optional[RequestStateMachine] = None,
    ):
        self.data = data
        self.backend = data.backend
        self.caller = data.caller
        self.permissions = data.permissions
        self.notifier = notifier or data.notifier
        self.state_machine = state_machine or request_state_machine

    # -- pipeline helpers ------------------------------------------------------

    def _deny(self, description: str) -> bool:
        self.notifier.toast("Access Denied", description, DESTRUCTIVE)
        return False

    def _reject(self, error: LifecycleError) -> bool:
        self.notifier.toast(error.title, error.reason, DESTRUCTIVE)
        return False

    async def _resolve(self, request_id: str) -> Optional[InspectionRequestRecord]:
        request = self.data.find_request(request_id)
        if request is not None:
            return request
        try:
            row = await self.backend.get_request(request_id)
        except BackendError as e:
            self.notifier.error(f"Failed to load request: {e.message}")
            return None
        if row is None:
            self.notifier.error("Request not found")
            return None
        return InspectionRequestRecord.model_validate(row)

    async def _commit(
        self,
        request_id: str,
        patch: dict[str, Any],
        success: tuple[str, str],
        failure: str,
    ) -> bool:
        try:
            await self.backend.update_request(request_id, patch)
        except BackendError as e:
            logger.error("%s (request %s): %s", failure, request_id, e)
            self.notifier.error(f"{failure}: {e.message}")
            return False

        self.data.apply_patch(request_id, patch)
        self.data.invalidate_requests()
        self.notifier.toast(*success)
        return True

    async def _transition(
        self,
        request_id: str,
        action: RequestAction,
        success: tuple[str, str],
        failure: str,
        agent_id: Optional[str] = None,
        agent_ids: Optional[list[str]] = None,
    ) -> bool:
        request = await self._resolve(request_id)
        if request is None:
            return False
        try:
            patch = self.state_machine.plan(
                request,
                action,
                self.caller,
                agent_id=agent_id,
                agent_ids=agent_ids,
            )
        except LifecycleError as e:
            return self._reject(e)
        return await self._commit(request_id, patch, success, failure)

    # -- lifecycle actions -----------------------------------------------------

    async def update_status(self, request_id: str, status: Union[RequestStatus, str]) -> bool:
        """Move a request to ``status`` through the matching lifecycle action."""
        if not self.permissions.can_update_status:
            return self._deny("You do not have permission to update request status")

        try:
            target = RequestStatus(status)
        except ValueError:
            self.notifier.toast("Invalid Status", f"Unknown status {status!r}", DESTRUCTIVE)
            return False
        request = await self._resolve(request_id)
        if request is None:
            return False

        action = resolve_status_action(request.status, target)
        if action == RequestAction.ASSIGN:
            if not self.permissions.can_assign_self:
                return self._reject(
                    InvalidTransitionError(
                        request.status, action, "Select an agent to assign this request"
                    )
                )
            action = RequestAction.SELF_ASSIGN

        return await self._transition(
            request_id,
            action,
            ("Status Updated", f"Request status updated to {target.label}"),
            "Failed to update request status",
            agent_id=request.assigned_agent_id if action == RequestAction.REASSIGN else None,
        )

    async def assign_agent(self, request_id: str, agent_id: Optional[str]) -> bool:
        """Assign, reassign or (with ``agent_id=None``) unassign a request."""
        if not self.permissions.can_assign_agents:
            return self._deny("Only admins can assign agents")

        request = await self._resolve(request_id)
        if request is None:
            return False

        if agent_id is None:
            action = RequestAction.UNASSIGN
        elif request.status == RequestStatus.PENDING:
            action = RequestAction.ASSIGN
        else:
            action = RequestAction.REASSIGN

        # Targets are checked against the agent directory.
        if agent_id is not None and not self.data.agents:
            await self.data.fetch_agents()

        description = "Request has been assigned to agent" if agent_id else "Request unassigned"
        return await self._transition(
            request_id,
            action,
            ("Agent Assigned", description),
            "Failed to assign agent",
            agent_id=agent_id,
            agent_ids=self.data.agent_ids,
        )

    async def assign_self(self, request_id: str) -> bool:
        if not self.permissions.can_assign_self or self.caller.user_id is None:
            return self._deny("Only agents can assign themselves to requests")
        return await self._transition(
            request_id,
            RequestAction.SELF_ASSIGN,
            ("Success", "You have been assigned to this request"),
            "Failed to assign yourself to this request",
        )

    async def complete_request(self, request_id: str) -> bool:
        return await self._transition(
            request_id,
            RequestAction.COMPLETE,
            ("Request Completed", "Request has been marked as completed"),
            "Failed to complete request",
        )

    async def cancel_request(self, request_id: str) -> bool:
        return await self._transition(
            request_id,
            RequestAction.CANCEL,
            ("Request Cancelled", "Request has been cancelled"),
            "Failed to cancel request",
        )

    async def revert_request(self, request_id: str) -> bool:
        """Admin escape hatch: completed back to pending, payment and receipt cleared."""
        if not self.permissions.can_assign_agents:
            return self._deny("Only admins can revert completed requests")
        return await self._transition(
            request_id,
            RequestAction.REVERT,
            ("Request Reverted", "Request has been reverted to pending"),
            "Failed to revert request",
        )

    # -- payments and fees -----------------------------------------------------

    async def process_payment(self, request_id: str, amount: Union[str, float], method: str) -> bool:
        """Record a payment of ``amount`` by ``method`` and issue a receipt."""
        if not self.permissions.can_process_payments:
            return self._deny("Only admins can process payments")
        try:
            value = float(amount)
        except (TypeError, ValueError):
            self.notifier.toast("Invalid Amount", f"{amount!r} is not a valid amount", DESTRUCTIVE)
            return False

        request = await self._resolve(request_id)
        if request is None:
            return False
        try:
            patch = self.state_machine.plan_payment(request, self.caller)
        except LifecycleError as e:
            return self._reject(e)

        patch.update({"payment_method": method, "service_fee": value})
        return await self._commit(
            request_id,
            patch,
            ("Payment Processed", f"Payment of MWK {value:,.2f} marked as received"),
            "Failed to process payment",
        )

    async def mark_payment_received(self, request_id: str) -> bool:
        """Mark payment received. Admins, or the agent assigned to the request."""
        if not (self.permissions.can_process_payments or self.permissions.can_update_status):
            return self._deny("You cannot mark payments as received")

        request = await self._resolve(request_id)
        if request is None:
            return False
        try:
            patch = self.state_machine.plan_payment(request, self.caller)
        except LifecycleError as e:
            return self._reject(e)

        return await self._commit(
            request_id,
            patch,
            (
                "Payment Marked",
                f"Payment has been marked as received. Receipt: {patch['receipt_number']}",
            ),
            "Failed to mark payment",
        )

    async def update_fees(
        self,
        request_id: str,
        fee_amount: Union[str, float],
        additional_fees: Union[str, float, None] = 0,
        fee_notes: str = "",
    ) -> bool:
        if not self.permissions.can_manage_fees:
            return self._deny("Only admins can update fees")
        try:
            total = float(fee_amount) + float(additional_fees or 0)
        except (TypeError, ValueError):
            self.notifier.toast("Invalid Amount", "Fees must be numbers", DESTRUCTIVE)
            return False

        request = await self._resolve(request_id)
        if request is None:
            return False
        if request.status == RequestStatus.COMPLETED:
            return self._reject(
                RequestAlreadyCompletedError(
                    request.status, RequestAction.COMPLETE, "This request has already been completed"
                )
            )

        return await self._commit(
            request_id,
            {"service_fee": total, "fee_notes": fee_notes},
            ("Fees Updated", f"Total amount updated to MWK {total:,.2f}"),
            "Failed to update fees",
        )

    # -- users -----------------------------------------------------------------

    async def update_user_role(self, target_user_id: str, new_role: Union[UserRole, str]) -> bool:
        if not self.permissions.can_manage_roles:
            return self._deny("Only admins can change user roles")
        try:
            role = UserRole(new_role)
        except ValueError:
            self.notifier.toast("Invalid Role", f"Unknown role {new_role!r}", DESTRUCTIVE)
            return False

        try:
            updated = await self.backend.update_user_role(target_user_id, role)
        except BackendError as e:
            logger.error("Failed to update role of %s: %s", target_user_id, e)
            self.notifier.error(f"Failed to update user role: {e.message}")
            return False

        self.data.users = [
            {**user, "role": updated.get("role", role)} if user.get("id") == target_user_id else user
            for user in self.data.users
        ]
        self.data.invalidate_directory()
        self.notifier.toast("Role Updated", f"User role changed to {role.value}")
        return True
