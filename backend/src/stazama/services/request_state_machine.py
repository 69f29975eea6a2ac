"""Inspection request state machine: validates actions and plans field patches.

Statuses move pending -> assigned -> in_progress -> completed, with cancelled
reachable from any non-terminal status and an admin-only revert from
completed back to pending. Assignment and status are coupled: assigning
always forces ``assigned`` and unassigning always forces ``pending``.
"""

import secrets
import string
import time
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from stazama.domain.enums import RequestAction, RequestStatus, ServiceTier
from stazama.services.permissions import Caller

_BASE36 = string.digits + string.ascii_uppercase


class LifecycleError(Exception):
    """Business-rule violation, rejected before any backend call."""

    title = "Action Not Allowed"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class InvalidTransitionError(LifecycleError):
    """Raised when a lifecycle action is not allowed from the current status."""

    def __init__(
        self,
        current_status: RequestStatus,
        action: RequestAction,
        reason: str,
    ):
        self.current_status = current_status
        self.action = action
        super().__init__(
            f"Cannot {action.value} a request in status {current_status.value}: {reason}"
        )
        self.reason = reason


class RequestAlreadyCompletedError(InvalidTransitionError):
    title = "Request Already Completed"


class PaymentNotVerifiedError(InvalidTransitionError):
    title = "Payment Not Verified"


class PaymentAlreadyReceivedError(LifecycleError):
    title = "Payment Already Received"


class AccessDeniedError(LifecycleError):
    title = "Access Denied"


# ---------------------------------------------------------------------------
# Transition map: action -> (allowed source statuses, target status)
# ---------------------------------------------------------------------------

S = RequestStatus
A = RequestAction

TERMINAL_STATES: set[RequestStatus] = {S.COMPLETED, S.CANCELLED}

CANCELLABLE_STATES: set[RequestStatus] = {
    s for s in RequestStatus if s not in TERMINAL_STATES
}

# Statuses that must carry an assigned agent. Cancelled is exempt: a pending
# request may be cancelled before anyone picks it up.
AGENT_REQUIRED_STATES: set[RequestStatus] = {S.ASSIGNED, S.IN_PROGRESS, S.COMPLETED}

TRANSITION_MAP: dict[RequestAction, tuple[set[RequestStatus], RequestStatus]] = {
    A.ASSIGN: ({S.PENDING}, S.ASSIGNED),
    A.SELF_ASSIGN: ({S.PENDING}, S.ASSIGNED),
    A.UNASSIGN: ({S.PENDING, S.ASSIGNED, S.IN_PROGRESS}, S.PENDING),
    A.REASSIGN: ({S.ASSIGNED, S.IN_PROGRESS}, S.ASSIGNED),
    A.START: ({S.ASSIGNED}, S.IN_PROGRESS),
    A.COMPLETE: ({S.IN_PROGRESS}, S.COMPLETED),
    A.CANCEL: (CANCELLABLE_STATES, S.CANCELLED),
    A.REVERT: ({S.COMPLETED}, S.PENDING),
}

# Fields cleared by the admin revert from completed
REVERT_CLEARED_FIELDS = (
    "assigned_agent_id",
    "payment_received",
    "receipt_number",
    "receipt_issued_at",
    "receipt_verification_code",
)


def _status_of(request) -> RequestStatus:
    status = request.status
    if isinstance(status, str) and not isinstance(status, RequestStatus):
        status = RequestStatus(status)
    return status


def _tier_of(request) -> ServiceTier:
    tier = getattr(request, "service_tier", None) or ServiceTier.INSPECTION
    if isinstance(tier, str) and not isinstance(tier, ServiceTier):
        tier = ServiceTier(tier)
    return tier


def _base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def _now_ms() -> int:
    return int(time.time() * 1000)


def generate_tracking_id(now_ms: Optional[int] = None) -> str:
    """Public tracking code: ``STZ-<base36 ms timestamp>-<9 random base36 chars>``."""
    stamp = _base36(now_ms if now_ms is not None else _now_ms())
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"STZ-{stamp}-{suffix}"


def generate_receipt_number(now_ms: Optional[int] = None) -> str:
    return f"RCT-{now_ms if now_ms is not None else _now_ms()}"


def generate_verification_code() -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(8))


def resolve_status_action(
    current_status: RequestStatus, target_status: RequestStatus
) -> RequestAction:
    """Map a free-form status change (modal dropdown) onto a lifecycle action."""
    if target_status == S.CANCELLED:
        return A.CANCEL
    if target_status == S.COMPLETED:
        return A.COMPLETE
    if target_status == S.IN_PROGRESS:
        return A.START
    if target_status == S.PENDING:
        return A.REVERT if current_status == S.COMPLETED else A.UNASSIGN
    if target_status == S.ASSIGNED and current_status != S.PENDING:
        return A.REASSIGN
    return A.ASSIGN


class RequestStateMachine:
    """Validates request lifecycle actions and enforces business rules."""

    def validate(
        self,
        request,
        action: RequestAction,
        caller: Caller,
        agent_id: Optional[str] = None,
        agent_ids: Optional[Iterable[str]] = None,
    ) -> bool:
        """Return True if ``caller`` may apply ``action``. Raise a LifecycleError if not.

        Checks, in order:
        1. Completed requests accept nothing but the admin revert.
        2. The action is allowed from the current status.
        3. The caller holds the capability (or is the assigned agent).
        4. Action-specific guards: target agent, payment for paid tiers.
        """
        current = _status_of(request)
        permissions = caller.permissions
        assigned = getattr(request, "assigned_agent_id", None)
        is_assigned_agent = caller.user_id is not None and assigned == caller.user_id

        if current == S.COMPLETED and action != A.REVERT:
            raise RequestAlreadyCompletedError(
                current, action, "This request has already been completed"
            )

        sources, _ = TRANSITION_MAP[action]
        if current not in sources:
            raise InvalidTransitionError(
                current, action, f"Not allowed from {current.value}"
            )

        if action in (A.ASSIGN, A.UNASSIGN, A.REVERT):
            if not permissions.can_assign_agents:
                raise AccessDeniedError("Only admins can assign agents")
        elif action == A.SELF_ASSIGN:
            if not permissions.can_assign_self or caller.user_id is None:
                raise AccessDeniedError("Only agents can assign themselves to requests")
            agent_id = caller.user_id
        elif action == A.REASSIGN:
            if not (permissions.can_assign_agents or is_assigned_agent):
                raise AccessDeniedError(
                    "Only admins or the assigned agent can reassign this request"
                )
        else:
            if not permissions.can_update_status:
                raise AccessDeniedError("You cannot update request status")
            if not (permissions.can_assign_agents or is_assigned_agent):
                raise AccessDeniedError("Only the assigned agent can update this request")

        if action in (A.ASSIGN, A.SELF_ASSIGN) and assigned:
            raise InvalidTransitionError(current, action, "Request is already assigned")

        if action in (A.ASSIGN, A.REASSIGN) and agent_id is not None:
            if agent_ids is not None and agent_id not in set(agent_ids):
                raise InvalidTransitionError(current, action, f"Unknown agent {agent_id}")
            if action == A.REASSIGN and current == S.ASSIGNED and agent_id == assigned:
                raise InvalidTransitionError(
                    current, action, "Request is already assigned to this agent"
                )

        if action == A.COMPLETE:
            if _tier_of(request).requires_payment and not getattr(
                request, "payment_received", False
            ):
                raise PaymentNotVerifiedError(
                    current,
                    action,
                    "Payment must be received before completing this request",
                )

        return True

    def plan(
        self,
        request,
        action: RequestAction,
        caller: Caller,
        agent_id: Optional[str] = None,
        agent_ids: Optional[Iterable[str]] = None,
    ) -> dict[str, Any]:
        """Validate ``action`` and return the column patch that applies it."""
        self.validate(request, action, caller, agent_id=agent_id, agent_ids=agent_ids)
        _, target = TRANSITION_MAP[action]

        if action == A.SELF_ASSIGN:
            return {"assigned_agent_id": caller.user_id, "status": target}
        if action in (A.ASSIGN, A.REASSIGN):
            if not agent_id:
                raise InvalidTransitionError(
                    _status_of(request), action, "An agent must be selected"
                )
            return {"assigned_agent_id": agent_id, "status": target}
        if action == A.UNASSIGN:
            return {"assigned_agent_id": None, "status": target}
        if action == A.REVERT:
            patch: dict[str, Any] = {field: None for field in REVERT_CLEARED_FIELDS}
            patch["status"] = target
            return patch
        return {"status": target}

    def plan_payment(
        self,
        request,
        caller: Caller,
        now_ms: Optional[int] = None,
    ) -> dict[str, Any]:
        """Patch that marks payment received and issues a receipt.

        Only the unpaid -> paid edge issues a receipt; a second attempt is
        rejected so exactly one receipt number is ever generated.
        """
        current = _status_of(request)
        permissions = caller.permissions
        assigned = getattr(request, "assigned_agent_id", None)
        is_assigned_agent = caller.user_id is not None and assigned == caller.user_id

        if not (permissions.can_process_payments or is_assigned_agent):
            raise AccessDeniedError("Only admins or the assigned agent can record payments")
        if current == S.COMPLETED:
            raise RequestAlreadyCompletedError(
                current, A.COMPLETE, "This request has already been completed"
            )
        if current == S.CANCELLED:
            raise InvalidTransitionError(current, A.CANCEL, "Request has been cancelled")
        if getattr(request, "payment_received", False):
            raise PaymentAlreadyReceivedError("Payment has already been marked as received")

        now_ms = now_ms if now_ms is not None else _now_ms()
        return {
            "payment_received": True,
            "receipt_number": generate_receipt_number(now_ms),
            "receipt_verification_code": generate_verification_code(),
            "receipt_issued_at": datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc),
        }

    def get_allowed_actions(self, request, caller: Caller) -> list[RequestAction]:
        """Actions ``caller`` could take on ``request`` right now."""
        allowed = []
        for action in RequestAction:
            try:
                self.validate(request, action, caller)
            except LifecycleError:
                continue
            allowed.append(action)
        return allowed

    def check_invariants(self, request) -> bool:
        """Return True if the agent/status coupling holds for ``request``."""
        status = _status_of(request)
        assigned = getattr(request, "assigned_agent_id", None)
        if status == S.PENDING:
            return assigned is None
        if status in AGENT_REQUIRED_STATES:
            return assigned is not None
        return True


request_state_machine = RequestStateMachine()
