"""Row-scoped repository over inspection requests, profiles and roles.

Every read and write takes the ``Caller`` it runs under and applies the
row-level policy here, so routes and in-process clients share one rule set:

- admins and agents read every request; users read their own; guests none
- guests and users may insert; the row is owned by the caller (null for guests)
- admins write any request; agents write requests assigned to them, or claim
  an unassigned one for themselves; users never write directly
- tracking procedures work by tracking code without an account

Committed changes are published to the ``RealtimeHub``, immediately or, with
``defer_events``, when the owner calls ``publish_pending`` after the session
is closed.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from stazama.app.config import get_settings
from stazama.domain.enums import ChangeEvent, RequestStatus, UserRole
from stazama.domain.models import InspectionRequest, Profile, UserRoleAssignment
from stazama.domain.schemas import InspectionRequestInsert, RequestPatch, TrackedOrderUpdate
from stazama.services.auth_service import set_role
from stazama.services.permissions import Caller
from stazama.services.realtime_hub import ChangePayload, RealtimeHub, can_see_row, realtime_hub
from stazama.services.request_state_machine import request_state_machine

logger = logging.getLogger(__name__)

MUTABLE_FIELDS = frozenset(RequestPatch.model_fields)
FEE_FIELDS = frozenset({"service_fee", "fee_notes"})
RECEIPT_FIELDS = frozenset({"receipt_verification_code", "receipt_issued_at", "receipt_data"})
TRACKING_LOCKED_STATES = {RequestStatus.COMPLETED.value, RequestStatus.CANCELLED.value}


class StoreError(Exception):
    """Base class for repository failures."""


class RowNotFoundError(StoreError):
    pass


class PermissionDeniedError(StoreError):
    pass


class ConstraintViolationError(StoreError):
    pass


def row_to_dict(row: InspectionRequest) -> dict[str, Any]:
    data = {}
    for column in InspectionRequest.__table__.columns:
        value = getattr(row, column.name)
        if isinstance(value, Decimal):
            value = float(value)
        data[column.name] = value
    return data


def _plain(value: Any) -> Any:
    # Enums are stored by value
    return getattr(value, "value", value)


class RequestStore:
    """Repository bound to one session and one realtime hub."""

    def __init__(
        self,
        db: AsyncSession,
        hub: Optional[RealtimeHub] = None,
        defer_events: bool = False,
    ):
        self.db = db
        self.hub = hub or realtime_hub
        self.settings = get_settings()
        self.defer_events = defer_events
        self.pending_events: list[ChangePayload] = []

    async def _emit(self, payload: ChangePayload) -> None:
        if self.defer_events:
            self.pending_events.append(payload)
            return
        await self.hub.publish(payload)

    async def publish_pending(self) -> None:
        """Publish events held back while ``defer_events`` was set."""
        events, self.pending_events = self.pending_events, []
        for payload in events:
            await self.hub.publish(payload)

    # -- inspection requests: reads -------------------------------------------

    async def list_requests(
        self, caller: Caller, owner_id: Optional[str] = None
    ) -> list[dict[str, Any]]:
        """Requests visible to ``caller``, newest first."""
        if caller.is_guest:
            raise PermissionDeniedError("Sign in to view requests")

        query = select(InspectionRequest).order_by(InspectionRequest.created_at.desc())
        if not caller.permissions.can_view_all_requests:
            query = query.where(InspectionRequest.user_id == caller.user_id)
        if owner_id is not None:
            query = query.where(InspectionRequest.user_id == owner_id)

        result = await self.db.execute(query)
        return [row_to_dict(row) for row in result.scalars().all()]

    async def get_request(self, caller: Caller, request_id: str) -> Optional[dict[str, Any]]:
        row = await self._load(request_id)
        if row is None:
            return None
        data = row_to_dict(row)
        if not can_see_row(caller, data):
            return None
        return data

    async def _load(self, request_id: str) -> Optional[InspectionRequest]:
        result = await self.db.execute(
            select(InspectionRequest).where(InspectionRequest.id == request_id)
        )
        return result.scalar_one_or_none()

    async def _load_by_tracking_id(self, tracking_id: str) -> Optional[InspectionRequest]:
        result = await self.db.execute(
            select(InspectionRequest).where(InspectionRequest.tracking_id == tracking_id.strip())
        )
        return result.scalar_one_or_none()

    # -- inspection requests: writes ------------------------------------------

    async def insert_request(
        self, caller: Caller, data: InspectionRequestInsert
    ) -> dict[str, Any]:
        """Insert a new pending request owned by ``caller``."""
        if data.user_id is not None and data.user_id != caller.user_id:
            raise PermissionDeniedError("Requests can only be created for yourself")

        fee = data.service_fee
        if fee is None:
            fee = self.settings.service_fees.get(data.service_tier.value)

        row = InspectionRequest(
            tracking_id=data.tracking_id,
            customer_name=data.customer_name.strip(),
            whatsapp=data.whatsapp,
            customer_address=data.customer_address,
            store_name=data.store_name.strip(),
            store_location=data.store_location.strip(),
            product_details=data.product_details.strip(),
            service_tier=data.service_tier.value,
            service_fee=fee,
            delivery_notes=data.delivery_notes,
            payment_method=data.payment_method,
            status=RequestStatus.PENDING.value,
            user_id=caller.user_id,
        )
        self.db.add(row)
        await self.db.commit()
        await self.db.refresh(row)

        new = row_to_dict(row)
        logger.info("Inspection request %s created (tracking=%s)", row.id, row.tracking_id)
        await self._emit(ChangePayload(event=ChangeEvent.INSERT, new=new))
        return new

    async def update_request(
        self, caller: Caller, request_id: str, patch: dict[str, Any]
    ) -> dict[str, Any]:
        """Apply ``patch`` to one request under the write policy."""
        unknown = set(patch) - MUTABLE_FIELDS
        if unknown:
            raise ConstraintViolationError(f"Fields not writable: {', '.join(sorted(unknown))}")

        row = await self._load(request_id)
        if row is None or not can_see_row(caller, row_to_dict(row)):
            raise RowNotFoundError(f"Request {request_id} not found")

        self._check_write(caller, row, patch)
        if patch.get("assigned_agent_id") is not None:
            await self._check_agent(patch["assigned_agent_id"])
        old = row_to_dict(row)

        for field_name, value in patch.items():
            setattr(row, field_name, _plain(value))
        try:
            self._check_constraints(row)
        except ConstraintViolationError:
            await self.db.rollback()
            raise
        row.updated_at = datetime.now(timezone.utc)

        await self.db.commit()
        await self.db.refresh(row)

        new = row_to_dict(row)
        logger.info(
            "Inspection request %s updated by %s: %s",
            request_id, caller.user_id, ", ".join(sorted(patch)),
        )
        await self._emit(ChangePayload(event=ChangeEvent.UPDATE, new=new, old=old))
        return new

    def _check_write(self, caller: Caller, row: InspectionRequest, patch: dict[str, Any]) -> None:
        permissions = caller.permissions
        if permissions.can_assign_agents:
            return
        # Requesters may store receipt snapshots on their own rows.
        if set(patch) <= RECEIPT_FIELDS and caller.user_id and row.user_id == caller.user_id:
            return
        if not permissions.can_update_status:
            raise PermissionDeniedError("You cannot modify this request")
        if FEE_FIELDS & set(patch) and not permissions.can_manage_fees:
            raise PermissionDeniedError("Only admins can manage fees")

        if row.assigned_agent_id == caller.user_id:
            return
        claiming = (
            row.assigned_agent_id is None
            and row.status == RequestStatus.PENDING.value
            and patch.get("assigned_agent_id") == caller.user_id
            and permissions.can_assign_self
        )
        if not claiming:
            raise PermissionDeniedError("Only the assigned agent can modify this request")

    async def _check_agent(self, agent_id: str) -> None:
        result = await self.db.execute(
            select(UserRoleAssignment.role).where(UserRoleAssignment.user_id == agent_id)
        )
        if result.scalar_one_or_none() != UserRole.AGENT.value:
            raise ConstraintViolationError(f"User {agent_id} is not an agent")

    def _check_constraints(self, row: InspectionRequest) -> None:
        if not request_state_machine.check_invariants(row):
            raise ConstraintViolationError(
                f"Status {row.status} is inconsistent with the agent assignment"
            )
        if row.status == RequestStatus.COMPLETED.value and row.service_tier != "inspection":
            if not row.payment_received:
                raise ConstraintViolationError("Payment must be received before completion")

    # -- tracking procedures --------------------------------------------------

    async def track_order_by_id(self, tracking_id: str) -> Optional[dict[str, Any]]:
        row = await self._load_by_tracking_id(tracking_id)
        return row_to_dict(row) if row is not None else None

    async def update_tracked_order(
        self, tracking_id: str, fields: TrackedOrderUpdate
    ) -> dict[str, Any]:
        row = await self._load_by_tracking_id(tracking_id)
        if row is None:
            raise RowNotFoundError(f"No request with tracking id {tracking_id}")
        if row.status in TRACKING_LOCKED_STATES:
            raise ConstraintViolationError(f"Request is {row.status} and can no longer be edited")

        old = row_to_dict(row)
        for field_name, value in fields.model_dump().items():
            setattr(row, field_name, value)
        row.updated_at = datetime.now(timezone.utc)
        await self.db.commit()
        await self.db.refresh(row)

        new = row_to_dict(row)
        await self._emit(ChangePayload(event=ChangeEvent.UPDATE, new=new, old=old))
        return new

    async def cancel_tracked_order(self, tracking_id: str) -> dict[str, Any]:
        row = await self._load_by_tracking_id(tracking_id)
        if row is None:
            raise RowNotFoundError(f"No request with tracking id {tracking_id}")
        if row.status in TRACKING_LOCKED_STATES:
            raise ConstraintViolationError(f"Request is already {row.status}")

        old = row_to_dict(row)
        row.status = RequestStatus.CANCELLED.value
        row.updated_at = datetime.now(timezone.utc)
        await self.db.commit()
        await self.db.refresh(row)

        new = row_to_dict(row)
        logger.info("Tracked order %s cancelled by requester", tracking_id)
        await self._emit(ChangePayload(event=ChangeEvent.UPDATE, new=new, old=old))
        return new

    # -- profiles and roles ---------------------------------------------------

    async def _profiles_with_role(self, role: Optional[UserRole] = None) -> list[Profile]:
        query = select(Profile).order_by(Profile.created_at.desc())
        if role is UserRole.USER:
            query = query.outerjoin(UserRoleAssignment).where(
                (UserRoleAssignment.role == role.value) | (UserRoleAssignment.role.is_(None))
            )
        elif role is not None:
            query = query.join(UserRoleAssignment).where(UserRoleAssignment.role == role.value)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def list_agents(self, caller: Caller) -> list[Profile]:
        if not (caller.permissions.can_assign_agents or caller.permissions.can_assign_self):
            raise PermissionDeniedError("You cannot view agents")
        return await self._profiles_with_role(UserRole.AGENT)

    async def list_clients(self, caller: Caller) -> list[Profile]:
        if not caller.permissions.can_view_clients:
            raise PermissionDeniedError("You cannot view clients")
        return await self._profiles_with_role(UserRole.USER)

    async def list_users(self, caller: Caller) -> list[Profile]:
        if not caller.permissions.can_view_users:
            raise PermissionDeniedError("You cannot view users")
        return await self._profiles_with_role()

    async def update_user_role(
        self, caller: Caller, target_user_id: str, new_role: UserRole
    ) -> Profile:
        """Admin-only: replace the role held by ``target_user_id``."""
        if not caller.permissions.can_manage_roles:
            raise PermissionDeniedError("Only admins can change roles")
        result = await self.db.execute(select(Profile).where(Profile.id == target_user_id))
        profile = result.scalar_one_or_none()
        if profile is None:
            raise RowNotFoundError(f"User {target_user_id} not found")
        if target_user_id == caller.user_id and new_role is not UserRole.ADMIN:
            raise ConstraintViolationError("Admins cannot remove their own admin role")

        profile = await set_role(self.db, profile, new_role)
        logger.info("Role of %s set to %s by %s", target_user_id, new_role.value, caller.user_id)
        return profile
