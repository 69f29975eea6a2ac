"""Backend collaborator consumed by the dashboard.

``BackendClient`` is the contract: row-scoped reads/writes on inspection
requests, directory listings, the tracking procedures, the admin role update
and a realtime subscription. ``LocalBackendClient`` satisfies it in-process
over the request store and realtime hub, opening one session per call.
"""

import logging
from typing import Any, Callable, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stazama.domain.enums import UserRole
from stazama.domain.schemas import (
    AgentOut,
    ClientOut,
    InspectionRequestInsert,
    TrackedOrderUpdate,
    UserWithRoleOut,
)
from stazama.services.permissions import Caller
from stazama.services.realtime_hub import Listener, RealtimeHub, realtime_hub
from stazama.services.request_store import (
    PermissionDeniedError,
    RequestStore,
    RowNotFoundError,
    StoreError,
)

logger = logging.getLogger(__name__)


class BackendError(Exception):
    """A backend call failed: network, authorization or constraint."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class Subscription(Protocol):
    def unsubscribe(self) -> None: ...


class BackendClient(Protocol):
    """Calls the dashboard makes. Every call runs as the bound caller."""

    caller: Caller

    async def list_requests(self, owner_id: Optional[str] = None) -> list[dict[str, Any]]: ...

    async def get_request(self, request_id: str) -> Optional[dict[str, Any]]: ...

    async def insert_request(self, data: InspectionRequestInsert) -> dict[str, Any]: ...

    async def update_request(self, request_id: str, patch: dict[str, Any]) -> dict[str, Any]: ...

    async def list_agents(self) -> list[dict[str, Any]]: ...

    async def list_clients(self) -> list[dict[str, Any]]: ...

    async def list_users(self) -> list[dict[str, Any]]: ...

    async def track_order_by_id(self, tracking_id: str) -> Optional[dict[str, Any]]: ...

    async def update_tracked_order(
        self, tracking_id: str, fields: TrackedOrderUpdate
    ) -> dict[str, Any]: ...

    async def cancel_tracked_order(self, tracking_id: str) -> dict[str, Any]: ...

    async def update_user_role(self, target_user_id: str, new_role: UserRole) -> dict[str, Any]: ...

    def subscribe(self, listener: Listener) -> Subscription: ...


class _HubSubscription:
    def __init__(self, hub: RealtimeHub, sub_id: int):
        self._hub = hub
        self._sub_id = sub_id

    def unsubscribe(self) -> None:
        self._hub.unsubscribe(self._sub_id)


def _status_for(exc: StoreError) -> int:
    if isinstance(exc, RowNotFoundError):
        return 404
    if isinstance(exc, PermissionDeniedError):
        return 403
    return 409


class LocalBackendClient:
    """In-process ``BackendClient`` over ``RequestStore`` and ``RealtimeHub``."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        caller: Caller,
        hub: Optional[RealtimeHub] = None,
    ):
        self._session_factory = session_factory
        self.caller = caller
        self.hub = hub or realtime_hub

    async def _run(self, operation: Callable[[RequestStore], Any]) -> Any:
        # Listeners may call back into the backend, so events go out after
        # the session is closed.
        async with self._session_factory() as db:
            store = RequestStore(db, self.hub, defer_events=True)
            try:
                result = await operation(store)
            except StoreError as e:
                raise BackendError(str(e), _status_for(e)) from e
            except SQLAlchemyError as e:
                logger.error("Backend call failed: %s", e)
                raise BackendError("Database error", 500) from e
        await store.publish_pending()
        return result

    async def list_requests(self, owner_id: Optional[str] = None) -> list[dict[str, Any]]:
        return await self._run(lambda store: store.list_requests(self.caller, owner_id))

    async def get_request(self, request_id: str) -> Optional[dict[str, Any]]:
        return await self._run(lambda store: store.get_request(self.caller, request_id))

    async def insert_request(self, data: InspectionRequestInsert) -> dict[str, Any]:
        return await self._run(lambda store: store.insert_request(self.caller, data))

    async def update_request(self, request_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        return await self._run(
            lambda store: store.update_request(self.caller, request_id, patch)
        )

    async def list_agents(self) -> list[dict[str, Any]]:
        async def op(store: RequestStore):
            profiles = await store.list_agents(self.caller)
            return [AgentOut.model_validate(p).model_dump() for p in profiles]

        return await self._run(op)

    async def list_clients(self) -> list[dict[str, Any]]:
        async def op(store: RequestStore):
            profiles = await store.list_clients(self.caller)
            return [ClientOut.model_validate(p).model_dump() for p in profiles]

        return await self._run(op)

    async def list_users(self) -> list[dict[str, Any]]:
        async def op(store: RequestStore):
            profiles = await store.list_users(self.caller)
            return [UserWithRoleOut.model_validate(p).model_dump() for p in profiles]

        return await self._run(op)

    async def track_order_by_id(self, tracking_id: str) -> Optional[dict[str, Any]]:
        return await self._run(lambda store: store.track_order_by_id(tracking_id))

    async def update_tracked_order(
        self, tracking_id: str, fields: TrackedOrderUpdate
    ) -> dict[str, Any]:
        return await self._run(lambda store: store.update_tracked_order(tracking_id, fields))

    async def cancel_tracked_order(self, tracking_id: str) -> dict[str, Any]:
        return await self._run(lambda store: store.cancel_tracked_order(tracking_id))

    async def update_user_role(self, target_user_id: str, new_role: UserRole) -> dict[str, Any]:
        async def op(store: RequestStore):
            profile = await store.update_user_role(self.caller, target_user_id, new_role)
            return UserWithRoleOut.model_validate(profile).model_dump()

        return await self._run(op)

    def subscribe(self, listener: Listener) -> Subscription:
        return _HubSubscription(self.hub, self.hub.subscribe(self.caller, listener))
