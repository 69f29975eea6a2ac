"""Role-scoped dashboard collections with optimistic patches and realtime refetch.

Two writers converge on ``DashboardData.requests``:

1. ``apply_patch`` overwrites a request by id right after a successful action.
2. Realtime INSERT/UPDATE events trigger a full refetch, which is the source
   of truth and supersedes any optimistic patch.

Both overwrite by id with server-confirmed values, so no ordering between
them is needed. ``close()`` ends the instance's lifetime: fetch results and
realtime events arriving afterwards are discarded.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from stazama.dashboard.backend_client import BackendClient, BackendError, Subscription
from stazama.dashboard.notifications import Notifier
from stazama.domain.enums import ChangeEvent, DashboardTab, RequestStatus
from stazama.domain.schemas import InspectionRequestRecord
from stazama.services.cache_service import (
    CACHE_KEYS,
    CACHE_TAGS,
    CacheService,
    cache_invalidation,
    cached_fetch,
    cache_service,
)
from stazama.services.permissions import permissions_for
from stazama.services.realtime_hub import ChangePayload

logger = logging.getLogger(__name__)

REQUESTS = "requests"
USERS = "users"
CLIENTS = "clients"
AGENTS = "agents"

ACTIVE_STATES = {RequestStatus.ASSIGNED, RequestStatus.IN_PROGRESS}


@dataclass(frozen=True)
class DashboardStats:
    total_requests: int = 0
    total_clients: int = 0
    active_requests: int = 0
    completed_requests: int = 0
    pending_requests: int = 0
    cancelled_requests: int = 0
    unassigned_requests: int = 0

    @classmethod
    def from_collections(
        cls, requests: list[InspectionRequestRecord], clients: list[dict]
    ) -> "DashboardStats":
        unassigned = sum(1 for r in requests if not r.assigned_agent_id)
        return cls(
            total_requests=len(requests),
            total_clients=len(clients),
            active_requests=sum(
                1 for r in requests if r.assigned_agent_id and r.status in ACTIVE_STATES
            ),
            completed_requests=sum(1 for r in requests if r.status == RequestStatus.COMPLETED),
            pending_requests=unassigned,
            cancelled_requests=sum(1 for r in requests if r.status == RequestStatus.CANCELLED),
            unassigned_requests=unassigned,
        )


class DashboardData:
    """Collections owned by one dashboard session."""

    def __init__(
        self,
        backend: BackendClient,
        notifier: Optional[Notifier] = None,
        cache: Optional[CacheService] = None,
        use_cache: bool = True,
    ):
        self.backend = backend
        self.caller = backend.caller
        self.permissions = permissions_for(self.caller.role)
        self.notifier = notifier or Notifier()
        self.cache = cache or cache_service
        self.use_cache = use_cache

        self.requests: list[InspectionRequestRecord] = []
        self.users: list[dict[str, Any]] = []
        self.clients: list[dict[str, Any]] = []
        self.agents: list[dict[str, Any]] = []

        self.loading: dict[str, bool] = {REQUESTS: False, USERS: False, CLIENTS: False, AGENTS: False}
        self.loaded: set[str] = set()
        self.closed = False

        self._subscription: Optional[Subscription] = None
        self._refetch_pending = False
        self._listeners: list[Callable[[], None]] = []

    # -- change listeners ------------------------------------------------------

    def add_listener(self, listener: Callable[[], None]) -> None:
        """Call ``listener`` whenever a collection changes."""
        self._listeners.append(listener)

    def _changed(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                logger.warning("Dashboard listener failed: %s", e)

    # -- derived state ---------------------------------------------------------

    @property
    def stats(self) -> DashboardStats:
        return DashboardStats.from_collections(self.requests, self.clients)

    def find_request(self, request_id: str) -> Optional[InspectionRequestRecord]:
        for request in self.requests:
            if request.id == request_id:
                return request
        return None

    @property
    def agent_ids(self) -> list[str]:
        return [agent["id"] for agent in self.agents]

    # -- fetching --------------------------------------------------------------

    def _scope(self) -> str:
        return f"{self.caller.role.value}:{self.caller.user_id}"

    async def _load(self, kind: str, key: str, tags: list[str], fetcher) -> Optional[list]:
        """Shared fetch path: dedupe in-flight loads, use the cache, honor close()."""
        if self.loading[kind]:
            logger.debug("Skipping %s fetch, one is already in flight", kind)
            return None

        self.loading[kind] = True
        try:
            if self.use_cache:
                rows = await cached_fetch(key, fetcher, tags=tags, cache=self.cache)
            else:
                rows = await fetcher()
        finally:
            self.loading[kind] = False

        if self.closed:
            logger.debug("Discarding %s fetch result after close", kind)
            return None
        self.loaded.add(kind)
        return rows

    async def fetch_requests(self) -> bool:
        """Load requests visible to the caller, newest first."""
        if self.caller.is_guest:
            self.requests = []
            return False
        try:
            rows = await self._load(
                REQUESTS,
                CACHE_KEYS.inspection_requests(self._scope()),
                [CACHE_TAGS.INSPECTION_REQUESTS],
                self.backend.list_requests,
            )
        except BackendError as e:
            if not self.closed:
                self.notifier.error(f"Failed to load requests: {e.message}")
            return False

        if rows is None:
            return False

        records = [InspectionRequestRecord.model_validate(row) for row in rows]
        if not self.permissions.can_view_all_requests:
            records = [r for r in records if r.user_id == self.caller.user_id]
        self.requests = records
        self._changed()

        if self._refetch_pending:
            return await self._drain_refetch()
        return True

    async def _drain_refetch(self) -> bool:
        self._refetch_pending = False
        self.invalidate_requests()
        return await self.fetch_requests()

    async def fetch_users(self) -> bool:
        if not self.permissions.can_view_users:
            return False
        try:
            rows = await self._load(
                USERS, CACHE_KEYS.users(self._scope()), [CACHE_TAGS.DIRECTORY, CACHE_TAGS.USER],
                self.backend.list_users,
            )
        except BackendError as e:
            if not self.closed:
                self.notifier.error(f"Failed to load users: {e.message}")
            return False
        if rows is None:
            return False
        self.users = list(rows)
        self._changed()
        return True

    async def fetch_clients(self) -> bool:
        if not self.permissions.can_view_clients:
            return False
        try:
            rows = await self._load(
                CLIENTS, CACHE_KEYS.clients(self._scope()), [CACHE_TAGS.DIRECTORY],
                self.backend.list_clients,
            )
        except BackendError as e:
            if not self.closed:
                self.notifier.error(f"Failed to load clients: {e.message}")
            return False
        if rows is None:
            return False
        self.clients = list(rows)
        self._changed()
        return True

    async def fetch_agents(self) -> bool:
        if not (self.permissions.can_assign_agents or self.permissions.can_assign_self):
            return False
        try:
            rows = await self._load(
                AGENTS, CACHE_KEYS.agents(self._scope()), [CACHE_TAGS.DIRECTORY],
                self.backend.list_agents,
            )
        except BackendError as e:
            logger.error("Error fetching agents: %s", e)
            return False
        if rows is None:
            return False
        self.agents = list(rows)
        self._changed()
        return True

    async def load_for_tab(self, tab: DashboardTab, force: bool = False) -> None:
        """Fetch what ``tab`` needs, skipping collections already loaded."""
        needed = {
            DashboardTab.OVERVIEW: [REQUESTS, CLIENTS],
            DashboardTab.REQUESTS: [REQUESTS, AGENTS],
            DashboardTab.MY_REQUESTS: [REQUESTS],
            DashboardTab.AVAILABLE: [REQUESTS],
            DashboardTab.CLIENTS: [CLIENTS],
            DashboardTab.USERS: [USERS],
            DashboardTab.AGENTS: [AGENTS, REQUESTS],
            DashboardTab.PROFILE: [],
        }[tab]
        fetchers = {
            REQUESTS: self.fetch_requests,
            USERS: self.fetch_users,
            CLIENTS: self.fetch_clients,
            AGENTS: self.fetch_agents,
        }
        for kind in needed:
            if force or kind not in self.loaded:
                await fetchers[kind]()

    # -- local reconciliation --------------------------------------------------

    def apply_patch(self, request_id: str, fields: dict[str, Any]) -> Optional[InspectionRequestRecord]:
        """Overwrite ``fields`` on the local copy of one request."""
        for index, request in enumerate(self.requests):
            if request.id == request_id:
                patched = InspectionRequestRecord.model_validate(
                    {**request.model_dump(), **fields}
                )
                self.requests[index] = patched
                self._changed()
                return patched
        return None

    def replace_request(self, row: dict[str, Any]) -> InspectionRequestRecord:
        record = InspectionRequestRecord.model_validate(row)
        for index, request in enumerate(self.requests):
            if request.id == record.id:
                self.requests[index] = record
                break
        else:
            self.requests.insert(0, record)
        self._changed()
        return record

    async def refresh_request(self, request_id: str) -> Optional[InspectionRequestRecord]:
        """Re-read one request so server-computed fields reach the open modal."""
        try:
            row = await self.backend.get_request(request_id)
        except BackendError as e:
            logger.error("Error refreshing request %s: %s", request_id, e)
            return None
        if row is None or self.closed:
            return None
        return self.replace_request(row)

    def invalidate_requests(self) -> None:
        cache_invalidation.inspection_requests(self.cache)

    def invalidate_directory(self) -> None:
        cache_invalidation.directory(self.cache)

    # -- realtime --------------------------------------------------------------

    def subscribe(self) -> None:
        """Start receiving row changes for this caller."""
        if self._subscription is None and not self.closed:
            self._subscription = self.backend.subscribe(self._on_change)

    async def _on_change(self, payload: ChangePayload) -> None:
        if self.closed:
            return
        new = payload.new
        is_own = self.caller.user_id is not None and new.get("user_id") == self.caller.user_id

        if payload.event == ChangeEvent.INSERT:
            if self.permissions.can_view_all_requests:
                self.notifier.toast(
                    "New Request", f"New inspection request from {new.get('customer_name')}"
                )
            elif is_own:
                self.notifier.toast(
                    "Request Submitted", "Your inspection request has been received"
                )
        elif payload.event == ChangeEvent.UPDATE:
            old_status = (payload.old or {}).get("status")
            new_status = new.get("status")
            if not self.permissions.can_view_all_requests and is_own and old_status != new_status:
                try:
                    label = RequestStatus(new_status).label
                except ValueError:
                    label = str(new_status)
                self.notifier.toast(
                    "Request Status Updated", f"Your request status changed to: {label}"
                )

        self.invalidate_requests()
        if self.loading[REQUESTS]:
            self._refetch_pending = True
            return
        await self.fetch_requests()

    def close(self) -> None:
        """Stop realtime delivery and discard any result still in flight."""
        self.closed = True
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        self._listeners.clear()
