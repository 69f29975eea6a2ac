"""Unified dashboard view state for every role.

Tabs, filters, search, view mode and per-tab collections are all derived
from the fetched collections on read, so they always reflect the latest
patch or refetch.
"""

import logging
from typing import Optional, Union

from stazama.dashboard.data_sync import ACTIVE_STATES, DashboardData, DashboardStats
from stazama.domain.enums import DashboardTab, RequestFilter, RequestStatus, ViewMode
from stazama.domain.schemas import InspectionRequestRecord
from stazama.services.permissions import visible_tabs

logger = logging.getLogger(__name__)


def matches_filter(request: InspectionRequestRecord, request_filter: RequestFilter) -> bool:
    if request_filter == RequestFilter.ALL:
        return True
    if request_filter == RequestFilter.PENDING:
        return not request.assigned_agent_id
    if request_filter == RequestFilter.ACTIVE:
        return bool(request.assigned_agent_id) and request.status in ACTIVE_STATES
    if request_filter == RequestFilter.COMPLETED:
        return request.status == RequestStatus.COMPLETED
    return request.status == RequestStatus.CANCELLED


def matches_search(request: InspectionRequestRecord, term: str) -> bool:
    """Case-insensitive substring match over the searchable columns."""
    term = term.strip().lower()
    if not term:
        return True
    haystack = (
        request.customer_name,
        request.store_name,
        request.whatsapp,
        request.service_tier.value,
        request.status.value,
    )
    return any(term in (value or "").lower() for value in haystack)


class DashboardController:
    """One dashboard session: tab, filter, search, view mode and selection."""

    def __init__(self, data: DashboardData):
        self.data = data
        self.tabs = visible_tabs(data.permissions)
        self.active_tab = self.tabs[0]
        self.request_filter = RequestFilter.ALL
        self.search_term = ""
        self.view_mode = ViewMode.TABLE
        self.selected_request_id: Optional[str] = None
        self.modal_open = False

    @property
    def caller(self):
        return self.data.caller

    async def start(self) -> None:
        """Subscribe to row changes and load the first tab."""
        self.data.subscribe()
        await self.data.load_for_tab(self.active_tab)

    def close(self) -> None:
        self.close_modal()
        self.data.close()

    # -- tabs ------------------------------------------------------------------

    async def set_tab(self, tab: Union[DashboardTab, str]) -> bool:
        """Switch tabs, loading whatever the new tab needs. Hidden tabs are refused."""
        tab = DashboardTab(tab)
        if tab not in self.tabs:
            logger.warning("Tab %s not available for role %s", tab.value, self.caller.role.value)
            return False
        self.active_tab = tab
        await self.data.load_for_tab(tab)
        return True

    async def refresh(self) -> None:
        await self.data.load_for_tab(self.active_tab, force=True)

    # -- filters and layout ----------------------------------------------------

    def set_filter(self, request_filter: Union[RequestFilter, str]) -> None:
        self.request_filter = RequestFilter(request_filter)

    def set_search(self, term: str) -> None:
        self.search_term = term or ""

    def toggle_view_mode(self) -> ViewMode:
        self.view_mode = ViewMode.CARDS if self.view_mode == ViewMode.TABLE else ViewMode.TABLE
        return self.view_mode

    # -- derived collections ---------------------------------------------------

    @property
    def stats(self) -> DashboardStats:
        return self.data.stats

    @property
    def my_requests(self) -> list[InspectionRequestRecord]:
        """Agents see what they are assigned; users see what they submitted."""
        user_id = self.caller.user_id
        if self.data.permissions.can_assign_self:
            return [r for r in self.data.requests if r.assigned_agent_id == user_id]
        if self.data.permissions.can_assign_agents:
            return list(self.data.requests)
        return [r for r in self.data.requests if r.user_id == user_id]

    @property
    def available_requests(self) -> list[InspectionRequestRecord]:
        return [
            r
            for r in self.data.requests
            if not r.assigned_agent_id and r.status == RequestStatus.PENDING
        ]

    def _tab_requests(self) -> list[InspectionRequestRecord]:
        if self.active_tab == DashboardTab.MY_REQUESTS:
            return self.my_requests
        if self.active_tab == DashboardTab.AVAILABLE:
            return self.available_requests
        return list(self.data.requests)

    @property
    def visible_requests(self) -> list[InspectionRequestRecord]:
        """Active tab's requests after the filter and search are applied."""
        return [
            r
            for r in self._tab_requests()
            if matches_filter(r, self.request_filter) and matches_search(r, self.search_term)
        ]

    def agent_workload(self) -> dict[str, int]:
        """Open (assigned or in progress) requests per agent id."""
        counts = {agent["id"]: 0 for agent in self.data.agents}
        for request in self.data.requests:
            if request.assigned_agent_id and request.status in ACTIVE_STATES:
                counts[request.assigned_agent_id] = counts.get(request.assigned_agent_id, 0) + 1
        return counts

    # -- selection -------------------------------------------------------------

    @property
    def selected_request(self) -> Optional[InspectionRequestRecord]:
        if self.selected_request_id is None:
            return None
        return self.data.find_request(self.selected_request_id)

    def open_request(self, request_id: str) -> Optional[InspectionRequestRecord]:
        request = self.data.find_request(request_id)
        if request is None:
            logger.warning("Cannot open unknown request %s", request_id)
            return None
        self.selected_request_id = request_id
        self.modal_open = True
        return request

    def close_modal(self) -> None:
        self.modal_open = False
        self.selected_request_id = None
