"""Role capability table.

Every dashboard view, tab, modal action and platform route guard reads its
gate from ``permissions_for``. Role strings are never compared ad hoc.
"""

from dataclasses import dataclass
from typing import Optional

from stazama.domain.enums import DashboardTab, ModalTab, UserRole


@dataclass(frozen=True)
class RolePermissions:
    """Boolean capabilities derived from a single role."""

    can_view_all_requests: bool = False
    can_view_users: bool = False
    can_view_clients: bool = False
    can_manage_profile: bool = False
    can_assign_agents: bool = False
    can_update_status: bool = False
    can_process_payments: bool = False
    can_manage_fees: bool = False
    can_assign_self: bool = False

    @property
    def can_manage_roles(self) -> bool:
        """Role changes go with the full users directory, which only admins hold."""
        return self.can_view_users

    @property
    def can_manage_system(self) -> bool:
        """Cache and log administration, held by the same admin-only capability."""
        return self.can_view_users


_PERMISSIONS: dict[UserRole, RolePermissions] = {
    UserRole.ADMIN: RolePermissions(
        can_view_all_requests=True,
        can_view_users=True,
        can_view_clients=True,
        can_assign_agents=True,
        can_update_status=True,
        can_process_payments=True,
        can_manage_fees=True,
    ),
    UserRole.AGENT: RolePermissions(
        can_view_all_requests=True,
        can_view_clients=True,
        can_update_status=True,
        can_assign_self=True,
    ),
    UserRole.USER: RolePermissions(
        can_manage_profile=True,
    ),
}


def permissions_for(role) -> RolePermissions:
    """Return the capability set for ``role`` (enum or raw string)."""
    return _PERMISSIONS[UserRole.parse(role)]


def visible_tabs(permissions: RolePermissions) -> list[DashboardTab]:
    """Dashboard tabs in display order, derived from capabilities only.

    admin -> overview, requests, clients, users, agents
    agent -> overview, my-requests, available, clients
    user  -> overview, my-requests, profile
    """
    tabs = [DashboardTab.OVERVIEW]
    if permissions.can_assign_agents:
        tabs.append(DashboardTab.REQUESTS)
    else:
        tabs.append(DashboardTab.MY_REQUESTS)
    if permissions.can_assign_self:
        tabs.append(DashboardTab.AVAILABLE)
    if permissions.can_view_clients:
        tabs.append(DashboardTab.CLIENTS)
    if permissions.can_view_users:
        tabs.append(DashboardTab.USERS)
    if permissions.can_assign_agents:
        tabs.append(DashboardTab.AGENTS)
    if permissions.can_manage_profile:
        tabs.append(DashboardTab.PROFILE)
    return tabs


def action_tabs(permissions: RolePermissions) -> list[ModalTab]:
    """Tabs shown in the request modal for this capability set."""
    tabs = [ModalTab.DETAILS]
    if permissions.can_update_status or permissions.can_assign_agents:
        tabs.append(ModalTab.ACTIONS)
    if permissions.can_process_payments or permissions.can_manage_fees:
        tabs.append(ModalTab.PAYMENT)
    return tabs


@dataclass(frozen=True)
class Caller:
    """Identity a request is made under. ``user_id`` is None for guests."""

    user_id: Optional[str]
    role: UserRole = UserRole.USER

    @property
    def permissions(self) -> RolePermissions:
        return permissions_for(self.role)

    @property
    def is_guest(self) -> bool:
        return self.user_id is None


GUEST = Caller(user_id=None, role=UserRole.USER)
