"""
Capability table keyed by seniority tier.

Every gated operation looks its capability up here instead of branching on
roles at the call site.
"""

from typing import Optional

from dispatch.errors import PermissionDenied
from dispatch.models import AgentLevel, AgentPermissions, Requester, UserRole

_LEVEL_PERMISSIONS: dict[AgentLevel, AgentPermissions] = {
    AgentLevel.AGENT: AgentPermissions(
        can_view_tickets=True,
        can_work_on_tickets=True,
        can_close_tickets=True,
    ),
    AgentLevel.SENIOR_AGENT: AgentPermissions(
        can_view_tickets=True,
        can_work_on_tickets=True,
        can_close_tickets=True,
        can_assign_tickets=True,
    ),
    AgentLevel.SUPERVISOR: AgentPermissions(
        can_view_tickets=True,
        can_work_on_tickets=True,
        can_close_tickets=True,
        can_assign_tickets=True,
        can_transfer_tickets=True,
        can_force_close=True,
        can_track_agents=True,
        can_manage_agents=True,
    ),
}
_LEVEL_PERMISSIONS[AgentLevel.MANAGEMENT] = _LEVEL_PERMISSIONS[AgentLevel.SUPERVISOR]

_ALL = AgentPermissions(**{name: True for name in AgentPermissions.model_fields})
_NONE = AgentPermissions()


def permissions_for(level: Optional[AgentLevel]) -> AgentPermissions:
    """Capabilities of an agent tier; unknown or missing tiers get nothing."""
    perms = _LEVEL_PERMISSIONS.get(level) if level is not None else None
    return (perms or _NONE).model_copy()


def permissions_for_requester(requester: Requester) -> AgentPermissions:
    """Admin roles hold every capability; agents are looked up by tier."""
    if requester.role != UserRole.AGENT:
        return _ALL.model_copy()
    return permissions_for(requester.level)


def require(requester: Requester, capability: str, message: str) -> None:
    """Raise PermissionDenied unless the requester holds `capability`."""
    if capability not in AgentPermissions.model_fields:
        raise ValueError(f"Unknown capability {capability!r}")
    if not getattr(permissions_for_requester(requester), capability):
        raise PermissionDenied(message)
