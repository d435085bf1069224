from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Header

from .errors import Unauthorized

# Identity is resolved upstream; the gateway forwards the actor as headers.
ROLE_TIERS = {
    "kitchen": 1,
    "bar": 1,
    "waiter": 1,
    "cashier": 2,
    "manager": 3,
    "admin": 4,
}

WAITER_TIER = "waiter"
CASHIER_TIER = "cashier"


@dataclass(frozen=True)
class Actor:
    id: str
    role: str
    tenant_id: Optional[str] = None
    name: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.id


def current_actor(
    x_actor_id: Optional[str] = Header(default=None, alias="X-Actor-Id"),
    x_actor_role: Optional[str] = Header(default=None, alias="X-Actor-Role"),
    x_tenant_id: Optional[str] = Header(default=None, alias="X-Tenant-Id"),
    x_actor_name: Optional[str] = Header(default=None, alias="X-Actor-Name"),
) -> Actor:
    if not x_actor_id or not x_actor_role:
        raise Unauthorized("actor required", status_code=401)
    return Actor(
        id=x_actor_id.strip(),
        role=x_actor_role.strip().lower(),
        tenant_id=(x_tenant_id or None),
        name=(x_actor_name or None),
    )


def authorize(actor: Optional[Actor], min_role: str = WAITER_TIER) -> Actor:
    """Reject the call before any state is touched unless ``actor`` is at least ``min_role``."""
    if actor is None:
        raise Unauthorized("actor required", status_code=401)
    if ROLE_TIERS.get(actor.role, 0) < ROLE_TIERS[min_role]:
        raise Unauthorized(f"role '{actor.role}' may not perform this action", role=actor.role)
    return actor


def actor_from_headers(headers) -> Actor:
    """Resolve the actor outside a route, e.g. for websocket handshakes."""
    return current_actor(
        headers.get("X-Actor-Id"),
        headers.get("X-Actor-Role"),
        headers.get("X-Tenant-Id"),
        headers.get("X-Actor-Name"),
    )
