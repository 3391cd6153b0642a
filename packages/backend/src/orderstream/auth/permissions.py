"""Roles and capabilities.

Learn: Routes never check roles directly. They ask for a capability
("orders.delete") and this table says which roles hold it. The WebSocket
stream needs READ_STREAM, which every role has today; taking it away from a
role is how you would shut that role out of live updates.
"""

from orderstream.db.models import Role

READ_STREAM = "read-stream"

ORDERS_CREATE = "orders.create"
ORDERS_READ = "orders.read"
ORDERS_UPDATE = "orders.update"
ORDERS_DELETE = "orders.delete"
USERS_READ = "users.read"
USERS_UPDATE = "users.update"
SYSTEM_MONITOR = "system.monitor"

_ORDER_WRITE = frozenset({ORDERS_CREATE, ORDERS_READ, ORDERS_UPDATE, ORDERS_DELETE})

ROLE_PERMISSIONS: dict[Role, frozenset[str]] = {
    Role.ADMIN: _ORDER_WRITE
    | {USERS_READ, USERS_UPDATE, SYSTEM_MONITOR, READ_STREAM},
    Role.OPERATOR: _ORDER_WRITE | {READ_STREAM},
    Role.VIEWER: frozenset({ORDERS_READ, READ_STREAM}),
}


def has_permission(role: Role | str, permission: str) -> bool:
    """Check whether a role holds a capability. Unknown roles hold nothing."""
    try:
        role = Role(role)
    except ValueError:
        return False
    return permission in ROLE_PERMISSIONS.get(role, frozenset())
