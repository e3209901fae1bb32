"""Role based access policy for admin panel actions."""

from __future__ import annotations

from typing import Any, Collection, Mapping, NamedTuple

from .records import Role

ADMIN_ONLY = frozenset({Role.ADMIN})
STAFF = frozenset({Role.ADMIN, Role.MANAGER})
EVERYONE = frozenset(Role)

# (entity, action) -> roles allowed to perform it
ACTION_POLICY: dict[tuple[str, str], frozenset[Role]] = {
    ("user", "view"): STAFF,
    ("user", "add"): STAFF,
    ("user", "edit"): STAFF,
    ("user", "delete"): ADMIN_ONLY,
    ("engineer", "view"): STAFF,
    ("engineer", "add"): STAFF,
    ("engineer", "edit"): STAFF,
    ("engineer", "delete"): ADMIN_ONLY,
    ("dispensary", "view"): EVERYONE,
    ("dispensary", "add"): STAFF,
    ("dispensary", "edit"): STAFF,
    ("dispensary", "delete"): ADMIN_ONLY,
    ("service_request", "view"): EVERYONE,
    ("service_request", "add"): EVERYONE,
    ("service_request", "respond"): STAFF,
    ("service_request", "update_status"): STAFF,
    ("service_request", "delete"): ADMIN_ONLY,
    ("knowledge_base", "view"): EVERYONE,
    ("knowledge_base", "add"): STAFF,
    ("knowledge_base", "edit"): STAFF,
    ("knowledge_base", "delete"): ADMIN_ONLY,
    ("invoice", "view"): STAFF,
    ("invoice", "add"): STAFF,
    ("invoice", "edit"): STAFF,
    ("invoice", "delete"): ADMIN_ONLY,
    ("payment", "view"): STAFF,
    ("payment", "add"): STAFF,
    ("payment", "edit"): STAFF,
    ("payment", "delete"): ADMIN_ONLY,
    ("service_agreement", "view"): STAFF,
    ("service_agreement", "add"): STAFF,
    ("service_agreement", "edit"): STAFF,
    ("service_agreement", "delete"): ADMIN_ONLY,
    ("settings", "view"): ADMIN_ONLY,
}


class MenuItem(NamedTuple):
    title: str
    endpoint: str
    icon: str
    allowed_roles: frozenset[Role] | None = None


MENU_ITEMS: tuple[MenuItem, ...] = (
    MenuItem("Dashboard", "dashboard", "layout-dashboard", EVERYONE),
    MenuItem("Users", "users", "users", STAFF),
    MenuItem("Support Engineers", "engineers", "user-cog", STAFF),
    MenuItem("Dispensaries", "dispensaries", "building-store", EVERYONE),
    MenuItem("Service Requests", "service_requests", "clipboard-list", EVERYONE),
    MenuItem("Knowledge Base", "knowledge_base", "book-open", EVERYONE),
    MenuItem("Billing", "billing", "receipt", STAFF),
    MenuItem("Settings", "settings", "settings", ADMIN_ONLY),
)


def _as_role(role: Role | str | None) -> Role | None:
    if role is None:
        return None
    try:
        return Role(role)
    except ValueError:
        return None


def is_authorized(role: Role | str | None, allowed_roles: Collection[Role] | None) -> bool:
    """Return True when ``role`` may act under ``allowed_roles``.

    ``allowed_roles`` of None means the action declares no restriction and is
    permitted for everyone. An absent or unknown role is never authorized
    against a declared set.
    """

    if allowed_roles is None:
        return True
    principal_role = _as_role(role)
    if principal_role is None:
        return False
    return principal_role in {_as_role(allowed) for allowed in allowed_roles}


def allowed_roles_for(entity: str, action: str) -> frozenset[Role]:
    try:
        return ACTION_POLICY[(entity, action)]
    except KeyError:
        raise KeyError(f"No policy declared for {action!r} on {entity!r}") from None


def can(role: Role | str | None, entity: str, action: str) -> bool:
    return is_authorized(role, allowed_roles_for(entity, action))


def can_view(role: Role | str | None, entity: str) -> bool:
    return can(role, entity, "view")


def can_add(role: Role | str | None, entity: str) -> bool:
    return can(role, entity, "add")


def can_edit(role: Role | str | None, entity: str) -> bool:
    return can(role, entity, "edit")


def can_delete(role: Role | str | None, entity: str) -> bool:
    return can(role, entity, "delete")


def is_self_target(actor_id: str | None, record: Mapping[str, Any]) -> bool:
    return actor_id is not None and record.get("id") == actor_id


def may_change_role_or_status(actor: Mapping[str, Any] | None, target: Mapping[str, Any]) -> bool:
    """Principals may never change their own role or status, whatever their role."""

    if actor is None:
        return False
    if is_self_target(actor.get("id"), target):
        return False
    return can_edit(actor.get("role"), "user")


def may_grant_role(actor_role: Role | str | None, new_role: Role | str) -> bool:
    """Only admins may hand out the admin role."""

    if _as_role(new_role) is Role.ADMIN:
        return is_authorized(actor_role, ADMIN_ONLY)
    return can_edit(actor_role, "user")


def visible_menu(role: Role | str | None) -> list[MenuItem]:
    return [item for item in MENU_ITEMS if is_authorized(role, item.allowed_roles)]


def permissions_for(role: Role | str | None, entity: str) -> dict[str, bool]:
    """Flags a template uses to decide which action buttons to render."""

    actions = sorted({action for (name, action) in ACTION_POLICY if name == entity})
    return {action: can(role, entity, action) for action in actions}
