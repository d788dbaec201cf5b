from __future__ import annotations

from typing import Dict, FrozenSet, List

ROLE_SUPER_ADMIN = "super_admin"
ROLE_ADMIN = "admin"
ROLE_EDITOR = "editor"
ROLE_VIEWER = "viewer"

VIEW_DASHBOARD = "view_dashboard"
VIEW_SCHEMA = "view_schema"
VIEW_MODELS = "view_models"
CREATE_MODEL = "create_model"
EDIT_MODEL = "edit_model"
DELETE_MODEL = "delete_model"
VIEW_MIGRATIONS = "view_migrations"
RUN_MIGRATIONS = "run_migrations"
ROLLBACK_MIGRATIONS = "rollback_migrations"
VIEW_DATA = "view_data"
CREATE_DATA = "create_data"
EDIT_DATA = "edit_data"
DELETE_DATA = "delete_data"
EXECUTE_QUERY = "execute_query"
VIEW_LOGS = "view_logs"
VIEW_ANALYTICS = "view_analytics"
MANAGE_USERS = "manage_users"
MANAGE_ENV = "manage_env"
VIEW_DOCS = "view_docs"

WILDCARD = "*"

_VIEWER = (
    VIEW_DASHBOARD,
    VIEW_SCHEMA,
    VIEW_MODELS,
    VIEW_MIGRATIONS,
    VIEW_DATA,
    VIEW_ANALYTICS,
    VIEW_DOCS,
)

_EDITOR = _VIEWER + (
    CREATE_MODEL,
    EDIT_MODEL,
    CREATE_DATA,
    EDIT_DATA,
    EXECUTE_QUERY,
)

_ADMIN = _EDITOR + (
    DELETE_MODEL,
    RUN_MIGRATIONS,
    ROLLBACK_MIGRATIONS,
    DELETE_DATA,
    VIEW_LOGS,
    MANAGE_USERS,
    MANAGE_ENV,
)

ROLE_PERMISSIONS: Dict[str, FrozenSet[str]] = {
    ROLE_SUPER_ADMIN: frozenset({WILDCARD}),
    ROLE_ADMIN: frozenset(_ADMIN),
    ROLE_EDITOR: frozenset(_EDITOR),
    ROLE_VIEWER: frozenset(_VIEWER),
}

ROLE_LABELS = {
    ROLE_SUPER_ADMIN: "Super Admin",
    ROLE_ADMIN: "Admin",
    ROLE_EDITOR: "Editor",
    ROLE_VIEWER: "Viewer",
}

# Roles allowed to create principals after bootstrap
PRIVILEGED_ROLES = frozenset({ROLE_SUPER_ADMIN, ROLE_ADMIN})


def has_permission(role: str, permission: str) -> bool:
    granted = ROLE_PERMISSIONS.get(role, frozenset())
    return WILDCARD in granted or permission in granted


def permissions_for(role: str) -> List[str]:
    return sorted(ROLE_PERMISSIONS.get(role, frozenset()))


def is_valid_role(role: str) -> bool:
    return role in ROLE_PERMISSIONS


def default_role() -> str:
    """Role given to principals created from the user-management screens."""
    return ROLE_VIEWER


def can_grant(actor_role: str, target_role: str) -> bool:
    """Only a super admin may hand out the super admin role."""
    if target_role == ROLE_SUPER_ADMIN:
        return actor_role == ROLE_SUPER_ADMIN
    return actor_role in PRIVILEGED_ROLES
