"""Organization scoping for every data access.

Nothing here trusts an organization id supplied by a client: the active
organization is resolved from the user's profile and memberships, and any
other organization must be backed by an active membership.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .database import DataStore
from .errors import AuthorizationError, ValidationError

logger = logging.getLogger(__name__)

ADMIN_ROLES = ("OWNER", "MANAGER")


@dataclass(frozen=True)
class TenantContext:
    tenant_id: int
    data_store: DataStore
    user_id: int | None = None


def _membership(store: DataStore, organization_id: int, user_id: int) -> dict | None:
    return store.conn.execute(
        """
        SELECT * FROM organization_users
        WHERE organization_id = ? AND user_id = ? AND is_active = 1
        """,
        (organization_id, user_id),
    ).fetchone()


def resolve_current_organization(store: DataStore, user_id: int) -> int:
    profile = store.conn.execute(
        "SELECT current_organization_id FROM user_profiles WHERE user_id = ?", (user_id,)
    ).fetchone()
    if profile and profile["current_organization_id"]:
        organization_id = profile["current_organization_id"]
        if _membership(store, organization_id, user_id):
            return organization_id
    first = store.conn.execute(
        """
        SELECT organization_id FROM organization_users
        WHERE user_id = ? AND is_active = 1
        ORDER BY id
        LIMIT 1
        """,
        (user_id,),
    ).fetchone()
    if not first:
        raise AuthorizationError("No organization selected for user")
    return first["organization_id"]


def verify_membership(store: DataStore, organization_id: int, user_id: int) -> dict:
    membership = _membership(store, organization_id, user_id)
    if not membership:
        logger.warning("User %s denied access to organization %s", user_id, organization_id)
        raise AuthorizationError("User does not have access to this organization")
    return membership


def verify_admin(store: DataStore, organization_id: int, user_id: int) -> dict:
    membership = verify_membership(store, organization_id, user_id)
    if membership["role"] not in ADMIN_ROLES:
        logger.warning("User %s is not an admin of organization %s", user_id, organization_id)
        raise AuthorizationError("User does not have admin privileges for this organization")
    return membership


def ensure_organization_context(
    store: DataStore, user_id: int, requested_org_id: int | None = None
) -> TenantContext:
    current = resolve_current_organization(store, user_id)
    if requested_org_id and requested_org_id != current:
        verify_membership(store, requested_org_id, user_id)
    return TenantContext(
        tenant_id=requested_org_id or current, data_store=store, user_id=user_id
    )


def verify_data_ownership(context: TenantContext, table: str, record_id: int) -> dict:
    """Return the record if it belongs to the context's organization."""

    record = context.data_store.get(table, record_id)
    if not record:
        raise ValidationError(f"{table[:-1].capitalize()} not found")
    if record["organization_id"] != context.tenant_id:
        logger.warning(
            "Organization %s attempted to access %s %s", context.tenant_id, table, record_id
        )
        raise AuthorizationError("User does not have access to this record")
    return record


def create_record(context: TenantContext, table: str, values: dict[str, Any]) -> dict:
    return context.data_store.insert(table, {**values, "organization_id": context.tenant_id})


def update_record(
    context: TenantContext, table: str, record_id: int, values: dict[str, Any]
) -> dict:
    verify_data_ownership(context, table, record_id)
    sanitized = {key: value for key, value in values.items() if key != "organization_id"}
    return context.data_store.update(table, record_id, sanitized)


def delete_record(context: TenantContext, table: str, record_id: int) -> None:
    verify_data_ownership(context, table, record_id)
    context.data_store.delete(table, record_id)


def query_records(
    context: TenantContext,
    table: str,
    filters: dict[str, Any] | None = None,
    order_by: str | None = None,
) -> list[dict]:
    scoped = {key: value for key, value in (filters or {}).items() if value is not None}
    scoped["organization_id"] = context.tenant_id
    return context.data_store.select(table, scoped, order_by=order_by)
