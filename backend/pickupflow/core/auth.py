"""Who is acting on which tenant's pickup requests.

Routes resolve a tenant, an actor id and a role here (requester, courier,
manager or admin). The lifecycle engine never authenticates; it records the
resolved actor id on every request, assignment and processed record it writes.
With auth disabled the tenant comes from `X-Tenant-ID`; with it enabled a
bearer token from `TENANT_TOKENS` pins the tenant.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from pickupflow.core.config import get_settings
from pickupflow.core.logging import logger


security = HTTPBearer(auto_error=False)


@dataclass
class TenantContext:
    """Tenant, acting user and role for one pickup API call."""

    tenant_id: str
    authenticated: bool
    actor: str
    role: str


# requester: opens pickup requests; courier: starts, picks up, delivers;
# manager: assigns, finalizes and corrects couriers; admin: everything.
SUPPORTED_ROLES = {"requester", "courier", "manager", "admin"}


def _normalize_role(value: str | None) -> str:
    role = (value or "").strip().lower()
    if not role:
        return "admin"
    if role not in SUPPORTED_ROLES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown pickup role '{value}' in X-Actor-Role. Expected one of: {sorted(SUPPORTED_ROLES)}",
        )
    return role


def parse_pairs(raw: str, label: str = "pair") -> Dict[str, str]:
    """Parse `key:value` pairs such as `TENANT_TOKENS` or `ACTOR_DIRECTORY`."""
    mapping: Dict[str, str] = {}
    if not (raw or "").strip():
        return mapping

    for segment in raw.split(","):
        item = segment.strip()
        if not item:
            continue
        if ":" not in item:
            logger.warning("Ignoring malformed mapping entry", kind=label, entry=item)
            continue
        key, value = item.split(":", 1)
        key = key.strip()
        value = value.strip()
        if key and value:
            mapping[key] = value
    return mapping


def get_tenant_context(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    x_tenant_id: str | None = Header(default=None, alias="X-Tenant-ID"),
    x_actor_id: str | None = Header(default=None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(default=None, alias="X-Actor-Role"),
) -> TenantContext:
    """Resolve the tenant whose pickup requests this call may touch, plus the acting user."""
    settings = get_settings()
    default_tenant = (x_tenant_id or settings.default_tenant_id or "demo").strip() or "demo"
    actor = (x_actor_id or "").strip() or "anonymous"

    if not settings.auth_enabled:
        return TenantContext(
            tenant_id=default_tenant,
            authenticated=False,
            actor=actor,
            role=_normalize_role(x_actor_role),
        )

    if not credentials or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Bearer token required to act on pickup requests",
        )

    token_map = parse_pairs(settings.tenant_tokens, label="tenant_token")
    tenant_id = token_map.get(credentials.credentials.strip())
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Bearer token is not registered for any tenant",
        )

    if x_tenant_id and x_tenant_id.strip() and x_tenant_id.strip() != tenant_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"X-Tenant-ID '{x_tenant_id.strip()}' does not match the tenant of this bearer token",
        )

    return TenantContext(
        tenant_id=tenant_id,
        authenticated=True,
        actor=actor,
        role=_normalize_role(x_actor_role),
    )


def require_roles(*allowed_roles: str):
    """Dependency factory limiting a pickup route to the given roles."""
    allowed = {role.strip().lower() for role in allowed_roles if role.strip()}
    if not allowed:
        raise ValueError("At least one role is required")

    def _guard(context: TenantContext = Depends(get_tenant_context)) -> TenantContext:
        if context.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{context.role}' cannot perform this pickup action; allowed roles: {sorted(allowed)}",
            )
        return context

    return _guard
