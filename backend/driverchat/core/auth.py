"""Tenant-aware auth dependencies for back-office routes and the inbound webhook."""
from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Dict

from fastapi import Depends, Header, HTTPException, Query, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from driverchat.core.config import get_settings
from driverchat.core.logging import logger


bearer = HTTPBearer(auto_error=False)

SUPPORTED_ROLES = {"dispatcher", "supervisor", "admin"}


@dataclass
class TenantContext:
    """Who is calling a back-office endpoint, and for which fleet."""

    tenant_id: str
    authenticated: bool
    actor: str
    role: str


def _role(value: str | None) -> str:
    role = (value or "").strip().lower() or "admin"
    if role not in SUPPORTED_ROLES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown actor role '{value}'. Use one of {sorted(SUPPORTED_ROLES)}",
        )
    return role


def tenant_token_map(raw: str) -> Dict[str, str]:
    """``token:tenant`` pairs separated by commas; malformed entries are skipped."""
    pairs: Dict[str, str] = {}
    for entry in (part.strip() for part in (raw or "").split(",")):
        if not entry:
            continue
        token, sep, tenant = entry.partition(":")
        if not sep or not token.strip() or not tenant.strip():
            logger.warning("Skipping malformed tenant token entry", entry=entry)
            continue
        pairs[token.strip()] = tenant.strip()
    return pairs


def get_tenant_context(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer),
    x_tenant_id: str | None = Header(default=None, alias="X-Tenant-ID"),
    x_actor_role: str | None = Header(default=None, alias="X-Actor-Role"),
    x_actor: str | None = Header(default=None, alias="X-Actor"),
) -> TenantContext:
    """Open mode trusts ``X-Tenant-ID``; with auth enabled the bearer token decides."""
    settings = get_settings()
    requested_tenant = (x_tenant_id or "").strip()
    actor = (x_actor or "").strip()
    role = _role(x_actor_role)

    if not settings.auth_enabled:
        return TenantContext(
            tenant_id=requested_tenant or settings.default_tenant_id or "demo",
            authenticated=False,
            actor=actor or "anonymous",
            role=role,
        )

    token = credentials.credentials.strip() if credentials and credentials.credentials else ""
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Bearer token required")

    tenant_id = tenant_token_map(settings.tenant_tokens).get(token)
    if tenant_id is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Bearer token not recognised")
    if requested_tenant and requested_tenant != tenant_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Token does not belong to this tenant")

    return TenantContext(tenant_id=tenant_id, authenticated=True, actor=actor or "token", role=role)


def require_roles(*allowed_roles: str):
    """Build a dependency that admits only the given actor roles."""
    allowed = {role.strip().lower() for role in allowed_roles if role.strip()}
    if not allowed:
        raise ValueError("require_roles needs at least one role")

    def _check(context: TenantContext = Depends(get_tenant_context)) -> TenantContext:
        if context.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{context.role}' may not perform this operation",
            )
        return context

    return _check


def verify_webhook_token(
    client_token: str | None = Header(default=None, alias="Client-Token"),
    token: str | None = Query(default=None),
) -> None:
    """Reject inbound provider calls that do not carry the shared client token."""
    expected = (get_settings().webhook_client_token or "").strip()
    if not expected:
        logger.error("Webhook client token is not configured; refusing inbound message")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Webhook security is not configured on the server",
        )

    supplied = (client_token or token or "").strip()
    if not hmac.compare_digest(supplied, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing client token",
        )
