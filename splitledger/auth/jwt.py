"""Operator authentication for the webhook management API."""

import uuid
from dataclasses import dataclass

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from splitledger.db.session import get_tenant_schema
from splitledger.webhooks.exceptions import InvalidTenantScopeError

from .tokens import decode_access_token

security = HTTPBearer()

# Roles allowed to manage webhooks
OPERATOR_ROLES = frozenset({"owner", "admin"})


@dataclass(frozen=True)
class Operator:
    """Authenticated caller, scoped to one tenant."""

    user_id: uuid.UUID
    tenant_id: str
    tenant_schema: str
    role: str


async def get_current_operator(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Operator:
    """Resolve the bearer token into an operator and its tenant scope."""
    payload = decode_access_token(credentials.credentials)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = payload.get("sub")
    tenant_id = payload.get("tenant_id")
    if user_id is None or tenant_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    try:
        return Operator(
            user_id=uuid.UUID(user_id),
            tenant_id=tenant_id,
            tenant_schema=get_tenant_schema(tenant_id),
            role=payload.get("role", ""),
        )
    except (ValueError, InvalidTenantScopeError) as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        ) from e


async def require_operator(operator: Operator = Depends(get_current_operator)) -> Operator:
    """Only tenant owners and admins manage webhooks."""
    if operator.role not in OPERATOR_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions",
        )
    return operator
