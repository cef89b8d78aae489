"""Operator access tokens (JWT)."""

from datetime import UTC, datetime, timedelta

from jose import JWTError, jwt

from splitledger.config import get_settings

settings = get_settings()


def create_access_token(
    user_id: str,
    tenant_id: str,
    role: str,
    lifetime_seconds: int = 900,
) -> str:
    """Create a short-lived access token (JWT).

    Tokens are issued by the auth service; this is used by tooling and tests.
    """
    expire = datetime.now(UTC) + timedelta(seconds=lifetime_seconds)
    payload = {
        "sub": user_id,
        "tenant_id": tenant_id,
        "role": role,
        "exp": expire,
        "type": "access",
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and validate access token."""
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
        )
        if payload.get("type") != "access":
            return None
        return payload
    except JWTError:
        return None
