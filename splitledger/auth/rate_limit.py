"""Rate limiting configuration."""

from slowapi import Limiter
from slowapi.util import get_remote_address

from splitledger.config import get_settings

settings = get_settings()

# Test deliveries hit tenant endpoints synchronously; keep them rare
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://" if settings.TESTING else settings.VALKEY_URL,
    enabled=not settings.TESTING,
)


def get_test_rate_limit() -> str:
    """Limit for synchronous test deliveries (e.g. "10/minute")."""
    return settings.TEST_RATE_LIMIT
