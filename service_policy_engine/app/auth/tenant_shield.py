"""
Tenant isolation guard.

Access is deny-by-default: the requested tenant must be non-empty and
equal to the caller's own identity. There are no role overrides, admin
bypasses or wildcards.
"""

from typing import Mapping, Optional

from shared.errors import AuthorizationError
from shared.logging import get_logger

from ..policy.models import AuthenticatedUser

logger = get_logger("policy_engine.tenant_shield")


def get_token_from_request(headers: Mapping[str, str]) -> Optional[str]:
    """Extract a bearer token from request headers.

    Returns ``None`` when the header is missing, uses another scheme or
    carries an empty token.
    """
    auth_header = headers.get("Authorization") or headers.get("authorization")
    if not auth_header:
        return None

    parts = auth_header.split(" ")
    scheme = parts[0]
    token = parts[1] if len(parts) > 1 else ""
    if not scheme or not token or scheme.lower() != "bearer":
        return None

    return token.strip() or None


def assert_tenant_access(tenant_id: Optional[str], caller: AuthenticatedUser) -> None:
    """Raise ``AuthorizationError`` unless ``caller`` owns ``tenant_id``."""
    if not tenant_id or tenant_id != caller.user_id:
        logger.warning(
            "Tenant access denied",
            requested_tenant_id=tenant_id,
            caller_id=caller.user_id
        )
        raise AuthorizationError("Forbidden")
