"""
Identity service client.

Exchanges a bearer token for the authenticated user record.
"""

from typing import Optional

import httpx

from shared.errors import AuthenticationError
from shared.logging import get_logger

from ..policy.models import AuthenticatedUser


class IdentityClient:
    """Client for the platform identity service."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport
        self.logger = get_logger("policy_engine.identity_client")

    async def get_user(self, token: str) -> AuthenticatedUser:
        """Resolve a token to its user. Raises ``AuthenticationError`` on any failure."""
        headers = {"Authorization": f"Bearer {token}"}
        if self.api_key:
            headers["apikey"] = self.api_key

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self.transport
            ) as client:
                response = await client.get("/auth/v1/user", headers=headers)
        except httpx.HTTPError as e:
            self.logger.error("Identity service unreachable", error=str(e))
            raise AuthenticationError("Unauthorized", details={"reason": "identity_service_unavailable"})

        if response.status_code != 200:
            self.logger.warning("Token rejected by identity service", status_code=response.status_code)
            raise AuthenticationError("Unauthorized")

        try:
            data = response.json()
        except ValueError:
            raise AuthenticationError("Unauthorized", details={"reason": "invalid_identity_response"})

        user_id = data.get("id") if isinstance(data, dict) else None
        if not user_id:
            raise AuthenticationError("Unauthorized")

        return AuthenticatedUser(user_id=str(user_id), email=data.get("email"))
