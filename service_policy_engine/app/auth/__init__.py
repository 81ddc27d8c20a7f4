"""
Caller authentication and tenant isolation for the policy engine.
"""

from .tenant_shield import assert_tenant_access, get_token_from_request
from .identity_client import IdentityClient

__all__ = ["assert_tenant_access", "get_token_from_request", "IdentityClient"]
