"""
Test data helpers for the policy engine.
"""

from service_policy_engine.app.policy.models import Policy

TENANT_ID = "6f1c2a4e-8b3d-4f5a-9c7e-1d2b3a4c5e6f"
OTHER_TENANT_ID = "0a9b8c7d-6e5f-4a3b-8c1d-2e3f4a5b6c7d"


def make_policy(policy_id, conditions=None, actions=None, priority=0,
                policy_type="approval", tenant_id=TENANT_ID, is_active=True, name=None):
    """Build a policy with sensible defaults."""
    return Policy(
        id=policy_id,
        policy_name=name or f"Policy {policy_id}",
        policy_type=policy_type,
        tenant_id=tenant_id,
        is_active=is_active,
        priority=priority,
        conditions=conditions or {},
        actions=actions or [],
    )
