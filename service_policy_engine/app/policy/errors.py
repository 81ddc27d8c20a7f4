"""
Policy engine error types.
"""

from typing import Any, Dict, Optional

from shared.errors import AccessLayerException


class OperatorDisabledError(AccessLayerException):
    """A condition used an operator whose capability is switched off."""

    status_code = 400

    def __init__(self, operator: str):
        super().__init__(
            "OPERATOR_DISABLED",
            f"{operator} operator is disabled",
            {"operator": operator}
        )


class UnsafePolicyError(AccessLayerException):
    """A loaded policy carries a raw string expression instead of structured conditions."""

    status_code = 400

    def __init__(self, policy_id: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            "UNSAFE_POLICY",
            "String expressions are not allowed in policy conditions",
            {"policy_id": policy_id, **(details or {})}
        )
