"""
Request validation for policy evaluation.

Validation returns a ``ValidationOutcome`` instead of raising, so callers
branch on ``outcome.ok`` and forward ``outcome.issues`` verbatim.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as SchemaValidationError

from .models import PolicyEvaluationRequest


@dataclass
class ValidationOutcome:
    request: Optional[PolicyEvaluationRequest] = None
    issues: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.request is not None and not self.issues


def validate_policy_request(body: Any) -> ValidationOutcome:
    """Validate a raw evaluation request body.

    Each schema error becomes one ``{"path", "message", "code"}`` issue.
    """
    try:
        request = PolicyEvaluationRequest.model_validate(body)
    except SchemaValidationError as e:
        return ValidationOutcome(issues=[
            {"path": list(error["loc"]), "message": error["msg"], "code": error["type"]}
            for error in e.errors()
        ])

    return ValidationOutcome(request=request)
