"""
Data models for the policy engine.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PolicyType(str, Enum):
    """Policy families a tenant can define."""
    VALIDATION = "validation"
    APPROVAL = "approval"
    ROUTING = "routing"
    FRAUD = "fraud"


class ConditionOperator(str, Enum):
    """Condition operators."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    INCLUDES = "includes"
    REGEX = "regex"


class Condition(BaseModel):
    """One atomic test against a context field."""
    model_config = ConfigDict(frozen=True)

    field: str = Field(..., min_length=1)
    operator: ConditionOperator
    value: Any = None


class Decision(str, Enum):
    """Overall outcome of one evaluation pass."""
    APPROVED = "approved"
    REQUIRES_REVIEW = "requires_review"
    BLOCKED = "blocked"

    @property
    def severity(self) -> int:
        return _DECISION_SEVERITY[self]

    def escalate(self, other: "Decision") -> "Decision":
        """Return the more severe of the two decisions."""
        return other if other.severity > self.severity else self


_DECISION_SEVERITY = {
    Decision.APPROVED: 0,
    Decision.REQUIRES_REVIEW: 1,
    Decision.BLOCKED: 2,
}


@dataclass(frozen=True)
class BlockApproval:
    pass


@dataclass(frozen=True)
class RequireManualReview:
    priority: int = 3


@dataclass(frozen=True)
class FlagForFraud:
    flag_type: str = "vendor_mismatch"
    risk_score: float = 50
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UpdateStatus:
    new_status: str


Action = Union[BlockApproval, RequireManualReview, FlagForFraud, UpdateStatus]


def parse_action(raw: Any) -> Optional[Action]:
    """Parse a stored action mapping.

    Returns ``None`` for unknown action types, and for ``update_status``
    entries without a target status, so newer action kinds pass through
    older engines as no-ops.
    """
    if not isinstance(raw, dict):
        return None

    action_type = raw.get("type")
    if action_type == "block_approval":
        return BlockApproval()
    if action_type == "require_manual_review":
        return RequireManualReview(priority=raw.get("priority") or 3)
    if action_type == "flag_for_fraud":
        details = raw.get("details")
        return FlagForFraud(
            flag_type=raw.get("flag_type") or "vendor_mismatch",
            risk_score=raw.get("risk_score") or 50,
            details=dict(details) if isinstance(details, dict) else {},
        )
    if action_type == "update_status":
        new_status = raw.get("new_status")
        return UpdateStatus(new_status=new_status) if new_status else None
    return None


@dataclass
class Policy:
    """A tenant-owned conjunctive rule and the actions it fires."""
    id: str
    policy_name: str
    policy_type: str
    tenant_id: str
    is_active: bool = True
    priority: int = 0
    conditions: Dict[str, Any] = field(default_factory=dict)
    actions: List[Any] = field(default_factory=list)

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Policy":
        """Build a policy from a stored row."""
        conditions = record.get("conditions")
        if conditions is None:
            conditions = {}
        elif isinstance(conditions, list):
            conditions = {str(index): value for index, value in enumerate(conditions)}
        elif not isinstance(conditions, dict):
            # A scalar stays a single condition, never an empty conjunction.
            conditions = {"expression": conditions}

        actions = record.get("actions")
        return cls(
            id=str(record["id"]),
            policy_name=record.get("policy_name") or "",
            policy_type=record.get("policy_type") or "",
            tenant_id=str(record.get("tenant_id") or ""),
            is_active=bool(record.get("is_active", True)),
            priority=record.get("priority") or 0,
            conditions=conditions,
            actions=list(actions) if isinstance(actions, list) else [],
        )


@dataclass(frozen=True)
class AuthenticatedUser:
    """Caller identity resolved from a bearer token."""
    user_id: str
    email: Optional[str] = None


@dataclass(frozen=True)
class RequestMeta:
    """Transport details recorded on audit entries."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_headers(cls, headers) -> "RequestMeta":
        forwarded = headers.get("x-forwarded-for")
        return cls(
            ip_address=forwarded.split(",")[0].strip() if forwarded else None,
            user_agent=headers.get("user-agent"),
        )


@dataclass
class ExecutedAction:
    policy: str
    action: str
    new_status: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"policy": self.policy, "action": self.action}
        if self.new_status is not None:
            data["new_status"] = self.new_status
        return data


@dataclass
class ActionBatch:
    """Side effects collected from triggered policies for one document."""
    document_row_id: Any
    review_queue_entries: List[Dict[str, Any]] = field(default_factory=list)
    fraud_flags: List[Dict[str, Any]] = field(default_factory=list)
    status_update: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.review_queue_entries or self.fraud_flags or self.status_update)


@dataclass
class AuditRecord:
    entity_type: str
    entity_id: Any
    action: str
    event_type: str
    user_id: Optional[str]
    metadata: Dict[str, Any] = field(default_factory=dict)
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class MetricRecord:
    tenant_id: str
    model: str
    stage: str
    confidence: float
    payload: Dict[str, Any] = field(default_factory=dict)


class PolicyEvaluationRequest(BaseModel):
    """Validated evaluation request."""
    document_id: str = Field(..., min_length=1, strict=True, description="Document ID")
    tenant_id: str = Field(..., strict=True, description="Tenant ID (UUID)")
    policy_types: List[PolicyType] = Field(
        default_factory=lambda: list(PolicyType),
        description="Policy types to evaluate"
    )
    context: Dict[str, Any] = Field(default_factory=dict, description="Additional context")

    @field_validator("tenant_id")
    @classmethod
    def tenant_id_is_uuid(cls, value: str) -> str:
        try:
            uuid.UUID(value)
        except ValueError:
            raise ValueError("Tenant ID must be a UUID")
        return value

    @field_validator("policy_types", mode="before")
    @classmethod
    def default_policy_types(cls, value: Any) -> Any:
        return list(PolicyType) if value is None else value

    @field_validator("context", mode="before")
    @classmethod
    def default_context(cls, value: Any) -> Any:
        return {} if value is None else value


class EvaluationResult(BaseModel):
    """Outcome of evaluating one policy."""
    policy_id: str
    policy_name: str
    triggered: bool
    actions: List[Any] = Field(default_factory=list)
    details: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


class EvaluationResponse(BaseModel):
    """Response model for a policy evaluation pass."""
    document_id: str
    evaluation_results: List[EvaluationResult]
    triggered_policies: int
    final_decision: Decision
    executed_actions: List[Dict[str, Any]]
    state_diff: Dict[str, Dict[str, Any]]
    evaluated_at: str
