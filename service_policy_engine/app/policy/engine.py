"""
Policy evaluation engine.

One call runs linearly through: authorize, load, safety gate, evaluate,
dispatch, diff + audit, respond. Any stage failing ends the call; nothing
is retried.
"""

import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from opentelemetry import trace
from pydantic import ValidationError as SchemaValidationError

from shared.errors import AccessLayerException, NotFoundError, ServiceError
from shared.logging import get_logger, set_user_context
from shared.metrics import MetricsCollector
from shared.tracing import trace_span

from ..auth.tenant_shield import assert_tenant_access
from ..persistence.repository import PolicyRepository
from .errors import OperatorDisabledError, UnsafePolicyError
from .evaluator import ConditionEvaluator, has_string_expression, parse_condition
from .models import (
    ActionBatch, AuditRecord, AuthenticatedUser, BlockApproval, Decision,
    EvaluationResponse, EvaluationResult, ExecutedAction, FlagForFraud,
    MetricRecord, Policy, PolicyEvaluationRequest, RequestMeta,
    RequireManualReview, UpdateStatus, parse_action
)

# Document columns exposed to conditions.
DOCUMENT_CONTEXT_FIELDS = (
    "document_id",
    "format",
    "status",
    "confidence_score",
    "total_amount",
    "currency",
    "country_code",
    "sender_id",
    "receiver_id",
    "issue_date",
    "due_date",
    "created_at",
)


def build_evaluation_context(document: Dict[str, Any], extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Flatten document fields, then overlay caller context (caller keys win)."""
    context = {name: document.get(name) for name in DOCUMENT_CONTEXT_FIELDS}
    context.update(extra or {})
    return context


def calculate_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """Field-level before/after pairs for changed and removed fields."""
    diff: Dict[str, Dict[str, Any]] = {}

    for key, value in after.items():
        if key not in before or before[key] != value:
            diff[key] = {"before": before.get(key), "after": value}

    for key, value in before.items():
        if key not in after:
            diff[key] = {"before": value, "after": None}

    return diff


class PolicyEngine:
    """Evaluates a tenant's policies against one document and applies the outcome."""

    def __init__(
        self,
        repository: PolicyRepository,
        evaluator: Optional[ConditionEvaluator] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.repository = repository
        self.evaluator = evaluator or ConditionEvaluator()
        self.metrics = metrics
        self.logger = get_logger("policy_engine.engine")
        self.tracer = trace.get_tracer(__name__)

    async def evaluate(
        self,
        request: PolicyEvaluationRequest,
        caller: AuthenticatedUser,
        meta: Optional[RequestMeta] = None
    ) -> EvaluationResponse:
        """Run one evaluation pass for ``request`` on behalf of ``caller``."""
        meta = meta or RequestMeta()
        attributes = {"policy.document_id": request.document_id, "policy.tenant_id": request.tenant_id}

        with trace_span(self.tracer, "policy_engine.evaluate", attributes):
            if self.metrics:
                with self.metrics.time_operation("policy_evaluation_duration_seconds"):
                    response = await self._evaluate(request, caller, meta)
                self.metrics.increment_counter("policy_evaluations_total", decision=response.final_decision.value)
            else:
                response = await self._evaluate(request, caller, meta)

        return response

    async def _evaluate(
        self,
        request: PolicyEvaluationRequest,
        caller: AuthenticatedUser,
        meta: RequestMeta
    ) -> EvaluationResponse:
        assert_tenant_access(request.tenant_id, caller)
        set_user_context(user_id=caller.user_id, tenant_id=request.tenant_id)

        try:
            return await self._run(request, caller, meta)
        except AccessLayerException:
            raise
        except Exception as e:
            self.logger.error("Policy evaluation failed", error=str(e), exc_info=True)
            raise ServiceError("Policy evaluation failed", details={"message": str(e)}) from e

    async def _run(
        self,
        request: PolicyEvaluationRequest,
        caller: AuthenticatedUser,
        meta: RequestMeta
    ) -> EvaluationResponse:
        document = await self.repository.get_document(request.document_id, request.tenant_id)
        if document is None:
            raise NotFoundError("Document not found", details={"document_id": request.document_id})

        context = build_evaluation_context(document, request.context)
        policy_types = [policy_type.value for policy_type in request.policy_types]

        try:
            policies = await self.repository.list_active_policies(request.tenant_id, policy_types)
        except Exception as e:
            self.logger.error("Failed to fetch policies", error=str(e))
            raise ServiceError("Failed to fetch policies") from e

        await self._enforce_safety_gate(policies, document, caller, meta)

        before_state = dict(document)
        results: List[EvaluationResult] = []
        triggered: List[Policy] = []
        for policy in policies:
            result = self.evaluate_policy(policy, context)
            results.append(result)
            if result.triggered:
                triggered.append(policy)
                if self.metrics:
                    self.metrics.increment_counter("policies_triggered_total", policy_type=policy.policy_type)

        decision, batch, executed = self.resolve_actions(triggered, document, request.tenant_id)

        await self.repository.execute_batch(batch)

        after_state = await self.repository.get_document_by_id(document["id"]) or document
        diff = calculate_diff(before_state, after_state)

        await self.repository.append_audit(AuditRecord(
            entity_type="policy_evaluation",
            entity_id=document["id"],
            action="POLICY_EVALUATION",
            event_type="policy_evaluation",
            user_id=caller.user_id,
            metadata={"final_decision": decision.value, "triggered_policies": len(triggered)},
            old_values=before_state,
            new_values=after_state,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
        ))

        await self.repository.append_metric(MetricRecord(
            tenant_id=request.tenant_id,
            model="policy_engine",
            stage="evaluation",
            confidence=len(triggered) / max(1, len(results)),
            payload={
                "document_id": request.document_id,
                "policies_evaluated": len(results),
                "policies_triggered": len(triggered),
                "final_decision": decision.value,
            },
        ))

        self.logger.info(
            "Policy evaluation completed",
            document_id=request.document_id,
            policies_evaluated=len(results),
            policies_triggered=len(triggered),
            final_decision=decision.value
        )

        return EvaluationResponse(
            document_id=request.document_id,
            evaluation_results=results,
            triggered_policies=len(triggered),
            final_decision=decision,
            executed_actions=[action.to_dict() for action in executed],
            state_diff=diff,
            evaluated_at=datetime.now(timezone.utc).isoformat(),
        )

    async def _enforce_safety_gate(
        self,
        policies: List[Policy],
        document: Dict[str, Any],
        caller: AuthenticatedUser,
        meta: RequestMeta
    ) -> None:
        """Reject the whole batch if any policy carries a string expression."""
        unsafe = next((p for p in policies if has_string_expression(p.conditions)), None)
        if unsafe is None:
            return

        self.logger.warning(
            "Policy with string expression rejected",
            policy_id=unsafe.id,
            policy_name=unsafe.policy_name
        )
        await self.repository.append_audit(AuditRecord(
            entity_type="policy_evaluation",
            entity_id=document["id"],
            action="POLICY_STRING_EXPRESSION_REJECTED",
            event_type="policy_rejected",
            user_id=caller.user_id,
            metadata={"reason": "string_expression"},
            new_values={"policy_id": unsafe.id, "policy_name": unsafe.policy_name},
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
        ))
        raise UnsafePolicyError(unsafe.id)

    def evaluate_policy(self, policy: Policy, context: Dict[str, Any]) -> EvaluationResult:
        """Evaluate every condition of a policy; it triggers only if all hold.

        A policy with no conditions triggers unconditionally.
        """
        triggered = True
        details: Dict[str, Dict[str, Any]] = {}

        for key, raw_condition in policy.conditions.items():
            try:
                condition = parse_condition(raw_condition)
            except SchemaValidationError:
                details[key] = {"result": False, "error": "Invalid condition schema"}
                triggered = False
                continue

            condition_fields = condition.model_dump(mode="json")
            try:
                result = self.evaluator.evaluate(condition, context)
            except (OperatorDisabledError, re.error, ArithmeticError, TypeError, ValueError) as e:
                message = e.message if isinstance(e, OperatorDisabledError) else str(e)
                self.logger.warning(
                    "Condition evaluation failed",
                    policy_id=policy.id,
                    condition=key,
                    error=message
                )
                details[key] = {**condition_fields, "result": False, "error": message}
                triggered = False
                continue

            details[key] = {**condition_fields, "actual": context.get(condition.field), "result": result}
            if not result:
                triggered = False

        return EvaluationResult(
            policy_id=policy.id,
            policy_name=policy.policy_name,
            triggered=triggered,
            actions=list(policy.actions) if triggered else [],
            details=details,
        )

    def resolve_actions(
        self,
        triggered: List[Policy],
        document: Dict[str, Any],
        tenant_id: str
    ) -> Tuple[Decision, ActionBatch, List[ExecutedAction]]:
        """Fold triggered policies' actions into a decision and a write batch.

        Policies are visited in priority order and actions in declaration
        order. ``blocked`` is never downgraded; the last ``update_status``
        wins.
        """
        decision = Decision.APPROVED
        batch = ActionBatch(document_row_id=document["id"])
        executed: List[ExecutedAction] = []

        for policy in triggered:
            for raw_action in policy.actions:
                action = parse_action(raw_action)

                if isinstance(action, BlockApproval):
                    decision = decision.escalate(Decision.BLOCKED)
                    executed.append(ExecutedAction(policy.policy_name, "blocked_approval"))

                elif isinstance(action, RequireManualReview):
                    decision = decision.escalate(Decision.REQUIRES_REVIEW)
                    batch.review_queue_entries.append({
                        "invoice_id": document["id"],
                        "reason": f"Policy triggered: {policy.policy_name}",
                        "priority": action.priority,
                        "flagged_fields": {"policy_triggered": True, "policy_name": policy.policy_name},
                    })
                    executed.append(ExecutedAction(policy.policy_name, "routed_to_review"))

                elif isinstance(action, FlagForFraud):
                    batch.fraud_flags.append({
                        "document_id": document["id"],
                        "flag_type": action.flag_type,
                        "risk_score": action.risk_score,
                        "details": {"policy_triggered": policy.policy_name, **action.details},
                        "tenant_id": tenant_id,
                    })
                    executed.append(ExecutedAction(policy.policy_name, "flagged_for_fraud"))

                elif isinstance(action, UpdateStatus):
                    batch.status_update = action.new_status
                    executed.append(ExecutedAction(policy.policy_name, "status_updated", action.new_status))

                else:
                    self.logger.debug("Ignoring unsupported policy action", policy_id=policy.id, action=raw_action)

        return decision, batch, executed
