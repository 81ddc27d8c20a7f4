"""
Unit tests for the policy evaluation engine.
"""

import pytest

from shared.errors import AuthorizationError, NotFoundError, ServiceError
from shared.metrics import MetricsCollector

from service_policy_engine.app.policy.engine import (
    PolicyEngine, build_evaluation_context, calculate_diff
)
from service_policy_engine.app.policy.errors import UnsafePolicyError
from service_policy_engine.app.policy.evaluator import ConditionEvaluator
from service_policy_engine.app.policy.models import (
    AuthenticatedUser, Decision, Policy, PolicyEvaluationRequest, PolicyType, RequestMeta
)

from .helpers import OTHER_TENANT_ID, TENANT_ID, make_policy

LARGE_INVOICE = {"field": "total_amount", "operator": "gt", "value": 10000}
USD = {"field": "currency", "operator": "equals", "value": "USD"}


def make_request(**overrides):
    data = {"document_id": "INV-2024-0042", "tenant_id": TENANT_ID}
    data.update(overrides)
    return PolicyEvaluationRequest(**data)


class TestPolicyEngine:
    """Test cases for PolicyEngine."""

    @pytest.fixture
    def engine(self, repository):
        return PolicyEngine(repository, metrics=MetricsCollector("policy_engine"))

    @pytest.mark.asyncio
    async def test_no_policies_approves(self, engine, repository, caller):
        response = await engine.evaluate(make_request(), caller)

        assert response.final_decision == Decision.APPROVED
        assert response.triggered_policies == 0
        assert response.evaluation_results == []
        assert response.state_diff == {}
        assert repository.metric_records[0]["confidence"] == 0

    @pytest.mark.asyncio
    async def test_policy_without_conditions_triggers(self, engine, repository, caller):
        """Vacuous conjunction is true."""
        repository.add_policy(make_policy("p-1", actions=[{"type": "require_manual_review"}]))

        response = await engine.evaluate(make_request(), caller)

        assert response.evaluation_results[0].triggered is True
        assert response.evaluation_results[0].details == {}
        assert response.final_decision == Decision.REQUIRES_REVIEW

    @pytest.mark.asyncio
    async def test_mixed_conditions_do_not_trigger(self, engine, repository, caller):
        """A passing equals and a failing gt leave the policy untriggered, both recorded."""
        repository.add_policy(make_policy(
            "p-1",
            conditions={
                "usd": USD,
                "huge": {"field": "total_amount", "operator": "gt", "value": 50000},
            },
            actions=[{"type": "block_approval"}],
        ))

        response = await engine.evaluate(make_request(), caller)
        result = response.evaluation_results[0]

        assert result.triggered is False
        assert result.actions == []
        assert result.details["usd"] == {
            "field": "currency", "operator": "equals", "value": "USD", "actual": "USD", "result": True
        }
        assert result.details["huge"]["result"] is False
        assert result.details["huge"]["actual"] == 15000
        assert response.final_decision == Decision.APPROVED

    @pytest.mark.asyncio
    async def test_block_wins_over_review_regardless_of_priority(self, engine, repository, caller):
        repository.add_policy(make_policy("review", priority=1, actions=[{"type": "require_manual_review", "priority": 1}]))
        repository.add_policy(make_policy("block", priority=2, actions=[{"type": "block_approval"}]))

        response = await engine.evaluate(make_request(), caller)

        assert response.final_decision == Decision.BLOCKED
        assert [a["action"] for a in response.executed_actions] == ["routed_to_review", "blocked_approval"]

    @pytest.mark.asyncio
    async def test_review_recorded_after_block(self, engine, repository, caller):
        """Review actions after a block still enqueue, but do not downgrade the decision."""
        repository.add_policy(make_policy("block", priority=1, actions=[{"type": "block_approval"}]))
        repository.add_policy(make_policy("review", priority=2, actions=[{"type": "require_manual_review"}]))

        response = await engine.evaluate(make_request(), caller)

        assert response.final_decision == Decision.BLOCKED
        assert len(repository.review_queue) == 1
        assert repository.review_queue[0] == {
            "invoice_id": "row-1",
            "reason": "Policy triggered: Policy review",
            "priority": 3,
            "flagged_fields": {"policy_triggered": True, "policy_name": "Policy review"},
        }

    @pytest.mark.asyncio
    async def test_fraud_flag_does_not_change_decision(self, engine, repository, caller):
        repository.add_policy(make_policy(
            "fraud",
            policy_type="fraud",
            conditions={"large": LARGE_INVOICE},
            actions=[{"type": "flag_for_fraud", "flag_type": "amount_anomaly", "risk_score": 80,
                      "details": {"threshold": 10000}}],
        ))

        response = await engine.evaluate(make_request(), caller)

        assert response.final_decision == Decision.APPROVED
        assert response.executed_actions == [{"policy": "Policy fraud", "action": "flagged_for_fraud"}]
        assert repository.fraud_flags == [{
            "document_id": "row-1",
            "flag_type": "amount_anomaly",
            "risk_score": 80,
            "details": {"policy_triggered": "Policy fraud", "threshold": 10000},
            "tenant_id": TENANT_ID,
        }]

    @pytest.mark.asyncio
    async def test_fraud_flag_defaults(self, engine, repository, caller):
        repository.add_policy(make_policy("fraud", actions=[{"type": "flag_for_fraud"}]))

        await engine.evaluate(make_request(), caller)

        assert repository.fraud_flags[0]["flag_type"] == "vendor_mismatch"
        assert repository.fraud_flags[0]["risk_score"] == 50

    @pytest.mark.asyncio
    async def test_last_status_update_wins(self, engine, repository, caller):
        repository.add_policy(make_policy("first", priority=1, actions=[{"type": "update_status", "new_status": "on_hold"}]))
        repository.add_policy(make_policy("second", priority=5, actions=[{"type": "update_status", "new_status": "rejected"}]))

        response = await engine.evaluate(make_request(), caller)

        assert response.state_diff == {"status": {"before": "pending", "after": "rejected"}}
        assert response.executed_actions[-1] == {
            "policy": "Policy second", "action": "status_updated", "new_status": "rejected"
        }
        assert repository.documents["row-1"]["status"] == "rejected"

    @pytest.mark.asyncio
    async def test_unknown_action_ignored(self, engine, repository, caller):
        repository.add_policy(make_policy("p-1", actions=[{"type": "notify_slack"}, {"type": "block_approval"}]))

        response = await engine.evaluate(make_request(), caller)

        assert response.final_decision == Decision.BLOCKED
        assert response.executed_actions == [{"policy": "Policy p-1", "action": "blocked_approval"}]
        assert response.evaluation_results[0].actions == [{"type": "notify_slack"}, {"type": "block_approval"}]

    @pytest.mark.asyncio
    async def test_string_expression_rejects_whole_batch(self, engine, repository, caller):
        repository.add_policy(make_policy("good", priority=1, actions=[{"type": "block_approval"}]))
        repository.add_policy(make_policy(
            "legacy", priority=2,
            conditions={"ok": USD, "rule": "total_amount > 1000"},
        ))

        with pytest.raises(UnsafePolicyError) as exc_info:
            await engine.evaluate(make_request(), caller, RequestMeta(ip_address="10.0.0.5", user_agent="pytest"))

        assert exc_info.value.details["policy_id"] == "legacy"
        assert exc_info.value.status_code == 400
        assert repository.review_queue == []
        assert repository.metric_records == []
        assert len(repository.audit_log) == 1
        audit = repository.audit_log[0]
        assert audit["action"] == "POLICY_STRING_EXPRESSION_REJECTED"
        assert audit["event_type"] == "policy_rejected"
        assert audit["metadata"] == {"reason": "string_expression"}
        assert audit["new_values"] == {"policy_id": "legacy", "policy_name": "Policy legacy"}
        assert audit["ip_address"] == "10.0.0.5"

    @pytest.mark.asyncio
    async def test_unparsed_string_conditions_are_unsafe(self, engine, repository, caller):
        repository.add_policy(Policy.from_record({
            "id": "legacy-text",
            "policy_name": "Legacy text rule",
            "policy_type": "approval",
            "tenant_id": TENANT_ID,
            "conditions": "total_amount > 1000000",
            "actions": [{"type": "block_approval"}, {"type": "update_status", "new_status": "blocked"}],
        }))

        with pytest.raises(UnsafePolicyError) as exc_info:
            await engine.evaluate(make_request(), caller)

        assert exc_info.value.details["policy_id"] == "legacy-text"
        assert repository.documents["row-1"]["status"] == "pending"
        assert repository.audit_log[0]["action"] == "POLICY_STRING_EXPRESSION_REJECTED"

    @pytest.mark.asyncio
    async def test_oversized_threshold_does_not_fail_the_call(self, engine, repository, caller):
        repository.add_policy(make_policy(
            "huge", priority=1,
            conditions={"limit": {"field": "total_amount", "operator": "gt", "value": 10 ** 400}},
            actions=[{"type": "block_approval"}],
        ))
        repository.add_policy(make_policy("review", priority=2, actions=[{"type": "require_manual_review"}]))

        response = await engine.evaluate(make_request(), caller)
        huge_result, review_result = response.evaluation_results

        assert huge_result.triggered is False
        assert huge_result.details["limit"]["result"] is False
        assert review_result.triggered is True
        assert response.final_decision == Decision.REQUIRES_REVIEW

    @pytest.mark.asyncio
    async def test_arithmetic_error_only_affects_its_policy(self, repository, caller):
        class OverflowingEvaluator(ConditionEvaluator):
            def evaluate(self, condition, context):
                if condition.field == "total_amount":
                    raise OverflowError("int too large to convert to float")
                return super().evaluate(condition, context)

        engine = PolicyEngine(repository, evaluator=OverflowingEvaluator())
        repository.add_policy(make_policy(
            "amount", priority=1, conditions={"large": LARGE_INVOICE}, actions=[{"type": "block_approval"}],
        ))
        repository.add_policy(make_policy(
            "currency", priority=2, conditions={"usd": USD}, actions=[{"type": "require_manual_review"}],
        ))

        response = await engine.evaluate(make_request(), caller)
        amount_result, currency_result = response.evaluation_results

        assert amount_result.triggered is False
        assert amount_result.details["large"]["error"] == "int too large to convert to float"
        assert currency_result.triggered is True
        assert response.final_decision == Decision.REQUIRES_REVIEW

    @pytest.mark.asyncio
    async def test_invalid_condition_schema_recorded(self, engine, repository, caller):
        repository.add_policy(make_policy(
            "p-1",
            conditions={"bad": {"field": "total_amount", "operator": "between", "value": [1, 2]}},
            actions=[{"type": "block_approval"}],
        ))

        response = await engine.evaluate(make_request(), caller)
        result = response.evaluation_results[0]

        assert result.triggered is False
        assert result.details["bad"] == {"result": False, "error": "Invalid condition schema"}

    @pytest.mark.asyncio
    async def test_regex_error_only_affects_its_policy(self, engine, repository, caller):
        repository.add_policy(make_policy(
            "regex", priority=1,
            conditions={"pattern": {"field": "sender_id", "operator": "regex", "value": "^vendor"}},
            actions=[{"type": "block_approval"}],
        ))
        repository.add_policy(make_policy("review", priority=2, actions=[{"type": "require_manual_review"}]))

        response = await engine.evaluate(make_request(), caller)
        regex_result, review_result = response.evaluation_results

        assert regex_result.triggered is False
        assert regex_result.details["pattern"]["error"] == "regex operator is disabled"
        assert regex_result.details["pattern"]["result"] is False
        assert review_result.triggered is True
        assert response.final_decision == Decision.REQUIRES_REVIEW

    @pytest.mark.asyncio
    async def test_regex_enabled_engine(self, repository, caller):
        engine = PolicyEngine(repository, evaluator=ConditionEvaluator(allow_regex=True))
        repository.add_policy(make_policy(
            "regex",
            conditions={"pattern": {"field": "sender_id", "operator": "regex", "value": "^vendor-permian"}},
            actions=[{"type": "block_approval"}],
        ))

        response = await engine.evaluate(make_request(), caller)

        assert response.final_decision == Decision.BLOCKED

    @pytest.mark.asyncio
    async def test_caller_context_shadows_document(self, engine, repository, caller):
        repository.add_policy(make_policy(
            "p-1",
            conditions={"currency": {"field": "currency", "operator": "equals", "value": "CAD"}},
            actions=[{"type": "block_approval"}],
        ))

        response = await engine.evaluate(make_request(context={"currency": "CAD"}), caller)

        assert response.final_decision == Decision.BLOCKED
        assert response.evaluation_results[0].details["currency"]["actual"] == "CAD"

    @pytest.mark.asyncio
    async def test_policy_selection(self, engine, repository, caller):
        """Only active policies of the tenant and requested types are evaluated, by priority."""
        repository.add_policy(make_policy("routing", priority=3, policy_type="routing"))
        repository.add_policy(make_policy("inactive", priority=1, is_active=False))
        repository.add_policy(make_policy("foreign", priority=1, tenant_id=OTHER_TENANT_ID))
        repository.add_policy(make_policy("fraud", priority=2, policy_type="fraud"))
        repository.add_policy(make_policy("validation", priority=0, policy_type="validation"))

        response = await engine.evaluate(
            make_request(policy_types=[PolicyType.FRAUD, PolicyType.ROUTING]), caller
        )

        assert [r.policy_id for r in response.evaluation_results] == ["fraud", "routing"]

    @pytest.mark.asyncio
    async def test_second_run_has_empty_diff(self, engine, repository, caller):
        repository.add_policy(make_policy("review", actions=[{"type": "require_manual_review"}]))

        await engine.evaluate(make_request(), caller)
        second = await engine.evaluate(make_request(), caller)

        assert second.state_diff == {}

    @pytest.mark.asyncio
    async def test_audit_and_metric_written(self, engine, repository, caller):
        repository.add_policy(make_policy("hit", priority=1, actions=[{"type": "update_status", "new_status": "approved"}]))
        repository.add_policy(make_policy("miss", priority=2, conditions={"huge": {
            "field": "total_amount", "operator": "gte", "value": 1000000
        }}))

        await engine.evaluate(make_request(), caller)

        audit = repository.audit_log[-1]
        assert audit["action"] == "POLICY_EVALUATION"
        assert audit["user_id"] == TENANT_ID
        assert audit["metadata"] == {"final_decision": "approved", "triggered_policies": 1}
        assert audit["old_values"]["status"] == "pending"
        assert audit["new_values"]["status"] == "approved"

        metric = repository.metric_records[-1]
        assert metric["model"] == "policy_engine"
        assert metric["stage"] == "evaluation"
        assert metric["confidence"] == 0.5
        assert metric["payload"]["policies_evaluated"] == 2

    @pytest.mark.asyncio
    async def test_tenant_mismatch_forbidden(self, engine, repository):
        with pytest.raises(AuthorizationError):
            await engine.evaluate(make_request(), AuthenticatedUser(user_id=OTHER_TENANT_ID))

        assert repository.audit_log == []

    @pytest.mark.asyncio
    async def test_document_not_found(self, engine, caller):
        with pytest.raises(NotFoundError, match="Document not found"):
            await engine.evaluate(make_request(document_id="INV-MISSING"), caller)

    @pytest.mark.asyncio
    async def test_partial_batch_failure_keeps_other_writes(self, engine, repository, caller):
        async def failing_insert(flags):
            raise RuntimeError("fraud table unavailable")

        repository.insert_fraud_flags = failing_insert
        repository.add_policy(make_policy("p-1", actions=[
            {"type": "require_manual_review"},
            {"type": "flag_for_fraud"},
            {"type": "update_status", "new_status": "on_hold"},
        ]))

        with pytest.raises(ServiceError) as exc_info:
            await engine.evaluate(make_request(), caller)

        assert exc_info.value.details["failed_writes"][0]["write"] == "fraud_flags"
        assert len(repository.review_queue) == 1
        assert repository.documents["row-1"]["status"] == "on_hold"

    @pytest.mark.asyncio
    async def test_unexpected_store_error_becomes_service_error(self, engine, repository, caller):
        async def broken(*args):
            raise ConnectionError("db down")

        repository.list_active_policies = broken

        with pytest.raises(ServiceError, match="Failed to fetch policies"):
            await engine.evaluate(make_request(), caller)

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, engine, repository, caller):
        repository.add_policy(make_policy("block", actions=[{"type": "block_approval"}]))

        await engine.evaluate(make_request(), caller)

        registry = engine.metrics.registry
        assert registry.get_sample_value("policy_evaluations_total", {"decision": "blocked"}) == 1.0
        assert registry.get_sample_value("policies_triggered_total", {"policy_type": "approval"}) == 1.0


class TestHelpers:
    """Test cases for context building and diffing."""

    def test_build_evaluation_context(self, sample_document):
        context = build_evaluation_context(sample_document, {"total_amount": 1, "well_id": "W-7"})

        assert context["total_amount"] == 1
        assert context["well_id"] == "W-7"
        assert context["currency"] == "USD"
        assert "id" not in context
        assert "tenant_id" not in context

    def test_calculate_diff(self):
        before = {"status": "pending", "amount": 10, "legacy": "x"}
        after = {"status": "approved", "amount": 10, "note": "added"}

        assert calculate_diff(before, after) == {
            "status": {"before": "pending", "after": "approved"},
            "note": {"before": None, "after": "added"},
            "legacy": {"before": "x", "after": None},
        }

    def test_calculate_diff_unchanged(self, sample_document):
        assert calculate_diff(sample_document, dict(sample_document)) == {}
