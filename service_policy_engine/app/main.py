"""
Policy engine service.
"""

from typing import Optional

from fastapi import Request

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import AuthenticationError, ValidationError

from .auth.identity_client import IdentityClient
from .auth.tenant_shield import get_token_from_request
from .persistence import InMemoryPolicyRepository, PolicyRepository, PostgresPolicyRepository
from .policy.engine import PolicyEngine
from .policy.evaluator import ConditionEvaluator
from .policy.models import EvaluationResponse, RequestMeta
from .policy.validation import validate_policy_request


class PolicyEngineService(BaseService):
    """Policy engine service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        repository: Optional[PolicyRepository] = None,
        identity_client: Optional[IdentityClient] = None
    ):
        super().__init__("policy_engine", 8020, config=config)

        self.repository = repository or self._create_repository()
        self.identity_client = identity_client or IdentityClient(
            self.config.identity_service_url,
            api_key=self.config.identity_service_key,
            timeout=self.config.identity_timeout_seconds
        )
        self.engine = PolicyEngine(
            self.repository,
            evaluator=ConditionEvaluator(allow_regex=self.config.allow_regex_operator),
            metrics=self.metrics
        )

        self._setup_policy_routes()

    def _create_repository(self) -> PolicyRepository:
        if self.config.repository == "postgres":
            return PostgresPolicyRepository(self.config.postgres_dsn)
        return InMemoryPolicyRepository()

    def _setup_policy_routes(self):
        """Set up policy-engine routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "policy_engine",
                "message": "Invoice Policy Platform - Policy Engine Service",
                "version": "1.0.0",
                "capabilities": ["policy_evaluation", "tenant_isolation", "audit"]
            }

        @self.app.post("/policy-engine/evaluate", response_model=EvaluationResponse)
        async def evaluate_policies(request: Request):
            """Evaluate a tenant's policies against one document."""
            token = get_token_from_request(request.headers)
            if not token:
                raise AuthenticationError("Authorization header required")

            caller = await self.identity_client.get_user(token)

            try:
                body = await request.json()
            except ValueError:
                raise ValidationError(details={"issues": [
                    {"path": [], "message": "Request body must be valid JSON", "code": "invalid_json"}
                ]})

            outcome = validate_policy_request(body)
            if not outcome.ok:
                raise ValidationError(details={"issues": outcome.issues})

            return await self.engine.evaluate(
                outcome.request,
                caller,
                RequestMeta.from_headers(request.headers)
            )

    async def _check_dependencies(self):
        """Check policy engine dependencies."""
        healthy = await self.repository.health_check()
        return {"repository": "ok" if healthy else "error"}

    async def start(self):
        await self.repository.start()
        self.logger.info("Policy engine service started")

    async def stop(self):
        await self.repository.stop()
        self.logger.info("Policy engine service stopped")


def create_app():
    """Create policy engine service application."""
    service = PolicyEngineService()
    return service.app


if __name__ == "__main__":
    service = PolicyEngineService()
    service.run()
