"""
Repository interface consumed by the policy engine.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from shared.errors import ServiceError
from shared.logging import get_logger

from ..policy.models import ActionBatch, AuditRecord, MetricRecord, Policy


class PolicyRepository(ABC):
    """Document store, policy store and action sink used by one evaluation call.

    Every write is independently failable and may be applied at least once.
    No single transaction spans them unless an implementation overrides
    ``execute_batch``.
    """

    def __init__(self):
        self.logger = get_logger(f"policy_engine.persistence.{type(self).__name__}")

    async def start(self):
        """Open connections. No-op by default."""

    async def stop(self):
        """Release connections. No-op by default."""

    async def health_check(self) -> bool:
        return True

    @abstractmethod
    async def get_document(self, document_id: str, tenant_id: str) -> Optional[Dict[str, Any]]:
        """Load a document by business id, scoped to a tenant."""

    @abstractmethod
    async def get_document_by_id(self, row_id: Any) -> Optional[Dict[str, Any]]:
        """Re-read a document by row id."""

    @abstractmethod
    async def list_active_policies(self, tenant_id: str, policy_types: Sequence[str]) -> List[Policy]:
        """Active policies of the given types, ascending by priority."""

    @abstractmethod
    async def insert_review_queue(self, entries: List[Dict[str, Any]]) -> None:
        pass

    @abstractmethod
    async def insert_fraud_flags(self, flags: List[Dict[str, Any]]) -> None:
        pass

    @abstractmethod
    async def update_document_status(self, row_id: Any, status: str) -> None:
        pass

    @abstractmethod
    async def append_audit(self, record: AuditRecord) -> None:
        pass

    @abstractmethod
    async def append_metric(self, record: MetricRecord) -> None:
        pass

    async def execute_batch(self, batch: ActionBatch) -> None:
        """Issue the batch writes concurrently and wait for all of them.

        A failed write does not cancel or roll back the others; once every
        write has settled, any failure is raised as ``ServiceError``.
        """
        operations = []
        if batch.review_queue_entries:
            operations.append(("review_queue", self.insert_review_queue(batch.review_queue_entries)))
        if batch.fraud_flags:
            operations.append(("fraud_flags", self.insert_fraud_flags(batch.fraud_flags)))
        if batch.status_update:
            operations.append(("status_update", self.update_document_status(batch.document_row_id, batch.status_update)))

        if not operations:
            return

        results = await asyncio.gather(*(op for _, op in operations), return_exceptions=True)

        failed = []
        for (name, _), result in zip(operations, results):
            if isinstance(result, BaseException):
                self.logger.error("Policy action write failed", write=name, error=str(result))
                failed.append({"write": name, "error": str(result)})

        if failed:
            raise ServiceError("Failed to apply policy actions", details={"failed_writes": failed})
