"""
In-memory repository for local runs and tests.
"""

import copy
import uuid
from dataclasses import asdict
from typing import Any, Dict, List, Optional, Sequence

from ..policy.models import AuditRecord, MetricRecord, Policy
from .repository import PolicyRepository


class InMemoryPolicyRepository(PolicyRepository):
    """Dictionary-backed repository. Reads return copies.

    Not thread-safe. Writes never await, so tasks on one event loop cannot
    interleave inside a write.
    """

    def __init__(self):
        super().__init__()
        self.documents: Dict[Any, Dict[str, Any]] = {}
        self.policies: List[Policy] = []
        self.review_queue: List[Dict[str, Any]] = []
        self.fraud_flags: List[Dict[str, Any]] = []
        self.audit_log: List[Dict[str, Any]] = []
        self.metric_records: List[Dict[str, Any]] = []

    def add_document(self, document: Dict[str, Any]) -> Dict[str, Any]:
        """Seed a document; assigns a row id when missing."""
        row = dict(document)
        row.setdefault("id", str(uuid.uuid4()))
        self.documents[row["id"]] = row
        return copy.deepcopy(row)

    def add_policy(self, policy: Policy) -> Policy:
        self.policies.append(policy)
        return policy

    async def get_document(self, document_id: str, tenant_id: str) -> Optional[Dict[str, Any]]:
        for row in self.documents.values():
            if row.get("document_id") == document_id and str(row.get("tenant_id")) == tenant_id:
                return copy.deepcopy(row)
        return None

    async def get_document_by_id(self, row_id: Any) -> Optional[Dict[str, Any]]:
        row = self.documents.get(row_id)
        return copy.deepcopy(row) if row is not None else None

    async def list_active_policies(self, tenant_id: str, policy_types: Sequence[str]) -> List[Policy]:
        selected = [
            policy for policy in self.policies
            if policy.tenant_id == tenant_id
            and policy.is_active
            and policy.policy_type in policy_types
        ]
        selected.sort(key=lambda p: p.priority)
        return copy.deepcopy(selected)

    async def insert_review_queue(self, entries: List[Dict[str, Any]]) -> None:
        self.review_queue.extend(copy.deepcopy(entries))

    async def insert_fraud_flags(self, flags: List[Dict[str, Any]]) -> None:
        self.fraud_flags.extend(copy.deepcopy(flags))

    async def update_document_status(self, row_id: Any, status: str) -> None:
        row = self.documents.get(row_id)
        if row is not None:
            row["status"] = status

    async def append_audit(self, record: AuditRecord) -> None:
        self.audit_log.append(copy.deepcopy(asdict(record)))

    async def append_metric(self, record: MetricRecord) -> None:
        self.metric_records.append(copy.deepcopy(asdict(record)))
