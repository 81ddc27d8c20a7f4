"""
PostgreSQL repository for the policy engine.

Table schemas are owned by the invoice platform's migrations; this module
only reads and appends rows.
"""

import json
from dataclasses import asdict
from typing import Any, Dict, List, Optional, Sequence

import asyncpg

from shared.errors import AccessLayerException, ServiceError

from ..policy.models import ActionBatch, AuditRecord, MetricRecord, Policy
from .repository import PolicyRepository


def _json_dumps(value: Any) -> str:
    return json.dumps(value, default=str)


async def _init_connection(conn: asyncpg.Connection):
    for type_name in ("json", "jsonb"):
        await conn.set_type_codec(
            type_name,
            encoder=_json_dumps,
            decoder=json.loads,
            schema="pg_catalog"
        )


class PostgresPolicyRepository(PolicyRepository):
    """asyncpg-backed repository.

    Overrides ``execute_batch`` to apply queue inserts, fraud flags and the
    status update in a single transaction.
    """

    def __init__(self, dsn: str):
        super().__init__()
        self.dsn = dsn
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Open the connection pool."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=2,
                max_size=10,
                command_timeout=30,
                init=_init_connection
            )
            self.logger.info("PostgreSQL repository started")
        except Exception as e:
            self.logger.error("Failed to start PostgreSQL repository", error=str(e))
            raise AccessLayerException("POSTGRES_START_FAILED", str(e))

    async def stop(self):
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL repository stopped")

    async def health_check(self) -> bool:
        if not self.pool:
            return False
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except Exception as e:
            self.logger.warning("PostgreSQL health check failed", error=str(e))
            return False

    def _require_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise ServiceError("PostgreSQL repository is not started")
        return self.pool

    async def get_document(self, document_id: str, tenant_id: str) -> Optional[Dict[str, Any]]:
        async with self._require_pool().acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM einvoice_documents WHERE document_id = $1 AND tenant_id = $2::uuid",
                document_id, tenant_id
            )
        return dict(row) if row else None

    async def get_document_by_id(self, row_id: Any) -> Optional[Dict[str, Any]]:
        async with self._require_pool().acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM einvoice_documents WHERE id = $1", row_id)
        return dict(row) if row else None

    async def list_active_policies(self, tenant_id: str, policy_types: Sequence[str]) -> List[Policy]:
        async with self._require_pool().acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, policy_name, policy_type, tenant_id, is_active, priority, conditions, actions
                FROM einvoice_policies
                WHERE tenant_id = $1::uuid AND is_active = TRUE AND policy_type = ANY($2::text[])
                ORDER BY priority ASC
                """,
                tenant_id, list(policy_types)
            )
        return [Policy.from_record(dict(row)) for row in rows]

    async def _insert_review_queue(self, conn: asyncpg.Connection, entries: List[Dict[str, Any]]):
        await conn.executemany(
            "INSERT INTO review_queue (invoice_id, reason, priority, flagged_fields) VALUES ($1, $2, $3, $4)",
            [(e["invoice_id"], e["reason"], e["priority"], e["flagged_fields"]) for e in entries]
        )

    async def _insert_fraud_flags(self, conn: asyncpg.Connection, flags: List[Dict[str, Any]]):
        await conn.executemany(
            """
            INSERT INTO fraud_flags_einvoice (document_id, flag_type, risk_score, details, tenant_id)
            VALUES ($1, $2, $3, $4, $5::uuid)
            """,
            [(f["document_id"], f["flag_type"], f["risk_score"], f["details"], f["tenant_id"]) for f in flags]
        )

    async def _update_status(self, conn: asyncpg.Connection, row_id: Any, status: str):
        await conn.execute("UPDATE einvoice_documents SET status = $1 WHERE id = $2", status, row_id)

    async def insert_review_queue(self, entries: List[Dict[str, Any]]) -> None:
        async with self._require_pool().acquire() as conn:
            await self._insert_review_queue(conn, entries)

    async def insert_fraud_flags(self, flags: List[Dict[str, Any]]) -> None:
        async with self._require_pool().acquire() as conn:
            await self._insert_fraud_flags(conn, flags)

    async def update_document_status(self, row_id: Any, status: str) -> None:
        async with self._require_pool().acquire() as conn:
            await self._update_status(conn, row_id, status)

    async def execute_batch(self, batch: ActionBatch) -> None:
        if batch.is_empty:
            return
        try:
            async with self._require_pool().acquire() as conn:
                async with conn.transaction():
                    if batch.review_queue_entries:
                        await self._insert_review_queue(conn, batch.review_queue_entries)
                    if batch.fraud_flags:
                        await self._insert_fraud_flags(conn, batch.fraud_flags)
                    if batch.status_update:
                        await self._update_status(conn, batch.document_row_id, batch.status_update)
        except asyncpg.PostgresError as e:
            self.logger.error("Policy action batch rolled back", error=str(e))
            raise ServiceError("Failed to apply policy actions", details={"error": str(e)})

    async def append_audit(self, record: AuditRecord) -> None:
        data = asdict(record)
        async with self._require_pool().acquire() as conn:
            await conn.execute(
                """
                INSERT INTO audit_logs (
                    entity_type, entity_id, action, event_type, metadata, user_id,
                    old_values, new_values, ip_address, user_agent
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                """,
                data["entity_type"], data["entity_id"], data["action"], data["event_type"],
                data["metadata"], data["user_id"], data["old_values"], data["new_values"],
                data["ip_address"], data["user_agent"]
            )

    async def append_metric(self, record: MetricRecord) -> None:
        async with self._require_pool().acquire() as conn:
            await conn.execute(
                """
                INSERT INTO model_stats (tenant_id, model, stage, confidence, payload)
                VALUES ($1::uuid, $2, $3, $4, $5)
                """,
                record.tenant_id, record.model, record.stage, record.confidence, record.payload
            )
