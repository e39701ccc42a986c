"""PostgreSQL implementation of the store."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import asyncpg

from ..contracts import ExecutionStatus, TriggerType, WorkflowDefinition
from ._codec import (
    ATTEMPTS,
    EVENTS,
    EXECUTIONS,
    FAILURES,
    STEP_RECORDS,
    SUBSCRIPTIONS,
    Table,
    from_row,
    to_row,
)
from .models import (
    DeliveryAttempt,
    DeliveryFailure,
    StepRecord,
    WebhookEvent,
    WebhookSubscription,
    WorkflowExecution,
)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS workflow_definitions (
        id TEXT PRIMARY KEY,
        tenant_id TEXT,
        trigger_type TEXT NOT NULL,
        enabled BOOLEAN NOT NULL,
        body JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_executions (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        tenant_id TEXT,
        status TEXT NOT NULL,
        current_step_index INTEGER NOT NULL,
        context JSONB NOT NULL,
        trigger_source TEXT NOT NULL,
        scheduled_for TIMESTAMPTZ,
        started_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        completed_at TIMESTAMPTZ,
        wait_until TIMESTAMPTZ,
        wait_condition JSONB,
        last_error TEXT,
        UNIQUE (workflow_id, scheduled_for)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_executions_waiting ON workflow_executions(status, wait_until)",
    """
    CREATE TABLE IF NOT EXISTS workflow_step_records (
        id SERIAL PRIMARY KEY,
        execution_id TEXT NOT NULL,
        step_index INTEGER NOT NULL,
        step_name TEXT,
        step_type TEXT NOT NULL,
        outcome TEXT NOT NULL,
        output JSONB,
        error TEXT,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS webhook_subscriptions (
        id TEXT PRIMARY KEY,
        tenant_id TEXT,
        name TEXT NOT NULL,
        description TEXT,
        url TEXT NOT NULL,
        events JSONB NOT NULL,
        secret TEXT NOT NULL,
        is_active BOOLEAN NOT NULL,
        retry_enabled BOOLEAN NOT NULL,
        max_retries INTEGER NOT NULL,
        timeout_seconds DOUBLE PRECISION NOT NULL,
        api_key TEXT,
        ip_allowlist JSONB,
        headers JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        last_triggered_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS webhook_events (
        id TEXT PRIMARY KEY,
        tenant_id TEXT,
        event_type TEXT NOT NULL,
        payload JSONB NOT NULL,
        resource_id TEXT,
        resource_type TEXT,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS webhook_deliveries (
        id TEXT PRIMARY KEY,
        subscription_id TEXT NOT NULL,
        event_id TEXT NOT NULL,
        attempt_number INTEGER NOT NULL,
        status TEXT NOT NULL,
        success BOOLEAN NOT NULL,
        http_status INTEGER,
        error_code TEXT,
        error_message TEXT,
        response_body TEXT,
        duration_ms INTEGER,
        next_retry_at TIMESTAMPTZ,
        exhausted BOOLEAN NOT NULL,
        replay BOOLEAN NOT NULL,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_deliveries_retry ON webhook_deliveries(next_retry_at)",
    """
    CREATE TABLE IF NOT EXISTS webhook_failures (
        id TEXT PRIMARY KEY,
        subscription_id TEXT NOT NULL,
        event_id TEXT NOT NULL,
        attempt_id TEXT NOT NULL,
        attempt_number INTEGER NOT NULL,
        reason TEXT NOT NULL,
        http_status INTEGER,
        can_replay BOOLEAN NOT NULL,
        replayed_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
)


def _affected(status: str) -> int:
    """Row count from an asyncpg command tag such as ``UPDATE 1``."""
    return int(status.split()[-1])


def _where(clauses: list[str]) -> str:
    return f"WHERE {' AND '.join(clauses)}" if clauses else ""


class PostgresRepository:
    """Persist workflow and webhook state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        for statement in SCHEMA:
            await conn.execute(statement)

    # ------------------------------------------------------------------
    # Helper methods
    async def _execute(self, query: str, *params: Any) -> int:
        conn = await self._connect()
        try:
            status = await conn.execute(query, *params)
        finally:
            await conn.close()
        return _affected(status)

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *params)
        finally:
            await conn.close()

    async def _insert(self, table: Table, model: Any, suffix: str = "") -> int:
        row = to_row(table, model, native_datetimes=True)
        columns = ", ".join(row)
        marks = ", ".join(f"${i}" for i in range(1, len(row) + 1))
        return await self._execute(
            f"INSERT INTO {table.name} ({columns}) VALUES ({marks}) {suffix}",
            *row.values(),
        )

    async def _update(
        self, table: Table, model: Any, expected_status: str | None = None
    ) -> int:
        row = to_row(table, model, native_datetimes=True)
        row_id = row.pop("id")
        assignments = ", ".join(f"{column} = ${i}" for i, column in enumerate(row, 1))
        params = [*row.values(), row_id]
        query = f"UPDATE {table.name} SET {assignments} WHERE id = ${len(params)}"
        if expected_status is not None:
            params.append(expected_status)
            query += f" AND status = ${len(params)}"
        return await self._execute(query, *params)

    async def _select(self, table: Table, where: str = "", *params: Any) -> list[Any]:
        rows = await self._fetch(f"SELECT * FROM {table.name} {where}", *params)
        return [from_row(table, r) for r in rows]

    async def _get(self, table: Table, row_id: str) -> Any:
        rows = await self._select(table, "WHERE id = $1", row_id)
        return rows[0] if rows else None

    # ------------------------------------------------------------------
    # Workflows
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        await self._execute(
            """
            INSERT INTO workflow_definitions (id, tenant_id, trigger_type, enabled, body, created_at)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (id) DO UPDATE SET
                tenant_id = EXCLUDED.tenant_id,
                trigger_type = EXCLUDED.trigger_type,
                enabled = EXCLUDED.enabled,
                body = EXCLUDED.body
            """,
            definition.id,
            definition.tenant_id,
            definition.trigger.type.value,
            definition.enabled,
            definition.model_dump_json(),
            definition.created_at,
        )

    async def get_definition(self, workflow_id: str) -> WorkflowDefinition | None:
        rows = await self._fetch(
            "SELECT body FROM workflow_definitions WHERE id = $1", workflow_id
        )
        return WorkflowDefinition.model_validate_json(rows[0]["body"]) if rows else None

    async def list_definitions(
        self,
        trigger_type: Optional[TriggerType] = None,
        enabled_only: bool = False,
        tenant_id: Optional[str] = None,
    ) -> list[WorkflowDefinition]:
        clauses: list[str] = []
        params: list[Any] = []
        if trigger_type is not None:
            params.append(trigger_type.value)
            clauses.append(f"trigger_type = ${len(params)}")
        if enabled_only:
            clauses.append("enabled")
        if tenant_id is not None:
            params.append(tenant_id)
            clauses.append(f"tenant_id = ${len(params)}")
        rows = await self._fetch(
            f"SELECT body FROM workflow_definitions {_where(clauses)} ORDER BY created_at",
            *params,
        )
        return [WorkflowDefinition.model_validate_json(r["body"]) for r in rows]

    async def create_execution(self, execution: WorkflowExecution) -> bool:
        inserted = await self._insert(
            EXECUTIONS, execution, "ON CONFLICT (workflow_id, scheduled_for) DO NOTHING"
        )
        return inserted == 1

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        return await self._get(EXECUTIONS, execution_id)

    async def update_execution(
        self, execution: WorkflowExecution, expected: Optional[ExecutionStatus] = None
    ) -> bool:
        changed = await self._update(
            EXECUTIONS, execution, None if expected is None else expected.value
        )
        return changed == 1

    async def transition_execution(
        self,
        execution_id: str,
        expected: ExecutionStatus,
        new: ExecutionStatus,
        now: Optional[datetime] = None,
    ) -> bool:
        params: list[Any] = [new.value, execution_id, expected.value]
        assignments = ["status = $1"]
        if expected == ExecutionStatus.WAITING:
            assignments += ["wait_until = NULL", "wait_condition = NULL"]
        if now is not None:
            params.append(now)
            assignments.append(f"updated_at = ${len(params)}")
            if new == ExecutionStatus.CANCELLED:
                assignments.append(f"completed_at = ${len(params)}")
        changed = await self._execute(
            f"UPDATE workflow_executions SET {', '.join(assignments)} WHERE id = $2 AND status = $3",
            *params,
        )
        return changed == 1

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        tenant_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[WorkflowExecution]:
        clauses: list[str] = []
        params: list[Any] = []
        if workflow_id is not None:
            params.append(workflow_id)
            clauses.append(f"workflow_id = ${len(params)}")
        if status is not None:
            params.append(status.value)
            clauses.append(f"status = ${len(params)}")
        if tenant_id is not None:
            params.append(tenant_id)
            clauses.append(f"tenant_id = ${len(params)}")
        query = f"{_where(clauses)} ORDER BY started_at DESC"
        if limit is not None:
            params.append(limit)
            query += f" LIMIT ${len(params)}"
        params.append(offset)
        query += f" OFFSET ${len(params)}"
        return await self._select(EXECUTIONS, query, *params)

    async def latest_scheduled_execution(
        self, workflow_id: str
    ) -> WorkflowExecution | None:
        rows = await self._select(
            EXECUTIONS,
            "WHERE workflow_id = $1 AND scheduled_for IS NOT NULL ORDER BY scheduled_for DESC LIMIT 1",
            workflow_id,
        )
        return rows[0] if rows else None

    async def list_resumable_executions(self, now: datetime) -> list[WorkflowExecution]:
        return await self._select(
            EXECUTIONS,
            "WHERE status = $1 AND (wait_condition IS NOT NULL OR wait_until <= $2) ORDER BY wait_until",
            ExecutionStatus.WAITING.value,
            now,
        )

    async def append_step_record(self, record: StepRecord) -> StepRecord:
        row = to_row(STEP_RECORDS, record, native_datetimes=True)
        columns = ", ".join(row)
        marks = ", ".join(f"${i}" for i in range(1, len(row) + 1))
        rows = await self._fetch(
            f"INSERT INTO workflow_step_records ({columns}) VALUES ({marks}) RETURNING id",
            *row.values(),
        )
        return record.model_copy(update={"id": rows[0]["id"]})

    async def list_step_records(self, execution_id: str) -> list[StepRecord]:
        return await self._select(
            STEP_RECORDS, "WHERE execution_id = $1 ORDER BY id", execution_id
        )

    # ------------------------------------------------------------------
    # Webhooks
    async def create_subscription(self, subscription: WebhookSubscription) -> None:
        await self._insert(SUBSCRIPTIONS, subscription)

    async def get_subscription(
        self, subscription_id: str, tenant_id: Optional[str] = None
    ) -> WebhookSubscription | None:
        sub = await self._get(SUBSCRIPTIONS, subscription_id)
        if sub is None or (tenant_id is not None and sub.tenant_id != tenant_id):
            return None
        return sub

    async def list_subscriptions(
        self, tenant_id: Optional[str] = None
    ) -> list[WebhookSubscription]:
        if tenant_id is None:
            return await self._select(SUBSCRIPTIONS, "ORDER BY created_at DESC")
        return await self._select(
            SUBSCRIPTIONS, "WHERE tenant_id = $1 ORDER BY created_at DESC", tenant_id
        )

    async def update_subscription(self, subscription: WebhookSubscription) -> None:
        await self._update(SUBSCRIPTIONS, subscription)

    async def delete_subscription(
        self, subscription_id: str, tenant_id: Optional[str] = None
    ) -> bool:
        if await self.get_subscription(subscription_id, tenant_id) is None:
            return False
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    "DELETE FROM webhook_failures WHERE subscription_id = $1", subscription_id
                )
                await conn.execute(
                    "DELETE FROM webhook_deliveries WHERE subscription_id = $1", subscription_id
                )
                status = await conn.execute(
                    "DELETE FROM webhook_subscriptions WHERE id = $1", subscription_id
                )
        finally:
            await conn.close()
        return _affected(status) == 1

    async def list_subscriptions_for_event(
        self, event_type: str, tenant_id: Optional[str] = None
    ) -> list[WebhookSubscription]:
        # a missing tenant only matches tenant-less subscriptions
        return await self._select(
            SUBSCRIPTIONS,
            "WHERE is_active AND events ? $1 AND tenant_id IS NOT DISTINCT FROM $2",
            event_type,
            tenant_id,
        )

    async def touch_subscription(self, subscription_id: str, when: datetime) -> None:
        await self._execute(
            "UPDATE webhook_subscriptions SET last_triggered_at = $1 WHERE id = $2",
            when,
            subscription_id,
        )

    async def create_event(self, event: WebhookEvent) -> None:
        await self._insert(EVENTS, event)

    async def get_event(self, event_id: str) -> WebhookEvent | None:
        return await self._get(EVENTS, event_id)

    async def list_events(
        self,
        event_type: Optional[str] = None,
        tenant_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[WebhookEvent]:
        clauses: list[str] = []
        params: list[Any] = []
        if event_type is not None:
            params.append(event_type)
            clauses.append(f"event_type = ${len(params)}")
        if tenant_id is not None:
            params.append(tenant_id)
            clauses.append(f"tenant_id = ${len(params)}")
        params += [limit, offset]
        return await self._select(
            EVENTS,
            f"{_where(clauses)} ORDER BY created_at DESC LIMIT ${len(params) - 1} OFFSET ${len(params)}",
            *params,
        )

    async def delete_events_before(self, cutoff: datetime) -> int:
        stale = "SELECT id FROM webhook_events WHERE created_at < $1"
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    f"DELETE FROM webhook_failures WHERE event_id IN ({stale})", cutoff
                )
                await conn.execute(
                    f"DELETE FROM webhook_deliveries WHERE event_id IN ({stale})", cutoff
                )
                status = await conn.execute(
                    "DELETE FROM webhook_events WHERE created_at < $1", cutoff
                )
        finally:
            await conn.close()
        return _affected(status)

    async def record_attempt(self, attempt: DeliveryAttempt) -> None:
        await self._insert(ATTEMPTS, attempt)

    async def list_attempts(
        self,
        subscription_id: str,
        limit: Optional[int] = None,
        offset: int = 0,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[DeliveryAttempt]:
        params: list[Any] = [subscription_id]
        clauses = ["subscription_id = $1"]
        if since is not None:
            params.append(since)
            clauses.append(f"created_at >= ${len(params)}")
        if until is not None:
            params.append(until)
            clauses.append(f"created_at <= ${len(params)}")
        query = f"{_where(clauses)} ORDER BY created_at DESC"
        if limit is not None:
            params.append(limit)
            query += f" LIMIT ${len(params)}"
        params.append(offset)
        query += f" OFFSET ${len(params)}"
        return await self._select(ATTEMPTS, query, *params)

    async def count_attempts(self, subscription_id: str, event_id: str) -> int:
        rows = await self._fetch(
            "SELECT COUNT(*) AS n FROM webhook_deliveries WHERE subscription_id = $1 AND event_id = $2",
            subscription_id,
            event_id,
        )
        return int(rows[0]["n"])

    async def list_due_retries(self, now: datetime, limit: int) -> list[DeliveryAttempt]:
        return await self._select(
            ATTEMPTS,
            "WHERE NOT success AND next_retry_at IS NOT NULL AND next_retry_at <= $1 ORDER BY next_retry_at LIMIT $2",
            now,
            limit,
        )

    async def claim_retry(self, attempt_id: str) -> bool:
        changed = await self._execute(
            "UPDATE webhook_deliveries SET next_retry_at = NULL WHERE id = $1 AND next_retry_at IS NOT NULL",
            attempt_id,
        )
        return changed == 1

    async def record_failure(self, failure: DeliveryFailure) -> None:
        await self._insert(FAILURES, failure)

    async def get_failure(self, failure_id: str) -> DeliveryFailure | None:
        return await self._get(FAILURES, failure_id)

    async def list_failures(
        self, subscription_id: str, replayable_only: bool = True
    ) -> list[DeliveryFailure]:
        where = "WHERE subscription_id = $1"
        if replayable_only:
            where += " AND can_replay AND replayed_at IS NULL"
        return await self._select(
            FAILURES, f"{where} ORDER BY created_at DESC", subscription_id
        )

    async def mark_failure_replayed(self, failure_id: str, when: datetime) -> bool:
        changed = await self._execute(
            "UPDATE webhook_failures SET replayed_at = $1 WHERE id = $2 AND replayed_at IS NULL",
            when,
            failure_id,
        )
        return changed == 1
