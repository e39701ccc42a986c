"""SQLite implementation of the store."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..contracts import ExecutionStatus, TriggerType, WorkflowDefinition
from ..utils.time import to_iso
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
        enabled INTEGER NOT NULL,
        body TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_executions (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        tenant_id TEXT,
        status TEXT NOT NULL,
        current_step_index INTEGER NOT NULL,
        context TEXT NOT NULL,
        trigger_source TEXT NOT NULL,
        scheduled_for TEXT,
        started_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        completed_at TEXT,
        wait_until TEXT,
        wait_condition TEXT,
        last_error TEXT,
        UNIQUE (workflow_id, scheduled_for)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_executions_waiting ON workflow_executions(status, wait_until)",
    """
    CREATE TABLE IF NOT EXISTS workflow_step_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        execution_id TEXT NOT NULL,
        step_index INTEGER NOT NULL,
        step_name TEXT,
        step_type TEXT NOT NULL,
        outcome TEXT NOT NULL,
        output TEXT,
        error TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS webhook_subscriptions (
        id TEXT PRIMARY KEY,
        tenant_id TEXT,
        name TEXT NOT NULL,
        description TEXT,
        url TEXT NOT NULL,
        events TEXT NOT NULL,
        secret TEXT NOT NULL,
        is_active INTEGER NOT NULL,
        retry_enabled INTEGER NOT NULL,
        max_retries INTEGER NOT NULL,
        timeout_seconds REAL NOT NULL,
        api_key TEXT,
        ip_allowlist TEXT,
        headers TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        last_triggered_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS webhook_events (
        id TEXT PRIMARY KEY,
        tenant_id TEXT,
        event_type TEXT NOT NULL,
        payload TEXT NOT NULL,
        resource_id TEXT,
        resource_type TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS webhook_deliveries (
        id TEXT PRIMARY KEY,
        subscription_id TEXT NOT NULL,
        event_id TEXT NOT NULL,
        attempt_number INTEGER NOT NULL,
        status TEXT NOT NULL,
        success INTEGER NOT NULL,
        http_status INTEGER,
        error_code TEXT,
        error_message TEXT,
        response_body TEXT,
        duration_ms INTEGER,
        next_retry_at TEXT,
        exhausted INTEGER NOT NULL,
        replay INTEGER NOT NULL,
        created_at TEXT NOT NULL
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
        can_replay INTEGER NOT NULL,
        replayed_at TEXT,
        created_at TEXT NOT NULL
    )
    """,
)


class SQLiteRepository:
    """Persist workflow and webhook state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        for statement in SCHEMA:
            cur.execute(statement)
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _insert_row(self, table: Table, row: dict[str, Any], or_ignore: bool = False) -> int:
        columns = ", ".join(row)
        marks = ", ".join("?" for _ in row)
        verb = "INSERT OR IGNORE" if or_ignore else "INSERT"
        return self._execute(
            f"{verb} INTO {table.name} ({columns}) VALUES ({marks})", *row.values()
        )

    def _update_row(
        self, table: Table, row: dict[str, Any], expected_status: str | None = None
    ) -> int:
        row = dict(row)
        row_id = row.pop("id")
        assignments = ", ".join(f"{column} = ?" for column in row)
        query = f"UPDATE {table.name} SET {assignments} WHERE id = ?"
        params = [*row.values(), row_id]
        if expected_status is not None:
            query += " AND status = ?"
            params.append(expected_status)
        return self._execute(query, *params)

    async def _get(self, table: Table, row_id: str) -> Any:
        row = await asyncio.to_thread(
            self._fetchone, f"SELECT * FROM {table.name} WHERE id = ?", row_id
        )
        return from_row(table, row) if row else None

    async def _select(self, table: Table, where: str = "", *params: Any) -> list[Any]:
        rows = await asyncio.to_thread(
            self._fetchall, f"SELECT * FROM {table.name} {where}", *params
        )
        return [from_row(table, r) for r in rows]

    # ------------------------------------------------------------------
    # Workflows
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO workflow_definitions (id, tenant_id, trigger_type, enabled, body, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            definition.id,
            definition.tenant_id,
            definition.trigger.type.value,
            int(definition.enabled),
            definition.model_dump_json(),
            to_iso(definition.created_at),
        )

    async def get_definition(self, workflow_id: str) -> WorkflowDefinition | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT body FROM workflow_definitions WHERE id = ?", workflow_id
        )
        return WorkflowDefinition.model_validate_json(row["body"]) if row else None

    async def list_definitions(
        self,
        trigger_type: Optional[TriggerType] = None,
        enabled_only: bool = False,
        tenant_id: Optional[str] = None,
    ) -> list[WorkflowDefinition]:
        clauses, params = [], []
        if trigger_type is not None:
            clauses.append("trigger_type = ?")
            params.append(trigger_type.value)
        if enabled_only:
            clauses.append("enabled = 1")
        if tenant_id is not None:
            clauses.append("tenant_id = ?")
            params.append(tenant_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT body FROM workflow_definitions {where} ORDER BY created_at",
            *params,
        )
        return [WorkflowDefinition.model_validate_json(r["body"]) for r in rows]

    async def create_execution(self, execution: WorkflowExecution) -> bool:
        inserted = await asyncio.to_thread(
            self._insert_row, EXECUTIONS, to_row(EXECUTIONS, execution), True
        )
        return inserted == 1

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        return await self._get(EXECUTIONS, execution_id)

    async def update_execution(
        self, execution: WorkflowExecution, expected: Optional[ExecutionStatus] = None
    ) -> bool:
        changed = await asyncio.to_thread(
            self._update_row,
            EXECUTIONS,
            to_row(EXECUTIONS, execution),
            None if expected is None else expected.value,
        )
        return changed == 1

    async def transition_execution(
        self,
        execution_id: str,
        expected: ExecutionStatus,
        new: ExecutionStatus,
        now: Optional[datetime] = None,
    ) -> bool:
        assignments = ["status = ?"]
        params: list[Any] = [new.value]
        if expected == ExecutionStatus.WAITING:
            assignments += ["wait_until = NULL", "wait_condition = NULL"]
        if now is not None:
            assignments.append("updated_at = ?")
            params.append(to_iso(now))
            if new == ExecutionStatus.CANCELLED:
                assignments.append("completed_at = ?")
                params.append(to_iso(now))
        changed = await asyncio.to_thread(
            self._execute,
            f"UPDATE workflow_executions SET {', '.join(assignments)} WHERE id = ? AND status = ?",
            *params,
            execution_id,
            expected.value,
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
        clauses, params = [], []
        if workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if tenant_id is not None:
            clauses.append("tenant_id = ?")
            params.append(tenant_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        query = f"{where} ORDER BY started_at DESC, rowid DESC LIMIT ? OFFSET ?"
        params += [-1 if limit is None else limit, offset]
        return await self._select(EXECUTIONS, query, *params)

    async def latest_scheduled_execution(
        self, workflow_id: str
    ) -> WorkflowExecution | None:
        rows = await self._select(
            EXECUTIONS,
            "WHERE workflow_id = ? AND scheduled_for IS NOT NULL ORDER BY scheduled_for DESC LIMIT 1",
            workflow_id,
        )
        return rows[0] if rows else None

    async def list_resumable_executions(self, now: datetime) -> list[WorkflowExecution]:
        return await self._select(
            EXECUTIONS,
            "WHERE status = ? AND (wait_condition IS NOT NULL OR (wait_until IS NOT NULL AND wait_until <= ?)) ORDER BY wait_until",
            ExecutionStatus.WAITING.value,
            to_iso(now),
        )

    async def append_step_record(self, record: StepRecord) -> StepRecord:
        row = to_row(STEP_RECORDS, record)

        def _insert() -> int:
            columns = ", ".join(row)
            marks = ", ".join("?" for _ in row)
            with self._lock:
                cur = self._conn.cursor()
                cur.execute(
                    f"INSERT INTO workflow_step_records ({columns}) VALUES ({marks})",
                    tuple(row.values()),
                )
                self._conn.commit()
                return cur.lastrowid

        record_id = await asyncio.to_thread(_insert)
        return record.model_copy(update={"id": record_id})

    async def list_step_records(self, execution_id: str) -> list[StepRecord]:
        return await self._select(
            STEP_RECORDS, "WHERE execution_id = ? ORDER BY id", execution_id
        )

    # ------------------------------------------------------------------
    # Webhooks
    async def create_subscription(self, subscription: WebhookSubscription) -> None:
        await asyncio.to_thread(
            self._insert_row, SUBSCRIPTIONS, to_row(SUBSCRIPTIONS, subscription)
        )

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
            return await self._select(SUBSCRIPTIONS, "ORDER BY created_at DESC, rowid DESC")
        return await self._select(
            SUBSCRIPTIONS,
            "WHERE tenant_id = ? ORDER BY created_at DESC, rowid DESC",
            tenant_id,
        )

    async def update_subscription(self, subscription: WebhookSubscription) -> None:
        await asyncio.to_thread(
            self._update_row, SUBSCRIPTIONS, to_row(SUBSCRIPTIONS, subscription)
        )

    async def delete_subscription(
        self, subscription_id: str, tenant_id: Optional[str] = None
    ) -> bool:
        if await self.get_subscription(subscription_id, tenant_id) is None:
            return False

        def _delete() -> int:
            with self._lock:
                cur = self._conn.cursor()
                cur.execute("DELETE FROM webhook_failures WHERE subscription_id = ?", (subscription_id,))
                cur.execute("DELETE FROM webhook_deliveries WHERE subscription_id = ?", (subscription_id,))
                cur.execute("DELETE FROM webhook_subscriptions WHERE id = ?", (subscription_id,))
                self._conn.commit()
                return cur.rowcount

        return await asyncio.to_thread(_delete) == 1

    async def list_subscriptions_for_event(
        self, event_type: str, tenant_id: Optional[str] = None
    ) -> list[WebhookSubscription]:
        # a missing tenant only matches tenant-less subscriptions
        active = await self._select(
            SUBSCRIPTIONS, "WHERE is_active = 1 AND tenant_id IS ?", tenant_id
        )
        return [s for s in active if event_type in s.events]

    async def touch_subscription(self, subscription_id: str, when: datetime) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE webhook_subscriptions SET last_triggered_at = ? WHERE id = ?",
            to_iso(when),
            subscription_id,
        )

    async def create_event(self, event: WebhookEvent) -> None:
        await asyncio.to_thread(self._insert_row, EVENTS, to_row(EVENTS, event))

    async def get_event(self, event_id: str) -> WebhookEvent | None:
        return await self._get(EVENTS, event_id)

    async def list_events(
        self,
        event_type: Optional[str] = None,
        tenant_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[WebhookEvent]:
        clauses, params = [], []
        if event_type is not None:
            clauses.append("event_type = ?")
            params.append(event_type)
        if tenant_id is not None:
            clauses.append("tenant_id = ?")
            params.append(tenant_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return await self._select(
            EVENTS,
            f"{where} ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
            *params,
            limit,
            offset,
        )

    async def delete_events_before(self, cutoff: datetime) -> int:
        stamp = to_iso(cutoff)

        def _delete() -> int:
            stale = "SELECT id FROM webhook_events WHERE created_at < ?"
            with self._lock:
                cur = self._conn.cursor()
                cur.execute(f"DELETE FROM webhook_failures WHERE event_id IN ({stale})", (stamp,))
                cur.execute(f"DELETE FROM webhook_deliveries WHERE event_id IN ({stale})", (stamp,))
                cur.execute("DELETE FROM webhook_events WHERE created_at < ?", (stamp,))
                self._conn.commit()
                return cur.rowcount

        return await asyncio.to_thread(_delete)

    async def record_attempt(self, attempt: DeliveryAttempt) -> None:
        await asyncio.to_thread(self._insert_row, ATTEMPTS, to_row(ATTEMPTS, attempt))

    async def list_attempts(
        self,
        subscription_id: str,
        limit: Optional[int] = None,
        offset: int = 0,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[DeliveryAttempt]:
        clauses, params = ["subscription_id = ?"], [subscription_id]
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(to_iso(since))
        if until is not None:
            clauses.append("created_at <= ?")
            params.append(to_iso(until))
        query = f"WHERE {' AND '.join(clauses)} ORDER BY created_at DESC, rowid DESC"
        # SQLite requires a LIMIT clause before OFFSET
        query += " LIMIT ? OFFSET ?"
        params += [-1 if limit is None else limit, offset]
        return await self._select(ATTEMPTS, query, *params)

    async def count_attempts(self, subscription_id: str, event_id: str) -> int:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT COUNT(*) AS n FROM webhook_deliveries WHERE subscription_id = ? AND event_id = ?",
            subscription_id,
            event_id,
        )
        return int(row["n"])

    async def list_due_retries(self, now: datetime, limit: int) -> list[DeliveryAttempt]:
        return await self._select(
            ATTEMPTS,
            "WHERE success = 0 AND next_retry_at IS NOT NULL AND next_retry_at <= ? ORDER BY next_retry_at LIMIT ?",
            to_iso(now),
            limit,
        )

    async def claim_retry(self, attempt_id: str) -> bool:
        changed = await asyncio.to_thread(
            self._execute,
            "UPDATE webhook_deliveries SET next_retry_at = NULL WHERE id = ? AND next_retry_at IS NOT NULL",
            attempt_id,
        )
        return changed == 1

    async def record_failure(self, failure: DeliveryFailure) -> None:
        await asyncio.to_thread(self._insert_row, FAILURES, to_row(FAILURES, failure))

    async def get_failure(self, failure_id: str) -> DeliveryFailure | None:
        return await self._get(FAILURES, failure_id)

    async def list_failures(
        self, subscription_id: str, replayable_only: bool = True
    ) -> list[DeliveryFailure]:
        where = "WHERE subscription_id = ?"
        if replayable_only:
            where += " AND can_replay = 1 AND replayed_at IS NULL"
        return await self._select(
            FAILURES, f"{where} ORDER BY created_at DESC, rowid DESC", subscription_id
        )

    async def mark_failure_replayed(self, failure_id: str, when: datetime) -> bool:
        changed = await asyncio.to_thread(
            self._execute,
            "UPDATE webhook_failures SET replayed_at = ? WHERE id = ? AND replayed_at IS NULL",
            to_iso(when),
            failure_id,
        )
        return changed == 1
