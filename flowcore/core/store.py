"""Execution record persistence.

Two stores share one interface: ``InMemoryExecutionStore`` for tests and
embedded use, and ``SQLiteExecutionStore`` which keeps each FlowExecution as a
JSON document next to the columns needed for filtering.
"""

from __future__ import annotations

import logging
import math
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from typing import Protocol

from flowcore.core.errors import ExecutionNotFoundError
from flowcore.core.models import (
    ExecutionErrorInfo,
    ExecutionListItem,
    ExecutionListQuery,
    ExecutionListResponse,
    ExecutionStatus,
    FlowExecution,
    _utc_now,
)

logger = logging.getLogger(__name__)

_ACTIVE_STATUSES = (ExecutionStatus.PENDING, ExecutionStatus.RUNNING)
# Status column values per status, including the legacy "fulfilled"
_STORED_STATUS_VALUES = {ExecutionStatus.COMPLETED: ("completed", "fulfilled")}


class ExecutionStore(Protocol):
    def create(self, execution: FlowExecution) -> FlowExecution: ...

    def save(self, execution: FlowExecution) -> FlowExecution: ...

    def get(self, execution_id: str) -> FlowExecution | None: ...

    def require(self, execution_id: str) -> FlowExecution: ...

    def list(self, flow_id: str, query: ExecutionListQuery | None = None) -> ExecutionListResponse: ...

    def mark_timed_out(self, minutes: int = 5) -> int: ...


def _paginate(
    executions: list[FlowExecution],
    query: ExecutionListQuery,
    has_pending: bool,
) -> ExecutionListResponse:
    """Filter, sort newest first and slice one page."""
    matching = [
        e
        for e in executions
        if (query.status is None or e.status == query.status)
        and (query.is_preview is None or e.is_preview == query.is_preview)
    ]
    matching.sort(key=lambda e: e.started_at, reverse=True)
    start = (query.page - 1) * query.limit
    page = matching[start : start + query.limit]
    return ExecutionListResponse(
        items=[ExecutionListItem.from_execution(e) for e in page],
        total=len(matching),
        page=query.page,
        limit=query.limit,
        total_pages=math.ceil(len(matching) / query.limit),
        has_pending_executions=has_pending,
    )


def _time_out(execution: FlowExecution) -> FlowExecution:
    return execution.model_copy(
        update={
            "status": ExecutionStatus.ERROR,
            "ended_at": _utc_now(),
            "error_info": ExecutionErrorInfo(message="Execution timed out", kind="timeout"),
        }
    )


class InMemoryExecutionStore:
    def __init__(self) -> None:
        self._executions: dict[str, FlowExecution] = {}

    def create(self, execution: FlowExecution) -> FlowExecution:
        return self.save(execution)

    def save(self, execution: FlowExecution) -> FlowExecution:
        self._executions[execution.id] = execution.model_copy(deep=True)
        return execution

    def get(self, execution_id: str) -> FlowExecution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    def require(self, execution_id: str) -> FlowExecution:
        execution = self.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"Execution with id {execution_id} not found")
        return execution

    def list(self, flow_id: str, query: ExecutionListQuery | None = None) -> ExecutionListResponse:
        query = query or ExecutionListQuery()
        executions = [e for e in self._executions.values() if e.flow_id == flow_id]
        has_pending = any(e.status in _ACTIVE_STATUSES for e in executions)
        return _paginate(executions, query, has_pending)

    def mark_timed_out(self, minutes: int = 5) -> int:
        """Mark runs stuck in pending/running for longer than ``minutes`` as error."""
        cutoff = _utc_now() - timedelta(minutes=minutes)
        stale = [
            e
            for e in self._executions.values()
            if e.status in _ACTIVE_STATUSES and e.started_at < cutoff
        ]
        for execution in stale:
            self._executions[execution.id] = _time_out(execution)
        if stale:
            logger.warning(f"Marked {len(stale)} execution(s) as timed out")
        return len(stale)


class SQLiteExecutionStore:
    """SQLite-backed store. Records are JSON documents keyed by execution id."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS flow_executions (
        id TEXT PRIMARY KEY,
        flow_id TEXT NOT NULL,
        status TEXT NOT NULL,
        is_preview INTEGER NOT NULL DEFAULT 0,
        started_at TEXT NOT NULL,
        data TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_flow_exec_flow ON flow_executions(flow_id, started_at);
    CREATE INDEX IF NOT EXISTS idx_flow_exec_status ON flow_executions(status);
    """

    def __init__(self, db_path: str | Path = ".flowcore/executions.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Connection with a 30-second busy timeout; commits on success."""
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            if "database is locked" in str(e):
                raise sqlite3.OperationalError(
                    f"Database locked after 30s timeout. Check for long-running transactions: {e}"
                ) from e
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @staticmethod
    def _row_to_execution(row: sqlite3.Row) -> FlowExecution:
        return FlowExecution.model_validate_json(row["data"])

    def _upsert(self, conn: sqlite3.Connection, execution: FlowExecution) -> None:
        conn.execute(
            """
            INSERT INTO flow_executions (id, flow_id, status, is_preview, started_at, data)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status = excluded.status,
                is_preview = excluded.is_preview,
                data = excluded.data
            """,
            (
                execution.id,
                execution.flow_id,
                execution.status.value,
                int(execution.is_preview),
                execution.started_at.isoformat(),
                execution.model_dump_json(),
            ),
        )

    def create(self, execution: FlowExecution) -> FlowExecution:
        return self.save(execution)

    def save(self, execution: FlowExecution) -> FlowExecution:
        with self._connect() as conn:
            self._upsert(conn, execution)
        return execution

    def get(self, execution_id: str) -> FlowExecution | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT data FROM flow_executions WHERE id = ?", (execution_id,)
            ).fetchone()
        return self._row_to_execution(row) if row else None

    def require(self, execution_id: str) -> FlowExecution:
        execution = self.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"Execution with id {execution_id} not found")
        return execution

    def list(self, flow_id: str, query: ExecutionListQuery | None = None) -> ExecutionListResponse:
        """One page of ``flow_id``'s executions, newest first. Filtering and paging run in SQL."""
        query = query or ExecutionListQuery()
        where = ["flow_id = ?"]
        args: list[object] = [flow_id]
        if query.status is not None:
            values = _STORED_STATUS_VALUES.get(query.status, (query.status.value,))
            where.append(f"status IN ({', '.join('?' * len(values))})")
            args.extend(values)
        if query.is_preview is not None:
            where.append("is_preview = ?")
            args.append(int(query.is_preview))
        clause = " AND ".join(where)

        with self._connect() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM flow_executions WHERE {clause}", args
            ).fetchone()[0]
            rows = conn.execute(
                f"SELECT data FROM flow_executions WHERE {clause} "
                "ORDER BY started_at DESC LIMIT ? OFFSET ?",
                [*args, query.limit, (query.page - 1) * query.limit],
            ).fetchall()
            # Ignores the filters: any active run of the flow counts
            pending = conn.execute(
                "SELECT EXISTS(SELECT 1 FROM flow_executions WHERE flow_id = ? AND status IN (?, ?))",
                (flow_id, *(s.value for s in _ACTIVE_STATUSES)),
            ).fetchone()[0]

        return ExecutionListResponse(
            items=[ExecutionListItem.from_execution(self._row_to_execution(row)) for row in rows],
            total=total,
            page=query.page,
            limit=query.limit,
            total_pages=math.ceil(total / query.limit),
            has_pending_executions=bool(pending),
        )

    def mark_timed_out(self, minutes: int = 5) -> int:
        """Mark runs stuck in pending/running for longer than ``minutes`` as error."""
        cutoff = _utc_now() - timedelta(minutes=minutes)
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT data FROM flow_executions WHERE status IN (?, ?)",
                tuple(s.value for s in _ACTIVE_STATUSES),
            ).fetchall()
            stale = [
                e for e in map(self._row_to_execution, rows) if e.started_at < cutoff
            ]
            for execution in stale:
                self._upsert(conn, _time_out(execution))
        if stale:
            logger.warning(f"Marked {len(stale)} execution(s) as timed out")
        return len(stale)
