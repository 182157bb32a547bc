"""SQLite run store with event sourcing.

The events table is the write model (source of truth). The runs table is a
projection updated from run-level events and used for build numbering,
history and archiving.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from cdflow.core.models import utc_now

if TYPE_CHECKING:
    from cdflow.core.models import PipelineRun, StageNode

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of events in the event log."""

    # Run events
    RUN_STARTED = "run_started"
    RUN_SUCCEEDED = "run_succeeded"
    RUN_FAILED = "run_failed"
    RUN_ABORTED = "run_aborted"
    RUN_ARCHIVED = "run_archived"

    # Stage events
    STAGE_STARTED = "stage_started"
    STAGE_SUCCEEDED = "stage_succeeded"
    STAGE_FAILED = "stage_failed"
    STAGE_ABORTED = "stage_aborted"
    STAGE_SKIPPED = "stage_skipped"

    # Step events
    STEP_SUCCEEDED = "step_succeeded"
    STEP_FAILED = "step_failed"
    STEP_TOLERATED = "step_tolerated"

    # Execution contexts
    CONTEXT_ACQUIRED = "context_acquired"
    CONTEXT_RELEASED = "context_released"

    # Gates
    GATE_PASSED = "gate_passed"
    GATE_FAILED = "gate_failed"

    # Human intervention
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_GRANTED = "approval_granted"
    APPROVAL_DENIED = "approval_denied"
    APPROVAL_TIMED_OUT = "approval_timed_out"

    # Deployments
    DEPLOYMENT_STARTED = "deployment_started"
    DEPLOYMENT_SUCCEEDED = "deployment_succeeded"
    ROLLBACK_STARTED = "rollback_started"
    ROLLBACK_COMPLETED = "rollback_completed"
    ROLLBACK_FAILED = "rollback_failed"

    # Finalization
    NOTIFICATION_SENT = "notification_sent"
    NOTIFICATION_FAILED = "notification_failed"


_RUN_STATUS_EVENTS = {
    EventType.RUN_SUCCEEDED: "succeeded",
    EventType.RUN_FAILED: "failed",
    EventType.RUN_ABORTED: "aborted",
}


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime, Enum, Path and Pydantic models."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


def _safe_json_dumps(obj: Any) -> str:
    return json.dumps(obj, cls=_SafeJSONEncoder)


class Event(BaseModel):
    """Immutable event in the event log."""

    id: int | None = None
    run_id: int
    event_type: EventType
    stage: str | None = None
    status: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class RunRecord(BaseModel):
    """Row of the runs projection."""

    run_id: int
    pipeline: str
    branch: str
    status: str
    failed_stage: str | None = None
    error_kind: str | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    archived: bool = False


class Database:
    """SQLite database with event sourcing for pipeline runs."""

    SCHEMA = """
    -- Event log (immutable, source of truth)
    CREATE TABLE IF NOT EXISTS events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id INTEGER NOT NULL,
        event_type TEXT NOT NULL,
        stage TEXT,
        status TEXT,
        payload JSON,
        timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    -- Run state (projection)
    CREATE TABLE IF NOT EXISTS runs (
        run_id INTEGER PRIMARY KEY,
        pipeline TEXT NOT NULL,
        branch TEXT NOT NULL,
        status TEXT NOT NULL,
        failed_stage TEXT,
        error_kind TEXT,
        error_message TEXT,
        bindings JSON,
        stages JSON,
        started_at TIMESTAMP,
        finished_at TIMESTAMP,
        archived_at TIMESTAMP,
        updated_by_event_id INTEGER DEFAULT 0
    );

    CREATE INDEX IF NOT EXISTS idx_events_run ON events(run_id, id);
    CREATE INDEX IF NOT EXISTS idx_runs_status ON runs(status);
    """

    def __init__(self, db_path: str | Path = ".cdflow/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize schema and enable WAL mode for concurrent readers."""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Uses a 30-second busy timeout so concurrent CLI invocations wait for the
        writer instead of failing with "database is locked".
        """
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

    # --- Event Sourcing ---

    def append_event(self, event: Event) -> int:
        """Append an event to the log and update the runs projection.

        The event insert commits on its own so a failing projection update can
        never lose the event.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO events (run_id, event_type, stage, status, payload, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    event.run_id,
                    event.event_type.value,
                    event.stage,
                    event.status,
                    _safe_json_dumps(event.payload),
                    event.timestamp.isoformat(),
                ),
            )
            event_id = cursor.lastrowid

        try:
            with self._connect() as conn:
                self._update_projections(conn, event, event_id)
        except sqlite3.Error as e:
            logger.warning(
                f"Projection update failed for event {event_id} "
                f"({event.event_type.value}): {e}. Event is recorded."
            )

        return event_id  # type: ignore[return-value]

    def _update_projections(self, conn: sqlite3.Connection, event: Event, event_id: int) -> None:
        """Update the runs read model. Older events never overwrite newer ones."""
        if event.event_type == EventType.RUN_STARTED:
            conn.execute(
                """
                INSERT INTO runs (run_id, pipeline, branch, status, bindings,
                                  started_at, updated_by_event_id)
                VALUES (?, ?, ?, 'running', ?, ?, ?)
                ON CONFLICT(run_id) DO UPDATE SET
                    status = 'running',
                    started_at = excluded.started_at,
                    updated_by_event_id = excluded.updated_by_event_id
                WHERE runs.updated_by_event_id < excluded.updated_by_event_id
                """,
                (
                    event.run_id,
                    event.payload.get("pipeline", "pipeline"),
                    event.payload.get("branch", "main"),
                    _safe_json_dumps(event.payload.get("bindings", {})),
                    event.timestamp.isoformat(),
                    event_id,
                ),
            )
        elif event.event_type in _RUN_STATUS_EVENTS:
            conn.execute(
                """
                UPDATE runs SET status = ?, failed_stage = ?, error_kind = ?,
                                error_message = ?, finished_at = ?, updated_by_event_id = ?
                WHERE run_id = ? AND updated_by_event_id < ?
                """,
                (
                    _RUN_STATUS_EVENTS[event.event_type],
                    event.payload.get("failed_stage"),
                    event.payload.get("error_kind"),
                    event.payload.get("error_message"),
                    event.timestamp.isoformat(),
                    event_id,
                    event.run_id,
                    event_id,
                ),
            )

    # --- Run bookkeeping ---

    def next_build_number(self) -> int:
        """Monotonic build number: one more than the highest number ever seen."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT MAX(n) FROM ("
                " SELECT MAX(run_id) AS n FROM runs UNION ALL SELECT MAX(run_id) FROM events"
                ")"
            ).fetchone()
            return (row[0] or 0) + 1

    def archive_run(self, run: PipelineRun) -> None:
        """Store the final stage tree of a finished run."""
        stages = [_stage_snapshot(node) for node in run.root.walk() if node.path]
        with self._connect() as conn:
            conn.execute(
                "UPDATE runs SET stages = ?, archived_at = ? WHERE run_id = ?",
                (_safe_json_dumps(stages), utc_now().isoformat(), run.run_id),
            )
        self.append_event(
            Event(run_id=run.run_id, event_type=EventType.RUN_ARCHIVED, status=run.status.value)
        )

    # --- Query Methods ---

    def get_events(
        self, run_id: int, event_types: list[EventType] | None = None
    ) -> list[Event]:
        """Get events for a run, optionally filtered by type."""
        with self._connect() as conn:
            if event_types:
                placeholders = ",".join("?" * len(event_types))
                rows = conn.execute(
                    f"""
                    SELECT * FROM events
                    WHERE run_id = ? AND event_type IN ({placeholders})
                    ORDER BY id
                    """,
                    [run_id] + [et.value for et in event_types],
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM events WHERE run_id = ? ORDER BY id", (run_id,)
                ).fetchall()
            return [self._row_to_event(row) for row in rows]

    def get_run(self, run_id: int) -> RunRecord | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,)).fetchone()
            return self._row_to_run(row) if row else None

    def list_runs(self, limit: int = 20) -> list[RunRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM runs ORDER BY run_id DESC LIMIT ?", (limit,)
            ).fetchall()
            return [self._row_to_run(row) for row in rows]

    def get_stage_snapshot(self, run_id: int) -> list[dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute("SELECT stages FROM runs WHERE run_id = ?", (run_id,)).fetchone()
            return json.loads(row["stages"]) if row and row["stages"] else []

    def _row_to_event(self, row: sqlite3.Row) -> Event:
        return Event(
            id=row["id"],
            run_id=row["run_id"],
            event_type=EventType(row["event_type"]),
            stage=row["stage"],
            status=row["status"],
            payload=json.loads(row["payload"]) if row["payload"] else {},
            timestamp=datetime.fromisoformat(row["timestamp"]),
        )

    def _row_to_run(self, row: sqlite3.Row) -> RunRecord:
        return RunRecord(
            run_id=row["run_id"],
            pipeline=row["pipeline"],
            branch=row["branch"],
            status=row["status"],
            failed_stage=row["failed_stage"],
            error_kind=row["error_kind"],
            error_message=row["error_message"],
            started_at=datetime.fromisoformat(row["started_at"]) if row["started_at"] else None,
            finished_at=datetime.fromisoformat(row["finished_at"]) if row["finished_at"] else None,
            archived=row["archived_at"] is not None,
        )


def _stage_snapshot(node: StageNode) -> dict[str, Any]:
    return {
        "path": node.path,
        "kind": node.kind.value,
        "status": node.status.value,
        "error_kind": node.error_kind.value if node.error_kind else None,
        "error": str(node.error) if node.error else None,
        "steps": [
            {"step": r.step, "exit_code": r.exit_code, "outcome": r.outcome.value, "hook": r.hook}
            for r in node.step_results
        ],
    }
