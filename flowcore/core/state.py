"""Persistence for execution state, task graphs and workflow definitions.

Two stores implement the same interface:
- InMemoryStateStore: process-local, for tests and embedding
- Database: SQLite, durable across restarts

Both hand out copies so callers never share a mutable state object with
the store.
"""

import json
import logging
import sqlite3
import threading
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel

from flowcore.core.graph_schema import WorkflowGraph
from flowcore.core.models import ExecutionState, TaskGraph

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime, Path and Pydantic models."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


def _safe_json_dumps(obj: Any) -> str:
    """Serialize object to JSON string, handling datetime and Pydantic models."""
    return json.dumps(obj, cls=_SafeJSONEncoder)


@runtime_checkable
class ExecutionStateStore(Protocol):
    """Durable key-value persistence keyed by (workflow_id, session_id)."""

    def load(self, workflow_id: str, session_id: str) -> ExecutionState | None: ...

    def save(self, workflow_id: str, session_id: str, state: ExecutionState) -> None: ...


@runtime_checkable
class TaskGraphStore(Protocol):
    def save_task_graph(self, task_graph: TaskGraph) -> None: ...

    def load_task_graph(self, task_id: str) -> TaskGraph | None: ...


class InMemoryStateStore:
    """Thread-safe in-process store."""

    def __init__(self):
        self._lock = threading.RLock()
        self._states: dict[tuple[str, str], ExecutionState] = {}
        self._task_graphs: dict[str, TaskGraph] = {}

    def load(self, workflow_id: str, session_id: str) -> ExecutionState | None:
        with self._lock:
            state = self._states.get((workflow_id, session_id))
            return state.model_copy(deep=True) if state is not None else None

    def save(self, workflow_id: str, session_id: str, state: ExecutionState) -> None:
        with self._lock:
            self._states[(workflow_id, session_id)] = state.model_copy(deep=True)

    def delete(self, workflow_id: str, session_id: str) -> bool:
        with self._lock:
            return self._states.pop((workflow_id, session_id), None) is not None

    def list_sessions(self, workflow_id: str) -> list[str]:
        with self._lock:
            return [sid for (wid, sid) in self._states if wid == workflow_id]

    def save_task_graph(self, task_graph: TaskGraph) -> None:
        with self._lock:
            self._task_graphs[task_graph.id] = task_graph.model_copy(deep=True)

    def load_task_graph(self, task_id: str) -> TaskGraph | None:
        with self._lock:
            graph = self._task_graphs.get(task_id)
            return graph.model_copy(deep=True) if graph is not None else None


class Database:
    """SQLite persistence for runs, task graphs and workflow definitions."""

    SCHEMA = """
    -- Workflow definitions (GraphModel provider)
    CREATE TABLE IF NOT EXISTS workflows (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        definition JSON NOT NULL,
        version TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    -- One row per (workflow, session) run
    CREATE TABLE IF NOT EXISTS execution_states (
        workflow_id TEXT NOT NULL,
        session_id TEXT NOT NULL,
        status TEXT NOT NULL,
        current_node_id TEXT,
        state JSON NOT NULL,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (workflow_id, session_id)
    );

    -- Decomposed task graphs
    CREATE TABLE IF NOT EXISTS task_graphs (
        id TEXT PRIMARY KEY,
        original_query TEXT NOT NULL,
        status TEXT NOT NULL,
        graph JSON NOT NULL,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE INDEX IF NOT EXISTS idx_exec_status ON execution_states(workflow_id, status);
    CREATE INDEX IF NOT EXISTS idx_task_status ON task_graphs(status);
    """

    def __init__(self, db_path: str | Path = ".flowcore/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema and enable WAL mode for better concurrency."""
        with self._connect() as conn:
            # WAL allows readers and writers to operate simultaneously without blocking
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Uses a 30-second busy timeout to handle concurrent access gracefully
        instead of immediately failing with "database is locked".
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

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Write transaction that takes the write lock up front."""
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            yield conn

    # --- Execution state ---

    def load(self, workflow_id: str, session_id: str) -> ExecutionState | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT state FROM execution_states WHERE workflow_id = ? AND session_id = ?",
                (workflow_id, session_id),
            ).fetchone()
        if row is None:
            return None
        return ExecutionState.model_validate_json(row["state"])

    def save(self, workflow_id: str, session_id: str, state: ExecutionState) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO execution_states (workflow_id, session_id, status, current_node_id,
                                              state, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(workflow_id, session_id) DO UPDATE SET
                    status = excluded.status,
                    current_node_id = excluded.current_node_id,
                    state = excluded.state,
                    updated_at = excluded.updated_at
                """,
                (
                    workflow_id,
                    session_id,
                    state.status.value,
                    state.current_node_id,
                    state.model_dump_json(),
                    _utc_now().isoformat(),
                ),
            )

    def delete(self, workflow_id: str, session_id: str) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM execution_states WHERE workflow_id = ? AND session_id = ?",
                (workflow_id, session_id),
            )
            return cursor.rowcount > 0

    def list_sessions(self, workflow_id: str) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT session_id FROM execution_states WHERE workflow_id = ? ORDER BY updated_at",
                (workflow_id,),
            ).fetchall()
        return [row["session_id"] for row in rows]

    # --- Task graphs ---

    def save_task_graph(self, task_graph: TaskGraph) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO task_graphs (id, original_query, status, graph, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status,
                    graph = excluded.graph,
                    updated_at = excluded.updated_at
                """,
                (
                    task_graph.id,
                    task_graph.original_query,
                    task_graph.status.value,
                    task_graph.model_dump_json(),
                    _utc_now().isoformat(),
                ),
            )

    def load_task_graph(self, task_id: str) -> TaskGraph | None:
        with self._connect() as conn:
            row = conn.execute("SELECT graph FROM task_graphs WHERE id = ?", (task_id,)).fetchone()
        if row is None:
            return None
        return TaskGraph.model_validate_json(row["graph"])

    # --- Workflow definitions ---

    def save_workflow(self, workflow: WorkflowGraph) -> None:
        """Insert or update a workflow definition.

        Uses ON CONFLICT DO UPDATE so created_at survives updates.
        """
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO workflows (id, name, definition, version, updated_at)
                VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    definition = excluded.definition,
                    version = excluded.version,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (workflow.id, workflow.name, workflow.model_dump_json(), workflow.version),
            )

    def get_workflow(self, workflow_id: str) -> WorkflowGraph | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT definition FROM workflows WHERE id = ?", (workflow_id,)
            ).fetchone()
        if row is None:
            return None
        return WorkflowGraph.model_validate_json(row["definition"])

    def delete_workflow(self, workflow_id: str) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM workflows WHERE id = ?", (workflow_id,))
            return cursor.rowcount > 0

    def list_workflows(self) -> list[WorkflowGraph]:
        with self._connect() as conn:
            rows = conn.execute("SELECT definition FROM workflows ORDER BY created_at, id").fetchall()
        return [WorkflowGraph.model_validate_json(row["definition"]) for row in rows]

    def export_state(self, workflow_id: str, session_id: str) -> str | None:
        """Return a run's state as pretty JSON, for inspection tools."""
        state = self.load(workflow_id, session_id)
        if state is None:
            return None
        return json.dumps(json.loads(_safe_json_dumps(state)), indent=2)
