"""
OpenClaw - Run Store

Persistence for Run records. The Run Engine is the only writer of
status/state; everything else reads.

Implementations:
  - InMemoryRunStore: tests, single process
  - SQLiteRunStore:   single-file SQLite (WAL), survives restarts so
                      suspended runs can be resumed by a new process

Store failures surface as StoreUnavailable. update_run is a
compare-and-set on status: terminal runs, and runs no longer in the
caller's expected_status, are left untouched (InvalidTransition).
"""

from __future__ import annotations

import abc
import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any

from engine.exceptions import InvalidTransition, RunNotFound, StoreUnavailable
from orchestrator.types import TERMINAL_STATUSES, Run, RunStatus

logger = logging.getLogger("openclaw.store")

_UPDATABLE = {"status", "state", "error"}


class RunStore(abc.ABC):

    @abc.abstractmethod
    def create_run(self, run: Run) -> None:
        """Persist a new run. Raises ValueError if the id already exists."""

    @abc.abstractmethod
    def get_run(self, run_id: str) -> Run | None:
        """Return a detached copy of the run, or None."""

    @abc.abstractmethod
    def update_run(
        self, run_id: str, expected_status: RunStatus | None = None, **patch: Any,
    ) -> Run:
        """
        Apply status/state/error changes.

        Raises RunNotFound, or InvalidTransition if the stored run is
        terminal or not in expected_status.
        """

    @abc.abstractmethod
    def list_runs(
        self, project_id: str | None = None, status: RunStatus | None = None,
    ) -> list[Run]: ...

    def close(self) -> None:
        pass


def _check_patch(patch: dict[str, Any]) -> None:
    unknown = set(patch) - _UPDATABLE
    if unknown:
        raise ValueError(f"Run fields not updatable: {sorted(unknown)}")


def _check_current(
    run_id: str, current: RunStatus, expected: RunStatus | None, patch: dict[str, Any],
) -> None:
    if current in TERMINAL_STATUSES or (expected is not None and current != RunStatus(expected)):
        target = patch.get("status")
        raise InvalidTransition(
            run_id, current.value,
            to_status=RunStatus(target).value if target is not None else "",
            operation="" if target is not None else "update",
        )


# ═══════════════════════════════════════════════════════════════════
# In-Memory
# ═══════════════════════════════════════════════════════════════════

class InMemoryRunStore(RunStore):

    def __init__(self):
        self._runs: dict[str, Run] = {}
        self._lock = threading.Lock()

    def create_run(self, run: Run) -> None:
        with self._lock:
            if run.id in self._runs:
                raise ValueError(f"Run {run.id} already exists")
            self._runs[run.id] = run.copy()

    def get_run(self, run_id: str) -> Run | None:
        with self._lock:
            run = self._runs.get(run_id)
            return run.copy() if run else None

    def update_run(
        self, run_id: str, expected_status: RunStatus | None = None, **patch: Any,
    ) -> Run:
        _check_patch(patch)
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise RunNotFound(run_id)
            _check_current(run_id, run.status, expected_status, patch)
            if "status" in patch:
                run.status = RunStatus(patch["status"])
            if "state" in patch:
                run.state = json.loads(json.dumps(patch["state"], default=str))
            if "error" in patch:
                run.error = patch["error"]
            run.updated_at = time.time()
            return run.copy()

    def list_runs(
        self, project_id: str | None = None, status: RunStatus | None = None,
    ) -> list[Run]:
        with self._lock:
            runs = [
                r.copy() for r in self._runs.values()
                if (project_id is None or r.project_id == project_id)
                and (status is None or r.status == status)
            ]
        return sorted(runs, key=lambda r: r.created_at, reverse=True)


# ═══════════════════════════════════════════════════════════════════
# SQLite
# ═══════════════════════════════════════════════════════════════════

class _Transaction:
    """
    SQLite transaction context manager.

    The store's lock is held for the whole block; COMMIT on clean exit,
    ROLLBACK otherwise.
    """
    def __init__(self, store: SQLiteRunStore):
        self.store = store

    def __enter__(self):
        self.store._lock.acquire()
        try:
            self.store.conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            self.store._lock.release()
            raise StoreUnavailable("run_store", e) from e
        return self.store.conn

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if exc_type is None:
                self.store.conn.commit()
            else:
                self.store.conn.rollback()
        except sqlite3.Error as e:
            raise StoreUnavailable("run_store", e) from e
        finally:
            self.store._lock.release()
        if isinstance(exc_val, sqlite3.Error):
            raise StoreUnavailable("run_store", exc_val) from exc_val
        return False


class SQLiteRunStore(RunStore):
    """SQLite-backed run store. One connection, serialized by a lock."""

    def __init__(self, db_path: str | Path = "runs.db"):
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        try:
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA busy_timeout=5000")
            self._create_tables()
        except sqlite3.Error as e:
            raise StoreUnavailable("run_store", e) from e

    def transaction(self) -> _Transaction:
        """
        Explicit transaction boundary.

        Usage:
            with store.transaction() as conn:
                conn.execute(...)
        """
        return _Transaction(self)

    def _create_tables(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS runs (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                state TEXT NOT NULL DEFAULT '{}',
                context TEXT NOT NULL,
                error TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_runs_project ON runs(project_id);
            CREATE INDEX IF NOT EXISTS idx_runs_status ON runs(status);
        """)
        self.conn.commit()

    def create_run(self, run: Run) -> None:
        data = run.to_dict()
        try:
            with self.transaction() as conn:
                conn.execute("""
                    INSERT INTO runs
                    (id, project_id, workflow_id, status, state, context,
                     error, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    data["id"], data["project_id"], data["workflow_id"],
                    data["status"], json.dumps(data["state"], default=str),
                    json.dumps(data["context"]), data["error"],
                    data["created_at"], data["updated_at"],
                ))
        except StoreUnavailable as e:
            if isinstance(e.cause, sqlite3.IntegrityError):
                raise ValueError(f"Run {run.id} already exists") from e
            raise

    def get_run(self, run_id: str) -> Run | None:
        with self._lock:
            try:
                row = self.conn.execute(
                    "SELECT * FROM runs WHERE id = ?", (run_id,)
                ).fetchone()
            except sqlite3.Error as e:
                raise StoreUnavailable("run_store", e) from e
        return self._row_to_run(row) if row else None

    def update_run(
        self, run_id: str, expected_status: RunStatus | None = None, **patch: Any,
    ) -> Run:
        _check_patch(patch)
        sets, params = ["updated_at = ?"], [time.time()]
        if "status" in patch:
            sets.append("status = ?")
            params.append(RunStatus(patch["status"]).value)
        if "state" in patch:
            sets.append("state = ?")
            params.append(json.dumps(patch["state"], default=str))
        if "error" in patch:
            sets.append("error = ?")
            params.append(patch["error"])

        with self.transaction() as conn:
            row = conn.execute("SELECT status FROM runs WHERE id = ?", (run_id,)).fetchone()
            if row is None:
                raise RunNotFound(run_id)
            current = RunStatus(row["status"])
            _check_current(run_id, current, expected_status, patch)
            params.extend([run_id, current.value])
            conn.execute(f"UPDATE runs SET {', '.join(sets)} WHERE id = ? AND status = ?", params)
            row = conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
        return self._row_to_run(row)

    def list_runs(
        self, project_id: str | None = None, status: RunStatus | None = None,
    ) -> list[Run]:
        query = "SELECT * FROM runs WHERE 1=1"
        params: list[Any] = []
        if project_id:
            query += " AND project_id = ?"
            params.append(project_id)
        if status:
            query += " AND status = ?"
            params.append(RunStatus(status).value)
        query += " ORDER BY created_at DESC"
        with self._lock:
            try:
                rows = self.conn.execute(query, params).fetchall()
            except sqlite3.Error as e:
                raise StoreUnavailable("run_store", e) from e
        return [self._row_to_run(r) for r in rows]

    def _row_to_run(self, row: sqlite3.Row) -> Run:
        return Run.from_dict({
            "id": row["id"],
            "project_id": row["project_id"],
            "workflow_id": row["workflow_id"],
            "status": row["status"],
            "state": json.loads(row["state"]),
            "context": json.loads(row["context"]),
            "error": row["error"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        })

    def close(self) -> None:
        with self._lock:
            self.conn.close()
