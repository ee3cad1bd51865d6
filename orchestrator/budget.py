"""
OpenClaw - Budget Ledger

Live per-project spend, shared by every run of the project. The
assembler reads it for the pre-flight snapshot; the Run Engine reserves
a step's estimated cost before invoking and settles the actual cost
afterwards:

    reserve(project, est, monthly)           spent + reserved + est <= monthly ?
                                             → period the hold was booked in
    settle(project, est, actual, period)     reserved -= est; spent += actual

Both are atomic per project, so two runs of the same project can't
each read the same headroom and jointly overspend. Spend is bucketed
by UTC calendar month ("2026-10"). A hold is settled in the month it
was taken, even when the step finishes after the month rolls over.
"""

from __future__ import annotations

import abc
import logging
import sqlite3
import threading
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path

from engine.exceptions import StoreUnavailable

logger = logging.getLogger("openclaw.budget")

# Float slack so 0.1 + 0.2 doesn't trip a 0.30 limit
_EPSILON = 1e-9


def period_key(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).strftime("%Y-%m")


class BudgetLedger(abc.ABC):

    @abc.abstractmethod
    def spent(self, project_id: str, period: str | None = None) -> float:
        """Settled spend for the period (default: current month)."""

    @abc.abstractmethod
    def reserved(self, project_id: str, period: str | None = None) -> float:
        """Outstanding holds for in-flight steps."""

    @abc.abstractmethod
    def reserve(self, project_id: str, amount: float, monthly_limit: float) -> str | None:
        """
        Hold `amount` if it fits under the monthly limit. Returns the
        period the hold was booked in, or None if it doesn't fit.
        """

    @abc.abstractmethod
    def settle(
        self, project_id: str, reserved: float, actual: float, period: str | None = None,
    ) -> None:
        """
        Release a hold booked in `period` (default: current month) and
        record the actual spend in the same period.
        """

    def release(self, project_id: str, reserved: float, period: str | None = None) -> None:
        self.settle(project_id, reserved, 0.0, period)

    def record_spend(self, project_id: str, amount: float) -> None:
        """Add spend outside any reservation (imports, corrections)."""
        self.settle(project_id, 0.0, amount)

    def remaining(self, project_id: str, monthly_limit: float) -> float:
        return monthly_limit - self.spent(project_id) - self.reserved(project_id)

    def close(self) -> None:
        pass


# ═══════════════════════════════════════════════════════════════════
# In-Memory
# ═══════════════════════════════════════════════════════════════════

class InMemoryBudgetLedger(BudgetLedger):

    def __init__(self, initial_spend: dict[str, float] | None = None):
        self._spent: dict[tuple[str, str], float] = defaultdict(float)
        self._reserved: dict[tuple[str, str], float] = defaultdict(float)
        self._locks: dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()
        for project_id, amount in (initial_spend or {}).items():
            self._spent[(project_id, period_key())] = float(amount)

    def _lock_for(self, project_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[project_id]

    def spent(self, project_id: str, period: str | None = None) -> float:
        with self._lock_for(project_id):
            return self._spent.get((project_id, period or period_key()), 0.0)

    def reserved(self, project_id: str, period: str | None = None) -> float:
        with self._lock_for(project_id):
            return self._reserved.get((project_id, period or period_key()), 0.0)

    def reserve(self, project_id: str, amount: float, monthly_limit: float) -> str | None:
        period = period_key()
        key = (project_id, period)
        with self._lock_for(project_id):
            committed = self._spent.get(key, 0.0) + self._reserved.get(key, 0.0)
            if committed + amount > monthly_limit + _EPSILON:
                return None
            self._reserved[key] += amount
            return period

    def settle(
        self, project_id: str, reserved: float, actual: float, period: str | None = None,
    ) -> None:
        key = (project_id, period or period_key())
        with self._lock_for(project_id):
            self._reserved[key] = max(0.0, self._reserved.get(key, 0.0) - reserved)
            self._spent[key] += actual


# ═══════════════════════════════════════════════════════════════════
# SQLite
# ═══════════════════════════════════════════════════════════════════

class SQLiteBudgetLedger(BudgetLedger):
    """
    Ledger persisted in SQLite. reserve/settle each run in one
    BEGIN IMMEDIATE transaction, so processes sharing the file also
    serialize against each other.
    """

    def __init__(self, db_path: str | Path = "budget.db"):
        self.db_path = str(db_path)
        self._lock = threading.Lock()
        try:
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA busy_timeout=5000")
            self.conn.executescript("""
                CREATE TABLE IF NOT EXISTS budget_ledger (
                    project_id TEXT NOT NULL,
                    period TEXT NOT NULL,
                    spent_usd REAL NOT NULL DEFAULT 0.0,
                    reserved_usd REAL NOT NULL DEFAULT 0.0,
                    PRIMARY KEY (project_id, period)
                );
            """)
            self.conn.commit()
        except sqlite3.Error as e:
            raise StoreUnavailable("budget_ledger", e) from e

    def _row(self, project_id: str, period: str) -> tuple[float, float]:
        row = self.conn.execute(
            "SELECT spent_usd, reserved_usd FROM budget_ledger WHERE project_id = ? AND period = ?",
            (project_id, period),
        ).fetchone()
        return (row[0], row[1]) if row else (0.0, 0.0)

    def _read(self, project_id: str, period: str | None) -> tuple[float, float]:
        with self._lock:
            try:
                return self._row(project_id, period or period_key())
            except sqlite3.Error as e:
                raise StoreUnavailable("budget_ledger", e) from e

    def spent(self, project_id: str, period: str | None = None) -> float:
        return self._read(project_id, period)[0]

    def reserved(self, project_id: str, period: str | None = None) -> float:
        return self._read(project_id, period)[1]

    def _write(self, project_id: str, spent: float, reserved: float, period: str) -> None:
        self.conn.execute("""
            INSERT INTO budget_ledger (project_id, period, spent_usd, reserved_usd)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(project_id, period)
            DO UPDATE SET spent_usd = excluded.spent_usd, reserved_usd = excluded.reserved_usd
        """, (project_id, period, spent, reserved))

    def reserve(self, project_id: str, amount: float, monthly_limit: float) -> str | None:
        period = period_key()
        with self._lock:
            try:
                self.conn.execute("BEGIN IMMEDIATE")
                try:
                    spent, reserved = self._row(project_id, period)
                    if spent + reserved + amount > monthly_limit + _EPSILON:
                        self.conn.rollback()
                        return None
                    self._write(project_id, spent, reserved + amount, period)
                    self.conn.commit()
                    return period
                except sqlite3.Error:
                    self.conn.rollback()
                    raise
            except sqlite3.Error as e:
                raise StoreUnavailable("budget_ledger", e) from e

    def settle(
        self, project_id: str, reserved: float, actual: float, period: str | None = None,
    ) -> None:
        period = period or period_key()
        with self._lock:
            try:
                self.conn.execute("BEGIN IMMEDIATE")
                try:
                    spent, held = self._row(project_id, period)
                    self._write(project_id, spent + actual, max(0.0, held - reserved), period)
                    self.conn.commit()
                except sqlite3.Error:
                    self.conn.rollback()
                    raise
            except sqlite3.Error as e:
                raise StoreUnavailable("budget_ledger", e) from e
        logger.debug("Settled %s: reserved=%.6f actual=%.6f", project_id, reserved, actual)

    def close(self) -> None:
        with self._lock:
            self.conn.close()
