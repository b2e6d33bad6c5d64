"""
SQLite-backed state store.

Holds the four record families (quota windows, busy allocations, engagement
locks, engagement history) as independent keyed tables. Nothing here decides
policy; the components compose these row operations inside `connection()` or
`transaction()` blocks.

Atomicity:
- Lock transitions are single conditional UPDATE statements whose `rowcount`
  tells the caller whether the match-and-set won.
- Read-then-write sequences (quota allocation, history chaining) run inside
  `transaction()`, which opens with BEGIN IMMEDIATE so concurrent writers for
  the same file serialize on SQLite's reserved lock.

Every operation passes through the circuit breaker so a degraded store fails
closed (StorageLockdownError) instead of answering inconsistently.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .lockdown import DbCircuitBreaker
from .models import (
    LOCK_FREE,
    LOCK_HELD,
    BusyAllocationRecord,
    EngagementHistoryRecord,
    EngagementLockRecord,
    QuotaWindowRecord,
)

logger = logging.getLogger("busy_gate.store")

GENESIS_HASH = "0" * 64


class BusyStore:
    """Persistent storage for busy-gate state."""

    def __init__(self, db_path: str = "busy_gate.db", circuit: Optional[DbCircuitBreaker] = None):
        self.db_path = str(db_path)
        self.circuit = circuit or DbCircuitBreaker()
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _db(self, op_name: str, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Connection wrapper with circuit breaker (fail-closed).

        With `immediate=True` the block runs inside BEGIN IMMEDIATE and is
        committed on normal exit, rolled back on exception.
        """
        self.circuit.raise_if_lockdown()
        start = time.monotonic()
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=float(self.circuit.config.connect_timeout_seconds),
                isolation_level=None,
            )
            conn.row_factory = sqlite3.Row
            try:
                if immediate:
                    conn.execute("BEGIN IMMEDIATE")
                with conn:
                    yield conn
            finally:
                conn.close()
            elapsed_ms = (time.monotonic() - start) * 1000.0
            if elapsed_ms >= float(self.circuit.config.latency_threshold_ms):
                self.circuit.record_latency(elapsed_ms)
            else:
                self.circuit.record_success()
        except sqlite3.OperationalError as e:
            logger.warning("store op %s failed: %s", op_name, e)
            if self.circuit.counts_as_failure(str(e)):
                self.circuit.record_failure(e)
            raise

    def connection(self, op_name: str = "store_op"):
        """Autocommit connection: each statement is its own atomic write."""
        return self._db(op_name)

    def transaction(self, op_name: str = "store_tx"):
        """Serialized read-modify-write block (BEGIN IMMEDIATE ... COMMIT)."""
        return self._db(op_name, immediate=True)

    def _init_db(self) -> None:
        with self._db("init") as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.execute("PRAGMA busy_timeout = 5000")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS quota_windows (
                subject TEXT PRIMARY KEY,
                window_start_ms INTEGER NOT NULL,
                cumulative_busy_ms INTEGER NOT NULL DEFAULT 0,
                enabled INTEGER NOT NULL DEFAULT 1,
                reenable_at_ms INTEGER
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS busy_allocations (
                allocation_id TEXT PRIMARY KEY,
                subject TEXT NOT NULL,
                granted_by TEXT NOT NULL,
                start_at_ms INTEGER NOT NULL,
                end_at_ms INTEGER,
                duration_ms INTEGER,
                released INTEGER NOT NULL DEFAULT 0
            )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_alloc_subject_start "
                "ON busy_allocations (subject, start_at_ms)"
            )

            conn.execute("""
            CREATE TABLE IF NOT EXISTS engagement_locks (
                subject TEXT PRIMARY KEY,
                status TEXT NOT NULL DEFAULT 'free',
                holder TEXT,
                acquired_at_ms INTEGER,
                expires_at_ms INTEGER,
                context TEXT,
                version INTEGER NOT NULL DEFAULT 0
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS engagement_history (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                history_id TEXT NOT NULL UNIQUE,
                subject TEXT NOT NULL,
                holder TEXT NOT NULL,
                started_at_ms INTEGER NOT NULL,
                ended_at_ms INTEGER NOT NULL,
                value REAL NOT NULL DEFAULT 0,
                notes TEXT NOT NULL DEFAULT '',
                context TEXT,
                metadata_json TEXT NOT NULL DEFAULT '{}',
                prev_hash TEXT NOT NULL,
                entry_hash TEXT NOT NULL
            )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_history_subject ON engagement_history (subject)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_history_holder ON engagement_history (holder)")

    # ---------------------------
    # Quota windows
    # ---------------------------

    @staticmethod
    def _window_from_row(row: sqlite3.Row) -> QuotaWindowRecord:
        return QuotaWindowRecord(
            subject=row["subject"],
            window_start_ms=int(row["window_start_ms"]),
            cumulative_busy_ms=int(row["cumulative_busy_ms"]),
            enabled=bool(row["enabled"]),
            reenable_at_ms=row["reenable_at_ms"],
        )

    def get_window(self, conn: sqlite3.Connection, subject: str) -> Optional[QuotaWindowRecord]:
        row = conn.execute("SELECT * FROM quota_windows WHERE subject = ?", (subject,)).fetchone()
        return self._window_from_row(row) if row else None

    def insert_window(self, conn: sqlite3.Connection, w: QuotaWindowRecord) -> bool:
        """Insert a fresh window; False if another writer created it first."""
        cur = conn.execute(
            "INSERT OR IGNORE INTO quota_windows "
            "(subject, window_start_ms, cumulative_busy_ms, enabled, reenable_at_ms) VALUES (?, ?, ?, ?, ?)",
            (w.subject, w.window_start_ms, w.cumulative_busy_ms, int(w.enabled), w.reenable_at_ms),
        )
        return cur.rowcount == 1

    def save_window(self, conn: sqlite3.Connection, w: QuotaWindowRecord) -> None:
        conn.execute(
            "UPDATE quota_windows SET window_start_ms = ?, cumulative_busy_ms = ?, enabled = ?, reenable_at_ms = ? "
            "WHERE subject = ?",
            (w.window_start_ms, w.cumulative_busy_ms, int(w.enabled), w.reenable_at_ms, w.subject),
        )

    # ---------------------------
    # Busy allocations
    # ---------------------------

    @staticmethod
    def _allocation_from_row(row: sqlite3.Row) -> BusyAllocationRecord:
        return BusyAllocationRecord(
            allocation_id=row["allocation_id"],
            subject=row["subject"],
            granted_by=row["granted_by"],
            start_at_ms=int(row["start_at_ms"]),
            end_at_ms=row["end_at_ms"],
            duration_ms=row["duration_ms"],
            released=bool(row["released"]),
        )

    def insert_allocation(self, conn: sqlite3.Connection, rec: BusyAllocationRecord) -> None:
        conn.execute(
            "INSERT INTO busy_allocations "
            "(allocation_id, subject, granted_by, start_at_ms, end_at_ms, duration_ms, released) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (rec.allocation_id, rec.subject, rec.granted_by, rec.start_at_ms,
             rec.end_at_ms, rec.duration_ms, int(rec.released)),
        )

    def get_allocation(self, conn: sqlite3.Connection, allocation_id: str) -> Optional[BusyAllocationRecord]:
        row = conn.execute(
            "SELECT * FROM busy_allocations WHERE allocation_id = ?", (allocation_id,)
        ).fetchone()
        return self._allocation_from_row(row) if row else None

    def finalize_allocation(self, conn: sqlite3.Connection, allocation_id: str,
                            end_at_ms: int, duration_ms: int) -> None:
        conn.execute(
            "UPDATE busy_allocations SET end_at_ms = ?, duration_ms = ?, released = 1 WHERE allocation_id = ?",
            (end_at_ms, duration_ms, allocation_id),
        )

    def allocations_since(self, conn: sqlite3.Connection, subject: str, since_ms: int) -> List[BusyAllocationRecord]:
        rows = conn.execute(
            "SELECT * FROM busy_allocations WHERE subject = ? AND start_at_ms >= ? ORDER BY start_at_ms",
            (subject, since_ms),
        ).fetchall()
        return [self._allocation_from_row(r) for r in rows]

    def recent_allocations(self, conn: sqlite3.Connection, subject: str, limit: int) -> List[BusyAllocationRecord]:
        rows = conn.execute(
            "SELECT * FROM busy_allocations WHERE subject = ? ORDER BY start_at_ms DESC, rowid DESC LIMIT ?",
            (subject, int(limit)),
        ).fetchall()
        return [self._allocation_from_row(r) for r in rows]

    # ---------------------------
    # Engagement locks
    # ---------------------------

    @staticmethod
    def _lock_from_row(row: sqlite3.Row) -> EngagementLockRecord:
        return EngagementLockRecord(
            subject=row["subject"],
            status=row["status"],
            holder=row["holder"],
            acquired_at_ms=row["acquired_at_ms"],
            expires_at_ms=row["expires_at_ms"],
            context=row["context"],
            version=int(row["version"]),
        )

    def ensure_lock_row(self, conn: sqlite3.Connection, subject: str) -> None:
        conn.execute(
            "INSERT OR IGNORE INTO engagement_locks (subject, status, version) VALUES (?, ?, 0)",
            (subject, LOCK_FREE),
        )

    def get_lock(self, conn: sqlite3.Connection, subject: str) -> Optional[EngagementLockRecord]:
        row = conn.execute("SELECT * FROM engagement_locks WHERE subject = ?", (subject,)).fetchone()
        return self._lock_from_row(row) if row else None

    def refresh_held_by(self, conn: sqlite3.Connection, subject: str, holder: str, now_ms: int,
                        expires_at_ms: Optional[int], context: Optional[str]) -> bool:
        """Same-holder re-acquire: match an unexpired hold by `holder`.

        Only non-None arguments overwrite stored values.
        """
        cur = conn.execute(
            "UPDATE engagement_locks SET "
            "expires_at_ms = COALESCE(?, expires_at_ms), "
            "context = COALESCE(?, context), "
            "acquired_at_ms = COALESCE(acquired_at_ms, ?), "
            "version = version + 1 "
            "WHERE subject = ? AND status = ? AND holder = ? "
            "AND (expires_at_ms IS NULL OR expires_at_ms > ?)",
            (expires_at_ms, context, now_ms, subject, LOCK_HELD, holder, now_ms),
        )
        return cur.rowcount == 1

    def cas_acquire(self, conn: sqlite3.Connection, subject: str, holder: str, now_ms: int,
                    expires_at_ms: Optional[int], context: Optional[str]) -> bool:
        """Free -> Held, matching only a Free row or one whose expiry has passed."""
        cur = conn.execute(
            "UPDATE engagement_locks SET status = ?, holder = ?, acquired_at_ms = ?, "
            "expires_at_ms = ?, context = ?, version = version + 1 "
            "WHERE subject = ? AND (status = ? OR (expires_at_ms IS NOT NULL AND expires_at_ms <= ?))",
            (LOCK_HELD, holder, now_ms, expires_at_ms, context, subject, LOCK_FREE, now_ms),
        )
        return cur.rowcount == 1

    def extend_hold(self, conn: sqlite3.Connection, subject: str, holder: str,
                    now_ms: int, expires_at_ms: int) -> bool:
        cur = conn.execute(
            "UPDATE engagement_locks SET expires_at_ms = ?, version = version + 1 "
            "WHERE subject = ? AND status = ? AND holder = ? "
            "AND (expires_at_ms IS NULL OR expires_at_ms > ?)",
            (expires_at_ms, subject, LOCK_HELD, holder, now_ms),
        )
        return cur.rowcount == 1

    def cas_release(self, conn: sqlite3.Connection, subject: str, expected_version: int) -> bool:
        """Held -> Free, matching the exact version the caller inspected."""
        cur = conn.execute(
            "UPDATE engagement_locks SET status = ?, holder = NULL, acquired_at_ms = NULL, "
            "expires_at_ms = NULL, context = NULL, version = version + 1 "
            "WHERE subject = ? AND status = ? AND version = ?",
            (LOCK_FREE, subject, LOCK_HELD, int(expected_version)),
        )
        return cur.rowcount == 1

    def held_locks(self, conn: sqlite3.Connection, now_ms: int) -> List[EngagementLockRecord]:
        rows = conn.execute(
            "SELECT * FROM engagement_locks WHERE status = ? "
            "AND (expires_at_ms IS NULL OR expires_at_ms > ?) ORDER BY acquired_at_ms",
            (LOCK_HELD, now_ms),
        ).fetchall()
        return [self._lock_from_row(r) for r in rows]

    def expired_locks(self, conn: sqlite3.Connection, now_ms: int) -> List[EngagementLockRecord]:
        rows = conn.execute(
            "SELECT * FROM engagement_locks WHERE status = ? "
            "AND expires_at_ms IS NOT NULL AND expires_at_ms <= ?",
            (LOCK_HELD, now_ms),
        ).fetchall()
        return [self._lock_from_row(r) for r in rows]

    def all_locks(self, conn: sqlite3.Connection) -> List[EngagementLockRecord]:
        rows = conn.execute("SELECT * FROM engagement_locks ORDER BY subject").fetchall()
        return [self._lock_from_row(r) for r in rows]

    # ---------------------------
    # Engagement history
    # ---------------------------

    @staticmethod
    def _history_from_row(row: sqlite3.Row) -> EngagementHistoryRecord:
        try:
            metadata = json.loads(row["metadata_json"] or "{}")
        except json.JSONDecodeError:
            metadata = {}
        return EngagementHistoryRecord(
            history_id=row["history_id"],
            subject=row["subject"],
            holder=row["holder"],
            started_at_ms=int(row["started_at_ms"]),
            ended_at_ms=int(row["ended_at_ms"]),
            value=float(row["value"]),
            notes=row["notes"],
            context=row["context"],
            metadata=metadata if isinstance(metadata, dict) else {},
            prev_hash=row["prev_hash"],
            entry_hash=row["entry_hash"],
        )

    def last_history_hash(self, conn: sqlite3.Connection) -> str:
        row = conn.execute(
            "SELECT entry_hash FROM engagement_history ORDER BY seq DESC LIMIT 1"
        ).fetchone()
        return str(row["entry_hash"]) if row else GENESIS_HASH

    def insert_history(self, conn: sqlite3.Connection, rec: EngagementHistoryRecord) -> None:
        conn.execute(
            "INSERT INTO engagement_history "
            "(history_id, subject, holder, started_at_ms, ended_at_ms, value, notes, context, "
            "metadata_json, prev_hash, entry_hash) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (rec.history_id, rec.subject, rec.holder, rec.started_at_ms, rec.ended_at_ms,
             float(rec.value), rec.notes, rec.context,
             json.dumps(rec.metadata, sort_keys=True, separators=(",", ":")),
             rec.prev_hash, rec.entry_hash),
        )

    def query_history(self, conn: sqlite3.Connection, *, subject: Optional[str] = None,
                      holder: Optional[str] = None, party: Optional[str] = None,
                      limit: int = 50) -> List[EngagementHistoryRecord]:
        """Newest-first history filtered by subject, holder, or either side (`party`)."""
        clauses: List[str] = []
        params: List[Any] = []
        if subject is not None:
            clauses.append("subject = ?")
            params.append(subject)
        if holder is not None:
            clauses.append("holder = ?")
            params.append(holder)
        if party is not None:
            clauses.append("(subject = ? OR holder = ?)")
            params.extend([party, party])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(int(limit))
        rows = conn.execute(
            f"SELECT * FROM engagement_history {where} ORDER BY seq DESC LIMIT ?",
            params,
        ).fetchall()
        return [self._history_from_row(r) for r in rows]

    def history_in_order(self, conn: sqlite3.Connection) -> Iterator[EngagementHistoryRecord]:
        for row in conn.execute("SELECT * FROM engagement_history ORDER BY seq"):
            yield self._history_from_row(row)

    def table_counts(self) -> Dict[str, int]:
        with self.connection("counts") as conn:
            return {
                name: int(conn.execute(f"SELECT COUNT(*) FROM {name}").fetchone()[0])
                for name in ("quota_windows", "busy_allocations", "engagement_locks", "engagement_history")
            }
