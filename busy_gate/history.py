"""Completed-engagement history.

Append-only log of finished engagements. Each row carries:
- prev_hash: entry_hash of the previous row (genesis: 64 zeros)
- entry_hash: SHA256(prev_hash || SHA256(canonical row JSON))

so that an edited or deleted row is detectable with `verify_chain`. The
recorder never touches lock or quota state; `EngagementLock.release` is its
single call site.
"""

from __future__ import annotations

import hashlib
import json
import logging
import secrets
from typing import Any, Dict, List, Optional, Tuple

from .clock import LocalTimeSource, TimeSource
from .errors import BUSY_E_BAD_REQUEST, busy_error
from .models import EngagementHistoryRecord
from .store import GENESIS_HASH, BusyStore

logger = logging.getLogger("busy_gate.history")

ROLE_WORKER = "worker"
ROLE_HIRER = "hirer"
ROLE_BOTH = "both"
_ROLES = (ROLE_WORKER, ROLE_HIRER, ROLE_BOTH)


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _safe_hash_encode(components: List[str]) -> bytes:
    """Length-prefixed encoding for hash inputs."""
    result = b""
    for component in components:
        encoded = component.encode("utf-8")
        result += len(encoded).to_bytes(8, byteorder="big") + encoded
    return result


def _event_of(rec: EngagementHistoryRecord) -> Dict[str, Any]:
    return {
        "history_id": rec.history_id,
        "subject": rec.subject,
        "holder": rec.holder,
        "started_at_ms": int(rec.started_at_ms),
        "ended_at_ms": int(rec.ended_at_ms),
        "value": float(rec.value),
        "notes": rec.notes,
        "context": rec.context,
        "metadata": rec.metadata,
    }


def compute_entry_hash(prev_hash: str, rec: EngagementHistoryRecord) -> str:
    event_json = json.dumps(_event_of(rec), sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    event_hash = _sha256_hex(event_json.encode("utf-8"))
    return _sha256_hex(_safe_hash_encode([prev_hash, event_hash]))


class EngagementHistoryRecorder:
    def __init__(self, store: BusyStore, clock: Optional[TimeSource] = None):
        self.store = store
        self.clock = clock or LocalTimeSource()

    def record(
        self,
        subject: str,
        holder: str,
        started_at_ms: Optional[int],
        ended_at_ms: Optional[int] = None,
        value: float = 0.0,
        notes: Optional[str] = None,
        context: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> EngagementHistoryRecord:
        """Append one history record. Every call appends; there is no dedup."""
        ended = int(ended_at_ms) if ended_at_ms is not None else self.clock.now_ms()
        started = int(started_at_ms) if started_at_ms is not None else ended
        rec = EngagementHistoryRecord(
            history_id=f"hist_{secrets.token_urlsafe(12)}",
            subject=subject,
            holder=holder,
            started_at_ms=started,
            ended_at_ms=ended,
            value=float(value or 0.0),
            notes=notes if notes else f"Released by {holder}",
            context=context,
            metadata=dict(metadata or {}),
        )
        # Chain head read and insert must not interleave with another writer.
        with self.store.transaction("history_record") as conn:
            rec.prev_hash = self.store.last_history_hash(conn)
            rec.entry_hash = compute_entry_hash(rec.prev_hash, rec)
            self.store.insert_history(conn, rec)
        logger.info("history recorded id=%s subject=%s holder=%s", rec.history_id, subject, holder)
        return rec

    def list_history(
        self,
        party: Optional[str] = None,
        role: str = ROLE_BOTH,
        *,
        subject: Optional[str] = None,
        holder: Optional[str] = None,
        limit: int = 50,
    ) -> List[EngagementHistoryRecord]:
        """Newest-first history.

        `party` is matched as the worker (subject), the hirer (holder) or
        either, depending on `role`. `subject`/`holder` narrow further.
        """
        role = (role or ROLE_BOTH).strip().lower()
        if role not in _ROLES:
            raise busy_error(BUSY_E_BAD_REQUEST, "role must be worker, hirer or both", role=role)
        limit = max(1, min(int(limit), 500))

        any_party: Optional[str] = None
        if party is not None:
            if role == ROLE_WORKER:
                subject = party
            elif role == ROLE_HIRER:
                holder = party
            else:
                any_party = party

        with self.store.connection("history_list") as conn:
            return self.store.query_history(conn, subject=subject, holder=holder, party=any_party, limit=limit)

    def verify_chain(self) -> Tuple[bool, str, int]:
        """Verify the hash chain. Returns (ok, reason, count)."""
        prev = GENESIS_HASH
        count = 0
        with self.store.connection("history_verify") as conn:
            for rec in self.store.history_in_order(conn):
                count += 1
                if rec.prev_hash != prev:
                    return False, "CHAIN_BROKEN", count
                if compute_entry_hash(prev, rec) != rec.entry_hash:
                    return False, "ENTRY_HASH_MISMATCH", count
                prev = rec.entry_hash
        return True, "OK", count
