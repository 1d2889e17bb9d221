"""
Session resolver: which store serves a request, and what happens when the
database refuses a write.

Authenticated users are served from the database; guests from the in-memory
GuestStore. When a database write fails for an authenticated user the record
is written to the GuestStore instead, tagged with the user's id, and a
PersistenceDegraded event is emitted. Listing operations later union those
stranded records back in with `reconcile_list`.
"""

import logging
import math
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

import sentry_sdk
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

MAX_DEGRADED_EVENTS = 200


class StoreKind(str, Enum):
    PERSISTENT = "persistent"
    EPHEMERAL = "ephemeral"


def resolve_store(user) -> StoreKind:
    """Database for authenticated users, memory for guests."""
    return StoreKind.PERSISTENT if user is not None else StoreKind.EPHEMERAL


# ============================================================================
# PERSISTENCE DEGRADATION
# ============================================================================

@dataclass
class PersistenceDegraded:
    """A record that should have reached the database but landed in memory."""
    resource_kind: str
    record_id: str
    owner_id: Optional[str]
    error: str
    occurred_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "resourceKind": self.resource_kind,
            "recordId": self.record_id,
            "ownerId": self.owner_id,
            "error": self.error,
            "occurredAt": self.occurred_at.isoformat(),
        }


class DegradationLog:
    """Counts PersistenceDegraded events and keeps the most recent ones."""

    def __init__(self, maxlen: int = MAX_DEGRADED_EVENTS):
        self._events: Deque[PersistenceDegraded] = deque(maxlen=maxlen)
        self._count = 0
        self._lock = threading.Lock()

    def record(self, event: PersistenceDegraded) -> None:
        with self._lock:
            self._events.append(event)
            self._count += 1

        logger.warning(
            "PersistenceDegraded: %s %s for user %s written to memory (%s)",
            event.resource_kind, event.record_id, event.owner_id, event.error
        )
        sentry_sdk.capture_message(
            f"PersistenceDegraded: {event.resource_kind} written to memory",
            level="warning"
        )

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    def events(self) -> List[PersistenceDegraded]:
        with self._lock:
            return list(self._events)

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
            self._count = 0


degradation_log = DegradationLog()


def persist(db: Session, *records) -> Optional[str]:
    """
    Add and commit `records` in one transaction.

    Returns None on success, or the error text after rolling back. Callers
    that get an error decide what to write to the GuestStore and then call
    `report_degraded`.
    """
    try:
        for record in records:
            db.add(record)
        db.commit()
        return None
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database write failed: {e}")
        return str(e)


def discard(db: Session, *records) -> Optional[str]:
    """Delete and commit `records`; same error contract as `persist`."""
    try:
        for record in records:
            db.delete(record)
        db.commit()
        return None
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database delete failed: {e}")
        return str(e)


def report_degraded(resource_kind: str, record_id: str, owner_id: Optional[str], error: str) -> PersistenceDegraded:
    event = PersistenceDegraded(
        resource_kind=resource_kind,
        record_id=record_id,
        owner_id=owner_id,
        error=error,
    )
    degradation_log.record(event)
    return event


# ============================================================================
# READ-SIDE RECONCILIATION
# ============================================================================

def reconcile_list(
    persistent: Iterable[Any],
    ephemeral: Iterable[Any],
    sort_key: Callable[[Any], Any],
    id_of: Callable[[Any], str] = lambda record: record.id,
) -> List[Any]:
    """
    Union database rows with memory records for the same owner.

    A memory record only exists because a later write to the database
    failed, so it wins on identifier collisions. The result is sorted by
    `sort_key` descending (most recent activity first).
    """
    merged: Dict[str, Any] = {}
    for record in persistent:
        merged[id_of(record)] = record
    for record in ephemeral:
        merged[id_of(record)] = record
    return sorted(merged.values(), key=sort_key, reverse=True)


def round_half_up(value: float) -> int:
    """0.5 rounds away from zero for positive values (round() would give 12 for 12.5)."""
    return int(math.floor(value + 0.5))


def normalize_score(score: Any) -> int:
    """
    Integer percentage from either a flat score or a nested {"percentage": n}.

    Unknown shapes count as 0 rather than breaking an average.
    """
    if isinstance(score, dict):
        score = score.get("percentage", 0)
    if isinstance(score, bool) or score is None:
        return 0
    try:
        value = round_half_up(float(score))
    except (TypeError, ValueError, OverflowError):
        return 0
    return max(0, min(100, value))
