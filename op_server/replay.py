"""
Single-use / replay store: at-most-once reservation of token ids.

try_reserve() is an atomic read-and-insert. The in-memory store serializes on a lock; the SQL store relies
on the primary key of replay_records so that of two concurrent inserts exactly one commits.
"""
import enum
import logging
import threading
import time
from typing import Callable, Protocol

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from op_server.errors import StoreError
from op_server.models import ReplayRecord

logger = logging.getLogger(__name__)


class ReserveResult(enum.Enum):
    RESERVED = "reserved"
    ALREADY_PRESENT = "already_present"


class ReplayStore(Protocol):
    def try_reserve(self, jti: str, ttl: int) -> ReserveResult:
        """Reserve jti for at least ttl seconds. Raises StoreError on I/O failure."""
        ...


class MemoryReplayStore:
    """Process-local store. Expired entries are dropped lazily on each reservation."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: dict[str, float] = {}
        self._lock = threading.Lock()

    def try_reserve(self, jti: str, ttl: int) -> ReserveResult:
        now = self._clock()
        with self._lock:
            self._entries = {k: exp for k, exp in self._entries.items() if exp > now}
            if jti in self._entries:
                return ReserveResult.ALREADY_PRESENT
            self._entries[jti] = now + max(ttl, 1)
            return ReserveResult.RESERVED

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class SqlReplayStore:
    """
    Store backed by the replay_records table (INSERT, primary-key conflict = already present).
    Every reservation first deletes all expired rows in the same transaction, so the table stays bounded
    by the records still within their TTL.
    """

    def __init__(self, session_factory: Callable[[], Session], clock: Callable[[], float] = time.time):
        self._session_factory = session_factory
        self._clock = clock

    def try_reserve(self, jti: str, ttl: int) -> ReserveResult:
        now = int(self._clock())
        try:
            with self._session_factory() as db:
                # Rows past their TTL protect nothing; clearing them here also frees a reused jti
                db.execute(delete(ReplayRecord).where(ReplayRecord.expires_at <= now))
                db.add(ReplayRecord(jti=jti, expires_at=now + max(ttl, 1)))
                db.commit()
        except IntegrityError:
            return ReserveResult.ALREADY_PRESENT
        except SQLAlchemyError as e:
            raise StoreError(f"replay store unavailable: {e.__class__.__name__}") from e
        return ReserveResult.RESERVED

    def purge_expired(self) -> int:
        """Delete records whose TTL has passed. Returns the number of rows removed."""
        now = int(self._clock())
        try:
            with self._session_factory() as db:
                result = db.execute(delete(ReplayRecord).where(ReplayRecord.expires_at <= now))
                db.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"replay store unavailable: {e.__class__.__name__}") from e
        if result.rowcount:
            logger.debug("Purged %d expired replay records", result.rowcount)
        return result.rowcount or 0
