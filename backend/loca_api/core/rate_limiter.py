"""Fixed-window search quota per user and per IP"""

import asyncio
import logging
import os
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from loca_api.models.place_data import RateLimitDecision, RateLimitRecord

logger = logging.getLogger(__name__)


def ip_identity(ip: Optional[str]) -> str:
    return f"ip-{ip or 'unknown'}"


class CounterStore(ABC):
    """Persistent identity -> window counter store with read-after-write consistency"""

    @abstractmethod
    async def get(self, identity: str) -> Optional[RateLimitRecord]:
        ...

    @abstractmethod
    async def put(self, record: RateLimitRecord) -> None:
        ...


class InMemoryCounterStore(CounterStore):
    """Process-local store, used for tests and single-process development"""

    def __init__(self):
        self._records: Dict[str, RateLimitRecord] = {}

    async def get(self, identity: str) -> Optional[RateLimitRecord]:
        record = self._records.get(identity)
        return record.model_copy() if record else None

    async def put(self, record: RateLimitRecord) -> None:
        self._records[record.identity] = record.model_copy()


class SqliteCounterStore(CounterStore):
    """SQLite-backed counter store; blocking calls run in a worker thread"""

    def __init__(self, db_path: str):
        self.db_path = db_path
        if db_path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS rate_limits (
                    identity TEXT PRIMARY KEY,
                    window_start TEXT NOT NULL,
                    search_count INTEGER NOT NULL
                )
                """
            )
            self._conn.commit()

    def _get_sync(self, identity: str) -> Optional[RateLimitRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT identity, window_start, search_count FROM rate_limits WHERE identity=?",
                (identity,),
            ).fetchone()
        if not row:
            return None
        return RateLimitRecord(identity=row[0], window_start=datetime.fromisoformat(row[1]), count=row[2])

    def _put_sync(self, record: RateLimitRecord) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO rate_limits (identity, window_start, search_count) VALUES (?, ?, ?)
                ON CONFLICT(identity) DO UPDATE SET
                    window_start=excluded.window_start, search_count=excluded.search_count
                """,
                (record.identity, record.window_start.isoformat(), record.count),
            )
            self._conn.commit()

    async def get(self, identity: str) -> Optional[RateLimitRecord]:
        return await asyncio.to_thread(self._get_sync, identity)

    async def put(self, record: RateLimitRecord) -> None:
        await asyncio.to_thread(self._put_sync, record)

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class RateLimiter:
    """
    Fixed-window admission control.

    A window starts on the first search of an identity and lasts
    ``window``; within it at most ``max_searches`` searches are accepted.
    Rejected checks never increment. If the counter store cannot be read
    or written the search is denied.
    """

    def __init__(self, store: CounterStore, max_searches: int = 10, window: timedelta = timedelta(hours=12)):
        self.store = store
        self.max_searches = max_searches
        self.window = window

    @property
    def window_hours(self) -> float:
        return self.window.total_seconds() / 3600

    def _evaluate(
        self, identity: str, record: Optional[RateLimitRecord], now: datetime
    ) -> Tuple[RateLimitDecision, RateLimitRecord]:
        if record is None or now - record.window_start >= self.window:
            updated = RateLimitRecord(identity=identity, window_start=now, count=1)
        else:
            updated = RateLimitRecord(identity=identity, window_start=record.window_start, count=record.count + 1)

        allowed = updated.count <= self.max_searches
        decision = RateLimitDecision(
            allowed=allowed,
            remaining=max(0, self.max_searches - updated.count) if allowed else 0,
            reset_at=updated.window_start + self.window,
            limit=self.max_searches,
            window_hours=self.window_hours,
        )
        return decision, updated

    def _store_failure(self, now: datetime, error: Exception) -> RateLimitDecision:
        logger.error(f"[RATE LIMIT] Counter store unavailable, denying search: {error}")
        return RateLimitDecision(
            allowed=False,
            remaining=0,
            reset_at=now + self.window,
            limit=self.max_searches,
            window_hours=self.window_hours,
            blocked_by="store",
        )

    async def check_and_consume(self, identity: str, now: Optional[datetime] = None) -> RateLimitDecision:
        """Check one identity and consume a search if allowed"""
        now = now or datetime.now(timezone.utc)
        try:
            record = await self.store.get(identity)
            decision, updated = self._evaluate(identity, record, now)
            if decision.allowed:
                await self.store.put(updated)
        except Exception as e:
            return self._store_failure(now, e)
        logger.info(
            f"[RATE LIMIT] identity={identity} | allowed={decision.allowed} | remaining={decision.remaining}"
        )
        return decision

    def identities(self, user_id: Optional[str], ip: Optional[str]) -> List[Tuple[str, str]]:
        """(kind, key) pairs to check; user before ip"""
        pairs = []
        if user_id:
            pairs.append(("user", user_id))
        ip_key = ip_identity(ip)
        if not pairs or ip_key != user_id:
            pairs.append(("ip", ip_key))
        return pairs

    async def check_request(
        self, user_id: Optional[str], ip: Optional[str], now: Optional[datetime] = None
    ) -> RateLimitDecision:
        """
        Check the user identity and the IP identity together.

        Blocked if either is over its limit, reported user first. Nothing
        is consumed unless every identity is allowed.
        """
        now = now or datetime.now(timezone.utc)
        pairs = self.identities(user_id, ip)
        try:
            evaluated = []
            for kind, key in pairs:
                record = await self.store.get(key)
                decision, updated = self._evaluate(key, record, now)
                evaluated.append((kind, decision, updated))

            for kind, decision, _ in evaluated:
                if not decision.allowed:
                    logger.warning(f"[RATE LIMIT] Search blocked | blocked_by={kind} | reset_at={decision.reset_at}")
                    return decision.model_copy(update={"blocked_by": kind})

            for _, _, updated in evaluated:
                await self.store.put(updated)
        except Exception as e:
            return self._store_failure(now, e)

        primary = evaluated[0][1]
        remaining = min(d.remaining for _, d, _ in evaluated)
        logger.info(f"[RATE LIMIT] Search allowed | identities={[k for k, _ in pairs]} | remaining={remaining}")
        return primary.model_copy(update={"remaining": remaining})

    async def status(self, user_id: Optional[str], ip: Optional[str], now: Optional[datetime] = None) -> dict:
        """
        Read-only view of each identity's window; consumes nothing.

        When the counter store fails the report says so with
        ``blocked_by="store"``, the same answer a search would get.
        """
        now = now or datetime.now(timezone.utc)
        report = {
            "timestamp": now.isoformat(),
            "limit": self.max_searches,
            "window_hours": self.window_hours,
            "identities": {},
            "blocked_by": None,
        }
        for kind, key in self.identities(user_id, ip):
            try:
                record = await self.store.get(key)
            except Exception as e:
                logger.error(f"[RATE LIMIT] Counter store unavailable, status unknown: {e}")
                report["identities"] = {}
                report["blocked_by"] = "store"
                report["store_error"] = str(e) or type(e).__name__
                return report
            expired = record is None or now - record.window_start >= self.window
            count = 0 if expired else record.count
            would_block = count + 1 > self.max_searches
            report["identities"][kind] = {
                "identity": key,
                "exists": record is not None,
                "search_count": count,
                "window_start": record.window_start.isoformat() if record else None,
                "reset_at": (record.window_start + self.window).isoformat() if record and not expired else None,
                "remaining": max(0, self.max_searches - count),
                "would_block": would_block,
            }
            if would_block and report["blocked_by"] is None:
                report["blocked_by"] = kind
        return report
