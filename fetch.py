from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from auth import ReauthenticationRequired
from models import Transaction
from store import StoreError, TransactionStore

logger = logging.getLogger(__name__)


class FetchCache:
    """Per-user snapshots of the last successful transaction fetch.

    ``fetch_lock`` serializes fetches per user, so a request arriving while another is
    in flight waits for that snapshot instead of querying the store again.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[int, tuple[float, list[Transaction]]] = {}
        self._fetch_locks: dict[int, threading.Lock] = {}

    def fetch_lock(self, user_id: int) -> threading.Lock:
        with self._lock:
            return self._fetch_locks.setdefault(user_id, threading.Lock())

    def get(self, user_id: int, now: float, max_age: float) -> Optional[list[Transaction]]:
        with self._lock:
            entry = self._entries.get(user_id)
        if entry is None:
            return None
        fetched_at, items = entry
        if now - fetched_at > max_age:
            return None
        return list(items)

    def put(self, user_id: int, now: float, items: list[Transaction]) -> None:
        with self._lock:
            self._entries[user_id] = (now, list(items))

    def drop(self, user_id: int) -> None:
        with self._lock:
            self._entries.pop(user_id, None)


class TransactionFetcher:
    def __init__(
        self,
        store: TransactionStore,
        cache: FetchCache,
        *,
        dedup_secs: float = 5.0,
        max_retries: int = 3,
        backoff_secs: float = 3.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.cache = cache
        self.dedup_secs = dedup_secs
        self.max_retries = max_retries
        self.backoff_secs = backoff_secs
        self.sleep = sleep
        self.clock = clock

    def list(self) -> list[Transaction]:
        user_id = self.store.owner_id()
        cached = self.cache.get(user_id, self.clock(), self.dedup_secs)
        if cached is not None:
            return cached
        with self.cache.fetch_lock(user_id):
            cached = self.cache.get(user_id, self.clock(), self.dedup_secs)
            if cached is not None:
                logger.info(f"fetch_coalesced: user_id={user_id}")
                return cached
            return self._fetch(user_id)

    def _fetch(self, user_id: int) -> list[Transaction]:
        attempt = 0
        while True:
            try:
                items = self.store.list_transactions()
            except ReauthenticationRequired:
                raise
            except StoreError:
                if attempt >= self.max_retries:
                    logger.error(
                        f"fetch_failed: user_id={user_id} attempts={attempt + 1}"
                    )
                    raise
                attempt += 1
                delay = self.backoff_secs * attempt
                logger.warning(
                    f"fetch_retry: user_id={user_id} attempt={attempt} delay={delay}"
                )
                self.sleep(delay)
                continue
            logger.info(f"fetch_ok: user_id={user_id} count={len(items)}")
            self.cache.put(user_id, self.clock(), items)
            return items

    def revalidate(self) -> list[Transaction]:
        self.invalidate()
        return self.list()

    def invalidate(self) -> None:
        self.cache.drop(self.store.owner_id())
