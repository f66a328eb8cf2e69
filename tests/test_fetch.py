import threading

import pytest

from auth import ReauthenticationRequired
from fetch import FetchCache, TransactionFetcher
from store import StoreError


class FakeStore:
    def __init__(self, outcomes, user_id: int = 1) -> None:
        self.outcomes = list(outcomes)
        self.user_id = user_id
        self.calls = 0

    def owner_id(self) -> int:
        return self.user_id

    def list_transactions(self):
        self.calls += 1
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return list(outcome)


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def make_fetcher(store, cache=None, clock=None, **kwargs) -> TransactionFetcher:
    clock = clock or FakeClock()
    return TransactionFetcher(
        store,
        cache or FetchCache(),
        sleep=clock.sleep,
        clock=clock,
        **kwargs,
    )


def test_identical_requests_within_window_are_deduplicated() -> None:
    store = FakeStore([["a", "b"]])
    clock = FakeClock()
    cache = FetchCache()

    first = make_fetcher(store, cache, clock).list()
    clock.now += 4.9
    second = make_fetcher(store, cache, clock).list()

    assert first == second == ["a", "b"]
    assert store.calls == 1

    clock.now += 0.2
    make_fetcher(store, cache, clock).list()
    assert store.calls == 2


def test_dedup_window_is_per_user() -> None:
    cache = FetchCache()
    clock = FakeClock()
    make_fetcher(FakeStore([["alice"]], user_id=1), cache, clock).list()

    bob = FakeStore([["bob"]], user_id=2)
    assert make_fetcher(bob, cache, clock).list() == ["bob"]
    assert bob.calls == 1


def test_transient_store_errors_are_retried_with_increasing_backoff() -> None:
    store = FakeStore([StoreError("down"), StoreError("down"), ["ok"]])
    clock = FakeClock()

    items = make_fetcher(store, clock=clock, backoff_secs=3.0).list()

    assert items == ["ok"]
    assert store.calls == 3
    assert clock.sleeps == [3.0, 6.0]


def test_persistent_store_error_surfaces_after_bounded_retries() -> None:
    store = FakeStore([StoreError("down")])
    clock = FakeClock()

    with pytest.raises(StoreError):
        make_fetcher(store, clock=clock, max_retries=3, backoff_secs=1.0).list()

    assert store.calls == 4
    assert clock.sleeps == [1.0, 2.0, 3.0]


def test_reauthentication_is_not_retried() -> None:
    store = FakeStore([ReauthenticationRequired("expired")])
    clock = FakeClock()

    with pytest.raises(ReauthenticationRequired):
        make_fetcher(store, clock=clock).list()

    assert store.calls == 1
    assert clock.sleeps == []


def test_revalidate_bypasses_the_cached_snapshot() -> None:
    store = FakeStore([["old"], ["new"]])
    clock = FakeClock()
    cache = FetchCache()
    fetcher = make_fetcher(store, cache, clock)

    assert fetcher.list() == ["old"]
    assert fetcher.revalidate() == ["new"]
    assert fetcher.list() == ["new"]
    assert store.calls == 2


class SlowStore(FakeStore):
    def __init__(self, items) -> None:
        super().__init__([items])
        self.entered = threading.Event()
        self.release = threading.Event()

    def list_transactions(self):
        self.entered.set()
        assert self.release.wait(5)
        return super().list_transactions()


def test_concurrent_requests_share_one_in_flight_fetch() -> None:
    store = SlowStore(["a"])
    cache = FetchCache()
    clock = FakeClock()
    results = []

    def fetch():
        results.append(make_fetcher(store, cache, clock).list())

    first = threading.Thread(target=fetch)
    first.start()
    assert store.entered.wait(5)
    second = threading.Thread(target=fetch)
    second.start()
    # the second caller is parked on the per-user fetch lock
    second.join(0.1)
    assert second.is_alive()

    store.release.set()
    first.join(5)
    second.join(5)

    assert results == [["a"], ["a"]]
    assert store.calls == 1
