from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from aggregator.core.auth import RequestContext
from aggregator.schemas.aggregation import ResultItem
from aggregator.services.accounts import AccountRegistry
from aggregator.services.aggregation import (
    RESULT_STORAGE_FAILED,
    AggregationCoordinator,
    AggregationJobNotFoundError,
    JobState,
    job_state,
    sort_feed_items,
)
from aggregator.services.invoker import ProviderInvoker
from aggregator.services.records import (
    AccountState,
    JobKind,
    OutcomeKey,
    ProviderAccount,
    ProviderDescriptor,
    ServiceDescriptor,
    ServiceOutcome,
)
from aggregator.services.registry import ServiceRegistry
from aggregator.services.store import InMemoryStore

PROVIDER_ID = "com.example.mail"
USER_ID = "user-1"
ACCOUNT_ID = "acct-1"
CTX = RequestContext(user_id=USER_ID)
FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class ScriptedHandler:
    def __init__(
        self,
        items: list[dict[str, Any]] | None = None,
        *,
        delay: float = 0.0,
        error: Exception | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.items = items or []
        self.delay = delay
        self.error = error
        self.gate = gate
        self.calls: list[dict[str, Any]] = []

    async def search(self, target, *, user_id: str, query: str, timeout_seconds: float) -> list[ResultItem]:
        self.calls.append({"mode": "search", "user_id": user_id, "query": query})
        return await self._respond()

    async def feed(self, target, *, user_id: str, since: datetime, timeout_seconds: float) -> list[ResultItem]:
        self.calls.append({"mode": "feed", "user_id": user_id, "since": since})
        return await self._respond()

    async def _respond(self) -> list[ResultItem]:
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return [ResultItem.model_validate(item) for item in self.items]


def _build(
    handlers: dict[str, ScriptedHandler],
    *,
    store: InMemoryStore | None = None,
    search_timeout_seconds: float = 5.0,
    feed_timeout_seconds: float = 5.0,
) -> tuple[AggregationCoordinator, InMemoryStore]:
    store = store or InMemoryStore()
    registry = ServiceRegistry()
    registry.register_provider(
        ProviderDescriptor(
            id=PROVIDER_ID,
            name="Example Mail",
            services=[
                ServiceDescriptor(id=service_id, name=service_id, service_url=f"https://svc.example.com/{service_id}")
                for service_id in handlers
            ],
        )
    )
    for service_id, handler in handlers.items():
        registry.register_handler(PROVIDER_ID, service_id, handler)

    if handlers:
        account = ProviderAccount(
            user_id=USER_ID,
            provider_id=PROVIDER_ID,
            account_id=ACCOUNT_ID,
            service_ids=list(handlers),
        )
        store.accounts[(USER_ID, PROVIDER_ID, ACCOUNT_ID)] = account

    coordinator = AggregationCoordinator(
        store=store,
        accounts=AccountRegistry(store=store, registry=registry),
        invoker=ProviderInvoker(
            registry,
            search_timeout_seconds=search_timeout_seconds,
            feed_timeout_seconds=feed_timeout_seconds,
        ),
        feed_lookback=timedelta(hours=72),
        clock=lambda: FIXED_NOW,
    )
    return coordinator, store


def _entry(result, service_id: str):
    return next(entry for entry in result.service_results if entry.service_id == service_id)


def test_start_search_without_targets_returns_empty_result_and_stores_nothing() -> None:
    coordinator, store = _build({})

    result = asyncio.run(coordinator.start_search(CTX, USER_ID, "quarterly report"))

    assert result.job_id is None
    assert result.kind is JobKind.SEARCH
    assert result.service_results == []
    assert store.outcomes == {}
    assert store.payloads == {}


def test_start_feed_without_targets_returns_empty_result() -> None:
    coordinator, store = _build({})

    result = asyncio.run(coordinator.start_feed(CTX, USER_ID, None))

    assert result.job_id is None
    assert result.kind is JobKind.FEED
    assert store.outcomes == {}


def test_start_search_creates_one_outcome_per_target() -> None:
    handlers = {
        "mail": ScriptedHandler([{"iconUrl": "/i/mail.png", "details": {"subject": "a"}}]),
        "drive": ScriptedHandler([], delay=0.02),
        "calendar": ScriptedHandler([], delay=0.04),
    }
    coordinator, store = _build(handlers)

    async def run():
        result = await coordinator.start_search(CTX, USER_ID, "budget")
        await coordinator.drain()
        return result

    result = asyncio.run(run())

    assert result.job_id is not None
    assert result.job_id.startswith("s-")
    keys = [key for key in store.outcomes if key.job_id == result.job_id]
    assert len(keys) == 3
    assert len(set(keys)) == 3
    assert {key.service_id for key in keys} == {"mail", "drive", "calendar"}
    assert all(call["query"] == "budget" for handler in handlers.values() for call in handler.calls)


def test_start_search_returns_after_first_completion_and_slow_service_times_out() -> None:
    fast = ScriptedHandler(
        [
            {"iconUrl": "/i/a.png", "details": {"n": 1}},
            {"iconUrl": "/i/a.png", "details": {"n": 2}},
            {"iconUrl": "/i/a.png", "details": {"n": 3}},
        ],
        delay=0.05,
    )
    hung = ScriptedHandler([], delay=5.0)
    coordinator, store = _build({"a": fast, "b": hung}, search_timeout_seconds=0.3)

    async def run():
        started_at = time.perf_counter()
        first = await coordinator.start_search(CTX, USER_ID, "invoice")
        elapsed = time.perf_counter() - started_at
        await coordinator.drain()
        later = await coordinator.poll(CTX, first.job_id)
        return first, elapsed, later

    first, elapsed, later = asyncio.run(run())

    assert elapsed < 0.25
    assert first.state is JobState.PARTIALLY_RESOLVED
    a_entry = _entry(first, "a")
    assert a_entry.pending is False
    assert a_entry.error_message is None
    assert [item.details["n"] for item in a_entry.items] == [1, 2, 3]
    assert _entry(first, "b").pending is True
    assert _entry(first, "b").items is None

    assert later.state is JobState.FULLY_RESOLVED
    b_entry = _entry(later, "b")
    assert b_entry.pending is False
    assert b_entry.error_message == "timeout"
    assert b_entry.items == []
    assert _entry(later, "a").items is None

    account = store.accounts[(USER_ID, PROVIDER_ID, ACCOUNT_ID)]
    assert account.state is AccountState.ERROR
    assert account.last_error_message == "timeout"
    assert account.last_error_at == FIXED_NOW


def test_poll_hands_out_each_payload_once() -> None:
    handlers = {
        "a": ScriptedHandler([{"iconUrl": "/i/a.png", "details": "first"}]),
        "b": ScriptedHandler([{"iconUrl": "/i/b.png", "details": "second"}], delay=0.05),
    }
    coordinator, _ = _build(handlers)

    async def run():
        first = await coordinator.start_search(CTX, USER_ID, "q")
        await coordinator.drain()
        second = await coordinator.poll(CTX, first.job_id)
        third = await coordinator.poll(CTX, first.job_id)
        return first, second, third

    first, second, third = asyncio.run(run())

    assert [item.details for item in _entry(first, "a").items] == ["first"]
    assert _entry(second, "a").items is None
    assert [item.details for item in _entry(second, "b").items] == ["second"]
    assert _entry(third, "b").items is None
    assert _entry(third, "b").pending is False
    assert third.state is JobState.FULLY_RESOLVED


def test_concurrent_polls_never_deliver_the_same_payload_twice() -> None:
    gate = asyncio.Event()
    handlers = {
        "a": ScriptedHandler([{"iconUrl": "/i/a.png", "details": "x"}]),
        "b": ScriptedHandler([{"iconUrl": "/i/b.png", "details": "y"}], gate=gate),
    }
    coordinator, _ = _build(handlers)

    async def run():
        first = await coordinator.start_search(CTX, USER_ID, "q")
        gate.set()
        await coordinator.drain()
        polls = await asyncio.gather(*(coordinator.poll(CTX, first.job_id) for _ in range(5)))
        return first, polls

    first, polls = asyncio.run(run())

    deliveries = [entry.service_id for result in [first, *polls] for entry in result.service_results if entry.items]
    assert sorted(deliveries) == ["a", "b"]


def test_search_keeps_results_grouped_per_service() -> None:
    handlers = {
        "a": ScriptedHandler([{"timestamp": 10, "details": "a-old"}, {"timestamp": 30, "details": "a-new"}]),
    }
    coordinator, _ = _build(handlers)

    result = asyncio.run(coordinator.start_search(CTX, USER_ID, "q"))

    assert result.items == []
    assert [item.details for item in _entry(result, "a").items] == ["a-old", "a-new"]
    assert all(item.provider_id == PROVIDER_ID and item.service_id == "a" for item in _entry(result, "a").items)


def test_feed_merges_newly_delivered_items_sorted_newest_first() -> None:
    gate = asyncio.Event()
    handlers = {
        "a": ScriptedHandler([{"timestamp": 5, "details": "a5"}, {"timestamp": 50, "details": "a50"}]),
        "b": ScriptedHandler([{"timestamp": 40, "details": "b40"}, {"details": "b-undated"}], gate=gate),
        "c": ScriptedHandler([{"timestamp": 45, "details": "c45"}, {"timestamp": 10, "details": "c10"}], gate=gate),
    }
    coordinator, _ = _build(handlers)

    async def run():
        first = await coordinator.start_feed(CTX, USER_ID, None)
        gate.set()
        await coordinator.drain()
        later = await coordinator.poll(CTX, first.job_id)
        return first, later

    first, later = asyncio.run(run())

    assert first.job_id.startswith("f-")
    assert [item.details for item in first.items] == ["a50", "a5"]
    assert [item.details for item in later.items] == ["c45", "b40", "c10", "b-undated"]
    assert all(entry.items is None for entry in later.service_results)
    assert later.state is JobState.FULLY_RESOLVED


def test_feed_since_is_clamped_to_lookback_window() -> None:
    handler = ScriptedHandler([])
    coordinator, _ = _build({"a": handler})
    floor = FIXED_NOW - timedelta(hours=72)
    recent = FIXED_NOW - timedelta(hours=2)

    async def run():
        await coordinator.start_feed(CTX, USER_ID, FIXED_NOW - timedelta(days=30))
        await coordinator.start_feed(CTX, USER_ID, None)
        await coordinator.start_feed(CTX, USER_ID, recent)
        await coordinator.drain()

    asyncio.run(run())

    assert [call["since"] for call in handler.calls] == [floor, floor, recent]


def test_clamp_since_treats_naive_datetimes_as_utc() -> None:
    coordinator, _ = _build({})
    naive = (FIXED_NOW - timedelta(hours=1)).replace(tzinfo=None)

    assert coordinator.clamp_since(naive) == FIXED_NOW - timedelta(hours=1)


def test_all_failures_still_reach_fully_resolved() -> None:
    handlers = {
        "a": ScriptedHandler(error=RuntimeError("token revoked")),
        "b": ScriptedHandler(error=RuntimeError("quota exceeded"), delay=0.01),
    }
    coordinator, store = _build(handlers)

    async def run():
        first = await coordinator.start_search(CTX, USER_ID, "q")
        await coordinator.drain()
        return await coordinator.poll(CTX, first.job_id)

    result = asyncio.run(run())

    assert result.state is JobState.FULLY_RESOLVED
    assert {entry.service_id: entry.error_message for entry in result.service_results} == {
        "a": "token revoked",
        "b": "quota exceeded",
    }
    assert store.payloads == {}


def test_account_in_error_state_is_still_attempted() -> None:
    handler = ScriptedHandler([{"details": "ok"}])
    coordinator, store = _build({"a": handler})
    store.accounts[(USER_ID, PROVIDER_ID, ACCOUNT_ID)].state = AccountState.ERROR

    result = asyncio.run(coordinator.start_search(CTX, USER_ID, "q"))

    assert len(handler.calls) == 1
    assert [item.details for item in _entry(result, "a").items] == ["ok"]


def test_failed_account_error_report_does_not_break_the_job() -> None:
    class BrokenAccountStore(InMemoryStore):
        async def update_account_state(self, ctx, **kwargs) -> None:
            raise RuntimeError("accounts table locked")

    coordinator, _ = _build({"a": ScriptedHandler(error=RuntimeError("boom"))}, store=BrokenAccountStore())

    result = asyncio.run(coordinator.start_search(CTX, USER_ID, "q"))

    assert result.state is JobState.FULLY_RESOLVED
    assert _entry(result, "a").error_message == "boom"


def test_payload_write_failure_resolves_outcome_with_error() -> None:
    class FlakyPayloadStore(InMemoryStore):
        async def store_result_payload(self, ctx, key, items):
            if key.service_id == "a":
                raise RuntimeError("disk full")
            return await super().store_result_payload(ctx, key, items)

    handlers = {
        "a": ScriptedHandler([{"details": "lost"}]),
        "b": ScriptedHandler([{"details": "kept"}], delay=0.02),
    }
    coordinator, store = _build(handlers, store=FlakyPayloadStore())

    async def run():
        first = await coordinator.start_search(CTX, USER_ID, "q")
        await coordinator.drain()
        return first, await coordinator.poll(CTX, first.job_id)

    first, later = asyncio.run(run())

    a_entry = _entry(later, "a")
    assert a_entry.pending is False
    assert a_entry.error_message == RESULT_STORAGE_FAILED
    delivered = [item.details for result in (first, later) for entry in result.service_results for item in entry.items or []]
    assert delivered == ["kept"]
    assert later.state is JobState.FULLY_RESOLVED
    assert store.accounts[(USER_ID, PROVIDER_ID, ACCOUNT_ID)].state is AccountState.ACTIVE


def test_single_target_payload_write_failure_still_reaches_fully_resolved() -> None:
    class BrokenPayloadStore(InMemoryStore):
        async def store_result_payload(self, ctx, key, items):
            raise RuntimeError("disk full")

    coordinator, _ = _build({"a": ScriptedHandler([{"details": "lost"}])}, store=BrokenPayloadStore())

    async def run():
        first = await coordinator.start_search(CTX, USER_ID, "q")
        await coordinator.drain()
        return [first] + [await coordinator.poll(CTX, first.job_id) for _ in range(2)]

    results = asyncio.run(run())

    assert [result.state for result in results] == [JobState.FULLY_RESOLVED] * 3
    assert _entry(results[0], "a").items == []
    assert _entry(results[1], "a").items is None


def test_outcome_stays_pending_only_when_every_store_write_fails() -> None:
    class UnwritableStore(InMemoryStore):
        async def store_result_payload(self, ctx, key, items):
            raise RuntimeError("disk full")

        async def update_outcome_state(self, ctx, key, **kwargs) -> None:
            raise RuntimeError("disk full")

    coordinator, _ = _build({"a": ScriptedHandler([{"details": "lost"}])}, store=UnwritableStore())

    result = asyncio.run(coordinator.start_search(CTX, USER_ID, "q"))

    assert _entry(result, "a").pending is True
    assert result.state is JobState.INITIATED


def test_poll_unknown_job_raises_not_found() -> None:
    coordinator, _ = _build({})

    with pytest.raises(AggregationJobNotFoundError):
        asyncio.run(coordinator.poll(CTX, "s-missing"))


def test_poll_refuses_another_users_job() -> None:
    coordinator, _ = _build({"a": ScriptedHandler([])})

    async def run():
        first = await coordinator.start_search(CTX, USER_ID, "q")
        return await coordinator.poll(RequestContext(user_id="intruder"), first.job_id, user_id="intruder")

    with pytest.raises(AggregationJobNotFoundError):
        asyncio.run(run())


def test_job_state_tracks_pending_outcomes() -> None:
    def outcome(service_id: str, pending: bool) -> ServiceOutcome:
        return ServiceOutcome(
            key=OutcomeKey(job_id="s-1", provider_id=PROVIDER_ID, service_id=service_id, account_id=ACCOUNT_ID),
            user_id=USER_ID,
            kind=JobKind.SEARCH,
            pending=pending,
            delivered=False,
            created_at=FIXED_NOW,
        )

    assert job_state([outcome("a", True), outcome("b", True)]) is JobState.INITIATED
    assert job_state([outcome("a", False), outcome("b", True)]) is JobState.PARTIALLY_RESOLVED
    assert job_state([outcome("a", False), outcome("b", False)]) is JobState.FULLY_RESOLVED


def test_sort_feed_items_puts_undated_items_last() -> None:
    items = [
        ResultItem(details="undated-1"),
        ResultItem(timestamp=1, details="t1"),
        ResultItem(details="undated-2"),
        ResultItem(timestamp=3, details="t3"),
    ]

    assert [item.details for item in sort_feed_items(items)] == ["t3", "t1", "undated-1", "undated-2"]
