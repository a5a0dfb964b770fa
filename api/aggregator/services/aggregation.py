from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from functools import lru_cache
from typing import Any
from uuid import uuid4

from aggregator.core.auth import RequestContext
from aggregator.core.config import get_settings
from aggregator.schemas.aggregation import ResultItem
from aggregator.services.accounts import AccountRegistry, get_account_registry
from aggregator.services.invoker import InvocationResult, InvocationSuccess, ProviderInvoker
from aggregator.services.records import JobKind, OutcomeKey, ServiceOutcome, ServiceTarget
from aggregator.services.registry import get_service_registry
from aggregator.services.repository import utc_now
from aggregator.services.store import get_record_store

logger = logging.getLogger(__name__)

JOB_ID_PREFIXES = {JobKind.SEARCH: "s", JobKind.FEED: "f"}
RESULT_STORAGE_FAILED = "result storage failed"


class AggregationError(Exception):
    """Base aggregation error."""


class AggregationJobNotFoundError(AggregationError):
    """Raised when a job does not exist or belongs to another user."""


class JobState(str, Enum):
    INITIATED = "initiated"
    PARTIALLY_RESOLVED = "partially_resolved"
    FULLY_RESOLVED = "fully_resolved"


@dataclass(slots=True)
class ServiceResult:
    provider_id: str
    service_id: str
    account_id: str
    pending: bool
    error_message: str | None = None
    items: list[ResultItem] | None = None


@dataclass(slots=True)
class PollResult:
    job_id: str | None
    kind: JobKind
    state: JobState
    service_results: list[ServiceResult] = field(default_factory=list)
    items: list[ResultItem] = field(default_factory=list)

    @classmethod
    def empty(cls, kind: JobKind) -> "PollResult":
        return cls(job_id=None, kind=kind, state=JobState.FULLY_RESOLVED)


def job_state(outcomes: list[ServiceOutcome]) -> JobState:
    resolved = sum(1 for outcome in outcomes if not outcome.pending)
    if resolved == len(outcomes):
        return JobState.FULLY_RESOLVED
    if resolved == 0:
        return JobState.INITIATED
    return JobState.PARTIALLY_RESOLVED


def sort_feed_items(items: list[ResultItem]) -> list[ResultItem]:
    """Newest first; items without a timestamp go last in their original order."""
    return sorted(items, key=lambda item: (item.timestamp is not None, item.timestamp or 0), reverse=True)


TargetCall = Callable[[ServiceTarget], Awaitable[InvocationResult]]


class AggregationCoordinator:
    """Fans a search or feed request out to every enabled service of a user.

    Start operations return as soon as the first service answers. The remaining
    invocations keep running in the background and publish their outcome only
    through the record store, where `poll` picks them up. Nothing is ever
    cancelled; `drain` waits for in-flight invocations at shutdown.
    """

    def __init__(
        self,
        store: Any,
        accounts: AccountRegistry,
        invoker: ProviderInvoker,
        *,
        feed_lookback: timedelta = timedelta(hours=72),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.accounts = accounts
        self.invoker = invoker
        self.feed_lookback = feed_lookback
        self.clock = clock
        # The event loop only keeps weak references to tasks.
        self._inflight: set[asyncio.Task[None]] = set()

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    async def start_search(self, ctx: RequestContext, user_id: str, query: str) -> PollResult:
        async def call(target: ServiceTarget) -> InvocationResult:
            return await self.invoker.search(ctx, target, user_id=user_id, query=query)

        return await self._start(ctx, user_id, JobKind.SEARCH, call)

    async def start_feed(self, ctx: RequestContext, user_id: str, since: datetime | None = None) -> PollResult:
        effective_since = self.clamp_since(since)

        async def call(target: ServiceTarget) -> InvocationResult:
            return await self.invoker.feed(ctx, target, user_id=user_id, since=effective_since)

        return await self._start(ctx, user_id, JobKind.FEED, call)

    def clamp_since(self, since: datetime | None) -> datetime:
        floor = self.clock() - self.feed_lookback
        if since is None:
            return floor
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        return max(since, floor)

    async def poll(self, ctx: RequestContext, job_id: str, user_id: str | None = None) -> PollResult:
        outcomes = await self.store.find_outcomes_by_job(ctx, job_id)
        if not outcomes:
            raise AggregationJobNotFoundError("job not found")
        if user_id is not None and any(outcome.user_id != user_id for outcome in outcomes):
            raise AggregationJobNotFoundError("job not found")

        kind = outcomes[0].kind
        service_results: list[ServiceResult] = []
        merged: list[ResultItem] = []
        for outcome in outcomes:
            entry = ServiceResult(
                provider_id=outcome.key.provider_id,
                service_id=outcome.key.service_id,
                account_id=outcome.key.account_id,
                pending=outcome.pending,
                error_message=outcome.error_message,
            )
            if not outcome.pending and not outcome.delivered:
                payload = await self.store.find_payload(ctx, outcome.key)
                # Only the poll that flips the flag hands the payload out.
                if await self.store.mark_delivered(ctx, outcome.key):
                    items = list(payload.items) if payload is not None else []
                    if kind is JobKind.FEED:
                        merged.extend(items)
                    else:
                        entry.items = items
            service_results.append(entry)

        return PollResult(
            job_id=job_id,
            kind=kind,
            state=job_state(outcomes),
            service_results=service_results,
            items=sort_feed_items(merged) if kind is JobKind.FEED else [],
        )

    async def drain(self, timeout: float | None = None) -> int:
        """Wait for in-flight invocations; returns how many are still running."""
        if not self._inflight:
            return 0
        _, pending = await asyncio.wait(set(self._inflight), timeout=timeout)
        return len(pending)

    async def _start(self, ctx: RequestContext, user_id: str, kind: JobKind, call: TargetCall) -> PollResult:
        targets = await self.accounts.list_enabled_services_for_user(ctx, user_id)
        if not targets:
            logger.info("aggregation skipped kind=%s user_id=%s reason=no_enabled_services", kind.value, user_id)
            return PollResult.empty(kind)

        job_id = f"{JOB_ID_PREFIXES[kind]}-{uuid4()}"
        for target in targets:
            await self.store.create_outcome(ctx, target.outcome_key(job_id), user_id=user_id, kind=kind)

        logger.info(
            "aggregation started kind=%s job_id=%s user_id=%s targets=%s",
            kind.value,
            job_id,
            user_id,
            len(targets),
        )
        tasks = [self._launch(ctx, user_id, job_id, target, call) for target in targets]
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        return await self.poll(ctx, job_id)

    def _launch(
        self,
        ctx: RequestContext,
        user_id: str,
        job_id: str,
        target: ServiceTarget,
        call: TargetCall,
    ) -> asyncio.Task[None]:
        task = asyncio.create_task(
            self._run_target(ctx, user_id, job_id, target, call),
            name=f"aggregation:{job_id}:{target.provider.id}:{target.service.id}",
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def _run_target(
        self,
        ctx: RequestContext,
        user_id: str,
        job_id: str,
        target: ServiceTarget,
        call: TargetCall,
    ) -> None:
        key = target.outcome_key(job_id)
        result = await call(target)
        if isinstance(result, InvocationSuccess):
            try:
                # Payload first: a non-pending outcome without a payload reads as zero results.
                await self.store.store_result_payload(ctx, key, result.items)
            except Exception:
                logger.exception(
                    "storing service result failed job_id=%s provider_id=%s service_id=%s",
                    job_id,
                    key.provider_id,
                    key.service_id,
                )
                await self._resolve_outcome(ctx, key, error_message=RESULT_STORAGE_FAILED)
                return
            await self._resolve_outcome(ctx, key)
            return

        if not await self._resolve_outcome(ctx, key, error_message=result.message):
            return

        await self.accounts.report_account_error(
            ctx,
            user_id=user_id,
            provider_id=target.provider.id,
            account_id=target.account.account_id,
            message=result.message,
            at=self.clock(),
        )

    async def _resolve_outcome(self, ctx: RequestContext, key: OutcomeKey, error_message: str | None = None) -> bool:
        try:
            await self.store.update_outcome_state(ctx, key, pending=False, error_message=error_message)
        except Exception:
            logger.exception(
                "recording service outcome failed job_id=%s provider_id=%s service_id=%s",
                key.job_id,
                key.provider_id,
                key.service_id,
            )
            return False
        return True


@lru_cache
def get_coordinator() -> AggregationCoordinator:
    settings = get_settings()
    registry = get_service_registry()
    return AggregationCoordinator(
        store=get_record_store(),
        accounts=get_account_registry(),
        invoker=ProviderInvoker(
            registry,
            search_timeout_seconds=settings.search_timeout_seconds,
            feed_timeout_seconds=settings.feed_timeout_seconds,
        ),
        feed_lookback=timedelta(hours=settings.feed_lookback_hours),
    )
