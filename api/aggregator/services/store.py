from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from functools import lru_cache

from aggregator.core.auth import RequestContext
from aggregator.core.config import get_settings
from aggregator.schemas.aggregation import ResultItem
from aggregator.services.records import (
    AccountState,
    JobKind,
    OutcomeKey,
    ProviderAccount,
    ServiceOutcome,
    ServiceResultPayload,
)
from aggregator.services.repository import (
    PostgresRepository,
    RecordStoreDuplicateKeyError,
    get_repository,
    utc_now,
)


class InMemoryStore:
    """Process-local record store for development and tests.

    Every method completes without yielding to the event loop, so each call is
    atomic with respect to other tasks on the same loop.
    """

    def __init__(self) -> None:
        self.outcomes: dict[OutcomeKey, ServiceOutcome] = {}
        self.payloads: dict[OutcomeKey, ServiceResultPayload] = {}
        self.accounts: dict[tuple[str, str, str], ProviderAccount] = {}

    async def close(self) -> None:
        return None

    async def ensure_schema(self) -> None:
        return None

    async def create_outcome(
        self,
        ctx: RequestContext,
        key: OutcomeKey,
        *,
        user_id: str,
        kind: JobKind,
        pending: bool = True,
        delivered: bool = False,
    ) -> ServiceOutcome:
        if key in self.outcomes:
            raise RecordStoreDuplicateKeyError(f"outcome already exists: {key}")
        outcome = ServiceOutcome(
            key=key,
            user_id=user_id,
            kind=kind,
            pending=pending,
            delivered=delivered,
            created_at=utc_now(),
        )
        self.outcomes[key] = outcome
        return replace(outcome)

    async def update_outcome_state(
        self,
        ctx: RequestContext,
        key: OutcomeKey,
        *,
        pending: bool,
        error_message: str | None = None,
    ) -> None:
        outcome = self.outcomes.get(key)
        if outcome is None:
            return
        outcome.pending = pending
        if error_message is not None:
            outcome.error_message = error_message

    async def mark_delivered(self, ctx: RequestContext, key: OutcomeKey) -> bool:
        outcome = self.outcomes.get(key)
        if outcome is None or outcome.delivered:
            return False
        outcome.delivered = True
        return True

    async def store_result_payload(
        self,
        ctx: RequestContext,
        key: OutcomeKey,
        items: list[ResultItem],
    ) -> ServiceResultPayload:
        if key in self.payloads:
            raise RecordStoreDuplicateKeyError(f"payload already exists: {key}")
        payload = ServiceResultPayload(key=key, items=list(items), created_at=utc_now())
        self.payloads[key] = payload
        return payload

    async def find_outcomes_by_job(self, ctx: RequestContext, job_id: str) -> list[ServiceOutcome]:
        # Copies, so callers never observe later mutations through a returned record.
        return [replace(outcome) for key, outcome in self.outcomes.items() if key.job_id == job_id]

    async def find_payload(self, ctx: RequestContext, key: OutcomeKey) -> ServiceResultPayload | None:
        return self.payloads.get(key)

    async def upsert_account(self, ctx: RequestContext, account: ProviderAccount) -> ProviderAccount:
        self.accounts[(account.user_id, account.provider_id, account.account_id)] = account
        return account

    async def list_accounts_for_user(self, ctx: RequestContext, user_id: str) -> list[ProviderAccount]:
        rows = [account for account in self.accounts.values() if account.user_id == user_id]
        return sorted(rows, key=lambda account: (account.provider_id, account.account_id))

    async def update_account_state(
        self,
        ctx: RequestContext,
        *,
        user_id: str,
        provider_id: str,
        account_id: str,
        state: AccountState,
        error_message: str | None = None,
        error_at: datetime | None = None,
    ) -> None:
        account = self.accounts.get((user_id, provider_id, account_id))
        if account is None:
            return
        account.state = state
        if error_message is not None:
            account.last_error_message = error_message
        if error_at is not None:
            account.last_error_at = error_at


@lru_cache
def get_memory_store() -> InMemoryStore:
    return InMemoryStore()


def get_record_store() -> PostgresRepository | InMemoryStore:
    settings = get_settings()
    if settings.record_store_backend == "memory":
        return get_memory_store()
    return get_repository()
