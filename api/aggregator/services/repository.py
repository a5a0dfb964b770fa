from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc
from opentelemetry import trace

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

tracer = trace.get_tracer(__name__)


class RecordStoreError(Exception):
    """Base record store error."""


class RecordStoreUnavailableError(RecordStoreError):
    """Raised when the database is unavailable or not configured."""


class RecordStoreDuplicateKeyError(RecordStoreError):
    """Raised when a record with the same composite key already exists."""


SCHEMA_SQL = """
create table if not exists service_outcomes (
  job_id text not null,
  provider_id text not null,
  service_id text not null,
  account_id text not null default '',
  user_id text not null,
  kind text not null,
  pending boolean not null,
  delivered boolean not null,
  error_message text,
  created_at timestamptz not null default now(),
  primary key (job_id, provider_id, service_id, account_id)
);

create table if not exists service_result_payloads (
  job_id text not null,
  provider_id text not null,
  service_id text not null,
  account_id text not null default '',
  items jsonb not null,
  created_at timestamptz not null default now(),
  primary key (job_id, provider_id, service_id, account_id)
);

create table if not exists provider_accounts (
  user_id text not null,
  provider_id text not null,
  account_id text not null,
  service_ids text[] not null default '{}',
  state text not null default 'active',
  name text,
  account_name text,
  image_url text,
  last_error_message text,
  last_error_at timestamptz,
  last_updated timestamptz not null default now(),
  primary key (user_id, provider_id, account_id)
);
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ensure_schema(self) -> None:
        pool = await self._get_pool()
        await pool.execute(SCHEMA_SQL)

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
        pool = await self._get_pool()
        with _traced(ctx, "record_store.create_outcome", key):
            try:
                row = await pool.fetchrow(
                    """
                    insert into service_outcomes (
                      job_id,
                      provider_id,
                      service_id,
                      account_id,
                      user_id,
                      kind,
                      pending,
                      delivered
                    )
                    values ($1, $2, $3, $4, $5, $6, $7, $8)
                    returning created_at
                    """,
                    key.job_id,
                    key.provider_id,
                    key.service_id,
                    key.account_id,
                    user_id,
                    kind.value,
                    pending,
                    delivered,
                )
            except pg_exc.UniqueViolationError as exc:
                raise RecordStoreDuplicateKeyError(f"outcome already exists: {key}") from exc

        return ServiceOutcome(
            key=key,
            user_id=user_id,
            kind=kind,
            pending=pending,
            delivered=delivered,
            created_at=row["created_at"],
        )

    async def update_outcome_state(
        self,
        ctx: RequestContext,
        key: OutcomeKey,
        *,
        pending: bool,
        error_message: str | None = None,
    ) -> None:
        pool = await self._get_pool()
        with _traced(ctx, "record_store.update_outcome_state", key):
            await pool.execute(
                """
                update service_outcomes
                set
                  pending = $5,
                  error_message = coalesce($6, error_message)
                where job_id = $1 and provider_id = $2 and service_id = $3 and account_id = $4
                """,
                *_key_args(key),
                pending,
                error_message,
            )

    async def mark_delivered(self, ctx: RequestContext, key: OutcomeKey) -> bool:
        pool = await self._get_pool()
        with _traced(ctx, "record_store.mark_delivered", key):
            row = await pool.fetchrow(
                """
                update service_outcomes
                set delivered = true
                where job_id = $1 and provider_id = $2 and service_id = $3 and account_id = $4
                  and delivered = false
                returning job_id
                """,
                *_key_args(key),
            )
        return row is not None

    async def store_result_payload(
        self,
        ctx: RequestContext,
        key: OutcomeKey,
        items: list[ResultItem],
    ) -> ServiceResultPayload:
        pool = await self._get_pool()
        with _traced(ctx, "record_store.store_result_payload", key) as span:
            span.set_attribute("payload.item_count", len(items))
            try:
                row = await pool.fetchrow(
                    """
                    insert into service_result_payloads (
                      job_id,
                      provider_id,
                      service_id,
                      account_id,
                      items
                    )
                    values ($1, $2, $3, $4, $5::jsonb)
                    returning created_at
                    """,
                    *_key_args(key),
                    json.dumps([item.model_dump(mode="json") for item in items]),
                )
            except pg_exc.UniqueViolationError as exc:
                raise RecordStoreDuplicateKeyError(f"payload already exists: {key}") from exc

        return ServiceResultPayload(key=key, items=list(items), created_at=row["created_at"])

    async def find_outcomes_by_job(self, ctx: RequestContext, job_id: str) -> list[ServiceOutcome]:
        pool = await self._get_pool()
        with _traced(ctx, "record_store.find_outcomes_by_job", None) as span:
            span.set_attribute("job.id", job_id)
            rows = await pool.fetch(
                """
                select
                  job_id,
                  provider_id,
                  service_id,
                  account_id,
                  user_id,
                  kind,
                  pending,
                  delivered,
                  error_message,
                  created_at
                from service_outcomes
                where job_id = $1
                order by created_at asc, provider_id asc, service_id asc, account_id asc
                """,
                job_id,
            )
        return [self._outcome_row_to_record(row) for row in rows]

    async def find_payload(self, ctx: RequestContext, key: OutcomeKey) -> ServiceResultPayload | None:
        pool = await self._get_pool()
        with _traced(ctx, "record_store.find_payload", key):
            row = await pool.fetchrow(
                """
                select items, created_at
                from service_result_payloads
                where job_id = $1 and provider_id = $2 and service_id = $3 and account_id = $4
                """,
                *_key_args(key),
            )
        if not row:
            return None
        items = [ResultItem.model_validate(item) for item in self._coerce_json_list(row["items"])]
        return ServiceResultPayload(key=key, items=items, created_at=row["created_at"])

    async def upsert_account(self, ctx: RequestContext, account: ProviderAccount) -> ProviderAccount:
        pool = await self._get_pool()
        with _traced(ctx, "record_store.upsert_account", None):
            await pool.execute(
                """
                insert into provider_accounts (
                  user_id,
                  provider_id,
                  account_id,
                  service_ids,
                  state,
                  name,
                  account_name,
                  image_url
                )
                values ($1, $2, $3, $4::text[], $5, $6, $7, $8)
                on conflict (user_id, provider_id, account_id) do update
                set
                  service_ids = excluded.service_ids,
                  state = excluded.state,
                  name = excluded.name,
                  account_name = excluded.account_name,
                  image_url = excluded.image_url,
                  last_updated = now()
                """,
                account.user_id,
                account.provider_id,
                account.account_id,
                list(account.service_ids),
                account.state.value,
                account.name,
                account.account_name,
                account.image_url,
            )
        return account

    async def list_accounts_for_user(self, ctx: RequestContext, user_id: str) -> list[ProviderAccount]:
        pool = await self._get_pool()
        with _traced(ctx, "record_store.list_accounts_for_user", None):
            rows = await pool.fetch(
                """
                select
                  user_id,
                  provider_id,
                  account_id,
                  service_ids,
                  state,
                  name,
                  account_name,
                  image_url,
                  last_error_message,
                  last_error_at
                from provider_accounts
                where user_id = $1
                order by provider_id asc, account_id asc
                """,
                user_id,
            )
        return [self._account_row_to_record(row) for row in rows]

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
        pool = await self._get_pool()
        with _traced(ctx, "record_store.update_account_state", None):
            await pool.execute(
                """
                update provider_accounts
                set
                  state = $4,
                  last_error_message = coalesce($5, last_error_message),
                  last_error_at = coalesce($6, last_error_at),
                  last_updated = now()
                where user_id = $1 and provider_id = $2 and account_id = $3
                """,
                user_id,
                provider_id,
                account_id,
                state.value,
                error_message,
                error_at,
            )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RecordStoreUnavailableError("AGG_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RecordStoreUnavailableError("database unavailable") from exc

    @staticmethod
    def _outcome_row_to_record(row: asyncpg.Record) -> ServiceOutcome:
        return ServiceOutcome(
            key=OutcomeKey(
                job_id=row["job_id"],
                provider_id=row["provider_id"],
                service_id=row["service_id"],
                account_id=row["account_id"],
            ),
            user_id=row["user_id"],
            kind=JobKind(row["kind"]),
            pending=bool(row["pending"]),
            delivered=bool(row["delivered"]),
            error_message=row["error_message"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _account_row_to_record(row: asyncpg.Record) -> ProviderAccount:
        raw_state = row["state"]
        state = AccountState(raw_state) if raw_state in {s.value for s in AccountState} else AccountState.ERROR
        return ProviderAccount(
            user_id=row["user_id"],
            provider_id=row["provider_id"],
            account_id=row["account_id"],
            service_ids=list(row["service_ids"] or []),
            state=state,
            name=row["name"],
            account_name=row["account_name"],
            image_url=row["image_url"],
            last_error_message=row["last_error_message"],
            last_error_at=row["last_error_at"],
        )

    @staticmethod
    def _coerce_json_list(value: Any) -> list[dict[str, Any]]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return []
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, dict)]


def _key_args(key: OutcomeKey) -> tuple[str, str, str, str]:
    return key.job_id, key.provider_id, key.service_id, key.account_id


@contextmanager
def _traced(ctx: RequestContext, operation: str, key: OutcomeKey | None) -> Iterator[trace.Span]:
    with tracer.start_as_current_span(operation) as span:
        span.set_attribute("request.id", ctx.request_id)
        if ctx.user_id:
            span.set_attribute("user.id", ctx.user_id)
        if key is not None:
            span.set_attribute("job.id", key.job_id)
            span.set_attribute("provider.id", key.provider_id)
            span.set_attribute("service.id", key.service_id)
        yield span


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
