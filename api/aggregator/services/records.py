from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from aggregator.schemas.aggregation import ResultItem


class JobKind(str, Enum):
    SEARCH = "search"
    FEED = "feed"


class AccountState(str, Enum):
    ACTIVE = "active"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class OutcomeKey:
    job_id: str
    provider_id: str
    service_id: str
    account_id: str = ""


@dataclass(slots=True)
class ServiceOutcome:
    key: OutcomeKey
    user_id: str
    kind: JobKind
    pending: bool
    delivered: bool
    created_at: datetime
    error_message: str | None = None


@dataclass(slots=True)
class ServiceResultPayload:
    key: OutcomeKey
    items: list[ResultItem]
    created_at: datetime


@dataclass(slots=True)
class ServiceDescriptor:
    id: str
    name: str
    service_url: str
    logo_square_url: str | None = None


@dataclass(slots=True)
class ProviderDescriptor:
    id: str
    name: str
    services: list[ServiceDescriptor] = field(default_factory=list)
    logo_square_url: str | None = None
    auth_url: str | None = None

    def get_service(self, service_id: str) -> ServiceDescriptor | None:
        return next((service for service in self.services if service.id == service_id), None)


@dataclass(slots=True)
class ProviderAccount:
    user_id: str
    provider_id: str
    account_id: str
    service_ids: list[str] = field(default_factory=list)
    state: AccountState = AccountState.ACTIVE
    name: str | None = None
    account_name: str | None = None
    image_url: str | None = None
    last_error_message: str | None = None
    last_error_at: datetime | None = None


@dataclass(slots=True)
class ServiceTarget:
    """One (account, provider, service) triple a job fans out to."""

    account: ProviderAccount
    provider: ProviderDescriptor
    service: ServiceDescriptor

    def outcome_key(self, job_id: str) -> OutcomeKey:
        return OutcomeKey(
            job_id=job_id,
            provider_id=self.provider.id,
            service_id=self.service.id,
            account_id=self.account.account_id,
        )
