from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any

from aggregator.core.auth import RequestContext
from aggregator.services.records import (
    AccountState,
    ProviderAccount,
    ProviderDescriptor,
    ServiceTarget,
)
from aggregator.services.registry import ServiceRegistry, get_service_registry
from aggregator.services.store import get_record_store

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ProviderListing:
    descriptor: ProviderDescriptor
    accounts: list[ProviderAccount] = field(default_factory=list)


class AccountRegistry:
    """Resolves which (account, provider, service) targets apply to a user.

    Account rows come from the record store; provider and service descriptors come
    from the injected service registry.
    """

    def __init__(self, store: Any, registry: ServiceRegistry) -> None:
        self.store = store
        self.registry = registry

    async def list_enabled_services_for_user(self, ctx: RequestContext, user_id: str) -> list[ServiceTarget]:
        accounts = await self.store.list_accounts_for_user(ctx, user_id)
        targets: list[ServiceTarget] = []
        for account in accounts:
            provider = self.registry.get_provider(account.provider_id)
            if provider is None:
                logger.info(
                    "skipping account for unknown provider user_id=%s provider_id=%s",
                    user_id,
                    account.provider_id,
                )
                continue
            enabled = set(account.service_ids)
            for service in provider.services:
                if service.id in enabled:
                    targets.append(ServiceTarget(account=account, provider=provider, service=service))
        return targets

    async def list_provider_listings(self, ctx: RequestContext, user_id: str | None) -> list[ProviderListing]:
        accounts = await self.store.list_accounts_for_user(ctx, user_id) if user_id else []
        listings: list[ProviderListing] = []
        for provider in self.registry.providers():
            listings.append(
                ProviderListing(
                    descriptor=provider,
                    accounts=[account for account in accounts if account.provider_id == provider.id],
                )
            )
        return listings

    async def report_account_error(
        self,
        ctx: RequestContext,
        *,
        user_id: str,
        provider_id: str,
        account_id: str,
        message: str,
        at: datetime,
    ) -> None:
        try:
            await self.store.update_account_state(
                ctx,
                user_id=user_id,
                provider_id=provider_id,
                account_id=account_id,
                state=AccountState.ERROR,
                error_message=message,
                error_at=at,
            )
        except Exception:
            logger.exception(
                "account error report failed user_id=%s provider_id=%s account_id=%s",
                user_id,
                provider_id,
                account_id,
            )


@lru_cache
def get_account_registry() -> AccountRegistry:
    return AccountRegistry(store=get_record_store(), registry=get_service_registry())
