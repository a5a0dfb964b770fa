from __future__ import annotations

import json
from functools import lru_cache
import logging
from typing import Any

import httpx

from aggregator.core.config import get_settings
from aggregator.services.handlers import RestServiceHandler, ServiceHandler
from aggregator.services.records import ProviderDescriptor, ServiceDescriptor

logger = logging.getLogger(__name__)


class ServiceRegistryError(Exception):
    """Raised when a provider catalogue entry cannot be parsed."""


class ServiceRegistry:
    """Catalogue of providers, their services, and the handler that calls each service.

    Built once at startup and passed to the components that need it.
    """

    def __init__(self, default_handler: ServiceHandler | None = None) -> None:
        self._providers: dict[str, ProviderDescriptor] = {}
        self._handlers: dict[tuple[str, str], ServiceHandler] = {}
        self._default_handler: ServiceHandler = default_handler or RestServiceHandler()

    def providers(self) -> list[ProviderDescriptor]:
        return sorted(self._providers.values(), key=lambda provider: provider.id)

    def get_provider(self, provider_id: str) -> ProviderDescriptor | None:
        return self._providers.get(provider_id)

    def register_provider(self, descriptor: ProviderDescriptor) -> None:
        if descriptor.id in self._providers:
            logger.info("replacing provider descriptor provider_id=%s", descriptor.id)
        self._providers[descriptor.id] = descriptor

    def register_handler(self, provider_id: str, service_id: str, handler: ServiceHandler) -> None:
        self._handlers[(provider_id, service_id)] = handler

    def handler_for(self, provider_id: str, service_id: str) -> ServiceHandler:
        return self._handlers.get((provider_id, service_id), self._default_handler)

    def load_catalog_json(self, raw: str | None) -> int:
        if not raw:
            return 0
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ServiceRegistryError(f"provider catalogue is not valid JSON: {exc}") from exc
        if isinstance(parsed, dict):
            parsed = [parsed]
        if not isinstance(parsed, list):
            raise ServiceRegistryError("provider catalogue must be a JSON object or list")

        for entry in parsed:
            self.register_provider(parse_provider_descriptor(entry))
        return len(parsed)

    async def load_remote_descriptors(
        self,
        urls: list[str],
        *,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> int:
        """Fetch each provider's descriptor from its service URL; failures are logged and skipped."""
        if not urls:
            return 0
        if client is not None:
            return await self._load_remote_descriptors(client, urls)
        async with httpx.AsyncClient(timeout=timeout_seconds) as temp_client:
            return await self._load_remote_descriptors(temp_client, urls)

    async def _load_remote_descriptors(self, client: httpx.AsyncClient, urls: list[str]) -> int:
        loaded = 0
        for url in urls:
            try:
                response = await client.get(url, headers={"Accept": "application/json"})
                response.raise_for_status()
                descriptor = parse_provider_descriptor(response.json())
            except (httpx.HTTPError, ValueError, ServiceRegistryError) as exc:
                logger.warning("provider descriptor load failed url=%s error=%s", url, exc)
                continue
            self.register_provider(descriptor)
            loaded += 1
        return loaded


def parse_provider_descriptor(raw: Any) -> ProviderDescriptor:
    if not isinstance(raw, dict):
        raise ServiceRegistryError("provider descriptor must be an object")

    provider_id = _as_text(raw.get("id"))
    if not provider_id:
        raise ServiceRegistryError("provider descriptor requires an id")

    services: list[ServiceDescriptor] = []
    raw_services = raw.get("services")
    for raw_service in raw_services if isinstance(raw_services, list) else []:
        if not isinstance(raw_service, dict):
            continue
        service_id = _as_text(raw_service.get("id"))
        service_url = _as_text(raw_service.get("serviceUrl") or raw_service.get("service_url"))
        if not service_id or not service_url:
            logger.warning("skipping service without id or url provider_id=%s", provider_id)
            continue
        services.append(
            ServiceDescriptor(
                id=service_id,
                name=_as_text(raw_service.get("name")) or service_id,
                service_url=service_url,
                logo_square_url=_as_text(raw_service.get("logoSquareUrl") or raw_service.get("logo_square_url")),
            )
        )

    return ProviderDescriptor(
        id=provider_id,
        name=_as_text(raw.get("name")) or provider_id,
        services=services,
        logo_square_url=_as_text(raw.get("logoSquareUrl") or raw.get("logo_square_url")),
        auth_url=_as_text(raw.get("authUrl") or raw.get("auth_url")),
    )


def _as_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


@lru_cache
def get_service_registry() -> ServiceRegistry:
    registry = ServiceRegistry()
    registry.load_catalog_json(get_settings().provider_catalog_json)
    return registry
