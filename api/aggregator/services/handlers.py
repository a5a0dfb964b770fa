from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from aggregator.schemas.aggregation import ResultItem
from aggregator.services.records import ServiceTarget

USER_AGENT = "fanout-aggregator/1.0"


class InvocationProtocolError(Exception):
    """Raised when a downstream service answers with an unusable payload."""


class ServiceHandler(Protocol):
    """Search and feed contract every downstream service integration implements."""

    async def search(
        self,
        target: ServiceTarget,
        *,
        user_id: str,
        query: str,
        timeout_seconds: float,
    ) -> list[ResultItem]: ...

    async def feed(
        self,
        target: ServiceTarget,
        *,
        user_id: str,
        since: datetime,
        timeout_seconds: float,
    ) -> list[ResultItem]: ...


class RestServiceHandler:
    """Default handler for services exposing `/search` and `/feed` over HTTP.

    `GET {service_url}/search?braidUserId&accountId&q` answers `{"matches": [...]}` and
    `GET {service_url}/feed?braidUserId&accountId&since` (epoch milliseconds) answers
    `{"items": [...]}`.
    """

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client

    async def search(
        self,
        target: ServiceTarget,
        *,
        user_id: str,
        query: str,
        timeout_seconds: float,
    ) -> list[ResultItem]:
        body = await self._get(
            f"{target.service.service_url.rstrip('/')}/search",
            params={"braidUserId": user_id, "accountId": target.account.account_id, "q": query},
            timeout_seconds=timeout_seconds,
        )
        return parse_result_items(body, field="matches")

    async def feed(
        self,
        target: ServiceTarget,
        *,
        user_id: str,
        since: datetime,
        timeout_seconds: float,
    ) -> list[ResultItem]:
        body = await self._get(
            f"{target.service.service_url.rstrip('/')}/feed",
            params={
                "braidUserId": user_id,
                "accountId": target.account.account_id,
                "since": to_epoch_millis(since),
            },
            timeout_seconds=timeout_seconds,
        )
        return parse_result_items(body, field="items")

    async def _get(self, url: str, *, params: dict[str, Any], timeout_seconds: float) -> Any:
        headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}
        if self._client is not None:
            response = await self._client.get(url, params=params, headers=headers, timeout=timeout_seconds)
        else:
            async with httpx.AsyncClient(timeout=timeout_seconds) as client:
                response = await client.get(url, params=params, headers=headers)

        response.raise_for_status()
        try:
            return response.json()
        except ValueError as exc:
            raise InvocationProtocolError("service returned a non-JSON body") from exc


def parse_result_items(body: Any, *, field: str) -> list[ResultItem]:
    if not isinstance(body, dict):
        raise InvocationProtocolError("service returned no data")
    raw_items = body.get(field)
    if raw_items is None:
        return []
    if not isinstance(raw_items, list):
        raise InvocationProtocolError(f"service field {field!r} is not a list")
    try:
        return [ResultItem.model_validate(item) for item in raw_items]
    except ValidationError as exc:
        raise InvocationProtocolError(f"service returned malformed {field}: {exc.error_count()} invalid item(s)") from exc


def to_epoch_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)
