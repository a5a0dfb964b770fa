from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

import httpx
from opentelemetry import trace

from aggregator.core.auth import RequestContext
from aggregator.schemas.aggregation import ResultItem
from aggregator.services.handlers import InvocationProtocolError, ServiceHandler
from aggregator.services.records import ServiceTarget
from aggregator.services.registry import ServiceRegistry

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class FailureKind(str, Enum):
    TIMEOUT = "timeout"
    TRANSPORT = "transport"
    PROTOCOL = "protocol"


@dataclass(slots=True)
class InvocationSuccess:
    items: list[ResultItem] = field(default_factory=list)


@dataclass(slots=True)
class InvocationFailure:
    message: str
    kind: FailureKind


InvocationResult = InvocationSuccess | InvocationFailure


class ProviderInvoker:
    """Performs one bounded call to one service and reports the outcome as a value.

    Every failure comes back as an `InvocationFailure`; only cancellation of the
    calling task propagates.
    """

    def __init__(
        self,
        registry: ServiceRegistry,
        *,
        search_timeout_seconds: float = 120.0,
        feed_timeout_seconds: float = 30.0,
    ) -> None:
        self.registry = registry
        self.search_timeout_seconds = search_timeout_seconds
        self.feed_timeout_seconds = feed_timeout_seconds

    async def search(self, ctx: RequestContext, target: ServiceTarget, *, user_id: str, query: str) -> InvocationResult:
        handler = self._handler(target)
        timeout = self.search_timeout_seconds
        return await self._invoke(
            ctx,
            target,
            "search",
            timeout,
            lambda: handler.search(target, user_id=user_id, query=query, timeout_seconds=timeout),
        )

    async def feed(self, ctx: RequestContext, target: ServiceTarget, *, user_id: str, since: datetime) -> InvocationResult:
        handler = self._handler(target)
        timeout = self.feed_timeout_seconds
        return await self._invoke(
            ctx,
            target,
            "feed",
            timeout,
            lambda: handler.feed(target, user_id=user_id, since=since, timeout_seconds=timeout),
        )

    def _handler(self, target: ServiceTarget) -> ServiceHandler:
        return self.registry.handler_for(target.provider.id, target.service.id)

    async def _invoke(
        self,
        ctx: RequestContext,
        target: ServiceTarget,
        mode: str,
        timeout_seconds: float,
        call: Callable[[], Awaitable[list[ResultItem]]],
    ) -> InvocationResult:
        started_at = time.perf_counter()
        with tracer.start_as_current_span(f"provider_invoker.{mode}") as span:
            span.set_attribute("request.id", ctx.request_id)
            span.set_attribute("provider.id", target.provider.id)
            span.set_attribute("service.id", target.service.id)
            result = await self._collect(target, mode, timeout_seconds, call)
            span.set_attribute("invocation.ok", isinstance(result, InvocationSuccess))

        elapsed_ms = (time.perf_counter() - started_at) * 1000.0
        if isinstance(result, InvocationSuccess):
            logger.info(
                "service invocation ok mode=%s provider_id=%s service_id=%s items=%s duration_ms=%.2f",
                mode,
                target.provider.id,
                target.service.id,
                len(result.items),
                elapsed_ms,
            )
        else:
            logger.warning(
                "service invocation failed mode=%s provider_id=%s service_id=%s kind=%s error=%s duration_ms=%.2f",
                mode,
                target.provider.id,
                target.service.id,
                result.kind.value,
                result.message,
                elapsed_ms,
            )
        return result

    @staticmethod
    async def _collect(
        target: ServiceTarget,
        mode: str,
        timeout_seconds: float,
        call: Callable[[], Awaitable[list[ResultItem]]],
    ) -> InvocationResult:
        try:
            items = await asyncio.wait_for(call(), timeout=timeout_seconds)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return InvocationFailure(message="timeout", kind=FailureKind.TIMEOUT)
        except httpx.HTTPStatusError as exc:
            return InvocationFailure(
                message=f"status code: {exc.response.status_code}",
                kind=FailureKind.PROTOCOL,
            )
        except httpx.HTTPError as exc:
            return InvocationFailure(message=str(exc) or type(exc).__name__, kind=FailureKind.TRANSPORT)
        except InvocationProtocolError as exc:
            return InvocationFailure(message=str(exc), kind=FailureKind.PROTOCOL)
        except Exception as exc:
            logger.exception("service handler raised mode=%s service_id=%s", mode, target.service.id)
            return InvocationFailure(message=str(exc) or type(exc).__name__, kind=FailureKind.TRANSPORT)

        return InvocationSuccess(items=[_stamp_item(item, target) for item in items])


def _stamp_item(item: ResultItem, target: ServiceTarget) -> ResultItem:
    if item.provider_id and item.service_id:
        return item
    return item.model_copy(
        update={
            "provider_id": item.provider_id or target.provider.id,
            "service_id": item.service_id or target.service.id,
        }
    )
