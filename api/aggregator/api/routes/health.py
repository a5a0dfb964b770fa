from typing import Any

from fastapi import APIRouter, Depends

from aggregator.core.config import Settings, get_settings
from aggregator.services.aggregation import get_coordinator
from aggregator.services.registry import get_service_registry

router = APIRouter()


@router.get("/")
async def root(settings: Settings = Depends(get_settings)) -> dict[str, str]:
    return {"status": "ok", "service": settings.app_name}


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(
    settings: Settings = Depends(get_settings),
    registry=Depends(get_service_registry),
    coordinator=Depends(get_coordinator),
) -> dict[str, Any]:
    return {
        "status": "ok",
        "record_store_backend": settings.record_store_backend,
        "providers": len(registry.providers()),
        "inflight_invocations": coordinator.inflight_count,
    }
