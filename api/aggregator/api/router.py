from fastapi import APIRouter

from aggregator.api.routes import aggregations, health, services

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(services.router, prefix="/services", tags=["services"])
api_router.include_router(aggregations.router, tags=["aggregation"])
