from fastapi import APIRouter

from address_resolver.api.routes import batches, health, resolve

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(resolve.router, prefix="/resolve", tags=["resolution"])
api_router.include_router(batches.router, tags=["batches"])
