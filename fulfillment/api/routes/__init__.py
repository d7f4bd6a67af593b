from fastapi import APIRouter

from fulfillment.api.routes import dead_letters, health

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(dead_letters.router, tags=["dead-letters"])
