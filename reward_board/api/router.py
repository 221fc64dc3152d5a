from fastapi import APIRouter

from reward_board.api.routes import health, listings

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(listings.router, prefix="/listings", tags=["listings"])
