from fastapi import APIRouter

from stacksgate.api.routes import exchange_rate, health, webhooks

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(exchange_rate.router, prefix="/exchange-rate", tags=["exchange-rate"])
api_router.include_router(webhooks.router, tags=["webhooks"])
