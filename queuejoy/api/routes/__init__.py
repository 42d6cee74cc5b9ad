"""API Routes module"""
from fastapi import APIRouter

from .business import router as business_router
from .telegram import router as telegram_router
from .notify import router as notify_router
from .client_config import router as client_config_router
from .counters import router as counters_router

# Endpoints the static consoles call by function name
functions_router = APIRouter()
functions_router.include_router(business_router, tags=["Business"])
functions_router.include_router(telegram_router, tags=["Telegram"])
functions_router.include_router(notify_router, tags=["Notify"])
functions_router.include_router(client_config_router, tags=["Client Config"])

# Main API router
api_router = APIRouter()
api_router.include_router(functions_router)
api_router.include_router(counters_router, prefix="/tenants/{slug}", tags=["Counters"])

__all__ = ["api_router", "functions_router"]
