"""Business API Routes - tenant provisioning and settings"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query

from ..deps import get_database, get_settings_dep, get_telegram_client, require_master_key_dep
from ...config.settings import Settings
from ...repositories.rtdb_client import RealtimeDatabase
from ...services.telegram_client import TelegramClient
from ...services.tenant_service import CreateBusinessRequest, TenantService, UpdateBusinessRequest
from ...utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter()


def get_tenant_service(
    db: RealtimeDatabase = Depends(get_database),
    telegram: TelegramClient = Depends(get_telegram_client),
    settings: Settings = Depends(get_settings_dep),
) -> TenantService:
    return TenantService(db, settings, telegram=telegram)


@router.post("/createBusiness", dependencies=[Depends(require_master_key_dep)])
async def create_business(
    request: CreateBusinessRequest,
    service: TenantService = Depends(get_tenant_service),
) -> Dict[str, Any]:
    """Reserve a tenant slug and seed its namespace"""
    return await service.create_business(request)


@router.get("/getBusiness")
async def get_business(
    slug: Optional[str] = Query(None),
    s: Optional[str] = Query(None),
    service: TenantService = Depends(get_tenant_service),
) -> Dict[str, Any]:
    return await service.get_business(slug or s)


@router.post("/getBusiness")
async def get_business_post(
    body: Optional[Dict[str, Any]] = Body(None),
    service: TenantService = Depends(get_tenant_service),
) -> Dict[str, Any]:
    body = body or {}
    return await service.get_business(body.get("slug") or body.get("name"))


@router.post("/updateBusiness", dependencies=[Depends(require_master_key_dep)])
async def update_business(
    request: UpdateBusinessRequest,
    service: TenantService = Depends(get_tenant_service),
) -> Dict[str, Any]:
    """Patch whitelisted tenant settings"""
    return await service.update_business(request)
