"""Notify API Routes - the call pipeline, broadcasts and the admin relay"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header

from ..deps import (
    check_master_key,
    get_database,
    get_settings_dep,
    get_telegram_client,
    get_tenant_hint_dep,
    get_ticket_store,
    require_tenant,
    require_master_key_dep,
    resolve_tenant,
)
from ...config.settings import Settings
from ...repositories.rtdb_client import RealtimeDatabase
from ...repositories.tenant_store import TenantStore
from ...repositories.ticket_store import TicketStore
from ...services.announce_service import AnnounceRequest, AnnounceService, RelayRequest
from ...services.notifier import Notifier, NotifyCounterRequest
from ...services.telegram_client import TelegramClient
from ...utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter()


@router.post("/notifyCounter")
async def notify_counter(
    request: NotifyCounterRequest,
    tenant_hint: Optional[str] = Depends(get_tenant_hint_dep),
    db: RealtimeDatabase = Depends(get_database),
    tickets: TicketStore = Depends(get_ticket_store),
    telegram: TelegramClient = Depends(get_telegram_client),
    settings: Settings = Depends(get_settings_dep),
) -> Dict[str, Any]:
    """Notify every waiting ticket in the called number's series"""
    tenant = require_tenant(request.tenant, request.slug, tenant_hint)
    notifier = Notifier(TenantStore(db, tenant), tickets, telegram, settings)
    return await notifier.notify(request)


@router.post("/announce")
async def announce(
    request: AnnounceRequest,
    tenant_hint: Optional[str] = Depends(get_tenant_hint_dep),
    x_master_key: Optional[str] = Header(None, alias="x-master-key"),
    x_api_key: Optional[str] = Header(None, alias="x-api-key"),
    authorization: Optional[str] = Header(None),
    db: RealtimeDatabase = Depends(get_database),
    telegram: TelegramClient = Depends(get_telegram_client),
    settings: Settings = Depends(get_settings_dep),
) -> Dict[str, Any]:
    """Broadcast to the tenant's subscribed chats"""
    if settings.announce_requires_master_key or x_master_key or x_api_key:
        check_master_key(settings, x_master_key, x_api_key, authorization)
    tenant = resolve_tenant(request.tenant, tenant_hint)
    return await AnnounceService(db, telegram, settings).announce(request, tenant=tenant)


@router.post("/sendTelegram", dependencies=[Depends(require_master_key_dep)])
async def send_telegram(
    request: RelayRequest,
    db: RealtimeDatabase = Depends(get_database),
    telegram: TelegramClient = Depends(get_telegram_client),
    settings: Settings = Depends(get_settings_dep),
) -> Dict[str, Any]:
    """Relay a text message to explicit chats or the admin chat"""
    return await AnnounceService(db, telegram, settings).relay(request)
