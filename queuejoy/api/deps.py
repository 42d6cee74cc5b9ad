"""API Dependencies - Common dependencies for routes"""
import secrets
from typing import Optional

from fastapi import Depends, Header, Query

from ..config.settings import Settings, get_settings
from ..domain.errors import ServerMisconfiguredError, UnauthorizedError, ValidationError
from ..repositories.rtdb_client import RealtimeDatabase, build_realtime_database
from ..repositories.tenant_store import TenantStore
from ..repositories.ticket_store import TicketStore, build_ticket_store
from ..services.counter_service import CounterService
from ..services.telegram_client import TelegramClient
from ..utils.logger import get_logger
from ..utils.numbers import normalize_slug

logger = get_logger(__name__)

_database: Optional[RealtimeDatabase] = None
_telegram: Optional[TelegramClient] = None


def get_settings_dep() -> Settings:
    return get_settings()


# ============================================================================
# Shared clients
# ============================================================================

def get_database() -> RealtimeDatabase:
    """Process-wide realtime database client"""
    global _database
    if _database is None:
        _database = build_realtime_database(get_settings())
    return _database


def get_telegram_client() -> TelegramClient:
    """Process-wide Telegram client for the default bot"""
    global _telegram
    if _telegram is None:
        _telegram = TelegramClient.from_settings(get_settings())
    return _telegram


def get_ticket_store() -> TicketStore:
    """A fresh ticket store per request; it is flushed once at the end"""
    return build_ticket_store(get_settings())


async def close_clients() -> None:
    global _database, _telegram
    if _database is not None:
        await _database.close()
        _database = None
    if _telegram is not None:
        await _telegram.close()
        _telegram = None


# ============================================================================
# Tenant resolution
# ============================================================================

def resolve_tenant(*candidates: Optional[str]) -> Optional[str]:
    """First candidate that normalises to a usable slug"""
    for candidate in candidates:
        slug = normalize_slug(candidate) if candidate else ""
        if slug:
            return slug
    return None


async def get_tenant_hint_dep(
    slug: Optional[str] = Query(None),
    x_tenant: Optional[str] = Header(None, alias="x-tenant"),
) -> Optional[str]:
    """Tenant from ``?slug=`` or the ``x-tenant`` header, if any"""
    return resolve_tenant(slug, x_tenant)


def require_tenant(*candidates: Optional[str]) -> str:
    tenant = resolve_tenant(*candidates)
    if not tenant:
        raise ValidationError("tenant required")
    return tenant


# ============================================================================
# Authentication
# ============================================================================

def check_master_key(
    settings: Settings,
    x_master_key: Optional[str],
    x_api_key: Optional[str],
    authorization: Optional[str],
) -> None:
    master = settings.master_api_key
    if not master:
        raise ServerMisconfiguredError("MASTER_API_KEY not configured on server")
    supplied = x_master_key or x_api_key or authorization or ""
    if supplied.startswith("Bearer "):
        supplied = supplied[7:]
    if not supplied:
        raise UnauthorizedError("missing master key")
    if not secrets.compare_digest(supplied.encode(), master.encode()):
        raise UnauthorizedError("invalid master key")


async def require_master_key_dep(
    x_master_key: Optional[str] = Header(None, alias="x-master-key"),
    x_api_key: Optional[str] = Header(None, alias="x-api-key"),
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings_dep),
) -> None:
    """Admin endpoints: x-master-key, x-api-key or Authorization: Bearer"""
    check_master_key(settings, x_master_key, x_api_key, authorization)


async def get_counter_service_dep(
    slug: str,
    db: RealtimeDatabase = Depends(get_database),
    tickets: TicketStore = Depends(get_ticket_store),
    telegram: TelegramClient = Depends(get_telegram_client),
    settings: Settings = Depends(get_settings_dep),
) -> CounterService:
    return CounterService(TenantStore(db, slug), tickets, telegram, settings)


async def require_operator_dep(
    service: CounterService = Depends(get_counter_service_dep),
    x_operator_pin: Optional[str] = Header(None, alias="x-operator-pin"),
) -> CounterService:
    """Operator console endpoints require the tenant PIN"""
    await service.verify_pin(x_operator_pin)
    return service
