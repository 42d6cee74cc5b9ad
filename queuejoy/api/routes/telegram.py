"""Telegram API Routes - start-token links and the bot webhook"""
import secrets
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Header, Request
from fastapi.responses import PlainTextResponse

from ..deps import get_database, get_settings_dep, get_telegram_client, get_tenant_hint_dep, resolve_tenant
from ...config.settings import Settings
from ...domain.errors import DomainError, UnauthorizedError
from ...repositories.rtdb_client import RealtimeDatabase
from ...services.link_service import CreateLinkRequest, LinkService
from ...services.linking_service import LinkingService
from ...services.telegram_client import TelegramClient
from ...utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter()


@router.post("/createTelegramLink")
async def create_telegram_link(
    request: Request,
    body: CreateLinkRequest,
    tenant_hint: Optional[str] = Depends(get_tenant_hint_dep),
    db: RealtimeDatabase = Depends(get_database),
    settings: Settings = Depends(get_settings_dep),
) -> Dict[str, Any]:
    """Mint a start token and its t.me deep link"""
    tenant = resolve_tenant(body.tenant, body.slug, tenant_hint)
    forwarded = request.headers.get("x-forwarded-for") or request.headers.get("x-nf-client-connection-ip")
    ip = forwarded or (request.client.host if request.client else None)
    return await LinkService(db, settings).create_link(
        body,
        tenant=tenant,
        user_agent=request.headers.get("user-agent"),
        ip=ip,
    )


@router.post("/telegramWebhook")
async def telegram_webhook(
    update: Dict[str, Any] = Body(...),
    tenant_hint: Optional[str] = Depends(get_tenant_hint_dep),
    secret_token: Optional[str] = Header(None, alias="X-Telegram-Bot-Api-Secret-Token"),
    db: RealtimeDatabase = Depends(get_database),
    telegram: TelegramClient = Depends(get_telegram_client),
    settings: Settings = Depends(get_settings_dep),
):
    """
    Telegram bot webhook.

    Always answers 200 so Telegram does not redeliver, except for a bad
    secret (403) and database failures (500).
    """
    expected = settings.telegram_webhook_secret
    if expected and not secrets.compare_digest((secret_token or "").encode(), expected.encode()):
        raise UnauthorizedError("invalid webhook secret")

    service = LinkingService(db, telegram, settings)
    try:
        outcome = await service.handle(update, tenant_hint=tenant_hint)
    except DomainError as e:
        logger.error(
            f"Webhook failed: {e.message}",
            extra={"tenant": tenant_hint, "error_code": e.error_code},
        )
        return PlainTextResponse("Internal Server Error", status_code=500)

    logger.info(f"Webhook handled: {outcome.get('action')}", extra={"tenant": outcome.get("tenant") or tenant_hint})
    return {"ok": True}
