"""Announce Service - broadcasts to subscribed chats and the admin relay"""
import asyncio
import base64
import binascii
import re
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from ..config.settings import Settings
from ..domain.errors import ServerMisconfiguredError, ValidationError
from ..repositories.rtdb_client import RealtimeDatabase
from ..repositories.tenant_store import TenantStore
from ..services.telegram_client import TelegramClient
from ..utils.logger import get_logger

logger = get_logger(__name__)

_DATA_URL = re.compile(r"^data:([^;]+);base64,(.*)$", re.DOTALL)


class AnnounceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    tenant: Optional[str] = Field(None, validation_alias=AliasChoices("tenant", "slug"))
    message: str = ""
    media: Optional[str] = None
    media_type: Optional[str] = Field(None, alias="mediaType")
    chat_ids: Any = Field(None, alias="chatIds")
    bot_token: Optional[str] = Field(
        None, validation_alias=AliasChoices("telegramBotToken", "botToken", "token")
    )


class RelayRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    message: Any = None
    chat_id: Any = Field(None, alias="chatId")
    chat_ids: Any = Field(None, alias="chatIds")
    parse_mode: Optional[str] = Field(None, alias="parseMode")
    disable_notification: Optional[bool] = Field(None, alias="disableNotification")
    reply_markup: Optional[Dict[str, Any]] = Field(None, alias="replyMarkup")
    copy_admin: bool = Field(False, alias="copyAdmin")


def normalize_chat_ids(raw: Any) -> List[str]:
    """Accept a list, a {chatId: true} map or a comma separated string"""
    if not raw:
        return []
    if isinstance(raw, list):
        return [str(v) for v in raw if v not in (None, "")]
    if isinstance(raw, dict):
        return [str(k) for k, v in raw.items() if v]
    if isinstance(raw, (str, int)):
        return [s.strip() for s in str(raw).split(",") if s.strip()]
    return []


def decode_media(media: str, media_type: Optional[str]) -> tuple:
    """(bytes, mime type) from a data: URL or raw base64"""
    payload = media.strip()
    m = _DATA_URL.match(payload)
    if m:
        media_type = media_type or m.group(1)
        payload = m.group(2)
    try:
        return base64.b64decode(payload), media_type or "application/octet-stream"
    except (binascii.Error, ValueError):
        raise ValidationError("media must be base64 or a data: URL")


class AnnounceService:
    """Sequential broadcast with the polite inter-message pause"""

    def __init__(self, db: RealtimeDatabase, telegram: TelegramClient, settings: Settings):
        self.db = db
        self.telegram = telegram
        self.settings = settings

    async def announce(self, request: AnnounceRequest, tenant: Optional[str] = None) -> Dict[str, Any]:
        tenant = tenant or request.tenant
        chat_ids = normalize_chat_ids(request.chat_ids)
        bot_token = request.bot_token

        if tenant and (not chat_ids or not bot_token):
            stored = await TenantStore(self.db, tenant).get("announcement")
            if isinstance(stored, dict):
                if not chat_ids:
                    chat_ids = normalize_chat_ids(stored.get("chatIds"))
                if not bot_token:
                    bot_token = stored.get("botToken") or stored.get("telegramBotToken")
            else:
                logger.warning("No announcement node", extra={"tenant": tenant})

        telegram = self.telegram.with_token(bot_token) if bot_token else self.telegram
        if not telegram.configured:
            raise ValidationError(
                "Missing Telegram bot token (provide telegramBotToken or configure "
                "tenants/{slug}/announcement/botToken)"
            )
        if not chat_ids:
            raise ValidationError("No chatIds provided (body.chatIds or tenants/{slug}/announcement/chatIds required)")

        media: Optional[bytes] = None
        media_type = request.media_type or ""
        if request.media:
            media, media_type = decode_media(request.media, request.media_type)

        message = request.message.strip()
        pause = max(0, self.settings.broadcast_pause_ms) / 1000
        summary: Dict[str, Any] = {"success": 0, "failed": 0, "errors": []}
        for index, chat_id in enumerate(chat_ids):
            if index and pause:
                await asyncio.sleep(pause)
            if media is None:
                result = await telegram.send_message(chat_id, message or "Announcement")
            else:
                result = await telegram.send_media(chat_id, media, media_type, caption=message)
            if result.ok:
                summary["success"] += 1
            else:
                summary["failed"] += 1
                summary["errors"].append({"chatId": chat_id, "error": result.description or result.error})

        logger.info(
            f"Announcement sent to {summary['success']}/{len(chat_ids)} chats",
            extra={"tenant": tenant},
        )
        return summary

    async def relay(self, request: RelayRequest) -> Dict[str, Any]:
        """
        Send one text to explicit chats, falling back to the admin chat.

        ``ok`` is True when every send succeeded, "partial" when only some
        did and False when none did.
        """
        if not isinstance(request.message, str) or not request.message.strip():
            raise ValidationError("Missing required field: message (string)")
        if not self.telegram.configured:
            raise ServerMisconfiguredError("Missing bot token")

        admin = str(self.settings.admin_chat_id or "").strip()
        recipients = normalize_chat_ids(request.chat_ids)
        if not recipients and request.chat_id not in (None, ""):
            recipients = [str(request.chat_id)]
        if not recipients:
            if not admin:
                raise ValidationError("No recipient specified and no admin chat configured")
            recipients = [admin]
        if request.copy_admin and admin and admin not in recipients:
            recipients.append(admin)

        pause = max(0, self.settings.broadcast_pause_ms) / 1000
        results: List[Dict[str, Any]] = []
        for index, chat_id in enumerate(recipients):
            if index and pause:
                await asyncio.sleep(pause)
            sent = await self.telegram.send_message(
                chat_id,
                request.message,
                parse_mode=request.parse_mode or "",
                reply_markup=request.reply_markup,
                disable_notification=request.disable_notification,
            )
            entry: Dict[str, Any] = {"to": chat_id, "ok": sent.ok, "status": sent.status}
            if not sent.ok:
                entry["error"] = sent.description or sent.error or f"HTTP {sent.status}"
            results.append(entry)

        success = sum(1 for r in results if r["ok"])
        failed = len(results) - success
        logger.info(f"Relayed message to {success}/{len(results)} chats")
        return {
            "ok": True if success and not failed else ("partial" if success else False),
            "summary": {"total": len(results), "success": success, "failed": failed},
            "results": results,
        }
