"""Linking Webhook - binds a Telegram chat to a queue ticket

Telegram posts every update for the bot here. A chat is linked by sending a
start token (``/start <token>``, a pasted token or a ``t.me`` link); after
that ``/status`` reports the number and counter the chat is waiting on.
"""
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote

from ..config.settings import Settings
from ..domain.enums import LinkVia, TokenKind, UpdateKind
from ..domain.errors import (
    ExpiredTokenError,
    InvalidTokenError,
    NoMatchError,
    TokenError,
)
from ..domain.models import StartTokenRecord
from ..repositories.rtdb_client import RealtimeDatabase
from ..repositories.tenant_store import GlobalStore, ScopedStore, TenantStore
from ..services import token_codec
from ..services.telegram_client import TelegramClient, escape_html
from ..utils.logger import get_logger
from ..utils.numbers import normalize_slug
from ..utils.time import iso_from_ms, now_ms

logger = get_logger(__name__)

MAX_PASTED_TOKEN_CHARS = 200

_START = re.compile(r"^/start(?:@[\w_]+)?(?:\s+(.+))?$", re.IGNORECASE | re.DOTALL)
_COMMAND = re.compile(r"^/(help|status)(?:@[\w_]+)?$", re.IGNORECASE)
_KEY_SAFE = re.compile(r"^[A-Za-z0-9_\-]+$")

HELP_TEXT = "\n".join([
    "<b>Need a Hand?</b>",
    "",
    "Check your number and counter with /status anytime.",
    "",
    "Telegram will notify you when it's your number, so there is no need to keep "
    "the browser and Telegram open.",
    "",
    "Relax and do your thing. We'll handle the queue.",
])
NOT_LINKED_TEXT = "No queue linked to this chat. Connect via the status page or paste your token here."
START_GUIDANCE_TEXT = (
    "To connect your Telegram chat to your queue, open the status page from the kiosk and tap "
    "<b>Connect via Telegram</b>, or paste the token here (example: <code>/start -OaVK...</code>)."
)
CONNECT_INSTRUCTIONS_TEXT = "\n".join([
    "👋 Hi, I could not find a queue entry for this Telegram chat.",
    "",
    "To connect: open the QueueJoy status page you were given and tap <b>Connect via Telegram</b>. "
    "That runs <code>/start &lt;token&gt;</code> automatically and connects this chat.",
    "",
    "If you prefer, paste the token here and I will try to connect you.",
    "",
    "Example token format: <code>/start -OaVK...</code> or the token link on your status page.",
])
EXPIRED_TEXT = (
    "⌛ This link has expired. Open your status page and tap <b>Connect via Telegram</b> "
    "again to get a fresh link."
)
INVALID_TEXT = (
    "❌ That link is invalid or was already used. Please check the token or open your "
    "status page and use <b>Connect via Telegram</b>."
)
NO_MATCH_TEXT = (
    "Could not connect with that token. Please check the token or open your status page "
    "and use <b>Connect via Telegram</b>."
)


@dataclass
class ParsedUpdate:
    kind: UpdateKind
    chat_id: Optional[str] = None
    text: str = ""
    callback_id: Optional[str] = None
    callback_data: Optional[str] = None


@dataclass
class LinkResult:
    store: ScopedStore
    queue_key: str
    entry: Dict[str, Any]
    via: LinkVia

    @property
    def tenant(self) -> Optional[str]:
        return getattr(self.store, "slug", None)


def parse_update(update: Dict[str, Any]) -> ParsedUpdate:
    """Reduce a raw Telegram update to the fields the webhook acts on"""
    callback = update.get("callback_query")
    if isinstance(callback, dict):
        message = callback.get("message") or {}
        chat_id = (message.get("chat") or {}).get("id") or (callback.get("from") or {}).get("id")
        return ParsedUpdate(
            kind=UpdateKind.CALLBACK,
            chat_id=str(chat_id) if chat_id is not None else None,
            callback_id=callback.get("id"),
            callback_data=(callback.get("data") or "").strip(),
        )

    message = update.get("message") or update.get("edited_message")
    if isinstance(message, dict):
        chat_id = (message.get("chat") or {}).get("id")
        if chat_id is None:
            chat_id = (message.get("from") or {}).get("id")
        return ParsedUpdate(
            kind=UpdateKind.MESSAGE,
            chat_id=str(chat_id) if chat_id is not None else None,
            text=(message.get("text") or message.get("caption") or "").strip(),
        )
    return ParsedUpdate(kind=UpdateKind.UNKNOWN)


def _queue_number(entry: Dict[str, Any]) -> str:
    for key in ("queueId", "number", "ticket", "ticketNumber"):
        if entry.get(key):
            return str(entry[key])
    return "Unknown"


class LinkingService:
    """Handles one Telegram update at a time"""

    def __init__(
        self,
        db: RealtimeDatabase,
        telegram: TelegramClient,
        settings: Settings,
        clock: Callable[[], int] = now_ms,
    ):
        self.db = db
        self.global_store = GlobalStore(db)
        self.telegram = telegram
        self.settings = settings
        self._clock = clock

    async def handle(self, update: Dict[str, Any], tenant_hint: Optional[str] = None) -> Dict[str, Any]:
        """
        Process one update and reply to the chat.

        ``tenant_hint`` is the slug from the ``x-tenant`` header or ``?slug=``.
        Returns a small summary of what happened; token problems are replied
        to the user, database failures propagate.
        """
        parsed = parse_update(update)
        tenant_hint = self._clean_slug(tenant_hint)

        if parsed.kind == UpdateKind.CALLBACK:
            if parsed.callback_id:
                await self.telegram.answer_callback(parsed.callback_id)
            if not parsed.chat_id:
                return {"ok": True, "action": "ignored"}
            data = parsed.callback_data or ""
            if data == "help":
                await self._reply_help(parsed.chat_id)
                return {"ok": True, "action": "help"}
            if data == "status":
                return await self._reply_status(parsed.chat_id, tenant_hint)
            if data:
                return await self._link(parsed.chat_id, data, tenant_hint)
            return {"ok": True, "action": "ignored"}

        if parsed.kind != UpdateKind.MESSAGE or not parsed.chat_id:
            logger.info("Update without chat id ignored")
            return {"ok": True, "action": "ignored"}

        chat_id, text = parsed.chat_id, parsed.text
        command = _COMMAND.match(text)
        if command and command.group(1).lower() == "help":
            await self._reply_help(chat_id)
            return {"ok": True, "action": "help"}
        if command:
            return await self._reply_status(chat_id, tenant_hint)

        start = _START.match(text)
        if start:
            token = (start.group(1) or "").strip()
            if not token:
                await self.telegram.send_message(
                    chat_id,
                    START_GUIDANCE_TEXT,
                    inline_keyboard=[[{"text": "📲 Open Status Page", "url": self._status_url(tenant_hint)}]],
                )
                return {"ok": True, "action": "start-guidance"}
            return await self._link(chat_id, token, tenant_hint)

        if text and len(text) < MAX_PASTED_TOKEN_CHARS:
            return await self._link(chat_id, text, tenant_hint)

        found = await self.find_by_chat(chat_id, tenant_hint)
        if found:
            store, _, entry = found
            counter = await self._counter_name(store, entry.get("counterId"))
            await self.telegram.send_message(
                chat_id,
                "\n".join([
                    "ℹ️ Queue status for this Telegram chat:",
                    f"🧾 Number: <b>{escape_html(_queue_number(entry))}</b>",
                    f"🪑 Counter: <b>{escape_html(counter)}</b>",
                    "",
                    "We will send you a message when it is your turn.",
                ]),
                inline_keyboard=[[{"text": "📄 Help", "callback_data": "help"}]],
            )
            return {"ok": True, "action": "summary"}

        await self.telegram.send_message(chat_id, CONNECT_INSTRUCTIONS_TEXT)
        return {"ok": True, "action": "instructions"}

    # ------------------------------------------------------------------
    # Replies
    # ------------------------------------------------------------------

    def _status_url(self, tenant: Optional[str], queue_key: Optional[str] = None) -> str:
        base = self.settings.site_base.rstrip("/")
        page = f"{base}/{tenant}/status.html" if tenant else f"{base}/status.html"
        if queue_key:
            page += f"?queueId={quote(queue_key, safe='')}"
        return page

    def _keyboard(self, tenant: Optional[str], queue_key: Optional[str] = None) -> List[List[Dict[str, Any]]]:
        return [
            [{"text": "📲 Open Status", "url": self._status_url(tenant, queue_key)}],
            [
                {"text": "📄 Help", "callback_data": "help"},
                {"text": "📊 Status", "callback_data": "status"},
            ],
        ]

    async def _reply_help(self, chat_id: str) -> None:
        await self.telegram.send_message(
            chat_id,
            HELP_TEXT,
            inline_keyboard=[[
                {"text": "📊 Status", "callback_data": "status"},
                {"text": "📲 Open Status Page", "url": self._status_url(None)},
            ]],
        )

    async def _reply_connected(self, chat_id: str, store: ScopedStore, queue_key: str, entry: Dict[str, Any]) -> None:
        counter = await self._counter_name(store, entry.get("counterId"))
        text = "\n".join([
            "✅ Connected to QueueJoy!",
            f"🧾 Your number: <b>{escape_html(_queue_number(entry))}</b>",
            f"🪑 Counter: <b>{escape_html(counter)}</b>",
            "",
            "We will notify you via this Telegram chat when your number is called. "
            "You can close this chat or app, notifications will arrive automatically.",
        ])
        tenant = getattr(store, "slug", None)
        await self.telegram.send_message(chat_id, text, inline_keyboard=self._keyboard(tenant, queue_key))

    async def _reply_status(self, chat_id: str, tenant_hint: Optional[str]) -> Dict[str, Any]:
        found = await self.find_by_chat(chat_id, tenant_hint)
        if not found:
            await self.telegram.send_message(chat_id, NOT_LINKED_TEXT)
            return {"ok": True, "action": "status-unlinked"}
        store, key, entry = found
        await self._reply_connected(chat_id, store, key, entry)
        return {"ok": True, "action": "status", "queueKey": key}

    async def _counter_name(self, store: ScopedStore, counter_id: Any) -> str:
        if not counter_id:
            return "Unassigned"
        counter_id = str(counter_id)
        if not _KEY_SAFE.match(counter_id):
            return counter_id
        name = await store.get(f"counters/{counter_id}/name")
        return str(name) if name else counter_id

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def _stores(self, tenant: Optional[str]) -> List[ScopedStore]:
        if tenant:
            return [TenantStore(self.db, tenant)]
        return [self.global_store]

    @staticmethod
    def _clean_slug(value: Optional[str]) -> Optional[str]:
        slug = normalize_slug(value or "")
        return slug or None

    async def find_by_chat(
        self, chat_id: str, tenant_hint: Optional[str]
    ) -> Optional[Tuple[ScopedStore, str, Dict[str, Any]]]:
        """Queue entry linked to a chat: tenant first, then the global queue"""
        stores: List[ScopedStore] = []
        if tenant_hint:
            stores.append(TenantStore(self.db, tenant_hint))
        stores.append(self.global_store)
        candidates: List[Any] = [chat_id]
        if chat_id.lstrip("-").isdigit():
            candidates.append(int(chat_id))
        for store in stores:
            for value in candidates:
                match = await store.find_first("queue", "chatId", value)
                if match:
                    return store, match[0], match[1]
        return None

    # ------------------------------------------------------------------
    # Linking
    # ------------------------------------------------------------------

    async def _link(self, chat_id: str, raw_text: str, tenant_hint: Optional[str]) -> Dict[str, Any]:
        token = token_codec.extract_token(raw_text)
        try:
            if not token:
                raise InvalidTokenError("Empty token")
            result = await self.link(chat_id, token, tenant_hint)
        except ExpiredTokenError as e:
            logger.info(f"Expired token: {e.message}", extra={"chat_id": chat_id})
            await self.telegram.send_message(chat_id, EXPIRED_TEXT)
            return {"ok": True, "action": "expired"}
        except InvalidTokenError as e:
            logger.info(f"Invalid token: {e.message}", extra={"chat_id": chat_id})
            await self.telegram.send_message(chat_id, INVALID_TEXT)
            return {"ok": True, "action": "invalid"}
        except TokenError as e:
            logger.info(f"Token matched no ticket: {e.message}", extra={"chat_id": chat_id})
            await self.telegram.send_message(chat_id, NO_MATCH_TEXT)
            return {"ok": True, "action": "no-match"}

        await self._reply_connected(chat_id, result.store, result.queue_key, result.entry)
        return {"ok": True, "action": "linked", "queueKey": result.queue_key, "tenant": result.tenant}

    async def link(self, chat_id: str, token: str, tenant_hint: Optional[str] = None) -> LinkResult:
        """
        Resolve a start token to a queue entry and bind the chat to it.

        Raises InvalidTokenError, ExpiredTokenError or NoMatchError.
        """
        prefixed, token = token_codec.split_tenant_prefix(token.strip())
        tenant = tenant_hint or self._clean_slug(prefixed) or self._clean_slug(token_codec.tenant_hint(token))

        for store in self._stores(tenant):
            result = await self._resolve(store, chat_id, token)
            if result:
                logger.info(
                    f"Linked chat to queue/{result.queue_key} via {result.via.value}",
                    extra={"tenant": result.tenant, "chat_id": chat_id, "action": "linked"},
                )
                return result
        raise NoMatchError("No queue entry matches this token", details={"tenant": tenant})

    async def _resolve(self, store: ScopedStore, chat_id: str, token: str) -> Optional[LinkResult]:
        token_key = token if _KEY_SAFE.match(token) else None

        if token_key:
            raw = await store.get(f"telegramTokens/{token_key}")
            if isinstance(raw, dict):
                record = StartTokenRecord.model_validate(raw)
                token_codec.check_not_expired(record)
                if record.used and record.chat_id and str(record.chat_id) != chat_id:
                    raise InvalidTokenError("Token already used by another chat")
                queue_key = record.queue_key or record.linked_queue_key
                if queue_key:
                    return await self._bind_key(store, chat_id, queue_key, token_key, LinkVia.TOKEN_RECORD)

        decoded = token_codec.decode(token)
        if decoded.kind == TokenKind.QUEUE_KEY:
            return await self._bind_key(store, chat_id, decoded.queue_key, None, LinkVia.QUEUE_KEY)

        if decoded.kind == TokenKind.RECORD:
            if decoded.queue_key:
                bound = await self._bind_key(store, chat_id, decoded.queue_key, token_key, LinkVia.RECORD)
                if bound:
                    return bound
                return await self._bind_query(store, chat_id, decoded.queue_key, token_key, LinkVia.RECORD)
            return await self._bind_query(store, chat_id, decoded.queue_id, token_key, LinkVia.RECORD)

        return await self._bind_query(store, chat_id, decoded.queue_id, None, LinkVia.QUEUE_ID)

    async def _bind_key(
        self, store: ScopedStore, chat_id: str, queue_key: str, token_key: Optional[str], via: LinkVia
    ) -> Optional[LinkResult]:
        if not _KEY_SAFE.match(queue_key):
            return None
        entry = await store.get(f"queue/{queue_key}")
        if not isinstance(entry, dict):
            return None
        return await self._bind(store, chat_id, queue_key, entry, token_key, via)

    async def _bind_query(
        self, store: ScopedStore, chat_id: str, queue_id: Optional[str], token_key: Optional[str], via: LinkVia
    ) -> Optional[LinkResult]:
        if not queue_id:
            return None
        match = await store.find_first("queue", "queueId", queue_id)
        if not match:
            return None
        return await self._bind(store, chat_id, match[0], match[1], token_key, via)

    async def _bind(
        self,
        store: ScopedStore,
        chat_id: str,
        queue_key: str,
        entry: Dict[str, Any],
        token_key: Optional[str],
        via: LinkVia,
    ) -> LinkResult:
        now_iso = iso_from_ms(self._clock())
        # relinking the same chat keeps the original timestamps
        relink = str(entry.get("chatId") or "") == chat_id and bool(entry.get("telegramConnected"))
        connected_at = entry.get("connectedAt") if relink and entry.get("connectedAt") else now_iso
        batch = store.batch()
        batch.update(f"queue/{queue_key}", {
            "chatId": chat_id,
            "telegramConnected": True,
            "connectedAt": connected_at,
        })
        if token_key:
            batch.update(f"telegramTokens/{token_key}", {
                "used": True,
                "usedAt": connected_at,
                "chatId": chat_id,
                "linkedQueueKey": queue_key,
            })
        batch.set(f"announcement/chatIds/{chat_id}", True)
        await batch.commit()

        entry = dict(entry, chatId=chat_id, telegramConnected=True, connectedAt=connected_at)
        return LinkResult(store=store, queue_key=queue_key, entry=entry, via=via)
