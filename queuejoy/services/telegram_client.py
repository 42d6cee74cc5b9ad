"""Telegram Bot API client

Stateless wrapper over httpx with bounded retries. Telegram-level failures
are returned as a SendResult; this client never raises for them.
"""
import asyncio
import html
import json
import re
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx

from ..config.settings import Settings
from ..utils.logger import get_logger, mask_secret

logger = get_logger(__name__)

MAX_TEXT_CHARS = 4000
MAX_CAPTION_CHARS = 1000
EXPLORE_BUTTON_TEXT = "👉 Explore QueueJoy"

_PERMANENT_FAILURE = re.compile(r"blocked|deactivated|chat not found|user not found", re.IGNORECASE)

_MEDIA_METHODS = (
    # (mime test, api method, form field, default extension)
    (lambda m: "gif" in m, "sendAnimation", "animation", "gif"),
    (lambda m: m.startswith("image/"), "sendPhoto", "photo", "jpg"),
    (lambda m: m.startswith("video/"), "sendVideo", "video", "mp4"),
    (lambda m: m.startswith("audio/"), "sendAudio", "audio", "mp3"),
)

_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "video/mp4": "mp4",
    "video/quicktime": "mov",
    "audio/mpeg": "mp3",
    "audio/ogg": "ogg",
}


@dataclass(frozen=True)
class SendResult:
    ok: bool
    status: int = 0
    body: Any = None
    error: Optional[str] = None
    description: Optional[str] = None
    attempts: int = 0
    retry_after: Optional[int] = None
    permanent: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def escape_html(text: Any) -> str:
    """Escape user-supplied text for parse_mode=HTML"""
    return html.escape("" if text is None else str(text), quote=False)


def truncate(text: str, limit: int) -> str:
    text = text or ""
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


def _valid_button(button: Any) -> bool:
    if not isinstance(button, dict) or not button.get("text"):
        return False
    return bool(button.get("url") or button.get("callback_data"))


def sanitize_rows(rows: Any) -> List[List[Dict[str, Any]]]:
    """Keep only well-formed keyboard rows; a bare button becomes its own row"""
    cleaned: List[List[Dict[str, Any]]] = []
    if not isinstance(rows, list):
        return cleaned
    for row in rows:
        if isinstance(row, dict):
            row = [row]
        if not isinstance(row, list):
            continue
        buttons = [dict(b) for b in row if _valid_button(b)]
        if buttons:
            cleaned.append(buttons)
    return cleaned


def build_keyboard(explore_url: str, extra_rows: Any = None) -> List[List[Dict[str, Any]]]:
    """Standard notifier keyboard: Explore button first, caller rows after"""
    return [[{"text": EXPLORE_BUTTON_TEXT, "url": explore_url}]] + sanitize_rows(extra_rows)


def media_method_for(mime_type: str) -> tuple:
    """(api method, form field, filename) for a MIME type"""
    mime = (mime_type or "").lower()
    for test, method, field, ext in _MEDIA_METHODS:
        if test(mime):
            return method, field, f"announcement.{_EXTENSIONS.get(mime, ext)}"
    return "sendDocument", "document", f"announcement.{_EXTENSIONS.get(mime, 'bin')}"


class TelegramClient:
    """Bot API calls for one bot token"""

    def __init__(
        self,
        bot_token: str,
        api_base: str = "https://api.telegram.org",
        max_attempts: int = 3,
        backoff_base_ms: int = 150,
        timeout: float = 8.0,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._bot_token = (bot_token or "").strip()
        self._masked_token = mask_secret(self._bot_token)
        self._api_base = api_base.rstrip("/")
        self._max_attempts = max(1, int(max_attempts))
        self._backoff_base_ms = max(150, int(backoff_base_ms))
        self._timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        bot_token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> "TelegramClient":
        return cls(
            bot_token or settings.bot_token,
            api_base=settings.telegram_api_base,
            max_attempts=settings.telegram_max_attempts,
            backoff_base_ms=settings.telegram_backoff_base_ms,
            timeout=settings.telegram_timeout_seconds,
            client=client,
        )

    @property
    def configured(self) -> bool:
        return bool(self._bot_token)

    def with_token(self, bot_token: str) -> "TelegramClient":
        """Same transport and limits, different bot"""
        clone = TelegramClient(
            bot_token,
            api_base=self._api_base,
            max_attempts=self._max_attempts,
            backoff_base_ms=self._backoff_base_ms,
            timeout=self._timeout,
            client=self._client,
            sleep=self._sleep,
        )
        return clone

    # ------------------------------------------------------------------
    # Bot API methods
    # ------------------------------------------------------------------

    async def send_message(
        self,
        chat_id: Any,
        text: str,
        inline_keyboard: Optional[Sequence[Sequence[Dict[str, Any]]]] = None,
        parse_mode: str = "HTML",
        disable_preview: bool = True,
        reply_markup: Optional[Dict[str, Any]] = None,
        disable_notification: Optional[bool] = None,
    ) -> SendResult:
        payload: Dict[str, Any] = {
            "chat_id": str(chat_id),
            "text": truncate(text, MAX_TEXT_CHARS),
            "disable_web_page_preview": disable_preview,
        }
        if parse_mode:
            payload["parse_mode"] = parse_mode
        if reply_markup:
            payload["reply_markup"] = reply_markup
        elif inline_keyboard:
            payload["reply_markup"] = {"inline_keyboard": [list(row) for row in inline_keyboard]}
        if disable_notification is not None:
            payload["disable_notification"] = bool(disable_notification)
        return await self._call("sendMessage", json_body=payload)

    async def answer_callback(self, callback_id: str, text: str = "") -> SendResult:
        return await self._call(
            "answerCallbackQuery",
            json_body={"callback_query_id": callback_id, "text": text, "show_alert": False},
        )

    async def send_media(
        self,
        chat_id: Any,
        media: bytes,
        media_type: str,
        caption: str = "",
    ) -> SendResult:
        method, field, filename = media_method_for(media_type)
        data: Dict[str, str] = {"chat_id": str(chat_id)}
        if caption:
            data["caption"] = truncate(caption, MAX_CAPTION_CHARS)
            data["parse_mode"] = "HTML"
        files = {field: (filename, media, media_type or "application/octet-stream")}
        return await self._call(method, form=data, files=files)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _call(
        self,
        method: str,
        json_body: Optional[Dict[str, Any]] = None,
        form: Optional[Dict[str, str]] = None,
        files: Optional[Dict[str, Any]] = None,
    ) -> SendResult:
        if not self._bot_token:
            return SendResult(ok=False, error="missing_bot_token")

        url = f"{self._api_base}/bot{self._bot_token}/{method}"
        result = SendResult(ok=False, error="not_attempted")
        for attempt in range(1, self._max_attempts + 1):
            try:
                if files is not None:
                    response = await self._client.post(url, data=form, files=files, timeout=self._timeout)
                else:
                    response = await self._client.post(url, json=json_body, timeout=self._timeout)
                result = self._parse_send_response(response.status_code, response.text, attempt)
            except httpx.HTTPError as exc:
                result = SendResult(
                    ok=False,
                    error=f"{type(exc).__name__}: {self._sanitize_text(str(exc))}",
                    attempts=attempt,
                )

            if result.ok or not self._is_retryable(result) or attempt == self._max_attempts:
                break

            delay = self._backoff_base_ms * (2 ** (attempt - 1)) / 1000
            if result.status == 429 and result.retry_after is not None:
                delay = max(delay, float(result.retry_after))
            logger.warning(
                f"telegram_retry method={method} status={result.status} attempt={attempt} "
                f"delay={delay:.2f}s bot={self._masked_token}"
            )
            await self._sleep(delay)

        if not result.ok:
            logger.warning(
                f"telegram_send_failed method={method} status={result.status} "
                f"error={result.description or result.error} bot={self._masked_token}"
            )
        return result

    @staticmethod
    def _is_retryable(result: SendResult) -> bool:
        if result.permanent:
            return False
        if result.status == 0:
            return True
        return result.status == 429 or result.status >= 500

    def _parse_send_response(self, status_code: int, body: str, attempt: int) -> SendResult:
        payload: Dict[str, Any] = {}
        if body:
            try:
                parsed = json.loads(body)
                if isinstance(parsed, dict):
                    payload = parsed
            except json.JSONDecodeError:
                payload = {}

        retry_after: Optional[int] = None
        if isinstance(payload.get("parameters"), dict):
            raw = payload["parameters"].get("retry_after")
            if isinstance(raw, int):
                retry_after = raw

        ok_flag = bool(payload.get("ok")) if payload else (200 <= status_code < 300)
        success = ok_flag and (200 <= status_code < 300)
        description = payload.get("description") if isinstance(payload.get("description"), str) else None
        error = None
        if not success:
            error = self._sanitize_text(description) if description else f"http_{status_code}"
        permanent = (
            not success
            and 400 <= status_code < 500
            and status_code != 429
            and bool(description and _PERMANENT_FAILURE.search(description))
        )
        return SendResult(
            ok=success,
            status=status_code,
            body=payload.get("result") if success else payload or None,
            error=error,
            description=self._sanitize_text(description) if description else None,
            attempts=attempt,
            retry_after=retry_after,
            permanent=permanent,
        )

    def _sanitize_text(self, text: Optional[str]) -> str:
        if not text:
            return ""
        if not self._bot_token:
            return text
        return text.replace(self._bot_token, self._masked_token)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
