"""Token Codec - start tokens and Telegram deep links

Ingest accepts three encodings and reduces each to a DecodedToken:

- ``record``: URL-safe base64 of a small JSON object
  (``{"queueKey": ...}`` plus optional ``counterId``, ``meta``, ``tenant``);
- ``queue_key``: a bare realtime-database push key such as ``-OaVK``;
- ``short_id``: a plain queue identifier (``A001``, ``vanilla-7``).

Stored tokens (``telegramTokens/{token}``) are minted with
``mint_token()`` and are opaque.
"""
import base64
import binascii
import json
import re
from datetime import datetime
from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qs, quote, urlsplit

from ..domain.enums import TokenKind
from ..domain.errors import ExpiredTokenError, InvalidTokenError
from ..domain.models import DecodedToken, StartTokenRecord
from ..utils.idgen import generate_start_token
from ..utils.time import is_expired

QUEUE_KEY_PATTERN = re.compile(r"^-[A-Za-z0-9_]+$")
SHORT_ID_PATTERN = re.compile(r"^[A-Za-z0-9\-_]{2,30}$")
TENANT_PREFIX_PATTERN = re.compile(r"^([a-z0-9-]+):(.+)$")

# keys a base64 record may carry its queue reference under, in priority order
RECORD_QUEUE_FIELDS = ("queueKey", "queueId", "id", "ticket", "number")


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode_json(token: str) -> Optional[Dict[str, Any]]:
    """Decode URL-safe (or standard) base64 JSON; None when it is not one"""
    text = token.replace("-", "+").replace("_", "/")
    text += "=" * (-len(text) % 4)
    try:
        raw = base64.b64decode(text, validate=True)
        value = json.loads(raw.decode("utf-8"))
    except (binascii.Error, ValueError, UnicodeDecodeError):
        return None
    return value if isinstance(value, dict) else None


def encode(
    queue_key: str,
    counter_id: Optional[str] = None,
    meta: Any = None,
    tenant: Optional[str] = None,
) -> str:
    """URL-safe base64 of the compact JSON record, without padding"""
    if not queue_key:
        raise InvalidTokenError("queueKey is required to encode a token")
    record: Dict[str, Any] = {"queueKey": str(queue_key)}
    if counter_id:
        record["counterId"] = str(counter_id)
    if meta is not None:
        record["meta"] = meta
    if tenant:
        record["tenant"] = tenant
    return _b64encode(json.dumps(record, separators=(",", ":")).encode("utf-8"))


def decode(token: str) -> DecodedToken:
    """
    Reduce any accepted encoding to a DecodedToken.

    Raises InvalidTokenError when the text matches none of them.
    """
    raw = (token or "").strip()
    if not raw:
        raise InvalidTokenError("Empty token")

    if QUEUE_KEY_PATTERN.match(raw):
        return DecodedToken(kind=TokenKind.QUEUE_KEY, raw=raw, queue_key=raw)

    record = _b64decode_json(raw)
    if record is not None:
        decoded = _from_record(raw, record)
        if decoded is not None:
            return decoded

    if SHORT_ID_PATTERN.match(raw):
        return DecodedToken(kind=TokenKind.SHORT_ID, raw=raw, queue_id=raw)

    raise InvalidTokenError("Unrecognised start token", details={"token": raw[:64]})


def _from_record(raw: str, record: Dict[str, Any]) -> Optional[DecodedToken]:
    tenant = record.get("tenant") or record.get("slug")
    counter_id = record.get("counterId")
    for field in RECORD_QUEUE_FIELDS:
        value = record.get(field)
        if not value:
            continue
        value = str(value)
        if field == "queueKey":
            queue_key, queue_id = value, None
        else:
            queue_key, queue_id = None, value
        return DecodedToken(
            kind=TokenKind.RECORD,
            raw=raw,
            queue_key=queue_key,
            queue_id=queue_id,
            counter_id=str(counter_id) if counter_id else None,
            meta=record.get("meta"),
            tenant=str(tenant).strip() if tenant else None,
        )
    return None


def tenant_hint(token: Optional[str]) -> Optional[str]:
    """Tenant carried by the token itself: ``slug:`` prefix or record field"""
    if not token:
        return None
    slug, _ = split_tenant_prefix(token)
    if slug:
        return slug
    record = _b64decode_json(token)
    if record:
        value = record.get("tenant") or record.get("slug")
        if value:
            return str(value).strip()
    return None


def split_tenant_prefix(token: str) -> Tuple[Optional[str], str]:
    """'cafe:abc' -> ('cafe', 'abc'); tokens without a prefix pass through"""
    m = TENANT_PREFIX_PATTERN.match(token or "")
    if m:
        return m.group(1), m.group(2)
    return None, token


def extract_token(text: Optional[str]) -> Optional[str]:
    """Pull the start parameter out of a t.me URL or 'start=' fragment"""
    if not text:
        return None
    t = str(text).strip()
    if not t:
        return None
    if "?" in t:
        values = parse_qs(urlsplit(t).query).get("start")
        if values and values[0]:
            return values[0]
    idx = t.find("start=")
    if idx != -1:
        return t[idx + 6:].split("&")[0] or None
    return t


def mint_token() -> str:
    return generate_start_token(12)


def deep_link(bot_username: str, token: str) -> str:
    return f"https://t.me/{bot_username.lstrip('@')}?start={quote(token, safe='-_:')}"


def check_not_expired(record: StartTokenRecord, now: Optional[datetime] = None) -> None:
    if is_expired(record.expires_at, now):
        raise ExpiredTokenError(
            "This link has expired",
            details={"expiresAt": record.expires_at},
        )
