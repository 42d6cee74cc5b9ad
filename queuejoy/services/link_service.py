"""Start-token minting for the status page's "Connect via Telegram" button"""
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..config.settings import Settings
from ..domain.errors import DomainError, ValidationError
from ..domain.models import StartTokenRecord
from ..repositories.rtdb_client import RealtimeDatabase
from ..repositories.tenant_store import GlobalStore, ScopedStore, TenantStore
from ..services import token_codec
from ..utils.logger import get_logger
from ..utils.time import iso_from_ms, now_ms

logger = get_logger(__name__)

MAX_FIELD_CHARS = 250


def _clip(value: Any) -> str:
    text = "" if value is None else str(value).strip()
    return text[:MAX_FIELD_CHARS]


class CreateLinkRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", coerce_numbers_to_str=True)

    queue_key: Optional[str] = Field(None, alias="queueKey")
    counter_id: Optional[str] = Field(None, alias="counterId")
    counter_name: Optional[str] = Field(None, alias="counterName")
    meta: Optional[str] = None
    tenant: Optional[str] = None
    slug: Optional[str] = None


class LinkService:
    """Mints start tokens and persists them under telegramTokens/{token}"""

    def __init__(self, db: RealtimeDatabase, settings: Settings, clock: Callable[[], int] = now_ms):
        self.db = db
        self.settings = settings
        self._clock = clock

    def _store(self, tenant: Optional[str]) -> ScopedStore:
        return TenantStore(self.db, tenant) if tenant else GlobalStore(self.db)

    async def create_link(
        self,
        request: CreateLinkRequest,
        tenant: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> Dict[str, Any]:
        queue_key = _clip(request.queue_key)
        if not queue_key:
            raise ValidationError("queueKey required")

        store = self._store(tenant)
        now = self._clock()
        token = token_codec.mint_token()
        record = StartTokenRecord(
            queue_key=queue_key,
            counter_id=_clip(request.counter_id) or None,
            counter_name=_clip(request.counter_name) or None,
            meta=_clip(request.meta) or None,
            created_at=iso_from_ms(now),
            expires_at=iso_from_ms(now + self.settings.token_ttl_ms),
            user_agent=user_agent,
            ip=ip,
        )

        try:
            await store.set(f"telegramTokens/{token}", record.model_dump(by_alias=True, exclude_none=True))
        except DomainError as e:
            logger.warning(
                f"Start token not persisted, issuing a self-describing token: {e.message}",
                extra={"tenant": tenant, "error_code": e.error_code},
            )
            token = token_codec.encode(queue_key, counter_id=record.counter_id, tenant=tenant)

        link = token_codec.deep_link(self.settings.bot_username, token)
        logger.info(f"Minted start token for queue/{queue_key}", extra={"tenant": tenant})
        return {
            "ok": True,
            "link": link,
            "token": token,
            "createdAt": record.created_at,
            "expiresAt": record.expires_at,
            "tenant": tenant,
        }
