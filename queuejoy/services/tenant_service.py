"""Tenant Service - provisioning and settings of business namespaces"""
from typing import Any, Dict, Optional
from urllib.parse import quote

from pydantic import BaseModel, ConfigDict, Field

from ..config.settings import Settings
from ..domain.enums import TenantStatus
from ..domain.errors import (
    DomainError,
    InvalidSlugError,
    NotFoundError,
    SlugExistsError,
    ValidationError,
)
from ..domain.models import Counter, TenantLinks, TenantRecord, TenantSettings
from ..repositories.rtdb_client import RealtimeDatabase
from ..repositories.tenant_store import GlobalStore, TenantStore
from ..services.site_scaffolder import SiteScaffolder
from ..services.telegram_client import TelegramClient
from ..utils.logger import get_logger
from ..utils.numbers import normalize_slug
from ..utils.time import format_iso, utc_now

logger = get_logger(__name__)

UPDATABLE_SETTINGS = (
    "name", "introText", "adText", "adImage", "logo", "chatId",
    "timezone", "defaultPrefix", "privacy", "pin",
)
NAME_INDEX = "tenants_by_name"
# never served to browsers
PRIVATE_SETTINGS = ("pin",)
PUBLIC_TENANT_KEYS = ("name", "status", "links", "createdAt")


def name_key(name: str) -> str:
    """Index key for a business name (lowercased, percent-encoded)"""
    return quote((name or "").strip().lower(), safe="").replace(".", "%2E")


def public_settings(settings: Any) -> Dict[str, Any]:
    """Tenant settings without operator secrets"""
    if not isinstance(settings, dict):
        return {}
    return {k: v for k, v in settings.items() if k not in PRIVATE_SETTINGS}


# ============================================================================
# Request models
# ============================================================================

class CreateBusinessRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    slug: Optional[str] = None
    name: Optional[str] = None
    defaults: Optional[Dict[str, Any]] = None
    settings: Optional[Dict[str, Any]] = None
    created_by: Optional[str] = Field(None, alias="createdBy")
    billing: Optional[Dict[str, Any]] = None
    notify_chat_id: Optional[str] = Field(None, alias="notifyChatId")


class UpdateBusinessRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    slug: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


class TenantService:
    """Create, read and update tenants"""

    def __init__(
        self,
        db: RealtimeDatabase,
        settings: Settings,
        telegram: Optional[TelegramClient] = None,
        scaffolder: Optional[SiteScaffolder] = None,
    ):
        self.db = db
        self.root = GlobalStore(db)
        self.settings = settings
        self.telegram = telegram
        self.scaffolder = scaffolder or SiteScaffolder(settings)

    @staticmethod
    def resolve_slug(raw: Any) -> str:
        slug = normalize_slug(raw)
        if not slug:
            raise InvalidSlugError("slug is required")
        return slug

    def _links(self, slug: str) -> TenantLinks:
        base = self.settings.site_base.rstrip("/")
        return TenantLinks(
            home=f"{base}/{slug}",
            counter=f"{base}/{slug}/counter.html",
            admin=f"{base}/{slug}/admin.html",
        )

    # =========================================================================
    # Create
    # =========================================================================

    async def create_business(self, request: CreateBusinessRequest) -> Dict[str, Any]:
        """
        Reserve tenants/{slug} atomically and seed its namespace.

        Raises SlugExistsError carrying the existing record when the slug is
        taken. The name index, site scaffolding and operator notification are
        best effort.
        """
        slug = self.resolve_slug(request.slug or request.name)
        name = (request.name or slug).strip()
        if not name:
            raise ValidationError("name is required")

        defaults = dict(request.defaults or {})
        defaults.update(request.settings or {})
        now_iso = format_iso(utc_now())

        settings = TenantSettings.model_validate({**defaults, "name": name})
        record = TenantRecord(
            slug=slug,
            name=name,
            created_by=request.created_by or "admin",
            created_at=now_iso,
            status=TenantStatus.ACTIVE,
            settings=settings,
            links=self._links(slug),
            billing={"provider": (request.billing or {}).get("provider", "stripe"), "createdAt": now_iso},
        )
        default_counter = Counter(
            id="default",
            name="Counter 1",
            prefix=settings.default_prefix,
            now_serving=settings.counter_base,
            last_issued=settings.counter_base,
        )
        value = record.to_db()
        value["counters"] = {"default": default_counter.to_db()}
        value["analytics"] = {"servedCount": 0}

        outcome = await self.root.create_if_absent(f"tenants/{slug}", value)
        if not outcome.committed:
            logger.info(f"Slug already taken: {slug}", extra={"tenant": slug})
            raise SlugExistsError(
                f"Tenant '{slug}' already exists",
                details={"slug": slug, "existing": outcome.existing or {}},
            )
        logger.info(f"Created tenant {slug}", extra={"tenant": slug})

        try:
            await self.root.set(f"{NAME_INDEX}/{name_key(name)}", {"slug": slug, "createdAt": now_iso})
        except DomainError as e:
            logger.warning(f"Name index write failed for {slug}: {e.message}", extra={"tenant": slug})

        provisioning = await self.scaffolder.scaffold(slug)
        if provisioning["repo"] is not None or provisioning["netlify"] is not None:
            try:
                await self.root.patch({
                    f"tenants/{slug}/repo": provisioning["repo"],
                    f"tenants/{slug}/netlify": provisioning["netlify"],
                })
            except DomainError as e:
                logger.warning(f"Provisioning result not stored: {e.message}", extra={"tenant": slug})

        telegram_result = await self._notify_operator(slug, name, now_iso, request.notify_chat_id or settings.chat_id)

        return {
            "ok": True,
            "slug": slug,
            "links": record.links.to_db(),
            "data": value,
            "provisioning": provisioning,
            "telegram": telegram_result,
        }

    async def _notify_operator(self, slug: str, name: str, created_at: str, chat_id: Optional[str]) -> Dict[str, Any]:
        if not chat_id or self.telegram is None or not self.telegram.configured:
            return {"skipped": True}
        links = self._links(slug)
        text = (
            f"Your QueueJoy site is ready!\n\nName: {name}\nSlug: {slug}\nSite: {links.home}\n"
            f"CreatedAt: {created_at}\n\nVisit the admin: {links.admin}"
        )
        result = await self.telegram.send_message(chat_id, text, parse_mode="")
        return result.to_dict()

    # =========================================================================
    # Read / update
    # =========================================================================

    async def get_business(self, raw_slug: Any) -> Dict[str, Any]:
        slug = self.resolve_slug(raw_slug)
        data = await TenantStore(self.db, slug).get()
        if not isinstance(data, dict) or not data:
            raise NotFoundError(f"Tenant '{slug}' not found", details={"slug": slug})
        public = {k: data[k] for k in PUBLIC_TENANT_KEYS if k in data}
        public["slug"] = data.get("slug") or slug
        public["settings"] = public_settings(data.get("settings"))
        return {"ok": True, "data": public}

    async def update_business(self, request: UpdateBusinessRequest) -> Dict[str, Any]:
        """Patch whitelisted settings; a renamed tenant moves its name index entry"""
        slug = self.resolve_slug(request.slug)
        if not isinstance(request.data, dict):
            raise ValidationError("data object required")

        update = {k: v for k, v in request.data.items() if k in UPDATABLE_SETTINGS}
        if not update:
            raise ValidationError(
                "no valid keys to update",
                details={"allowed": list(UPDATABLE_SETTINGS)},
            )

        store = TenantStore(self.db, slug)
        current = await store.get("settings")
        if not isinstance(current, dict):
            if not await store.exists():
                raise NotFoundError(f"Tenant '{slug}' not found", details={"slug": slug})
            current = {}

        batch = self.root.batch()
        batch.update(f"tenants/{slug}/settings", update)
        new_name = update.get("name")
        if isinstance(new_name, str) and new_name.strip():
            old_name = current.get("name") or ""
            batch.set(f"tenants/{slug}/name", new_name.strip())
            if name_key(old_name) != name_key(new_name):
                if old_name:
                    batch.delete(f"{NAME_INDEX}/{name_key(old_name)}")
                batch.set(
                    f"{NAME_INDEX}/{name_key(new_name)}",
                    {"slug": slug, "updatedAt": format_iso(utc_now())},
                )
        await batch.commit()

        logger.info(f"Updated tenant settings: {sorted(update)}", extra={"tenant": slug})
        return {"ok": True, "slug": slug, "updated": update}
