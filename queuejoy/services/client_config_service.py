"""Client configuration for the static tenant sites"""
import json
from typing import Any, Dict

from ..config.settings import Settings
from ..domain.errors import TenantNotFoundError
from ..repositories.rtdb_client import RealtimeDatabase
from ..repositories.tenant_store import TenantStore
from ..services.tenant_service import TenantService, public_settings
from ..utils.logger import get_logger

logger = get_logger(__name__)

CLIENT_SAFE_KEYS = (
    "apiKey", "authDomain", "databaseURL", "projectId",
    "storageBucket", "messagingSenderId", "appId",
)

def render_env_js(settings: Settings) -> str:
    """``window.__ENV__`` snippet served as application/javascript"""
    tenant = settings.tenant_id
    firebase_path = settings.firebase_path or (f"tenants/{tenant}" if tenant else "")
    env = {
        "TENANT_ID": tenant,
        "FIREBASE_PATH": firebase_path,
        "SITE_BASE": settings.site_base.rstrip("/"),
        "FIREBASE_CONFIG": settings.firebase_client_config,
    }
    body = ",\n".join(f"  {key}: {json.dumps(value)}" for key, value in env.items())
    return f"window.__ENV__ = {{\n{body}\n}};\n"


class ClientConfigService:

    def __init__(self, db: RealtimeDatabase, settings: Settings):
        self.db = db
        self.settings = settings

    def pick_client_config(self, candidate: Any) -> Dict[str, Any]:
        candidate = candidate if isinstance(candidate, dict) else {}
        config = {k: candidate[k] for k in CLIENT_SAFE_KEYS if candidate.get(k)}
        if not config.get("databaseURL") and self.settings.database_url:
            config["databaseURL"] = self.settings.database_url
        return config

    async def get_firebase_config(self, raw_slug: Any) -> Dict[str, Any]:
        slug = TenantService.resolve_slug(raw_slug)
        tenant = await TenantStore(self.db, slug).get()
        if not isinstance(tenant, dict) or not tenant:
            raise TenantNotFoundError(
                f'Tenant "{slug}" not found.',
                details={"slug": slug, "demoClientConfig": self.pick_client_config({})},
            )

        source = tenant.get("firebaseConfig") or tenant.get("firebase") or tenant.get("clientFirebase")
        settings = public_settings(tenant.get("settings") or tenant.get("defaults"))
        return {
            "ok": True,
            "slug": slug,
            "name": tenant.get("name") or tenant.get("title"),
            "firebaseConfig": self.pick_client_config(source),
            "settings": settings,
            "links": tenant.get("links"),
            "meta": tenant.get("meta"),
        }
