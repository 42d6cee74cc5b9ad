"""Housekeeping Scheduler - periodic cleanup of the realtime database

Purges start tokens whose ``expiresAt`` is more than a day in the past,
for every tenant and for the legacy global node. One patch per namespace.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config.settings import Settings, get_settings
from ..domain.errors import DomainError
from ..repositories.rtdb_client import RealtimeDatabase
from ..repositories.tenant_store import GlobalStore, ScopedStore, TenantStore, SLUG_PATTERN
from ..utils.logger import get_logger
from ..utils.time import is_expired, utc_now

logger = get_logger(__name__)

PURGE_GRACE_HOURS = 24


async def purge_expired_tokens(store: ScopedStore, now: Optional[datetime] = None) -> int:
    """Delete expired telegramTokens below one store; returns the count"""
    cutoff = (now or utc_now()) - timedelta(hours=PURGE_GRACE_HOURS)
    tokens = await store.get("telegramTokens")
    if not isinstance(tokens, dict):
        return 0
    batch = store.batch()
    for token, record in tokens.items():
        if isinstance(record, dict) and record.get("expiresAt") and is_expired(record["expiresAt"], cutoff):
            batch.delete(f"telegramTokens/{token}")
    await batch.commit()
    return len(batch)


async def sweep(db: RealtimeDatabase, now: Optional[datetime] = None) -> Dict[str, int]:
    """Purge every tenant namespace plus the global one"""
    purged: Dict[str, int] = {}
    stores = [GlobalStore(db)]
    slugs = await db.get("tenants", shallow=True)
    if isinstance(slugs, dict):
        stores.extend(TenantStore(db, slug) for slug in sorted(slugs) if SLUG_PATTERN.match(slug))
    for store in stores:
        try:
            count = await purge_expired_tokens(store, now)
        except DomainError as e:
            logger.error(f"Token purge failed under {store.scope}: {e.message}")
            continue
        if count:
            purged[store.scope] = count
    logger.info(f"Housekeeping purged {sum(purged.values())} expired tokens", extra={"details": purged})
    return purged


class HousekeepingScheduler:
    """APScheduler wrapper running the sweep on an interval"""

    def __init__(self, db: RealtimeDatabase, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._is_running = False

    def start(self) -> None:
        if self._is_running:
            logger.warning("Scheduler already running")
            return
        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self._run,
            trigger=IntervalTrigger(minutes=self.settings.housekeeping_interval_minutes),
            id="purge_expired_tokens",
            name="Purge expired start tokens",
            replace_existing=True,
        )
        self.scheduler.start()
        self._is_running = True
        logger.info(f"Housekeeping scheduler started (every {self.settings.housekeeping_interval_minutes} min)")

    def stop(self) -> None:
        if self.scheduler:
            self.scheduler.shutdown()
            self._is_running = False
            logger.info("Housekeeping scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def _run(self) -> Any:
        return await sweep(self.db)


# Global scheduler instance
_scheduler: Optional[HousekeepingScheduler] = None


def get_scheduler(db: RealtimeDatabase) -> HousekeepingScheduler:
    """Get or create scheduler instance"""
    global _scheduler
    if _scheduler is None:
        _scheduler = HousekeepingScheduler(db)
    return _scheduler


def start_scheduler(db: RealtimeDatabase) -> None:
    get_scheduler(db).start()


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler:
        _scheduler.stop()
        _scheduler = None
