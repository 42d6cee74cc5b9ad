"""Motor connection for the shared ticket cache

The cache is a single collection of string-keyed JSON blobs. Ticket blobs
carry ``kind: "ticket"`` and expire after ``ticket_cache_ttl_days`` without a
write; series statistics never expire.
"""
from typing import Any, Dict, Optional
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection
from pymongo.errors import PyMongoError

from ..config.settings import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)

TTL_INDEX_NAME = "ticket_expiry"

_async_client: Optional[AsyncIOMotorClient] = None


def get_async_client() -> AsyncIOMotorClient:
    global _async_client
    if _async_client is None:
        logger.info(f"Connecting ticket cache: {settings.mongo_db}.{settings.ticket_cache_collection}")
        _async_client = AsyncIOMotorClient(
            settings.mongo_uri,
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=5000,
            socketTimeoutMS=10000,
        )
    return _async_client


def get_ticket_cache_collection() -> AsyncIOMotorCollection:
    return get_async_client()[settings.mongo_db][settings.ticket_cache_collection]


async def ensure_ticket_cache_indexes() -> bool:
    """Create the ticket TTL index; False when MongoDB is unreachable"""
    ttl_seconds = max(1, settings.ticket_cache_ttl_days) * 24 * 60 * 60
    try:
        await get_ticket_cache_collection().create_index(
            "updatedAt",
            name=TTL_INDEX_NAME,
            expireAfterSeconds=ttl_seconds,
            partialFilterExpression={"kind": "ticket"},
        )
    except PyMongoError as e:
        logger.error(f"Ticket cache index not created: {e}")
        return False
    return True


async def close_async_connection() -> None:
    global _async_client
    if _async_client is not None:
        _async_client.close()
        _async_client = None
        logger.info("Ticket cache connection closed")


async def async_health_check() -> Dict[str, Any]:
    """Ping the cache's MongoDB"""
    status: Dict[str, Any] = {"backend": "mongo", "collection": settings.ticket_cache_collection}
    try:
        await get_async_client().admin.command("ping")
        status["status"] = "healthy"
    except PyMongoError as e:
        logger.error(f"Ticket cache health check failed: {e}")
        status.update(status="unhealthy", error=str(e))
    return status
