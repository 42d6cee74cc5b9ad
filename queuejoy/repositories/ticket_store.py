"""Ticket Store - per-request ticket cache and per-series statistics

One interface, three backends:

- MongoTicketStore: shared key-value cache in a Mongo collection
  (``{_id: "<tenant>:ticket:<key>", value: "<json>"}``). Writes are buffered
  and issued together in flush().
- FileTicketStore: a single JSON document ``{tickets, stats}``; each
  request merges the keys it touched and rewrites it atomically.
- InMemoryTicketStore: process-local dicts.

Instances are request scoped: create one per handler invocation and call
flush() once at the end.
"""
import asyncio
import json
import os
import tempfile
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorCollection
from pymongo.errors import PyMongoError

from .async_mongo import get_ticket_cache_collection
from ..config.settings import Settings
from ..domain.errors import DatabaseError
from ..domain.models import SeriesStats, Ticket
from ..utils.logger import get_logger
from ..utils.time import utc_now

logger = get_logger(__name__)

GLOBAL_SCOPE = "_global"

# serialises read-merge-write of the shared JSON document
_FILE_LOCK = asyncio.Lock()


def _scope(tenant: Optional[str]) -> str:
    return tenant or GLOBAL_SCOPE


class TicketStore(ABC):
    """Capability interface shared by all backends"""

    persistence: str = "unknown"

    @abstractmethod
    async def load_ticket(self, tenant: str, ticket_key: str) -> Optional[Ticket]:
        ...

    @abstractmethod
    async def put_ticket(self, tenant: str, ticket: Ticket) -> None:
        ...

    @abstractmethod
    async def delete_ticket(self, tenant: str, ticket_key: str) -> None:
        ...

    @abstractmethod
    async def load_series_stats(self, tenant: str, series: str) -> SeriesStats:
        ...

    @abstractmethod
    async def put_series_stats(self, tenant: str, series: str, stats: SeriesStats) -> None:
        ...

    @abstractmethod
    async def flush(self) -> None:
        """Persist everything buffered during this request"""


# ============================================================================
# Shared key-value cache (MongoDB)
# ============================================================================

class MongoTicketStore(TicketStore):
    """Shared cache; at most one write per key per request"""

    persistence = "mongo"

    def __init__(self, collection: AsyncIOMotorCollection):
        self._collection = collection
        # doc id -> json text, or None for a pending delete
        self._pending: Dict[str, Optional[str]] = {}

    @staticmethod
    def _ticket_id(tenant: str, ticket_key: str) -> str:
        return f"{_scope(tenant)}:ticket:{ticket_key}"

    @staticmethod
    def _stats_id(tenant: str, series: str) -> str:
        return f"{_scope(tenant)}:stats:{series}"

    async def _get_json(self, doc_id: str) -> Optional[Dict[str, Any]]:
        if doc_id in self._pending:
            raw = self._pending[doc_id]
        else:
            try:
                doc = await self._collection.find_one({"_id": doc_id})
            except PyMongoError as e:
                logger.warning(f"Ticket cache read failed for {doc_id}: {e}")
                return None
            raw = doc.get("value") if doc else None
        if not raw:
            return None
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Discarding unreadable cache entry {doc_id}")
            return None
        return value if isinstance(value, dict) else None

    async def load_ticket(self, tenant: str, ticket_key: str) -> Optional[Ticket]:
        data = await self._get_json(self._ticket_id(tenant, ticket_key))
        return Ticket.model_validate(data) if data else None

    async def put_ticket(self, tenant: str, ticket: Ticket) -> None:
        self._pending[self._ticket_id(tenant, ticket.ticket_key)] = json.dumps(ticket.to_db())

    async def delete_ticket(self, tenant: str, ticket_key: str) -> None:
        self._pending[self._ticket_id(tenant, ticket_key)] = None

    async def load_series_stats(self, tenant: str, series: str) -> SeriesStats:
        data = await self._get_json(self._stats_id(tenant, series))
        return SeriesStats.model_validate(data) if data else SeriesStats()

    async def put_series_stats(self, tenant: str, series: str, stats: SeriesStats) -> None:
        self._pending[self._stats_id(tenant, series)] = json.dumps(stats.to_db())

    async def _write(self, doc_id: str, raw: Optional[str]) -> None:
        if raw is None:
            await self._collection.delete_one({"_id": doc_id})
        else:
            kind = "ticket" if ":ticket:" in doc_id else "stats"
            await self._collection.replace_one(
                {"_id": doc_id},
                {"_id": doc_id, "kind": kind, "value": raw, "updatedAt": utc_now()},
                upsert=True,
            )

    async def flush(self) -> None:
        if not self._pending:
            return
        items = list(self._pending.items())
        self._pending.clear()
        outcomes = await asyncio.gather(
            *(self._write(doc_id, raw) for doc_id, raw in items),
            return_exceptions=True,
        )
        failed = [doc_id for (doc_id, _), res in zip(items, outcomes) if isinstance(res, Exception)]
        if failed:
            logger.error(f"Ticket cache flush failed for {len(failed)} of {len(items)} keys")
            raise DatabaseError(
                "Ticket cache flush incomplete",
                details={"failed": failed, "total": len(items)},
            )


# ============================================================================
# Local fallback file
# ============================================================================

class FileTicketStore(TicketStore):
    """
    Single JSON document shared by every request of the process.

    Reads come from a snapshot taken on first access. flush() re-reads the
    document under ``_FILE_LOCK`` and applies only the keys this instance
    touched, so overlapping requests keep each other's writes.
    """

    persistence = "ephemeral-file"

    def __init__(self, path: str):
        self.path = path
        self._doc: Optional[Dict[str, Dict[str, Any]]] = None
        # (kind, scope, key) -> new value, None for a delete
        self._changes: Dict[Tuple[str, str, str], Optional[Dict[str, Any]]] = {}

    def _read(self) -> Dict[str, Dict[str, Any]]:
        doc: Dict[str, Any] = {}
        if os.path.exists(self.path):
            try:
                with open(self.path, "r", encoding="utf-8") as fh:
                    doc = json.load(fh) or {}
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Could not read ticket store {self.path}: {e}")
                doc = {}
        doc.setdefault("tickets", {})
        doc.setdefault("stats", {})
        return doc

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if self._doc is None:
            self._doc = self._read()
        return self._doc

    def _bucket(self, kind: str, tenant: str) -> Dict[str, Any]:
        return self._load()[kind].setdefault(_scope(tenant), {})

    def _stage(self, kind: str, tenant: str, key: str, value: Optional[Dict[str, Any]]) -> None:
        bucket = self._bucket(kind, tenant)
        if value is None:
            bucket.pop(key, None)
        else:
            bucket[key] = value
        self._changes[(kind, _scope(tenant), key)] = value

    async def load_ticket(self, tenant: str, ticket_key: str) -> Optional[Ticket]:
        data = self._bucket("tickets", tenant).get(ticket_key)
        return Ticket.model_validate(data) if data else None

    async def put_ticket(self, tenant: str, ticket: Ticket) -> None:
        self._stage("tickets", tenant, ticket.ticket_key, ticket.to_db())

    async def delete_ticket(self, tenant: str, ticket_key: str) -> None:
        self._stage("tickets", tenant, ticket_key, None)

    async def load_series_stats(self, tenant: str, series: str) -> SeriesStats:
        data = self._bucket("stats", tenant).get(series)
        return SeriesStats.model_validate(data) if data else SeriesStats()

    async def put_series_stats(self, tenant: str, series: str, stats: SeriesStats) -> None:
        self._stage("stats", tenant, series, stats.to_db())

    async def flush(self) -> None:
        if not self._changes:
            return
        async with _FILE_LOCK:
            doc = self._read()
            for (kind, scope, key), value in self._changes.items():
                bucket = doc[kind].setdefault(scope, {})
                if value is None:
                    bucket.pop(key, None)
                else:
                    bucket[key] = value
            directory = os.path.dirname(os.path.abspath(self.path))
            try:
                os.makedirs(directory, exist_ok=True)
                fd, tmp_path = tempfile.mkstemp(prefix=".queuejoy-", suffix=".json", dir=directory)
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(doc, fh)
                os.replace(tmp_path, self.path)
            except OSError as e:
                logger.error(f"Ticket store write failed for {self.path}: {e}")
                raise DatabaseError("Ticket store write failed", details={"path": self.path}) from e
        self._doc = doc
        self._changes = {}


# ============================================================================
# In-memory
# ============================================================================

class InMemoryTicketStore(TicketStore):
    """
    Process-local store. Pass the same ``state`` dict to several instances
    to simulate a shared cache across requests.
    """

    persistence = "memory"

    def __init__(self, state: Optional[Dict[Tuple[str, str, str], Dict[str, Any]]] = None):
        self.state = state if state is not None else {}
        self.flushes = 0

    async def load_ticket(self, tenant: str, ticket_key: str) -> Optional[Ticket]:
        data = self.state.get((_scope(tenant), "ticket", ticket_key))
        return Ticket.model_validate(data) if data else None

    async def put_ticket(self, tenant: str, ticket: Ticket) -> None:
        self.state[(_scope(tenant), "ticket", ticket.ticket_key)] = ticket.to_db()

    async def delete_ticket(self, tenant: str, ticket_key: str) -> None:
        self.state.pop((_scope(tenant), "ticket", ticket_key), None)

    async def load_series_stats(self, tenant: str, series: str) -> SeriesStats:
        data = self.state.get((_scope(tenant), "stats", series))
        return SeriesStats.model_validate(data) if data else SeriesStats()

    async def put_series_stats(self, tenant: str, series: str, stats: SeriesStats) -> None:
        self.state[(_scope(tenant), "stats", series)] = stats.to_db()

    async def flush(self) -> None:
        self.flushes += 1


def build_ticket_store(settings: Settings) -> TicketStore:
    """Pick the configured backend for one request"""
    if settings.ticket_store_backend.lower() == "mongo":
        return MongoTicketStore(get_ticket_cache_collection())
    return FileTicketStore(settings.ticket_store_path)
