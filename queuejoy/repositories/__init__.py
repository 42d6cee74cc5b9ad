"""Repository modules - Data access layer"""
from .rtdb_client import (
    RealtimeDatabase,
    FirebaseRestDatabase,
    InMemoryRealtimeDatabase,
    build_realtime_database,
)
from .tenant_store import TenantStore, GlobalStore, PatchBatch, CreateResult
from .ticket_store import (
    TicketStore,
    MongoTicketStore,
    FileTicketStore,
    InMemoryTicketStore,
    build_ticket_store,
)

__all__ = [
    "RealtimeDatabase",
    "FirebaseRestDatabase",
    "InMemoryRealtimeDatabase",
    "build_realtime_database",
    "TenantStore",
    "GlobalStore",
    "PatchBatch",
    "CreateResult",
    "TicketStore",
    "MongoTicketStore",
    "FileTicketStore",
    "InMemoryTicketStore",
    "build_ticket_store",
]
