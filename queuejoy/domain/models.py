"""Domain Models - Pydantic schemas for all entities

Field names are snake_case in Python and camelCase on the wire / in the
realtime database (the static consoles read the same nodes).
"""
from typing import Any, Dict, List, Optional
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .enums import NotifyAction, TenantStatus, TicketStatus, TokenKind


class CamelModel(BaseModel):
    """Base model serialised with camelCase keys"""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        coerce_numbers_to_str=True,
    )

    def to_db(self) -> Dict[str, Any]:
        """Dump for the database / JSON responses"""
        return self.model_dump(by_alias=True, mode="json")


# ============================================================================
# Tickets & statistics
# ============================================================================

class Ticket(CamelModel):
    """A customer's in-flight number as cached by the TicketStore"""
    ticket_key: str = Field(..., description="ticketId, or '{chatId}|{normalizedNumber}'")
    ticket_id: Optional[str] = None
    chat_id: Optional[str] = None
    their_number: str
    series: str = ""
    created_at: Optional[str] = None
    created_at_ms: Optional[int] = None
    expires_at: Optional[str] = None
    notified_stay_at: Optional[str] = None
    called_at: Optional[str] = None
    served_at: Optional[str] = None
    served_at_ms: Optional[int] = None
    last_reminder_ms: Optional[int] = None
    telegram_connected: bool = False
    status: TicketStatus = TicketStatus.WAITING

    @property
    def is_served(self) -> bool:
        return bool(self.served_at)


class SeriesStats(CamelModel):
    """Per-series service-time aggregate"""
    total_served: int = 0
    total_service_ms: int = 0
    min_service_ms: Optional[int] = None
    max_service_ms: Optional[int] = None
    moving_avg_last_n: List[int] = Field(
        default_factory=list,
        validation_alias=AliasChoices("movingAvgLastN", "movingAvgServiceMsLast10", "moving_avg_last_n"),
    )
    last_served_at: Optional[str] = None

    def record(self, service_ms: int, served_at: str, window: int = 10) -> None:
        """Fold one served ticket into the aggregate"""
        service_ms = max(0, int(service_ms))
        self.total_served += 1
        self.total_service_ms += service_ms
        self.min_service_ms = service_ms if self.min_service_ms is None else min(self.min_service_ms, service_ms)
        self.max_service_ms = service_ms if self.max_service_ms is None else max(self.max_service_ms, service_ms)
        self.moving_avg_last_n.append(service_ms)
        if len(self.moving_avg_last_n) > window:
            del self.moving_avg_last_n[: len(self.moving_avg_last_n) - window]
        self.last_served_at = served_at

    @property
    def mean_service_ms(self) -> Optional[int]:
        if not self.total_served:
            return None
        return round(self.total_service_ms / self.total_served)

    @property
    def moving_avg_ms(self) -> int:
        if not self.moving_avg_last_n:
            return 0
        return round(sum(self.moving_avg_last_n) / len(self.moving_avg_last_n))

    def snapshot(self, series: str) -> Dict[str, Any]:
        return {
            "series": series,
            "totalServed": self.total_served,
            "totalServiceMs": self.total_service_ms,
            "minServiceMs": self.min_service_ms,
            "maxServiceMs": self.max_service_ms,
            "meanServiceMs": self.mean_service_ms,
            "movingAvgServiceMsLast10": self.moving_avg_ms,
        }


class ServiceEvent(CamelModel):
    """Append-only record written when a ticket is served"""
    ticket_id: Optional[str] = None
    requested_at: int
    served_at: int
    service_ms: int
    counter: Optional[str] = None
    series: str = ""


# ============================================================================
# Start tokens
# ============================================================================

class StartTokenRecord(CamelModel):
    """Persisted under telegramTokens/{token}"""
    queue_key: str = ""
    counter_id: Optional[str] = None
    counter_name: Optional[str] = None
    meta: Optional[str] = None
    created_at: Optional[str] = None
    expires_at: Optional[str] = None
    used: bool = False
    used_at: Optional[str] = None
    chat_id: Optional[str] = None
    linked_queue_key: Optional[str] = None
    user_agent: Optional[str] = None
    ip: Optional[str] = None


class DecodedToken(BaseModel):
    """Canonical form every ingest encoding is reduced to"""
    model_config = ConfigDict(extra="forbid")

    kind: TokenKind
    raw: str
    queue_key: Optional[str] = None
    queue_id: Optional[str] = None
    counter_id: Optional[str] = None
    meta: Optional[Any] = None
    tenant: Optional[str] = None


# ============================================================================
# Counters & tenants
# ============================================================================

class Counter(CamelModel):
    """Physical service point"""
    id: str
    name: str
    prefix: str
    now_serving: int = 1
    last_issued: int = 1
    active: bool = True


class PrivacySettings(CamelModel):
    scrub_linked_numbers: bool = True


class TenantSettings(CamelModel):
    """tenants/{slug}/settings"""
    name: str = ""
    intro_text: str = ""
    ad_text: str = ""
    ad_image: str = ""
    logo: str = ""
    chat_id: str = ""
    timezone: str = "Asia/Kuala_Lumpur"
    default_prefix: str = "COFFEE"
    counter_base: int = 1
    pin: Optional[str] = None
    privacy: PrivacySettings = Field(default_factory=PrivacySettings)


class TenantLinks(CamelModel):
    home: str = ""
    counter: str = ""
    admin: str = ""


class TenantRecord(CamelModel):
    """Root record written at tenants/{slug} on provisioning"""
    slug: str
    name: str
    created_by: str = "admin"
    created_at: str
    status: TenantStatus = TenantStatus.ACTIVE
    settings: TenantSettings = Field(default_factory=TenantSettings)
    links: TenantLinks = Field(default_factory=TenantLinks)
    billing: Dict[str, Any] = Field(default_factory=dict)
    repo: Optional[Dict[str, Any]] = None
    netlify: Optional[Dict[str, Any]] = None


# ============================================================================
# Call pipeline results
# ============================================================================

class RecipientResult(CamelModel):
    """One row of the notifier's results[]"""
    chat_id: Optional[str] = None
    their_number: str
    ticket_key: str
    ticket_id: Optional[str] = None
    action: NotifyAction
    reason: Optional[str] = None
    send_res: Optional[Dict[str, Any]] = None

    def to_db(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)
