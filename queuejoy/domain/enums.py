"""Domain Enumerations - All status and type definitions"""
from enum import Enum


class TicketStatus(str, Enum):
    """Queue entry / ticket status as stored under queue/{ticketId}/status"""
    WAITING = "waiting"
    CALLED = "called"
    SERVED = "served"
    CANCELLED = "cancelled"


class NotifyAction(str, Enum):
    """Per-recipient outcome of one call-pipeline invocation"""
    SERVED = "served"
    REMINDER = "reminder"
    SKIPPED_ALREADY_SERVED = "skipped-already-served"
    SKIPPED_AHEAD = "skipped-ahead"
    CANCELLED_STALE = "cancelled-stale"


class TenantStatus(str, Enum):
    """Tenant lifecycle"""
    ACTIVE = "active"
    SUSPENDED = "suspended"


class TokenKind(str, Enum):
    """Which ingest encoding a start token used"""
    RECORD = "record"          # URL-safe base64 JSON
    QUEUE_KEY = "queue_key"    # bare -Abc_123 push key
    SHORT_ID = "short_id"      # plain queue identifier


class UpdateKind(str, Enum):
    """Telegram update categories the webhook understands"""
    MESSAGE = "message"
    CALLBACK = "callback"
    UNKNOWN = "unknown"


class LinkVia(str, Enum):
    """How a chat got bound to a queue entry"""
    TOKEN_RECORD = "telegramTokens"
    QUEUE_KEY = "queueKey"
    RECORD = "record"
    QUEUE_ID = "queueId"


class CounterAction(str, Enum):
    """Operator dashboard actions on a counter"""
    CALL_NEXT = "call-next"
    SKIP = "skip"
    RESET = "reset"
    PREFIX = "prefix"
    REMOVE = "remove"
