"""Notifier - the call pipeline

One invocation handles one "number just called" event for a tenant:

1. seed recipients (request body, else the tenant queue for the series);
2. classify each ticket as served / reminder / skipped / cancelled-stale,
   staging ticket transitions and database writes in memory;
3. dispatch Telegram messages in parallel;
4. flush the ticket store and write one batched patch to the tenant root.

Classification never awaits I/O; everything it needs is loaded up front.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, PrivateAttr

from ..config.settings import Settings
from ..domain.enums import NotifyAction, TicketStatus
from ..domain.errors import (
    DomainError,
    PersistencePartialError,
    ServerMisconfiguredError,
    ValidationError,
)
from ..domain.models import RecipientResult, SeriesStats, ServiceEvent, Ticket
from ..repositories.tenant_store import PatchBatch, TenantStore
from ..repositories.ticket_store import TicketStore
from ..services.telegram_client import TelegramClient, build_keyboard, escape_html
from ..utils.idgen import generate_push_id
from ..utils.logger import get_logger
from ..utils.numbers import is_behind, normalize_number, series_of
from ..utils.time import iso_from_ms, now_ms, to_epoch_ms

logger = get_logger(__name__)

EXPLORE_SUFFIX = (
    '\n\nCurious how this works? Tap 👉 "Explore QueueJoy" below to see tools '
    "your shop can use to keep customers happy."
)
PII_FIELDS = ("number", "queueId", "ticketId", "recipientFull", "fullNumber")
NO_RECIPIENTS_MESSAGE = "No recipients in same series"


# ============================================================================
# Request models
# ============================================================================

class RecipientInput(BaseModel):
    """One recipient as sent by the operator console"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore", coerce_numbers_to_str=True)

    chat_id: Optional[str] = Field(None, validation_alias=AliasChoices("chatId", "chat_id", "id"))
    their_number: Optional[str] = Field(
        None,
        validation_alias=AliasChoices(
            "theirNumber", "number", "recipientFull", "fullNumber", "ticketNumber", "queueId"
        ),
    )
    ticket_id: Optional[str] = Field(None, validation_alias=AliasChoices("ticketId", "ticket", "queueKey"))
    created_at: Optional[Any] = Field(None, validation_alias=AliasChoices("createdAt", "created_at"))
    telegram_connected: bool = Field(
        False, validation_alias=AliasChoices("telegramConnected", "telegram_connected")
    )
    _queue_entry: Optional[Dict[str, Any]] = PrivateAttr(default=None)


class NotifyCounterRequest(BaseModel):
    """Body of notifyCounter"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore", coerce_numbers_to_str=True)

    tenant: Optional[str] = None
    slug: Optional[str] = None
    called_full: Optional[str] = Field(None, alias="calledFull")
    counter_name: Optional[str] = Field(None, alias="counterName")
    recipients: Optional[List[RecipientInput]] = None
    inline_buttons: Optional[List[Any]] = Field(None, alias="inlineButtons")
    bot_token: Optional[str] = Field(None, alias="botToken")
    explore_url: Optional[str] = Field(None, alias="exploreUrl")
    queue_key: Optional[str] = Field(None, alias="queueKey")


# ============================================================================
# Working state
# ============================================================================

@dataclass
class _Prepared:
    ticket_key: str
    chat_id: Optional[str]
    their_number: str
    ticket_id: Optional[str]
    created_at: Any
    telegram_connected: bool
    queue_entry: Optional[Dict[str, Any]] = None


@dataclass
class _Dispatch:
    result_index: int
    chat_id: str
    text: str


@dataclass
class _Invocation:
    tenant: str
    called: str
    called_series: str
    counter_name: str
    now: int
    batch: PatchBatch
    stats: SeriesStats
    scrub_pii: bool
    results: List[RecipientResult] = field(default_factory=list)
    dispatches: List[_Dispatch] = field(default_factory=list)
    served: int = 0

    @property
    def now_iso(self) -> str:
        return iso_from_ms(self.now)


def ticket_key_for(ticket_id: Optional[str], chat_id: Optional[str], their_number: str) -> str:
    if ticket_id:
        return str(ticket_id)
    return f"{chat_id}|{normalize_number(their_number)}"


def _first(entry: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = entry.get(key)
        if value not in (None, ""):
            return value
    return None


class Notifier:
    """Call pipeline for one tenant"""

    def __init__(
        self,
        store: TenantStore,
        tickets: TicketStore,
        telegram: TelegramClient,
        settings: Settings,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.tickets = tickets
        self.telegram = telegram
        self.settings = settings
        self._clock = clock

    @property
    def tenant(self) -> str:
        return self.store.slug

    async def notify(self, request: NotifyCounterRequest) -> Dict[str, Any]:
        called = normalize_number(request.called_full)
        if not called:
            raise ValidationError("calledFull required")

        telegram = self.telegram
        if request.bot_token:
            telegram = telegram.with_token(request.bot_token)
        if not telegram.configured:
            raise ServerMisconfiguredError("Missing bot token")

        called_series = series_of(called)
        counter_name = (request.counter_name or "").strip()

        recipients = list(request.recipients or [])
        if not recipients:
            recipients = await self._seed_from_queue(called_series, request.queue_key)

        prepared = self._dedupe(recipients)
        if not prepared:
            return {
                "ok": True,
                "calledFull": called,
                "calledSeries": called_series,
                "counterName": counter_name,
                "sent": 0,
                "results": [],
                "message": NO_RECIPIENTS_MESSAGE,
                "tenant": self.tenant,
            }

        # everything classification reads is loaded before the loop
        stored = await asyncio.gather(
            *(self.tickets.load_ticket(self.tenant, p.ticket_key) for p in prepared)
        )
        stats = await self.tickets.load_series_stats(self.tenant, called_series)
        scrub_pii = await self._scrub_enabled(prepared)

        inv = _Invocation(
            tenant=self.tenant,
            called=called,
            called_series=called_series,
            counter_name=counter_name,
            now=self._clock(),
            batch=self.store.batch(),
            stats=stats,
            scrub_pii=scrub_pii,
        )

        for item, ticket in zip(prepared, stored):
            await self._classify(inv, item, ticket)

        keyboard = build_keyboard(request.explore_url or self.settings.explore_url, request.inline_buttons)
        await self._dispatch(inv, telegram, keyboard)

        if inv.served:
            await self.tickets.put_series_stats(self.tenant, called_series, inv.stats)

        persistence: Dict[str, Any] = {"backend": self.tickets.persistence, "flushed": True}
        try:
            await self.tickets.flush()
        except DomainError as e:
            persistence.update(flushed=False, flushError=e.message)

        patch_error = await self._commit(inv, persistence)

        payload = {
            "ok": patch_error is None,
            "calledFull": called,
            "calledSeries": called_series,
            "counterName": counter_name,
            "sent": len(inv.dispatches),
            "results": [r.to_db() for r in inv.results],
            "statsSnapshot": inv.stats.snapshot(called_series),
            "persistence": persistence,
            "tenant": self.tenant,
        }
        logger.info(
            f"notifyCounter {called} -> {len(inv.results)} recipients, "
            f"{len(inv.dispatches)} sent, {inv.served} served",
            extra={"tenant": self.tenant, "series": called_series},
        )
        if patch_error is not None:
            raise PersistencePartialError(
                "Messages were processed but the tenant update failed",
                details=payload,
            )
        return payload

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    async def _seed_from_queue(self, called_series: str, queue_key: Optional[str]) -> List[RecipientInput]:
        queue: Dict[str, Any] = {}
        if queue_key:
            entry = await self.store.get(f"queue/{queue_key}")
            queue = {queue_key: entry} if isinstance(entry, dict) else {}
        else:
            if called_series:
                queue = await self.store.query_by_index("queue", "series", called_series)
            if not queue:
                queue = await self.store.get("queue") or {}

        seeded: List[RecipientInput] = []
        for key, entry in queue.items():
            if not isinstance(entry, dict):
                continue
            if entry.get("status") and entry.get("status") != TicketStatus.WAITING.value:
                continue
            their_number = _first(entry, "ticketNumber", "queueId", "number", "ticket", "id")
            if not their_number:
                continue
            if called_series and series_of(their_number) != called_series:
                continue
            recipient = RecipientInput(
                chat_id=_first(entry, "chatId", "chat_id"),
                their_number=str(their_number),
                ticket_id=key,
                created_at=_first(entry, "timestamp", "connectedAt", "createdAt"),
                telegram_connected=bool(entry.get("telegramConnected") or entry.get("telegram_connected")),
            )
            # keep the entry so the loop never reads it again
            recipient._queue_entry = entry
            seeded.append(recipient)
        return seeded

    def _dedupe(self, recipients: List[RecipientInput]) -> List[_Prepared]:
        seen: Dict[str, _Prepared] = {}
        for r in recipients:
            their_number = normalize_number(r.their_number)
            if not their_number:
                continue
            key = ticket_key_for(r.ticket_id, r.chat_id, their_number)
            if key in seen:
                continue
            seen[key] = _Prepared(
                ticket_key=key,
                chat_id=str(r.chat_id) if r.chat_id else None,
                their_number=their_number,
                ticket_id=r.ticket_id,
                created_at=r.created_at,
                telegram_connected=r.telegram_connected,
                queue_entry=r._queue_entry,
            )
        return list(seen.values())

    async def _scrub_enabled(self, prepared: List[_Prepared]) -> bool:
        if not any(p.ticket_id and (p.chat_id or p.telegram_connected) for p in prepared):
            return False
        value = await self.store.get("settings/privacy/scrubLinkedNumbers")
        return True if value is None else bool(value)

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def _build_ticket(self, inv: _Invocation, item: _Prepared) -> Ticket:
        entry = item.queue_entry or {}
        created_raw = _first(entry, "connectedAt", "createdAt", "timestamp") or item.created_at
        created_ms = to_epoch_ms(entry.get("timestamp")) or to_epoch_ms(created_raw) or inv.now
        created_iso = created_raw if isinstance(created_raw, str) and created_raw else iso_from_ms(created_ms)
        return Ticket(
            ticket_key=item.ticket_key,
            ticket_id=item.ticket_id,
            chat_id=item.chat_id,
            their_number=item.their_number,
            series=series_of(item.their_number) or inv.called_series,
            created_at=created_iso,
            created_at_ms=created_ms,
            expires_at=iso_from_ms(inv.now + self.settings.stale_ticket_ms),
            telegram_connected=item.telegram_connected,
        )

    async def _classify(self, inv: _Invocation, item: _Prepared, ticket: Optional[Ticket]) -> None:
        base = {
            "chat_id": item.chat_id,
            "their_number": item.their_number,
            "ticket_key": item.ticket_key,
            "ticket_id": item.ticket_id,
        }
        if ticket is not None and ticket.is_served:
            inv.results.append(RecipientResult(
                **base, action=NotifyAction.SKIPPED_ALREADY_SERVED, reason="ticket.servedAt present"
            ))
            return

        if ticket is None:
            ticket = self._build_ticket(inv, item)
        elif not ticket.created_at_ms:
            ticket.created_at_ms = to_epoch_ms(ticket.created_at) or inv.now

        is_match = item.their_number == inv.called
        behind = not is_match and is_behind(item.their_number, inv.called)
        if not is_match and not behind:
            inv.results.append(RecipientResult(**base, action=NotifyAction.SKIPPED_AHEAD))
            return

        age_ms = inv.now - (ticket.created_at_ms or inv.now)
        if not is_match and age_ms > self.settings.stale_ticket_ms and ticket.ticket_id:
            inv.batch.set(f"queue/{ticket.ticket_id}/status", TicketStatus.CANCELLED.value)
            await self.tickets.delete_ticket(inv.tenant, ticket.ticket_key)
            inv.results.append(RecipientResult(**base, action=NotifyAction.CANCELLED_STALE))
            logger.info(
                f"Cancelled stale ticket {ticket.ticket_id}",
                extra={"tenant": inv.tenant, "ticket_key": ticket.ticket_key, "action": "cancelled-stale"},
            )
            return

        if is_match:
            text = self._mark_served(inv, ticket)
            action = NotifyAction.SERVED
        else:
            text = self._mark_reminded(inv, ticket)
            action = NotifyAction.REMINDER

        linked = item.telegram_connected or ticket.telegram_connected or bool(ticket.chat_id)
        if inv.scrub_pii and ticket.ticket_id and linked:
            for name in PII_FIELDS:
                inv.batch.delete(f"queue/{ticket.ticket_id}/{name}")

        await self.tickets.put_ticket(inv.tenant, ticket)

        result = RecipientResult(**base, action=action)
        if item.chat_id:
            inv.dispatches.append(_Dispatch(len(inv.results), item.chat_id, text))
        else:
            result.send_res = {"ok": False, "reason": "no-chatId"}
        inv.results.append(result)

    def _mark_served(self, inv: _Invocation, ticket: Ticket) -> str:
        ticket.called_at = inv.now_iso
        ticket.served_at = inv.now_iso
        ticket.served_at_ms = inv.now
        ticket.status = TicketStatus.SERVED
        service_ms = max(0, inv.now - (ticket.created_at_ms or inv.now))

        if ticket.ticket_id:
            inv.batch.update(f"queue/{ticket.ticket_id}", {
                "status": TicketStatus.SERVED.value,
                "servedAt": inv.now,
                "serviceMs": service_ms,
            })
        event = ServiceEvent(
            ticket_id=ticket.ticket_id,
            requested_at=ticket.created_at_ms or inv.now,
            served_at=inv.now,
            service_ms=service_ms,
            counter=inv.counter_name or None,
            series=ticket.series or inv.called_series,
        )
        inv.batch.set(f"analytics/serviceEvents/{generate_push_id(inv.now)}", event.to_db())
        inv.stats.record(service_ms, inv.now_iso, window=self.settings.moving_avg_window)
        inv.served += 1

        counter = escape_html(inv.counter_name or "the counter")
        return (
            f"🎯 Dear customer,\n\nYour number <b>{escape_html(inv.called)}</b> has been called. "
            f"Please proceed to <b>{counter}</b>. Thank you.{EXPLORE_SUFFIX}"
        )

    def _mark_reminded(self, inv: _Invocation, ticket: Ticket) -> str:
        ticket.called_at = ticket.called_at or inv.now_iso
        ticket.notified_stay_at = inv.now_iso
        ticket.last_reminder_ms = inv.now
        if ticket.ticket_id:
            inv.batch.set(f"queue/{ticket.ticket_id}/lastReminderAt", inv.now)
        return (
            f"🔔 REMINDER\nNumber <b>{escape_html(inv.called)}</b> was called. "
            f"Your number is <b>{escape_html(ticket.their_number)}</b>. "
            f"We'll notify you again when it's your turn.{EXPLORE_SUFFIX}"
        )

    # ------------------------------------------------------------------
    # Dispatch & persistence
    # ------------------------------------------------------------------

    async def _dispatch(self, inv: _Invocation, telegram: TelegramClient, keyboard: List[List[Dict[str, Any]]]) -> None:
        if not inv.dispatches:
            return
        pause = max(0, self.settings.broadcast_pause_ms) / 1000

        async def send(order: int, job: _Dispatch):
            if order and pause:
                await asyncio.sleep(order * pause)
            return await telegram.send_message(job.chat_id, job.text, inline_keyboard=keyboard)

        outcomes = await asyncio.gather(
            *(send(i, job) for i, job in enumerate(inv.dispatches)),
            return_exceptions=True,
        )
        for job, outcome in zip(inv.dispatches, outcomes):
            if isinstance(outcome, BaseException):
                inv.results[job.result_index].send_res = {"ok": False, "error": str(outcome)}
            else:
                inv.results[job.result_index].send_res = outcome.to_dict()

    async def _commit(self, inv: _Invocation, persistence: Dict[str, Any]) -> Optional[str]:
        """Write the single tenant patch; returns an error message on failure"""
        persistence["patched"] = False
        if not len(inv.batch):
            return None
        try:
            if inv.served:
                current = await self.store.get("analytics/servedCount")
                inv.batch.increment("analytics/servedCount", inv.served, current)
            await inv.batch.commit()
        except DomainError as e:
            logger.error(
                f"Tenant patch failed: {e.message}",
                extra={"tenant": inv.tenant, "error_code": e.error_code},
            )
            persistence["error"] = e.message
            return e.message
        persistence["patched"] = True
        persistence["paths"] = len(inv.batch)
        return None
