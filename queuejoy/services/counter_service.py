"""Counter Service - operator console actions on service counters

Counters live at ``tenants/{slug}/counters/{id}``. Every action is a single
tenant patch and keeps ``nowServing <= lastIssued``.
"""
import hmac
import re
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..config.settings import Settings
from ..domain.enums import CounterAction
from ..domain.errors import (
    CounterNotFoundError,
    DomainError,
    ServerMisconfiguredError,
    UnauthorizedError,
    ValidationError,
)
from ..domain.models import Counter
from ..repositories.tenant_store import TenantStore
from ..repositories.ticket_store import TicketStore
from ..services.notifier import NotifyCounterRequest, Notifier
from ..services.telegram_client import TelegramClient
from ..utils.idgen import generate_counter_id
from ..utils.logger import get_logger
from ..utils.numbers import format_ticket_number
from ..utils.time import now_ms

logger = get_logger(__name__)

PREFIX_PATTERN = re.compile(r"^[A-Z0-9]{1,5}$")
COUNTER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_\-]{1,40}$")


class CounterConfig(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: Optional[str] = None
    name: str
    prefix: str


class CallNextRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    notify: bool = True
    inline_buttons: Optional[List[Any]] = Field(None, alias="inlineButtons")
    explore_url: Optional[str] = Field(None, alias="exploreUrl")


def normalize_prefix(raw: Any) -> str:
    prefix = str(raw or "").strip().upper()
    if not PREFIX_PATTERN.match(prefix):
        raise ValidationError(
            "Prefix must be 1-5 letters or digits",
            details={"prefix": raw},
        )
    return prefix


class CounterService:
    """Counter state machine for one tenant"""

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

    # =========================================================================
    # Operator PIN
    # =========================================================================

    async def verify_pin(self, pin: Optional[str]) -> None:
        expected = await self.store.get("settings/pin")
        if expected in (None, ""):
            raise ServerMisconfiguredError("Operator PIN not configured for this tenant")
        if not pin or not hmac.compare_digest(str(pin).encode(), str(expected).encode()):
            raise UnauthorizedError("Invalid operator PIN")

    # =========================================================================
    # Reads
    # =========================================================================

    async def list_counters(self) -> List[Counter]:
        raw = await self.store.get("counters")
        if not isinstance(raw, dict):
            return []
        counters = [
            Counter.model_validate({**value, "id": key})
            for key, value in raw.items()
            if isinstance(value, dict)
        ]
        return sorted(counters, key=lambda c: c.id)

    async def get_counter(self, counter_id: str) -> Counter:
        if not COUNTER_ID_PATTERN.match(counter_id or ""):
            raise ValidationError("Invalid counter id", details={"counterId": counter_id})
        raw = await self.store.get(f"counters/{counter_id}")
        if not isinstance(raw, dict):
            raise CounterNotFoundError(f"Counter '{counter_id}' not found", details={"counterId": counter_id})
        return Counter.model_validate({**raw, "id": counter_id})

    async def _counter_base(self) -> int:
        value = await self.store.get("settings/counterBase")
        try:
            return max(0, int(value)) if value is not None else 1
        except (TypeError, ValueError):
            return 1

    async def _write(self, counter: Counter, action: CounterAction) -> Counter:
        await self.store.batch().set(f"counters/{counter.id}", counter.to_db()).commit()
        logger.info(
            f"Counter {counter.id} {action.value}: nowServing={counter.now_serving} lastIssued={counter.last_issued}",
            extra={"tenant": self.tenant, "action": action.value},
        )
        return counter

    # =========================================================================
    # Actions
    # =========================================================================

    async def setup_counters(self, configs: List[CounterConfig]) -> List[Counter]:
        """Replace the tenant's counters with a fresh set"""
        if not configs:
            raise ValidationError("At least one counter is required")
        base = await self._counter_base()
        counters: Dict[str, Counter] = {}
        prefixes = set()
        for config in configs:
            name = config.name.strip()
            if not name:
                raise ValidationError("Counter name is required")
            prefix = normalize_prefix(config.prefix)
            if prefix in prefixes:
                raise ValidationError(f"Duplicate prefix '{prefix}'", details={"prefix": prefix})
            prefixes.add(prefix)
            counter_id = (config.id or "").strip() or generate_counter_id()
            if not COUNTER_ID_PATTERN.match(counter_id) or counter_id in counters:
                raise ValidationError("Invalid or duplicate counter id", details={"counterId": counter_id})
            counters[counter_id] = Counter(
                id=counter_id, name=name, prefix=prefix, now_serving=base, last_issued=base
            )

        await self.store.batch().set("counters", {k: c.to_db() for k, c in counters.items()}).commit()
        logger.info(f"Configured {len(counters)} counters", extra={"tenant": self.tenant})
        return list(counters.values())

    async def call_next(self, counter_id: str, request: Optional[CallNextRequest] = None) -> Dict[str, Any]:
        """Issue the next number on a counter and optionally notify the queue"""
        request = request or CallNextRequest()
        counter = await self.get_counter(counter_id)
        counter.last_issued += 1
        await self._write(counter, CounterAction.CALL_NEXT)

        called = format_ticket_number(counter.prefix, counter.last_issued, self.settings.ticket_number_padding)
        result: Dict[str, Any] = {"ok": True, "counter": counter.to_db(), "calledFull": called}
        if request.notify:
            notifier = Notifier(self.store, self.tickets, self.telegram, self.settings, clock=self._clock)
            try:
                result["notify"] = await notifier.notify(NotifyCounterRequest(
                    tenant=self.tenant,
                    calledFull=called,
                    counterName=counter.name,
                    inlineButtons=request.inline_buttons,
                    exploreUrl=request.explore_url,
                ))
            except DomainError as e:
                logger.error(
                    f"Notify after call-next failed: {e.message}",
                    extra={"tenant": self.tenant, "error_code": e.error_code},
                )
                result["notify"] = {"ok": False, **e.to_dict()}
        return result

    async def skip(self, counter_id: str) -> Counter:
        counter = await self.get_counter(counter_id)
        counter.now_serving = min(counter.now_serving + 1, counter.last_issued)
        return await self._write(counter, CounterAction.SKIP)

    async def reset(self, counter_id: str) -> Counter:
        counter = await self.get_counter(counter_id)
        base = await self._counter_base()
        counter.now_serving = base
        counter.last_issued = base
        return await self._write(counter, CounterAction.RESET)

    async def update_prefix(self, counter_id: str, prefix: str) -> Counter:
        prefix = normalize_prefix(prefix)
        counters = await self.list_counters()
        if any(c.prefix == prefix and c.id != counter_id for c in counters):
            raise ValidationError(f"Prefix '{prefix}' is already used", details={"prefix": prefix})
        counter = await self.get_counter(counter_id)
        counter.prefix = prefix
        return await self._write(counter, CounterAction.PREFIX)

    async def remove(self, counter_id: str) -> None:
        await self.get_counter(counter_id)
        await self.store.batch().delete(f"counters/{counter_id}").commit()
        logger.info(f"Removed counter {counter_id}", extra={"tenant": self.tenant, "action": "remove"})
