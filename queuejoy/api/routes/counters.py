"""Counter API Routes - operator console for one tenant"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel

from ..deps import get_counter_service_dep, require_operator_dep
from ...services.counter_service import CallNextRequest, CounterConfig, CounterService
from ...utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter()


class PinRequest(BaseModel):
    pin: str


class PrefixRequest(BaseModel):
    prefix: str


@router.post("/pin")
async def verify_pin(
    request: PinRequest,
    service: CounterService = Depends(get_counter_service_dep),
) -> Dict[str, Any]:
    """Check the operator PIN before the console unlocks"""
    await service.verify_pin(request.pin)
    return {"ok": True}


@router.get("/counters")
async def list_counters(service: CounterService = Depends(require_operator_dep)) -> Dict[str, Any]:
    counters = await service.list_counters()
    return {"ok": True, "counters": [c.to_db() for c in counters]}


@router.post("/counters/setup")
async def setup_counters(
    configs: List[CounterConfig],
    service: CounterService = Depends(require_operator_dep),
) -> Dict[str, Any]:
    counters = await service.setup_counters(configs)
    return {"ok": True, "counters": [c.to_db() for c in counters]}


@router.post("/counters/{counter_id}/call-next")
async def call_next(
    counter_id: str,
    request: Optional[CallNextRequest] = Body(None),
    service: CounterService = Depends(require_operator_dep),
) -> Dict[str, Any]:
    """Issue the next number; notifies the queue unless ``notify`` is false"""
    return await service.call_next(counter_id, request)


@router.post("/counters/{counter_id}/skip")
async def skip(counter_id: str, service: CounterService = Depends(require_operator_dep)) -> Dict[str, Any]:
    counter = await service.skip(counter_id)
    return {"ok": True, "counter": counter.to_db()}


@router.post("/counters/{counter_id}/reset")
async def reset(counter_id: str, service: CounterService = Depends(require_operator_dep)) -> Dict[str, Any]:
    counter = await service.reset(counter_id)
    return {"ok": True, "counter": counter.to_db()}


@router.post("/counters/{counter_id}/prefix")
async def update_prefix(
    counter_id: str,
    request: PrefixRequest,
    service: CounterService = Depends(require_operator_dep),
) -> Dict[str, Any]:
    counter = await service.update_prefix(counter_id, request.prefix)
    return {"ok": True, "counter": counter.to_db()}


@router.delete("/counters/{counter_id}")
async def remove_counter(counter_id: str, service: CounterService = Depends(require_operator_dep)) -> Dict[str, Any]:
    await service.remove(counter_id)
    return {"ok": True, "removed": counter_id}
