from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
import asyncio
import json
import logging
import uuid

from flipforge.api.deps import get_runtime
from flipforge.runtime import PipelineRuntime
from flipforge.services.events import CHANGE_EVENTS, LOG_APPENDED, PHASE_CHANGED, PRODUCT_CHANGED, EventBus

router = APIRouter()
logger = logging.getLogger(__name__)

SSE_EVENT_NAMES = {PRODUCT_CHANGED: "product", PHASE_CHANGED: "phase", LOG_APPENDED: "log"}


async def change_event_generator(request: Request, bus: EventBus, product_id: uuid.UUID, heartbeat: float = 15.0):
    """
    Generates SSE events for one product's record changes.
    """
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()
    target = str(product_id)

    def make_handler(event_type: str):
        def handler(data):
            if isinstance(data, dict) and data.get("productId") == target:
                # 스토어는 워커 스레드에서 emit 할 수 있음
                loop.call_soon_threadsafe(queue.put_nowait, (event_type, data))
        return handler

    handlers = {event_type: make_handler(event_type) for event_type in CHANGE_EVENTS}
    for event_type, handler in handlers.items():
        bus.subscribe(event_type, handler)

    try:
        yield f"event: ready\ndata: {json.dumps({'productId': target})}\n\n"
        while True:
            if await request.is_disconnected():
                break
            try:
                event_type, data = await asyncio.wait_for(queue.get(), timeout=heartbeat)
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
                continue
            yield f"event: {SSE_EVENT_NAMES[event_type]}\ndata: {json.dumps(data, default=str)}\n\n"
    finally:
        for event_type, handler in handlers.items():
            bus.unsubscribe(event_type, handler)
        logger.debug(f"[SSE] Stream closed for product={target}")


@router.get("/{product_id}/events")
async def stream_product_events(request: Request, product_id: uuid.UUID, runtime: PipelineRuntime = Depends(get_runtime)):
    runtime.store.require_product(product_id)
    return StreamingResponse(
        change_event_generator(request, runtime.events, product_id),
        media_type="text/event-stream",
    )
