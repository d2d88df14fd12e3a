"""
상품 변경 SSE 스트림 테스트.
"""
import json

import pytest

from flipforge.api.endpoints.product_streams import change_event_generator
from flipforge.services.events import CHANGE_EVENTS


class FakeRequest:
    def __init__(self):
        self.disconnected = False

    async def is_disconnected(self) -> bool:
        return self.disconnected


def _parse(frame: str):
    lines = frame.strip().split("\n")
    name = lines[0].removeprefix("event: ")
    data = json.loads(lines[1].removeprefix("data: "))
    return name, data


@pytest.mark.integration
@pytest.mark.asyncio
async def test_stream_forwards_only_target_product_changes(store, events):
    product = store.create_product(name="Sony a6400")
    gen = change_event_generator(FakeRequest(), events, product.id, heartbeat=0.05)

    name, data = _parse(await gen.__anext__())
    assert name == "ready"
    assert data == {"productId": str(product.id)}

    other = store.create_product(name="Canon EOS R6")
    store.append_log(other.id, 1, "not for us")
    store.append_log(product.id, 2, "Stage 2 scheduled", action="stage_scheduled")

    name, data = _parse(await gen.__anext__())
    assert name == "log"
    assert data["productId"] == str(product.id)
    assert data["action"] == "stage_scheduled"

    # 큐가 비면 heartbeat
    assert await gen.__anext__() == ": keep-alive\n\n"

    await gen.aclose()
    for event_type in CHANGE_EVENTS:
        assert events.handler_count(event_type) == 0


@pytest.mark.integration
@pytest.mark.asyncio
async def test_stream_emits_phase_and_product_changes(store, events, machine):
    product = store.create_product(name="Sony a6400")
    gen = change_event_generator(FakeRequest(), events, product.id, heartbeat=0.05)
    await gen.__anext__()

    machine.start(product.id, 1)

    names = []
    for _ in range(3):
        name, _data = _parse(await gen.__anext__())
        names.append(name)
    assert set(names) <= {"phase", "product", "log"}
    assert "phase" in names
    await gen.aclose()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_stream_stops_when_client_disconnects(store, events):
    product = store.create_product(name="Sony a6400")
    request = FakeRequest()
    gen = change_event_generator(request, events, product.id, heartbeat=0.05)
    await gen.__anext__()

    request.disconnected = True
    with pytest.raises(StopAsyncIteration):
        await gen.__anext__()
    assert events.handler_count(CHANGE_EVENTS[0]) == 0
