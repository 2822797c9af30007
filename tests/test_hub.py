"""Tests for the broadcast hub."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from render_watch.hub import BroadcastHub, Connection


@pytest.fixture
def hub(store):
    return BroadcastHub(store, queue_size=2)


async def _until(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        assert loop.time() < deadline, "condition not met in time"
        await asyncio.sleep(0.01)


def _totals(websocket) -> list[int]:
    return [call.args[0]["totalFrames"] for call in websocket.send_json.call_args_list]


def test_offer_drops_oldest_when_full():
    conn = Connection(AsyncMock(), asyncio.Queue(maxsize=2))

    for total in (1, 2, 3):
        conn.offer({"type": "update", "totalFrames": total})

    assert conn.dropped == 1
    assert [conn.queue.get_nowait()["totalFrames"] for _ in range(2)] == [2, 3]


@pytest.mark.asyncio
async def test_slow_viewer_loses_only_its_own_backlog(hub, store):
    hub.attach(asyncio.get_running_loop())
    gate = asyncio.Event()

    async def stuck_send(message):
        await gate.wait()

    slow_ws = AsyncMock()
    slow_ws.send_json.side_effect = stuck_send
    fast_ws = AsyncMock()

    slow = await hub.connect(slow_ws)
    await hub.connect(fast_ws)
    # The slow viewer's sender is now stuck on its initial state.
    await _until(lambda: slow_ws.send_json.call_count == 1)

    for sent, total in enumerate((101, 102, 103, 104), start=2):
        hub.publish(store.set_manual_total(total))
        await _until(lambda n=sent: fast_ws.send_json.call_count == n)

    assert _totals(fast_ws) == [100, 101, 102, 103, 104]
    assert slow.dropped == 2

    gate.set()
    await _until(lambda: slow_ws.send_json.call_count == 3)
    assert _totals(slow_ws) == [100, 103, 104]

    await hub.close_all()
    assert hub.connection_count == 0


@pytest.mark.asyncio
async def test_send_failure_drops_only_that_viewer(hub, store):
    hub.attach(asyncio.get_running_loop())
    broken_ws = AsyncMock()
    broken_ws.send_json.side_effect = RuntimeError("connection reset")
    healthy_ws = AsyncMock()

    await hub.connect(broken_ws)
    await hub.connect(healthy_ws)
    await _until(lambda: hub.connection_count == 1)

    hub.publish(store.set_manual_total(60))

    await _until(lambda: healthy_ws.send_json.call_count == 2)
    assert _totals(healthy_ws) == [100, 60]
    assert broken_ws.send_json.call_count == 1

    await hub.close_all()


@pytest.mark.asyncio
async def test_request_state_answers_only_the_requester(hub):
    hub.attach(asyncio.get_running_loop())
    asking_ws = AsyncMock()
    other_ws = AsyncMock()
    asking = await hub.connect(asking_ws)
    await hub.connect(other_ws)
    await _until(lambda: other_ws.send_json.call_count == 1)

    await hub.handle_message(asking, '{"type": "requestState"}')

    await _until(lambda: asking_ws.send_json.call_count == 2)
    assert asking_ws.send_json.call_args.args[0]["type"] == "initialState"
    await asyncio.sleep(0.05)
    assert other_ws.send_json.call_count == 1

    await hub.close_all()
