"""Job event bridge: per-job WebSocket fan-out."""

import asyncio
import json

from services.status_broadcaster import JobEvent


async def test_dispatch_only_reaches_watchers_of_that_job(bridge, fake_websocket):
    watcher, other = fake_websocket(), fake_websocket()
    await bridge.subscribe(watcher, "job_1")
    await bridge.subscribe(other, "job_2")

    delivered = await bridge.dispatch(JobEvent("job_1", "job_completed", "completed").to_dict())

    assert delivered == 1
    assert other.sent == []
    message = json.loads(watcher.sent[0])
    assert message["type"] == "workflow_update"
    assert message["data"]["jobId"] == "job_1"
    assert message["data"]["type"] == "job_completed"


async def test_unsubscribe_stops_delivery(bridge, fake_websocket):
    ws = fake_websocket()
    await bridge.subscribe(ws, "job_1")
    await bridge.unsubscribe(ws, "job_1")

    assert await bridge.dispatch({"jobId": "job_1", "type": "job_active"}) == 0
    assert bridge.subscriber_count("job_1") == 0


async def test_failed_socket_is_dropped_and_others_still_receive(bridge, fake_websocket):
    healthy, broken = fake_websocket(), fake_websocket(fail=True)
    await bridge.subscribe(healthy, "job_1")
    await bridge.subscribe(broken, "job_1")
    await bridge.subscribe(broken, "job_9")

    delivered = await bridge.dispatch({"jobId": "job_1", "type": "job_active"})

    assert delivered == 1
    assert len(healthy.sent) == 1
    assert bridge.subscriber_count("job_1") == 1
    assert bridge.subscriber_count("job_9") == 0


async def test_event_without_job_id_is_dropped(bridge, fake_websocket):
    ws = fake_websocket()
    await bridge.subscribe(ws, "job_1")
    assert await bridge.dispatch({"type": "job_active"}) == 0
    assert ws.sent == []


async def test_published_events_flow_through_the_channel(bridge, fake_websocket):
    ws = fake_websocket()
    await bridge.subscribe(ws, "job_1")
    await bridge.start()
    # Let the listener register on the channel
    await asyncio.sleep(0.01)

    try:
        await bridge.publish(JobEvent("job_2", "job_active", "active"))
        await bridge.publish(JobEvent("job_1", "job_failed", "failed", error="boom"))
        for _ in range(50):
            if ws.sent:
                break
            await asyncio.sleep(0.01)
    finally:
        await bridge.stop()

    assert len(ws.sent) == 1
    data = json.loads(ws.sent[0])["data"]
    assert data["jobId"] == "job_1"
    assert data["error"] == "boom"


async def test_publish_failure_is_not_raised(bridge, cache):
    async def broken_publish(channel, message):
        raise ConnectionError("broker down")

    cache.publish = broken_publish
    assert await bridge.publish(JobEvent("job_1", "job_active", "active")) == 0
