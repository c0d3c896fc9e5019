import asyncio

from src.scaffolder.infrastructure.event_bus import StatusEventBus, StatusReporter


def test_buffered_events_flush_in_order_after_connected():
    async def scenario():
        bus = StatusEventBus(mirror=False)
        reporter = StatusReporter(bus, "conv-1")
        for i in range(3):
            reporter.emit("build", f"step {i}", progress=i * 10)
        assert bus.buffered_count("conv-1") == 3
        sub = bus.subscribe("conv-1")
        received = [await sub.get(timeout=1) for _ in range(4)]
        sub.close()
        return received

    received = asyncio.run(scenario())
    assert received[0]["type"] == "connected"
    assert received[0]["bufferedCount"] == 3
    assert [e["message"] for e in received[1:]] == ["step 0", "step 1", "step 2"]


def test_live_delivery_does_not_buffer():
    async def scenario():
        bus = StatusEventBus(mirror=False)
        sub = bus.subscribe("conv-live")
        live = bus.publish("conv-live", {"type": "status", "message": "hello"})
        await sub.get(timeout=1)  # connected
        event = await sub.get(timeout=1)
        return live, event, bus.buffered_count("conv-live")

    live, event, buffered = asyncio.run(scenario())
    assert live is True
    assert event["message"] == "hello"
    assert buffered == 0


def test_wait_for_connection_times_out_without_subscriber():
    bus = StatusEventBus(mirror=False)
    assert asyncio.run(bus.wait_for_connection("nobody", 0.05)) is False


def test_wait_for_connection_wakes_on_subscribe():
    async def scenario():
        bus = StatusEventBus(mirror=False)
        waiter = asyncio.create_task(bus.wait_for_connection("conv-2", 1.0))
        await asyncio.sleep(0)
        bus.subscribe("conv-2")
        return await waiter

    assert asyncio.run(scenario()) is True


def test_new_subscriber_replaces_old_and_inherits_unread():
    async def scenario():
        bus = StatusEventBus(mirror=False)
        first = bus.subscribe("conv-3")
        bus.publish("conv-3", {"type": "status", "message": "unread"})
        second = bus.subscribe("conv-3")
        old = await first.get(timeout=1)
        connected = await second.get(timeout=1)
        carried = await second.get(timeout=1)
        return old, connected, carried

    old, connected, carried = asyncio.run(scenario())
    assert old is None
    assert connected["bufferedCount"] == 1
    assert carried["message"] == "unread"


def test_unsubscribe_restores_unread_events_to_buffer():
    async def scenario():
        bus = StatusEventBus(mirror=False)
        sub = bus.subscribe("conv-4")
        bus.publish("conv-4", {"type": "status", "message": "a"})
        bus.publish("conv-4", {"type": "status", "message": "b"})
        sub.close()
        return bus

    bus = asyncio.run(scenario())
    assert bus.is_connected("conv-4") is False
    assert bus.buffered_count("conv-4") == 2


def test_buffer_is_bounded_and_counts_drops():
    bus = StatusEventBus(mirror=False, buffer_max_size=2)
    for i in range(3):
        bus.publish("conv-5", {"type": "status", "message": str(i)})
    stats = bus.get_stats()
    assert bus.buffered_count("conv-5") == 2
    assert stats["detail"]["conv-5"]["dropped"] == 1


def test_transfer_moves_buffer_to_new_channel():
    bus = StatusEventBus(mirror=False)
    StatusReporter(bus, "tmp-1").emit("intake", "Understanding your idea...", progress=10)
    moved = bus.transfer("tmp-1", "conv-6")
    assert moved == 1
    assert bus.buffered_count("tmp-1") == 0
    assert bus.buffered_count("conv-6") == 1


def test_heartbeat_emitted_when_idle():
    async def scenario():
        bus = StatusEventBus(mirror=False)
        sub = bus.subscribe("conv-7")
        stream = sub.events(heartbeat_seconds=0.01)
        first = await stream.__anext__()
        second = await stream.__anext__()
        await stream.aclose()
        sub.close()
        return first, second

    first, second = asyncio.run(scenario())
    assert first["type"] == "connected"
    assert second["type"] == "heartbeat"


def test_scoped_reporter_maps_progress_into_window():
    bus = StatusEventBus(mirror=False)
    reporter = StatusReporter(bus, "conv-8").scoped(0, 25)
    event = reporter.emit("planning", "half way", progress=50)
    assert event.progress == 12


def test_prune_drops_idle_empty_channels():
    bus = StatusEventBus(mirror=False)
    bus.publish("conv-9", {"type": "status", "message": "x"})
    bus.transfer("conv-9", "conv-10")
    removed = bus.prune()
    assert removed >= 1
    assert "conv-9" not in bus.get_stats()["detail"]
