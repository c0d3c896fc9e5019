import asyncio
import json

from src.scaffolder.api.routers.status import SSE_HEADERS, event_stream, format_sse
from src.scaffolder.infrastructure.event_bus import StatusEventBus, StatusReporter


def test_format_sse_frames_json_payload():
    frame = format_sse({"type": "status", "message": "hi"})
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    assert json.loads(frame[len("data: "):])["message"] == "hi"


def test_event_stream_sends_connected_then_backlog_and_releases_channel():
    async def scenario():
        bus = StatusEventBus(mirror=False)
        StatusReporter(bus, "conv-sse").emit("build", "hello", progress=50)
        stream = event_stream(bus, "conv-sse", heartbeat_seconds=5)
        frames = [await stream.__anext__() for _ in range(2)]
        connected_during = bus.is_connected("conv-sse")
        await stream.aclose()
        return frames, connected_during, bus.is_connected("conv-sse")

    frames, connected_during, connected_after = asyncio.run(scenario())
    payloads = [json.loads(f[len("data: "):]) for f in frames]
    assert payloads[0]["type"] == "connected"
    assert payloads[1]["message"] == "hello"
    assert payloads[1]["progress"] == 50
    assert connected_during is True
    assert connected_after is False


def test_sse_headers_disable_proxy_buffering():
    assert SSE_HEADERS["X-Accel-Buffering"] == "no"
    assert "no-cache" in SSE_HEADERS["Cache-Control"]
