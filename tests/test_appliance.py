from __future__ import annotations

import asyncio

from scopecam import events
from scopecam.appliance import Appliance


class FakeSupervisor:
    def __init__(self) -> None:
        self.calls: list[str] = []

    async def start(self) -> None:
        self.calls.append("start")
        events.publish(events.STREAM_STARTED, {"pid": 42, "attempt": 1})

    async def stop(self) -> None:
        self.calls.append("stop")


class FakeCapture:
    def __init__(self, fail_init: bool = False) -> None:
        self.calls: list[str] = []
        self._fail_init = fail_init

    async def initialize(self) -> None:
        self.calls.append("initialize")
        if self._fail_init:
            raise PermissionError("read-only filesystem")

    async def aclose(self) -> None:
        self.calls.append("aclose")


def _run(appliance: Appliance) -> None:
    async def runner():
        stop_event = asyncio.Event()
        task = asyncio.create_task(appliance.run(stop_event))
        await asyncio.sleep(0.01)
        assert events.get_event_bus() is appliance.bus
        stop_event.set()
        await asyncio.wait_for(task, timeout=2.0)

    asyncio.run(runner())


def test_run_starts_and_shuts_down_components_in_order():
    events.reset_for_tests()
    supervisor, capture = FakeSupervisor(), FakeCapture()
    appliance = Appliance({}, supervisor=supervisor, capture=capture)

    _run(appliance)

    assert supervisor.calls == ["start", "stop"]
    assert capture.calls == ["initialize", "aclose"]
    assert events.get_event_bus() is None
    assert [item["type"] for item in appliance.bus.history_snapshot()] == [events.STREAM_STARTED]


def test_capture_directory_failure_does_not_block_media_server(caplog):
    events.reset_for_tests()
    supervisor, capture = FakeSupervisor(), FakeCapture(fail_init=True)

    _run(Appliance({}, supervisor=supervisor, capture=capture))

    assert supervisor.calls == ["start", "stop"]
    assert any("Failed to initialize capture" in record.message for record in caplog.records)
