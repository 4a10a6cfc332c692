from __future__ import annotations

import asyncio
import shutil
from collections import namedtuple
from pathlib import Path

from aiohttp import web
from aiohttp.test_utils import TestServer

from scopecam import health


def _paths_app(handler) -> web.Application:
    app = web.Application()
    app.router.add_get(health.PATHS_LIST_ENDPOINT, handler)
    return app


def _run_probe(handler, stream_path: str = "telescope"):
    async def runner():
        server = TestServer(_paths_app(handler))
        await server.start_server()
        try:
            probe = health.StreamHealthProbe(str(server.make_url("")), stream_path, timeout=1.0)
            return await probe.is_ready()
        finally:
            await server.close()

    return asyncio.run(runner())


def test_ready_path_reports_ready():
    async def handler(request: web.Request) -> web.Response:
        return web.json_response(
            {"items": [{"name": "other", "ready": False}, {"name": "telescope", "ready": True}]}
        )

    assert _run_probe(handler) is True


def test_not_ready_path_reports_not_ready():
    async def handler(request: web.Request) -> web.Response:
        return web.json_response({"items": [{"name": "telescope", "ready": False}]})

    assert _run_probe(handler) is False


def test_missing_path_reports_not_ready():
    async def handler(request: web.Request) -> web.Response:
        return web.json_response({"items": [{"name": "guidecam", "ready": True}]})

    assert _run_probe(handler) is False


def test_malformed_body_reports_not_ready():
    async def handler(request: web.Request) -> web.Response:
        return web.Response(text="{not json", content_type="application/json")

    assert _run_probe(handler) is False


def test_server_error_reports_not_ready():
    async def handler(request: web.Request) -> web.Response:
        return web.json_response({"items": [{"name": "telescope", "ready": True}]}, status=500)

    assert _run_probe(handler) is False


def test_unreachable_api_reports_not_ready():
    async def runner():
        probe = health.StreamHealthProbe("http://127.0.0.1:1", "telescope", timeout=0.5)
        return await probe.is_ready()

    assert asyncio.run(runner()) is False


def test_probe_url_joins_endpoint():
    probe = health.StreamHealthProbe("http://127.0.0.1:9997/", "telescope")
    assert probe.url == "http://127.0.0.1:9997/v3/paths/list"


def test_wait_until_ready_retries_then_succeeds():
    calls = []

    async def handler(request: web.Request) -> web.Response:
        calls.append(request.path)
        ready = len(calls) >= 2
        return web.json_response({"items": [{"name": "telescope", "ready": ready}]})

    async def runner():
        server = TestServer(_paths_app(handler))
        await server.start_server()
        try:
            probe = health.StreamHealthProbe(str(server.make_url("")), "telescope", timeout=1.0)
            return await probe.wait_until_ready(retries=3, delay=0.01)
        finally:
            await server.close()

    assert asyncio.run(runner()) is True
    assert len(calls) == 2


def test_wait_until_ready_gives_up_after_retries(caplog):
    calls = []

    async def handler(request: web.Request) -> web.Response:
        calls.append(request.path)
        return web.json_response({"items": []})

    async def runner():
        server = TestServer(_paths_app(handler))
        await server.start_server()
        try:
            probe = health.StreamHealthProbe(str(server.make_url("")), "telescope", timeout=1.0)
            return await probe.wait_until_ready(retries=3, delay=0.01)
        finally:
            await server.close()

    assert asyncio.run(runner()) is False
    assert len(calls) == 3
    assert any("not ready after 3" in record.message for record in caplog.records)


def test_check_disk_space_reports_threshold(tmp_path: Path):
    roomy = health.check_disk_space(tmp_path, 0)
    assert roomy.sufficient is True
    assert roomy.available_mb >= 0

    impossible = health.check_disk_space(tmp_path, 10**12)
    assert impossible.sufficient is False


def test_check_disk_space_uses_free_megabytes(monkeypatch, tmp_path: Path):
    usage = namedtuple("usage", "total used free")
    monkeypatch.setattr(shutil, "disk_usage", lambda path: usage(0, 0, 499 * 1024 * 1024 + 10))

    result = health.check_disk_space(tmp_path, 500)

    assert result == health.DiskSpace(available_mb=499, sufficient=False)


def test_check_disk_space_failure_is_insufficient(monkeypatch, tmp_path: Path, caplog):
    def boom(path):
        raise OSError("statvfs failed")

    monkeypatch.setattr(shutil, "disk_usage", boom)

    result = health.check_disk_space(tmp_path / "missing", 500)

    assert result == health.DiskSpace(available_mb=0, sufficient=False)
    assert any("Disk space check failed" in record.message for record in caplog.records)
