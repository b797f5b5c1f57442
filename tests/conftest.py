"""Shared test helpers and fixtures."""

import asyncio
import hashlib
import json
from typing import Dict, List, Optional, Tuple

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from gamefetch.download import CallbackSink
from gamefetch.models import DownloadConfig, EventType, ProgressEvent


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class Origin:
    """In-process file origin with Range support and scripted faults.

    Faults are queued per path and consumed one per request:
    ``"500"``, ``"corrupt"`` (flip every byte), ``"ignore-range"`` (answer a
    ranged request with the whole file), ``"drop"`` (send half the body and
    close the connection) and ``"stall"`` (send half the body, then go quiet
    for ``stall_for`` seconds).
    """

    def __init__(self):
        self.files: Dict[str, bytes] = {}
        self.requests: List[Tuple[str, Optional[str]]] = []
        self.faults: Dict[str, List[str]] = {}
        self.base_url = ""
        self.stall_for = 3.0

    def add(self, path: str, data: bytes) -> None:
        self.files[path] = data

    def fail(self, path: str, *faults: str) -> None:
        self.faults.setdefault(path, []).extend(faults)

    def set_manifest(self, files: List[dict], game_version: str = "1.0") -> None:
        self.add(
            "checksums.json",
            json.dumps({"game_version": game_version, "files": files}).encode(),
        )

    def requests_for(self, path: str) -> List[Optional[str]]:
        """Range headers of every request made for ``path``."""
        return [rng for name, rng in self.requests if name == path]

    def file_requests(self) -> int:
        return sum(1 for name, _ in self.requests if name != "checksums.json")

    async def handle(self, request: web.Request) -> web.StreamResponse:
        name = request.match_info["name"]
        rng = request.headers.get("Range")
        self.requests.append((name, rng))

        if name not in self.files:
            return web.Response(status=404)

        queued = self.faults.get(name)
        fault = queued.pop(0) if queued else None
        if fault == "500":
            return web.Response(status=500)

        data = self.files[name]
        if fault == "corrupt":
            data = bytes(b ^ 0xFF for b in data)

        start = 0
        status = 200
        headers = {}
        if rng and fault != "ignore-range":
            start = int(rng[len("bytes="):].split("-")[0])
            if start >= len(data):
                return web.Response(
                    status=416, headers={"Content-Range": f"bytes */{len(data)}"}
                )
            status = 206
            headers["Content-Range"] = f"bytes {start}-{len(data) - 1}/{len(data)}"

        body = data[start:]
        if fault in ("drop", "stall"):
            response = web.StreamResponse(status=status, headers=headers)
            response.content_length = len(body)
            await response.prepare(request)
            await response.write(body[: len(body) // 2])
            if fault == "stall":
                await asyncio.sleep(self.stall_for)
            request.transport.close()
            return response

        return web.Response(status=status, body=body, headers=headers)


@pytest.fixture
async def origin():
    """Serve Origin.files over HTTP for the duration of a test."""
    origin = Origin()
    app = web.Application()
    app.router.add_get("/{name:.+}", origin.handle)
    server = TestServer(app)
    await server.start_server()
    origin.base_url = str(server.make_url("/")).rstrip("/")
    yield origin
    await server.close()


def make_config(origin: Origin, install_dir, **overrides) -> DownloadConfig:
    """A DownloadConfig with retry delays shrunk for tests."""
    values = dict(
        base_url=origin.base_url,
        install_dir=str(install_dir),
        backoff_base=0.0,
        backoff_jitter=0.0,
        range_retry_delay=0.0,
        part_retry_delay=0.0,
        pause_poll_interval=0.01,
        watchdog_interval=0.2,
        stall_timeout=1.0,
        stall_timeout_late=1.0,
    )
    values.update(overrides)
    return DownloadConfig(**values)


class RecordingSink(CallbackSink):
    """Keeps every emitted event in order."""

    def __init__(self):
        self.events: List[ProgressEvent] = []
        super().__init__(self.events.append)

    def of(self, event_type: EventType) -> List[ProgressEvent]:
        return [e for e in self.events if e.type is event_type]

    def byte_total(self) -> int:
        return sum(e.delta for e in self.of(EventType.BYTES))


@pytest.fixture
def sink():
    return RecordingSink()
