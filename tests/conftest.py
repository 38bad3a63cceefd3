"""
Shared fixtures: an in-process registry server and a recording transport.
"""

import io
import tarfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from modelsync.transfer.fetcher import PAYLOAD_FILES
from modelsync.transfer.transport import Transport


def payload_bytes(identifier: str, filename: str) -> bytes:
    """Deterministic file contents, large enough to span several chunks."""
    return (f"{identifier}:{filename}\n".encode()) * 2048


class FakeRegistry:
    """
    Registry serving ``/model`` and ``/models/{uuid}/{file}`` from a directory.

    Records every request so tests can count network calls.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.records: List[dict] = []
        self.requests: List[str] = []
        self.headers: List[Dict[str, str]] = []
        self.failing_files = set()
        self.listing_status = 200
        self.listing_body: Optional[str] = None
        self.server: Optional[TestServer] = None

    def add(
        self,
        identifier: str,
        name: Optional[str] = None,
        files: Sequence[str] = PAYLOAD_FILES,
        listed: bool = True
    ) -> None:
        directory = self.root / identifier
        directory.mkdir(parents=True, exist_ok=True)
        for filename in files:
            (directory / filename).write_bytes(payload_bytes(identifier, filename))
        if listed:
            self.list(identifier, name)

    def list(self, identifier: str, name: Optional[str] = None) -> None:
        record = {"uuid": identifier}
        if name is not None:
            record["name"] = name
        self.records.append(record)

    @property
    def url(self) -> str:
        return str(self.server.make_url("/")).rstrip("/")

    @property
    def file_requests(self) -> List[str]:
        return [p for p in self.requests if p.startswith("/models/")]

    async def _listing(self, request: web.Request) -> web.StreamResponse:
        self.requests.append(request.path)
        self.headers.append(dict(request.headers))
        if self.listing_status != 200:
            return web.Response(status=self.listing_status, text="unavailable")
        if self.listing_body is not None:
            return web.Response(text=self.listing_body, content_type="application/json")
        return web.json_response({"data": self.records})

    async def _file(self, request: web.Request) -> web.StreamResponse:
        self.requests.append(request.path)
        self.headers.append(dict(request.headers))
        identifier = request.match_info["uuid"]
        filename = request.match_info["filename"]
        if (identifier, filename) in self.failing_files:
            return web.Response(status=500, text="boom")
        path = self.root / identifier / filename
        if not path.is_file():
            raise web.HTTPNotFound()
        return web.FileResponse(path)

    async def start(self) -> None:
        app = web.Application()
        app.router.add_get("/model", self._listing)
        app.router.add_get("/models/{uuid}/{filename}", self._file)
        self.server = TestServer(app)
        await self.server.start_server()

    async def close(self) -> None:
        if self.server is not None:
            await self.server.close()


class RecordingTransport(Transport):
    """Transport that records calls instead of copying anything."""

    def __init__(self):
        self.sent: List[tuple] = []
        self.sent_bytes: Dict[str, bytes] = {}
        self.triggers: List[str] = []
        self.send_error: Optional[Exception] = None
        self.trigger_error: Optional[Exception] = None
        self.on_trigger: Optional[Callable[[], None]] = None

    @property
    def calls(self) -> int:
        return len(self.sent) + len(self.triggers)

    async def send(self, bundle: Path, host: str) -> str:
        bundle = Path(bundle)
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((bundle.name, host))
        self.sent_bytes[bundle.name] = bundle.read_bytes()
        return f"/remote/archives/{bundle.name}"

    async def trigger_import(self, host: str) -> str:
        self.triggers.append(host)
        if self.trigger_error is not None:
            raise self.trigger_error
        if self.on_trigger is not None:
            self.on_trigger()
        return "1 imported"


def write_archive(
    archive_dir: Path,
    identifier: str,
    files: Sequence[str] = PAYLOAD_FILES,
    prefix: Optional[str] = None
) -> Path:
    """Write ``<identifier>.tar.gz`` with the given payload files."""
    archive_dir = Path(archive_dir)
    archive_dir.mkdir(parents=True, exist_ok=True)
    path = archive_dir / f"{identifier}.tar.gz"
    prefix = identifier if prefix is None else prefix

    with tarfile.open(path, "w:gz") as tar:
        for filename in files:
            data = payload_bytes(identifier, filename)
            info = tarfile.TarInfo(f"{prefix}/{filename}")
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return path


@pytest.fixture
def registry(tmp_path):
    """Factory for running fake registries: ``async with registry("source") as source:``."""

    @asynccontextmanager
    async def factory(name: str = "registry"):
        fake = FakeRegistry(tmp_path / "registries" / name)
        await fake.start()
        try:
            yield fake
        finally:
            await fake.close()

    return factory


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def make_archive():
    return write_archive
