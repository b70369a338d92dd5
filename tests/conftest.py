"""Shared pytest fixtures for Sampler tests.

This module contains common fixtures used across multiple test files:
temporary database and storage roots, a fake external tool runner standing
in for yt-dlp and ffmpeg, orchestrators and the API test client.
"""

import io
import json
import tempfile
import threading
import time
import wave
from pathlib import Path

import numpy as np
import pytest
from fastapi.testclient import TestClient

from sampler.db import init_db
from sampler.orchestrator import PipelineOrchestrator
from sampler.scheduler import DISPATCH_INLINE, DISPATCH_THREADS
from sampler.storage import Storage
from sampler.utils.external import ToolResult
from services.ingest_api.main import app, override_orchestrator

DEFAULT_PROBE = {
    "extractor": "youtube",
    "duration": 120,
    "title": "Drum Loop 120bpm",
    "alt_title": None,
    "webpage_url": "https://www.youtube.com/watch?v=abc123",
    "tags": ["drums", "loop"],
    "thumbnail": "https://i.ytimg.com/vi/abc123/hqdefault.jpg",
}

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 256
JPEG_BYTES = b"\xff\xd8\xff\xe0fake-jpeg" + b"\x00" * 256 + b"\xff\xd9"


class FakeToolRunner:
    """Stand-in for run_tool that emulates yt-dlp and ffmpeg.

    Operations are classified from argv:
    - probe: yt-dlp --dump-json (prints self.probe as JSON)
    - download: yt-dlp download (writes a file at the --output template)
    - encode: ffmpeg ... -f mp3 <out> (writes fake MP3 bytes to <out>)
    - verify: ffmpeg ... -f null -
    - decode: ffmpeg ... -f s16le - (returns a 1s sine as int16 PCM)
    - thumbnail: ffmpeg ... -f image2 <out> (writes fake JPEG bytes to <out>)

    Any operation name added to `fail` returns exit code 1.
    """

    def __init__(self):
        self.calls: list[tuple[str, list[str]]] = []
        self.probe: dict = dict(DEFAULT_PROBE)
        self.fail: set[str] = set()
        self.delays: dict[str, float] = {}
        self._lock = threading.Lock()

    @staticmethod
    def classify(argv: list[str]) -> str:
        if Path(argv[0]).name == "yt-dlp":
            return "probe" if "--dump-json" in argv else "download"
        muxer = argv[argv.index("-f") + 1] if "-f" in argv else ""
        ops = {"mp3": "encode", "null": "verify", "s16le": "decode", "image2": "thumbnail"}
        return ops.get(muxer, "unknown")

    def ops(self) -> list[str]:
        with self._lock:
            return [op for op, _ in self.calls]

    def __call__(self, argv, timeout=None, text=True, allowed=None) -> ToolResult:
        argv = [str(arg) for arg in argv]
        op = self.classify(argv)
        with self._lock:
            self.calls.append((op, argv))

        if self.delays.get(op):
            time.sleep(self.delays[op])

        empty = "" if text else b""
        if op in self.fail:
            return ToolResult(tuple(argv), 1, empty, f"{op}: simulated failure")

        if op == "probe":
            return ToolResult(tuple(argv), 0, json.dumps(self.probe) + "\n", "")
        if op == "download":
            template = argv[argv.index("--output") + 1]
            out = Path(template.replace("%(ext)s", "webm"))
            out.parent.mkdir(parents=True, exist_ok=True)
            out.write_bytes(b"\x1aE\xdf\xa3fake-webm" * 64)
            return ToolResult(tuple(argv), 0, empty, "")
        if op == "encode":
            Path(argv[-1]).write_bytes(b"ID3\x03fake-mp3-frames" * 128)
            return ToolResult(tuple(argv), 0, empty, "")
        if op == "thumbnail":
            Path(argv[-1]).write_bytes(JPEG_BYTES)
            return ToolResult(tuple(argv), 0, empty, "")
        if op == "decode":
            t = np.arange(8000) / 8000.0
            pcm = (np.sin(2 * np.pi * 440 * t) * 16384).astype("<i2").tobytes()
            return ToolResult(tuple(argv), 0, pcm if not text else "", "")
        return ToolResult(tuple(argv), 0, empty, "")


@pytest.fixture
def temp_db():
    """Create a temporary database for testing.

    Yields:
        tuple: (db_path, engine, SessionFactory)
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        engine, SessionFactory = init_db(db_path)
        yield db_path, engine, SessionFactory
        engine.dispose()


@pytest.fixture
def storages(tmp_path):
    """Private and public storage rooted in a temp directory.

    Returns:
        tuple: (local, public)
    """
    return Storage(tmp_path / "local", name="local"), Storage(tmp_path / "public", name="public")


@pytest.fixture
def fake_tools():
    return FakeToolRunner()


@pytest.fixture
def fake_thumbnail_fetch():
    """Thumbnail fetcher returning fixed PNG bytes, recording requested URLs."""
    requested: list[str] = []

    def fetch(url: str) -> bytes:
        requested.append(url)
        return PNG_BYTES

    fetch.requested = requested
    return fetch


@pytest.fixture
def orchestrator(temp_db, storages, fake_tools, fake_thumbnail_fetch):
    """Orchestrator running every chain link inline in the caller's thread."""
    _, _, SessionFactory = temp_db
    local, public = storages
    orch = PipelineOrchestrator(
        SessionFactory,
        local,
        public,
        run=fake_tools,
        dispatch=DISPATCH_INLINE,
        fetch_thumbnail=fake_thumbnail_fetch,
    )
    yield orch
    orch.shutdown()


@pytest.fixture
def threaded_orchestrator(temp_db, storages, fake_tools, fake_thumbnail_fetch):
    """Orchestrator executing links on a 4-thread pool."""
    _, _, SessionFactory = temp_db
    local, public = storages
    orch = PipelineOrchestrator(
        SessionFactory,
        local,
        public,
        run=fake_tools,
        dispatch=DISPATCH_THREADS,
        workers=4,
        fetch_thumbnail=fake_thumbnail_fetch,
    )
    yield orch
    orch.shutdown(wait=True)


@pytest.fixture
def client(orchestrator):
    """FastAPI test client backed by the inline orchestrator.

    Yields:
        tuple: (test_client, orchestrator)
    """
    override_orchestrator(orchestrator)
    with TestClient(app) as test_client:
        yield test_client, orchestrator
    override_orchestrator(None)


@pytest.fixture
def wav_bytes():
    """A minimal valid WAV file (0.5 s of silence, mono, 22050 Hz)."""
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(22050)
        wf.writeframes(b"\x00\x00" * 11025)
    return buffer.getvalue()
