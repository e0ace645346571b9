"""Shared fixtures for the Nearby Search test suite.

Provides a Flask test client wired to a temporary SQLite database, plus
a manual executor and fake clock so debounce, throttle and response
ordering can be driven deterministically.
"""

import atexit
import os
import sys
import struct
import tempfile
import zlib
from concurrent.futures import Executor, Future
from unittest.mock import patch

import pytest

# Point the DB at a temp file BEFORE importing app/models (they read DB_PATH at import time)
_test_db_fd, _test_db_path = tempfile.mkstemp(suffix=".db")
os.close(_test_db_fd)  # close the fd immediately; sqlite3 opens its own handle
os.environ["NEARBY_DB_PATH"] = _test_db_path
atexit.register(lambda: os.unlink(_test_db_path) if os.path.exists(_test_db_path) else None)

# No real Nominatim traffic in tests, so no need to honour request spacing
os.environ["NOMINATIM_MIN_SPACING"] = "0"

# The test client always calls from one address
os.environ.setdefault("RATE_LIMIT_DEFAULT", "1000/minute")
os.environ.setdefault("RATE_LIMIT_SUGGEST", "1000/minute")

# Modules are flat at the repository root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import app  # noqa: E402
from models import init_db, _get_db  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_db():
    """Empty the geocode cache before every test."""
    init_db()
    conn = _get_db()
    conn.execute("DELETE FROM geocode_cache")
    conn.commit()
    conn.close()
    yield


@pytest.fixture()
def client():
    app.config["TESTING"] = True
    with app.test_client() as c:
        yield c


class ManualExecutor(Executor):
    """Holds submitted work until the test runs it, in any order."""

    def __init__(self):
        self.pending = []

    def submit(self, fn, *args, **kwargs):
        future = Future()
        self.pending.append((future, fn, args, kwargs))
        return future

    def run(self, index=0):
        future, fn, args, kwargs = self.pending.pop(index)
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future

    def run_all(self):
        while self.pending:
            self.run(0)


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds
        return self.now


@pytest.fixture()
def executor():
    return ManualExecutor()


@pytest.fixture()
def clock():
    return FakeClock()


def _make_tile_png():
    """Minimal 256x256 single-color PNG for mocking OSM tiles (no PIL needed)."""
    def chunk(name, data):
        return struct.pack("!I", len(data)) + name + data + struct.pack(
            "!I", zlib.crc32(name + data) & 0xFFFFFFFF
        )

    sig = b"\x89PNG\r\n\x1a\n"
    ihdr = struct.pack("!IIBBBBB", 256, 256, 8, 2, 0, 0, 0)  # 8-bit RGB
    raw = b"".join(b"\x00" + b"\x00" * (256 * 3) for _ in range(256))
    idat = chunk(b"IDAT", zlib.compress(raw))
    return sig + chunk(b"IHDR", ihdr) + idat + chunk(b"IEND", b"")


@pytest.fixture()
def osm_tiles():
    """Serve every staticmap tile request from a blank PNG."""
    class FakeResponse:
        status_code = 200

        def __init__(self):
            self.content = _make_tile_png()

    with patch("staticmap.staticmap.requests.get",
               side_effect=lambda *a, **k: FakeResponse()) as mock_get:
        yield mock_get
