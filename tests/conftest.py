import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from types import SimpleNamespace

import geoip2.errors
import pytest

from databases import DatabaseEntry, DatabaseRegistry
from geoip import DatabaseOpenError


class FakeReader:
    """Deterministic stand-in for geoip2.database.Reader.

    Every answer carries ``tag`` as the ASN organization so tests can tell
    which reader served a lookup. ``errors`` maps a method name to the
    exception it raises.
    """

    def __init__(self, tag="test", errors=None, delay=0.0, close_error=None):
        self.tag = tag
        self.errors = errors or {}
        self.delay = delay
        self.close_error = close_error
        self.closed = False

    def _answer(self, method, build):
        if self.closed:
            raise ValueError("Attempt to read from a closed MaxMind DB.")
        if method in self.errors:
            raise self.errors[method]
        if self.delay:
            time.sleep(self.delay)
        if self.closed:
            raise ValueError("reader closed during lookup")
        return build()

    def asn(self, ip):
        return self._answer("asn", lambda: SimpleNamespace(
            autonomous_system_number=12345,
            autonomous_system_organization=self.tag,
        ))

    def city(self, ip):
        return self._answer("city", lambda: SimpleNamespace(
            city=SimpleNamespace(name="Test City"),
            subdivisions=[SimpleNamespace(name="Test Region", iso_code="TR")],
            postal=SimpleNamespace(code="12345"),
            location=SimpleNamespace(latitude=12.345, longitude=67.89, time_zone="UTC"),
            traits=SimpleNamespace(network=None),
        ))

    def country(self, ip):
        return self._answer("country", lambda: SimpleNamespace(
            country=SimpleNamespace(iso_code="TS", name="Test Country", is_in_european_union=True),
            continent=SimpleNamespace(code="TE"),
        ))

    def close(self):
        self.closed = True
        if self.close_error is not None:
            raise self.close_error


def not_found():
    return geoip2.errors.AddressNotFoundError("The address is not in the database.")


def open_fake(path):
    """Opener that tags the reader with the file's content."""
    with open(path, "rb") as f:
        data = f.read()
    if data == b"corrupt":
        raise DatabaseOpenError(f"invalid database {path}")
    return FakeReader(data.decode())


@pytest.fixture
def registry():
    """Registry with the three kinds, already loaded with fake readers."""
    return DatabaseRegistry([
        DatabaseEntry(kind, f"http://example.invalid/{kind}", f"/nonexistent/{kind}.mmdb", reader=FakeReader(kind))
        for kind in ("asn", "city", "country")
    ])


class _FileServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self):
        super().__init__(("127.0.0.1", 0), _Handler)
        self.routes = {}
        self.hits = {}

    def url(self, path):
        return f"http://127.0.0.1:{self.server_address[1]}{path}"


class _Handler(BaseHTTPRequestHandler):
    def do_GET(self):
        self.server.hits[self.path] = self.server.hits.get(self.path, 0) + 1
        status, body = self.server.routes.get(self.path, (404, b"not found"))
        self.send_response(status)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        pass


@pytest.fixture
def file_server():
    """Local HTTP server; set ``routes[path] = (status, body)``."""
    server = _FileServer()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()
