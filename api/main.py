"""FastAPI backend – IP geolocation, network and ASN lookups."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse

import settings
from databases import DatabaseRegistry
from geoip import GeoIPError, IPInfo, database_status, lookup_ip, parse_ip
from updater import DatabaseUpdater

log = logging.getLogger("uvicorn.error")

REQUIRED_KINDS = ("asn", "city", "country")
ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


# ── Helpers ───────────────────────────────────────────────────────
def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "0.0.0.0"


def _request_host(host_header: str) -> str:
    """Host header without the port, e.g. "[::1]:80" -> "::1"."""
    if host_header.startswith("["):
        return host_header[1:].split("]", 1)[0]
    if host_header.count(":") == 1:
        return host_header.split(":", 1)[0]
    return host_header


def _lookup(registry: DatabaseRegistry, ip: str) -> IPInfo:
    try:
        parse_ip(ip)
    except ValueError:
        log.warning(f"Invalid IP address provided: {ip}")
        raise HTTPException(400, "Invalid IP address")
    try:
        info = lookup_ip(registry, ip)
    except GeoIPError as e:
        log.error(f"Error getting info for IP {ip}: {e}")
        raise HTTPException(500, f"Error getting IP info: {e}")
    log.info(f"Successfully processed IP {ip} ({info.country_name}, {info.city})")
    return info


# ── App ───────────────────────────────────────────────────────────
def create_app(
    registry: DatabaseRegistry,
    updater: Optional[DatabaseUpdater] = None,
    *,
    allowed_host: str = settings.HOST,
) -> FastAPI:
    """Build the service around an already configured registry.

    With an updater, startup blocks until every database is loaded (a failure
    aborts startup) and the refresh thread runs for the life of the app.
    """
    registry.require(*REQUIRED_KINDS)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if updater is not None:
            updater.initialize()
            updater.start()
        yield
        if updater is not None:
            updater.stop(timeout=5)
        registry.clear()

    app = FastAPI(title="ipgeo", version=settings.VERSION, docs_url=None, redoc_url=None, lifespan=lifespan)
    app.state.registry = registry

    @app.middleware("http")
    async def check_host(request: Request, call_next):
        if allowed_host:
            host = _request_host(request.headers.get("host", ""))
            if host != allowed_host:
                log.warning(f"Request rejected due to incorrect host: {host} (expected {allowed_host})")
                return PlainTextResponse("Forbidden", status_code=403)
        log.info(f"Request received: {request.method} {request.url.path} from {_client_ip(request)}")
        return await call_next(request)

    # Lookups block on the per-database locks, so they run as sync
    # endpoints in the worker thread pool.
    @app.get("/ipgeo", response_model=IPInfo)
    def client_lookup(request: Request):
        ip = _client_ip(request)
        log.info(f"Processing request for client IP: {ip}")
        return _lookup(registry, ip)

    @app.get("/ipgeo/", response_model=IPInfo)
    def empty_lookup():
        return _lookup(registry, "")

    @app.get("/ipgeo/{ip}", response_model=IPInfo)
    def ip_lookup(ip: str):
        log.info(f"Processing request for specific IP: {ip}")
        return _lookup(registry, ip)

    @app.get("/api/health")
    def health():
        return {
            "status": "ok",
            "version": settings.VERSION,
            "ts": datetime.now().isoformat(),
            "databases": {entry.kind: database_status(entry) for entry in registry},
        }

    @app.api_route("/{path:path}", methods=ALL_METHODS, include_in_schema=False)
    def forbidden(path: str):
        log.info(f"Rejecting request with 403 Forbidden: /{path}")
        raise HTTPException(403, "Forbidden")

    return app


def build_app() -> FastAPI:
    """Application wired from the environment configuration."""
    registry = DatabaseRegistry.from_sources(settings.database_sources())
    updater = DatabaseUpdater(
        registry,
        max_age=timedelta(days=settings.MAX_AGE_DAYS),
        check_interval=timedelta(hours=settings.CHECK_INTERVAL_HOURS),
        timeout=settings.DOWNLOAD_TIMEOUT,
    )
    return create_app(registry, updater)


app = build_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    use_ssl = settings.validate_ssl()
    log.info(f"Starting server on {settings.BIND}:{settings.PORT} (ssl={use_ssl})")
    uvicorn.run(
        app,
        host=settings.BIND,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
        ssl_certfile=settings.SSL_CERT or None,
        ssl_keyfile=settings.SSL_KEY or None,
    )
