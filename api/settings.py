"""Runtime configuration, read from environment variables."""

import os

VERSION = "1.2.0"

# ── Databases ─────────────────────────────────────────────────────
DB_DIR = os.environ.get("GEOIP_DB_DIR", "./maxmind_db")

ASN_URL = os.environ.get("GEOIP_ASN_URL", "https://git.io/GeoLite2-ASN.mmdb")
CITY_URL = os.environ.get("GEOIP_CITY_URL", "https://git.io/GeoLite2-City.mmdb")
COUNTRY_URL = os.environ.get("GEOIP_COUNTRY_URL", "https://git.io/GeoLite2-Country.mmdb")

MAX_AGE_DAYS = int(os.environ.get("GEOIP_MAX_AGE_DAYS", "30"))
CHECK_INTERVAL_HOURS = float(os.environ.get("GEOIP_CHECK_INTERVAL_HOURS", "24"))
DOWNLOAD_TIMEOUT = float(os.environ.get("GEOIP_DOWNLOAD_TIMEOUT", "300"))

# ── Server ────────────────────────────────────────────────────────
HOST = os.environ.get("HOST", "").strip()
BIND = os.environ.get("BIND", "0.0.0.0")
PORT = int(os.environ.get("PORT", "5324"))
SSL_CERT = os.environ.get("SSL_CERT", "")
SSL_KEY = os.environ.get("SSL_KEY", "")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "info")


def database_sources(db_dir: str = DB_DIR) -> list[tuple[str, str, str]]:
    """Return the (kind, url, local path) triple for every database."""
    return [
        ("asn", ASN_URL, os.path.join(db_dir, "GeoLite2-ASN.mmdb")),
        ("city", CITY_URL, os.path.join(db_dir, "GeoLite2-City.mmdb")),
        ("country", COUNTRY_URL, os.path.join(db_dir, "GeoLite2-Country.mmdb")),
    ]


def validate_ssl(cert: str = SSL_CERT, key: str = SSL_KEY) -> bool:
    """Return True if TLS is configured. Raises ValueError on a half-configured pair."""
    if bool(cert) != bool(key):
        raise ValueError("both SSL_CERT and SSL_KEY must be set to enable TLS")
    return bool(cert)
