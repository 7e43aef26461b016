"""GeoIP lookups against the local MaxMind GeoLite2 databases."""

import ipaddress
import os
from datetime import datetime, timezone
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import geoip2.database
import geoip2.errors
from pydantic import BaseModel

if TYPE_CHECKING:
    from databases import DatabaseEntry, DatabaseRegistry


# ── Errors ────────────────────────────────────────────────────────
class GeoIPError(Exception):
    """Base class for every database lifecycle and lookup failure."""


class DownloadError(GeoIPError):
    """A database could not be fetched (network error or non-2xx status)."""


class DatabaseOpenError(GeoIPError):
    """The geoip2 library could not open or parse a database file."""


class DatabaseNotReadyError(GeoIPError):
    """A lookup was attempted on a database that has no open reader."""


class LookupFailedError(GeoIPError):
    pass


class ASNLookupError(LookupFailedError):
    pass


class CityLookupError(LookupFailedError):
    pass


class CountryLookupError(LookupFailedError):
    pass


# ── Readers ───────────────────────────────────────────────────────
# A reader is anything with asn(ip), city(ip), country(ip) and close().
# geoip2.database.Reader is the production implementation.

def open_reader(path: str) -> geoip2.database.Reader:
    """Open a GeoLite2 database file. Raises DatabaseOpenError."""
    try:
        return geoip2.database.Reader(path)
    # maxminddb.InvalidDatabaseError is a RuntimeError
    except (OSError, ValueError, RuntimeError) as e:
        raise DatabaseOpenError(f"cannot open {path}: {e}") from e


class IPInfo(BaseModel):
    ip: str
    network: str = ""
    version: str = "IPv4"
    city: str = ""
    region: str = ""
    region_code: str = ""
    country: str = ""
    country_name: str = ""
    country_code: str = ""
    continent_code: str = ""
    in_eu: bool = False
    postal: str = ""
    latitude: float = 0.0
    longitude: float = 0.0
    timezone: str = ""
    utc_offset: str = ""
    asn: str = ""
    org: str = ""


def _query(entry: "DatabaseEntry", method: str, ip: str, error_cls: type[LookupFailedError]):
    """Run one lookup under the entry's shared lock. Returns None for unknown addresses."""
    with entry.read() as reader:
        try:
            return getattr(reader, method)(ip)
        except geoip2.errors.AddressNotFoundError:
            return None
        except (geoip2.errors.GeoIP2Error, ValueError, TypeError) as e:
            raise error_cls(f"{method} lookup error: {e}") from e


def _utc_offset(tz_name: str) -> str:
    """Whole-hour UTC offset of a timezone right now, e.g. "-0500"."""
    try:
        offset = datetime.now(ZoneInfo(tz_name)).utcoffset()
    except (ZoneInfoNotFoundError, ValueError):
        return ""
    if offset is None:
        return ""
    hours = int(offset.total_seconds() / 3600)
    sign = "-" if hours < 0 else "+"
    return f"{sign}{abs(hours):02d}00"


def _approximate_network(addr: ipaddress.IPv4Address | ipaddress.IPv6Address) -> str:
    prefix = 24 if addr.version == 4 else 64
    return str(ipaddress.ip_network(f"{addr}/{prefix}", strict=False))


def parse_ip(ip: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address:
    """Parse a plain IP address; IPv4-mapped IPv6 addresses become IPv4.

    Raises ValueError for malformed or zone-scoped ("fe80::1%eth0") addresses.
    """
    addr = ipaddress.ip_address(ip)
    if addr.version == 6:
        if addr.scope_id:
            raise ValueError(f"scoped address not supported: {ip}")
        if addr.ipv4_mapped is not None:
            return addr.ipv4_mapped
    return addr


def lookup_ip(registry: "DatabaseRegistry", ip: str) -> IPInfo:
    """Build the combined ASN/city/country record for an IP address.

    Each database is read under its own shared lock, held only for the single
    lookup call. The first failing lookup aborts the whole record.
    Raises ValueError for a malformed address.
    """
    addr = parse_ip(ip)
    info = IPInfo(ip=str(addr), version="IPv4" if addr.version == 4 else "IPv6")

    asn = _query(registry.get("asn"), "asn", info.ip, ASNLookupError)
    if asn is not None:
        info.asn = f"AS{asn.autonomous_system_number or 0}"
        info.org = asn.autonomous_system_organization or ""
    else:
        info.asn = "AS0"

    network = None
    city = _query(registry.get("city"), "city", info.ip, CityLookupError)
    if city is not None:
        info.city = city.city.name or ""
        if city.subdivisions:
            info.region = city.subdivisions[0].name or ""
            info.region_code = city.subdivisions[0].iso_code or ""
        info.postal = city.postal.code or ""
        info.latitude = city.location.latitude or 0.0
        info.longitude = city.location.longitude or 0.0
        info.timezone = city.location.time_zone or ""
        network = getattr(city.traits, "network", None)

    country = _query(registry.get("country"), "country", info.ip, CountryLookupError)
    if country is not None:
        info.country = country.country.iso_code or ""
        info.country_code = info.country
        info.country_name = country.country.name or ""
        info.continent_code = country.continent.code or ""
        info.in_eu = bool(country.country.is_in_european_union)

    if info.timezone:
        info.utc_offset = _utc_offset(info.timezone)
    info.network = str(network) if network is not None else _approximate_network(addr)
    return info


def database_status(entry: "DatabaseEntry") -> dict:
    """Return status info about one database."""
    db_exists = os.path.exists(entry.local_path)
    info = {
        "loaded": entry.reader is not None,
        "db_exists": db_exists,
        "db_path": entry.local_path,
        "db_size_mb": round(os.path.getsize(entry.local_path) / 1048576, 1) if db_exists else 0,
        "last_refreshed": entry.last_refreshed.isoformat() if entry.last_refreshed else None,
    }
    with entry.read(required=False) as reader:
        metadata = getattr(reader, "metadata", None)
        meta = metadata() if callable(metadata) else None
    if meta is not None:
        info["db_type"] = meta.database_type
        info["build_date"] = datetime.fromtimestamp(meta.build_epoch, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")
        info["node_count"] = meta.node_count
    return info
