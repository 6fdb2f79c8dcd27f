"""
geo.py — Best-effort IP geolocation
===================================
The resolver is an external collaborator: any failure (private address,
timeout, bad payload, non-2xx) simply yields ``None`` and the visit is
logged without geo hints.
"""
from __future__ import annotations

import ipaddress
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock
from typing import Optional, Tuple

import httpx

logger = logging.getLogger("threatguard.geo")

_FIELDS = "status,message,country,countryCode,region,city,lat,lon,isp,org,proxy,hosting"


@dataclass(frozen=True)
class GeoLocation:
    ip: str
    country: str
    country_code: str
    city: str
    latitude: float
    longitude: float
    region: str = ""
    isp: str = ""
    org: str = ""
    is_proxy: bool = False
    is_hosting: bool = False


def is_public_ip(ip: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return addr.is_global


class GeoResolver:
    """Interface for IP to location lookups."""

    def resolve(self, ip: str) -> Optional[GeoLocation]:
        raise NotImplementedError


class NullGeoResolver(GeoResolver):
    """Resolver that knows nothing; the default when geolocation is disabled."""

    def resolve(self, ip: str) -> Optional[GeoLocation]:
        return None


class IpApiGeoResolver(GeoResolver):
    """ip-api.com style JSON lookups with a bounded per-IP TTL cache.

    The cache holds at most ``cache_max_entries`` lookups in insertion
    order; expired and overflowing entries are evicted oldest first on
    every insert.
    """

    def __init__(
        self,
        url_template: str = "http://ip-api.com/json/{ip}",
        timeout: float = 2.0,
        cache_ttl_seconds: int = 86400,
        cache_max_entries: int = 10000,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._url_template = url_template
        self._timeout = timeout
        self._ttl = cache_ttl_seconds
        self._max_entries = cache_max_entries
        self._client = client
        self._cache: OrderedDict[str, Tuple[float, GeoLocation]] = OrderedDict()
        self._lock = Lock()

    def resolve(self, ip: str) -> Optional[GeoLocation]:
        if not is_public_ip(ip):
            return None

        now = time.monotonic()
        with self._lock:
            cached = self._cache.get(ip)
        if cached and now - cached[0] < self._ttl:
            return cached[1]

        location = self._fetch(ip)
        if location is not None:
            self._remember(ip, location, now)
        return location

    def _remember(self, ip: str, location: GeoLocation, now: float) -> None:
        with self._lock:
            self._cache[ip] = (now, location)
            self._cache.move_to_end(ip)
            while self._cache:
                oldest, (stamp, _) = next(iter(self._cache.items()))
                if len(self._cache) <= self._max_entries and now - stamp < self._ttl:
                    break
                del self._cache[oldest]

    def _get(self, url: str) -> httpx.Response:
        params = {"fields": _FIELDS}
        if self._client is not None:
            return self._client.get(url, params=params, timeout=self._timeout)
        with httpx.Client(timeout=self._timeout) as client:
            return client.get(url, params=params)

    def _fetch(self, ip: str) -> Optional[GeoLocation]:
        url = self._url_template.format(ip=ip)
        try:
            resp = self._get(url)
            if resp.status_code >= 400:
                logger.debug("Geo lookup for %s returned %d", ip, resp.status_code)
                return None
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.debug("Geo lookup for %s failed: %s", ip, exc)
            return None

        if not isinstance(data, dict) or data.get("status") == "fail":
            return None
        return GeoLocation(
            ip=ip,
            country=data.get("country") or "Unknown",
            country_code=data.get("countryCode") or "XX",
            city=data.get("city") or "Unknown",
            latitude=float(data.get("lat") or 0.0),
            longitude=float(data.get("lon") or 0.0),
            region=data.get("region") or "",
            isp=data.get("isp") or "",
            org=data.get("org") or "",
            is_proxy=bool(data.get("proxy")),
            is_hosting=bool(data.get("hosting")),
        )


_COUNTRY_CODES = {
    "United States": "US", "United Kingdom": "GB", "Canada": "CA", "Germany": "DE",
    "France": "FR", "Spain": "ES", "Italy": "IT", "Netherlands": "NL",
    "Australia": "AU", "Japan": "JP", "China": "CN", "India": "IN",
    "Brazil": "BR", "Mexico": "MX", "Argentina": "AR", "Colombia": "CO",
    "Chile": "CL", "Peru": "PE", "Russia": "RU", "South Korea": "KR",
    "Singapore": "SG", "Hong Kong": "HK", "Taiwan": "TW", "Indonesia": "ID",
    "Thailand": "TH", "Vietnam": "VN", "Philippines": "PH", "Malaysia": "MY",
    "Poland": "PL", "Sweden": "SE", "Norway": "NO", "Denmark": "DK",
    "Finland": "FI", "Switzerland": "CH", "Austria": "AT", "Belgium": "BE",
    "Portugal": "PT", "Ireland": "IE", "Czech Republic": "CZ", "Romania": "RO",
    "Ukraine": "UA", "Turkey": "TR", "Israel": "IL", "South Africa": "ZA",
    "Egypt": "EG", "United Arab Emirates": "AE", "Saudi Arabia": "SA",
    "New Zealand": "NZ",
}


def country_code(country: Optional[str]) -> str:
    """ISO-3166 alpha-2 code for a country name, falling back to its first two letters."""
    if not country:
        return "XX"
    return _COUNTRY_CODES.get(country, country[:2].upper())
