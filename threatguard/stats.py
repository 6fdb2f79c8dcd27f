"""
stats.py — Dashboard aggregation over the visit log
===================================================
A read-only reducer: every figure is derived from visits, active blocks and
alerts as they are in the store at call time. Nothing is cached or written,
so calling ``summarize`` twice over the same data yields equal results.

Top-N lists are ordered by count descending, ties by key ascending.
"""
from __future__ import annotations

from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Tuple

from .clock import utcnow
from .geo import country_code
from .records import ThreatLevel, Visit
from .schemas import (
    AlertSummary,
    BotStats,
    CallerCount,
    CountryCount,
    CountryGeoStat,
    GeoPoint,
    GeoSummary,
    HeatPoint,
    HourlyCount,
    PathCount,
    SecurityStats,
    ThreatCount,
)
from .store import SecurityStore

_DENIED_STATUSES = (403, 429)


def _ranked(counts: Dict[str, int], limit: int | None = None) -> List[Tuple[str, int]]:
    ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    return ranked[:limit] if limit is not None else ranked


def _bot_stats(visits: Iterable[Visit]) -> BotStats:
    bots = [v for v in visits if v.is_bot]
    total = len(bots)
    if total == 0:
        return BotStats()

    if not any(v.detection and "is_ai_bot" in v.detection for v in bots):
        # No per-visit agent detail: fall back to a fixed proportional split.
        return BotStats(
            total_bots=total,
            ai_bots=int(total * 0.6),
            scrapers=int(total * 0.3),
            blocked_bots=int(total * 0.1),
            estimated=True,
        )

    ai = scrapers = blocked = 0
    for v in bots:
        detail = v.detection or {}
        if detail.get("is_ai_bot"):
            ai += 1
        elif not detail.get("is_known_good"):
            scrapers += 1
        if v.status_code in _DENIED_STATUSES:
            blocked += 1
    return BotStats(total_bots=total, ai_bots=ai, scrapers=scrapers, blocked_bots=blocked)


def _threats_by_hour(visits: Iterable[Visit], now: datetime) -> List[HourlyCount]:
    current = now.replace(minute=0, second=0, microsecond=0)
    starts = [current - timedelta(hours=i) for i in range(23, -1, -1)]
    counts: Counter = Counter()
    for v in visits:
        if v.threat_level == ThreatLevel.NONE.value or v.created_at is None:
            continue
        bucket = v.created_at.replace(minute=0, second=0, microsecond=0)
        if starts[0] <= bucket <= current:
            counts[bucket] += 1
    return [HourlyCount(hour=s.strftime("%H:00"), count=counts[s]) for s in starts]


class StatsAggregator:

    def __init__(
        self,
        store: SecurityStore,
        clock: Callable[[], datetime] = utcnow,
        top_paths: int = 10,
        top_callers: int = 20,
        top_countries: int = 10,
        recent_alerts: int = 20,
    ) -> None:
        self._store = store
        self._clock = clock
        self.top_paths = top_paths
        self.top_callers = top_callers
        self.top_countries = top_countries
        self.recent_alerts = recent_alerts

    def summarize(self, window_hours: int = 24) -> SecurityStats:
        """Aggregate the last ``window_hours`` of traffic. Raises StoreError."""
        now = self._clock()
        since = now - timedelta(hours=window_hours)

        visits = self._store.list_visits(since)
        blocks = self._store.list_active_blocks(now)
        alerts = self._store.list_alerts(since=since, limit=self.recent_alerts)

        path_counts: Counter = Counter(v.path for v in visits)
        caller_counts: Counter = Counter(v.ip_address for v in visits)
        flagged_callers = {v.ip_address for v in visits if v.is_suspicious}

        levels = {level.value: 0 for level in ThreatLevel}
        for v in visits:
            levels[v.threat_level] = levels.get(v.threat_level, 0) + 1
        non_none = {k: c for k, c in levels.items() if k != ThreatLevel.NONE.value and c > 0}

        countries: Dict[str, List[int]] = defaultdict(lambda: [0, 0])
        for v in visits:
            if not v.country:
                continue
            countries[v.country][0] += 1
            if v.is_suspicious:
                countries[v.country][1] += 1
        country_rank = _ranked({c: n[0] for c, n in countries.items()}, self.top_countries)

        return SecurityStats(
            window_hours=window_hours,
            total_visits=len(visits),
            unique_callers=len(caller_counts),
            suspicious_requests=sum(1 for v in visits if v.is_suspicious),
            blocked_callers=len(blocks),
            threat_levels=levels,
            top_threats=[ThreatCount(threat_level=k, count=c) for k, c in _ranked(non_none)],
            top_paths=[PathCount(path=p, count=c) for p, c in _ranked(path_counts, self.top_paths)],
            top_callers=[
                CallerCount(ip_address=ip, count=c, is_suspicious=ip in flagged_callers)
                for ip, c in _ranked(caller_counts, self.top_callers)
            ],
            recent_alerts=[
                AlertSummary(
                    alert_type=a.alert_type,
                    severity=a.severity,
                    description=a.description,
                    created_at=a.created_at,
                )
                for a in alerts
            ],
            bot_stats=_bot_stats(visits),
            threats_by_hour=_threats_by_hour(visits, now),
            countries=[
                CountryCount(country=c, count=n, suspicious=countries[c][1])
                for c, n in country_rank
            ],
        )

    def geo_visits(self, hours: int = 24, limit: int = 200) -> GeoSummary:
        """Visits with coordinates, clustered by location. Raises StoreError."""
        now = self._clock()
        located = self._store.list_visits(now - timedelta(hours=hours), with_coordinates=True)
        blocked = {b.ip_address for b in self._store.list_active_blocks(now)}

        points: Dict[Tuple[float, float], dict] = {}
        per_country: Dict[str, dict] = {}
        for v in located[:limit]:
            key = (v.latitude, v.longitude)
            point = points.get(key)
            if point is None:
                point = points[key] = {
                    "ip": v.ip_address,
                    "lat": v.latitude,
                    "lng": v.longitude,
                    "country": v.country or "Unknown",
                    "country_code": country_code(v.country),
                    "city": v.city or "Unknown",
                    "count": 0,
                    "last_visit": v.created_at,
                    "is_suspicious": False,
                    "is_blocked": False,
                }
            point["count"] += 1
            point["is_suspicious"] = point["is_suspicious"] or v.is_suspicious
            point["is_blocked"] = point["is_blocked"] or v.ip_address in blocked
            if v.created_at > point["last_visit"]:
                point["last_visit"] = v.created_at

            country = v.country or "Unknown"
            stat = per_country.setdefault(country, {"visits": 0, "ips": set(), "suspicious": 0})
            stat["visits"] += 1
            stat["ips"].add(v.ip_address)
            if v.is_suspicious:
                stat["suspicious"] += 1

        geo_points = [GeoPoint(**p) for p in points.values()]
        ranked_countries = _ranked({c: s["visits"] for c, s in per_country.items()}, 20)
        return GeoSummary(
            visits=geo_points,
            heat_map=[
                HeatPoint(
                    lat=p.lat,
                    lng=p.lng,
                    intensity=1.0 if p.is_blocked else 0.8 if p.is_suspicious else 0.2,
                    count=p.count,
                )
                for p in geo_points
            ],
            country_stats=[
                CountryGeoStat(
                    country=c,
                    country_code=country_code(c if c != "Unknown" else None),
                    visits=n,
                    unique_ips=len(per_country[c]["ips"]),
                    suspicious=per_country[c]["suspicious"],
                )
                for c, n in ranked_countries
            ],
            total_locations=len(geo_points),
            total_visits=len(located),
        )
