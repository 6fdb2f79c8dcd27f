"""
tests/test_stats.py — Dashboard aggregation
===========================================

Covers: idempotence and read-only behaviour, totals, deterministic top-N
ordering, histograms, the bot split (exact and proportional), hourly
buckets and the geo clustering summary.
"""
from datetime import timedelta

import pytest

from threatguard.records import BlockedCaller, SecurityAlert, Visit
from threatguard.stats import StatsAggregator


@pytest.fixture(params=["memory", "sql"])
def store(request, memory_store, sql_store):
    return memory_store if request.param == "memory" else sql_store


@pytest.fixture
def aggregator(store, clock) -> StatsAggregator:
    return StatsAggregator(store, clock, top_paths=3, top_callers=3, top_countries=2, recent_alerts=2)


def _visit(clock, ip="10.0.0.1", path="/", minutes_ago=0, **kw) -> Visit:
    return Visit(
        ip_address=ip,
        path=path,
        method=kw.pop("method", "GET"),
        created_at=clock() - timedelta(minutes=minutes_ago),
        **kw,
    )


@pytest.fixture
def seeded(store, clock):
    visits = [
        _visit(clock, "10.0.0.1", "/a", 1, country="Germany"),
        _visit(clock, "10.0.0.1", "/a", 2, country="Germany"),
        _visit(clock, "10.0.0.1", "/b", 3, country="Germany", is_suspicious=True, threat_level="medium"),
        _visit(clock, "10.0.0.2", "/b", 4, country="France"),
        _visit(clock, "10.0.0.2", "/c", 70, country="France", is_suspicious=True, threat_level="high"),
        _visit(clock, "10.0.0.3", "/c", 130, country="Spain", threat_level="low"),
        _visit(clock, "10.0.0.4", "/d", 5),
        # Outside the 24h window
        _visit(clock, "10.0.0.9", "/old", 60 * 25, is_suspicious=True, threat_level="critical"),
    ]
    for v in visits:
        store.append_visit(v)
    for i, kind in enumerate(["ip_blocked", "brute_force_attempt", "ip_unblocked"]):
        store.append_alert(SecurityAlert(
            alert_type=kind,
            severity="warning",
            description=kind,
            created_at=clock() - timedelta(minutes=30 - i),
        ))
    return store


# ═══════════════════════════════════════════════════════════════════════════
# summarize
# ═══════════════════════════════════════════════════════════════════════════

class TestSummarize:
    def test_empty_store(self, aggregator):
        stats = aggregator.summarize(24)
        assert stats.total_visits == 0
        assert stats.unique_callers == 0
        assert stats.top_paths == []
        assert stats.threat_levels == {"none": 0, "low": 0, "medium": 0, "high": 0, "critical": 0}
        assert len(stats.threats_by_hour) == 24
        assert stats.bot_stats.total_bots == 0

    def test_idempotent_and_read_only(self, aggregator, seeded, clock):
        before = (
            len(seeded.list_visits(clock() - timedelta(days=30))),
            len(seeded.list_alerts()),
            len(seeded.list_active_blocks(clock())),
        )
        first = aggregator.summarize(24)
        second = aggregator.summarize(24)
        assert first == second
        after = (
            len(seeded.list_visits(clock() - timedelta(days=30))),
            len(seeded.list_alerts()),
            len(seeded.list_active_blocks(clock())),
        )
        assert before == after

    def test_totals(self, aggregator, seeded):
        stats = aggregator.summarize(24)
        assert stats.window_hours == 24
        assert stats.total_visits == 7
        assert stats.unique_callers == 4
        assert stats.suspicious_requests == 2
        assert stats.blocked_callers == 0

    def test_window_excludes_older_visits(self, aggregator, seeded):
        assert aggregator.summarize(1).total_visits == 5

    def test_top_paths_break_ties_by_key(self, aggregator, seeded):
        stats = aggregator.summarize(24)
        assert [(p.path, p.count) for p in stats.top_paths] == [("/a", 2), ("/b", 2), ("/c", 2)]

    def test_top_callers_flag_suspicious(self, aggregator, seeded):
        stats = aggregator.summarize(24)
        assert [(c.ip_address, c.count, c.is_suspicious) for c in stats.top_callers] == [
            ("10.0.0.1", 3, True),
            ("10.0.0.2", 2, True),
            ("10.0.0.3", 1, False),
        ]

    def test_threat_histogram(self, aggregator, seeded):
        stats = aggregator.summarize(24)
        assert stats.threat_levels == {"none": 4, "low": 1, "medium": 1, "high": 1, "critical": 0}
        assert [(t.threat_level, t.count) for t in stats.top_threats] == [
            ("high", 1), ("low", 1), ("medium", 1),
        ]

    def test_countries(self, aggregator, seeded):
        stats = aggregator.summarize(24)
        assert [(c.country, c.count, c.suspicious) for c in stats.countries] == [
            ("Germany", 3, 1),
            ("France", 2, 1),
        ]

    def test_recent_alerts_newest_first(self, aggregator, seeded):
        stats = aggregator.summarize(24)
        assert [a.alert_type for a in stats.recent_alerts] == ["ip_unblocked", "brute_force_attempt"]

    def test_blocked_callers_counts_active_only(self, aggregator, store, clock):
        store.upsert_block(BlockedCaller("10.0.0.1", "x", clock(), is_permanent=True))
        store.upsert_block(BlockedCaller("10.0.0.2", "y", clock(), expires_at=clock() + timedelta(hours=1)))
        store.upsert_block(BlockedCaller("10.0.0.3", "z", clock() - timedelta(hours=3),
                                         expires_at=clock() - timedelta(hours=1)))
        assert aggregator.summarize(24).blocked_callers == 2

    def test_threats_by_hour(self, aggregator, seeded, clock):
        buckets = aggregator.summarize(24).threats_by_hour
        assert len(buckets) == 24
        assert buckets[-1].hour == "12:00"
        assert buckets[0].hour == "13:00"
        assert buckets[-1].count == 0
        assert buckets[-2].count == 1   # medium at 11:57
        assert buckets[-3].count == 1   # high at 10:50
        assert buckets[-4].count == 1   # low at 09:50
        assert sum(b.count for b in buckets) == 3


class TestBotStats:
    def test_proportional_split_without_detail(self, aggregator, store, clock):
        for i in range(10):
            store.append_visit(_visit(clock, f"10.1.0.{i}", is_bot=True))
        bots = aggregator.summarize(24).bot_stats
        assert (bots.total_bots, bots.ai_bots, bots.scrapers, bots.blocked_bots) == (10, 6, 3, 1)
        assert bots.estimated is True

    def test_exact_split_from_detection(self, aggregator, store, clock):
        detail = {"is_ai_bot": True, "bot_name": "GPTBot", "is_known_good": False}
        store.append_visit(_visit(clock, "10.1.0.1", is_bot=True, status_code=200, detection=detail))
        store.append_visit(_visit(clock, "10.1.0.2", is_bot=True, status_code=429, detection=detail))
        store.append_visit(_visit(clock, "10.1.0.3", is_bot=True, status_code=403,
                                  detection={"is_ai_bot": False, "is_known_good": False}))
        store.append_visit(_visit(clock, "10.1.0.4", is_bot=True, status_code=200,
                                  detection={"is_ai_bot": False, "is_known_good": True}))
        store.append_visit(_visit(clock, "10.1.0.5", status_code=200))
        bots = aggregator.summarize(24).bot_stats
        assert (bots.total_bots, bots.ai_bots, bots.scrapers, bots.blocked_bots) == (4, 2, 1, 2)
        assert bots.estimated is False


# ═══════════════════════════════════════════════════════════════════════════
# geo_visits
# ═══════════════════════════════════════════════════════════════════════════

class TestGeoVisits:
    def test_groups_by_location(self, aggregator, store, clock):
        berlin = dict(country="Germany", city="Berlin", latitude=52.52, longitude=13.40)
        paris = dict(country="France", city="Paris", latitude=48.85, longitude=2.35)
        store.append_visit(_visit(clock, "10.0.0.1", minutes_ago=10, **berlin))
        store.append_visit(_visit(clock, "10.0.0.2", minutes_ago=5, is_suspicious=True, **berlin))
        store.append_visit(_visit(clock, "10.0.0.3", minutes_ago=1, **paris))
        store.append_visit(_visit(clock, "10.0.0.4", minutes_ago=1))
        store.upsert_block(BlockedCaller("10.0.0.3", "x", clock(), is_permanent=True))

        geo = aggregator.geo_visits(24, 200)
        assert geo.total_visits == 3
        assert geo.total_locations == 2

        by_city = {p.city: p for p in geo.visits}
        assert by_city["Berlin"].count == 2
        assert by_city["Berlin"].is_suspicious is True
        assert by_city["Berlin"].is_blocked is False
        assert by_city["Berlin"].country_code == "DE"
        assert by_city["Berlin"].last_visit == clock() - timedelta(minutes=5)
        assert by_city["Paris"].is_blocked is True

        intensity = {(h.lat, h.lng): h.intensity for h in geo.heat_map}
        assert intensity[(52.52, 13.40)] == 0.8
        assert intensity[(48.85, 2.35)] == 1.0

        assert [(c.country, c.visits, c.unique_ips, c.suspicious) for c in geo.country_stats] == [
            ("Germany", 2, 2, 1),
            ("France", 1, 1, 0),
        ]

    def test_limit_caps_clustered_visits(self, aggregator, store, clock):
        for i in range(5):
            store.append_visit(_visit(clock, f"10.0.0.{i}", minutes_ago=i, latitude=1.0 + i, longitude=2.0))
        geo = aggregator.geo_visits(24, 2)
        assert geo.total_locations == 2
        assert geo.total_visits == 5
        assert {p.lat for p in geo.visits} == {1.0, 2.0}
