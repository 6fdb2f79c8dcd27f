"""
tests/test_bruteforce.py — Brute-force detection from the visit log
===================================================================
"""
from datetime import timedelta

import pytest

from threatguard.blocklist import BlockRegistry
from threatguard.bruteforce import BruteForceDetector
from threatguard.records import BRUTE_FORCE_ATTEMPT, Visit
from threatguard.telemetry import AlertEmitter


@pytest.fixture(params=["memory", "sql"])
def store(request, memory_store, sql_store):
    return memory_store if request.param == "memory" else sql_store


@pytest.fixture
def registry(store, clock) -> BlockRegistry:
    return BlockRegistry(store, AlertEmitter(store, clock), clock)


@pytest.fixture
def detector(store, registry, clock) -> BruteForceDetector:
    return BruteForceDetector(store, registry, AlertEmitter(store, clock), clock)


def _visits(store, clock, n, caller="198.51.100.4", path="/api/auth/login", age=timedelta(0)):
    for i in range(n):
        store.append_visit(Visit(
            ip_address=caller,
            path=path,
            method="POST",
            status_code=401,
            created_at=clock() - age - timedelta(seconds=i),
        ))


class TestThreshold:
    def test_below_threshold(self, detector, registry, store, clock):
        _visits(store, clock, 19)
        assert detector.check("198.51.100.4", "/api/auth/login") is False
        assert registry.is_blocked("198.51.100.4") is False
        assert store.list_alerts() == []

    def test_at_threshold_blocks_for_one_hour(self, detector, registry, store, clock):
        _visits(store, clock, 19)
        assert detector.check("198.51.100.4", "/api/auth/login") is False

        _visits(store, clock, 1)
        assert detector.check("198.51.100.4", "/api/auth/login") is True

        [block] = registry.list_active()
        assert block.ip_address == "198.51.100.4"
        assert block.reason == "Brute force attack detected on /api/auth/login"
        assert block.expires_at == clock() + timedelta(hours=1)
        assert block.blocked_by == "system"

        attempts = store.list_alerts(alert_type=BRUTE_FORCE_ATTEMPT)
        assert len(attempts) == 1
        assert attempts[0].severity == "high"
        assert attempts[0].metadata == {
            "endpoint": "/api/auth/login",
            "request_count": 20,
            "window_minutes": 5,
        }

        clock.advance(hours=1, seconds=1)
        assert registry.is_blocked("198.51.100.4") is False

    def test_old_visits_fall_outside_window(self, detector, store, clock):
        _visits(store, clock, 19)
        _visits(store, clock, 10, age=timedelta(minutes=6))
        assert detector.check("198.51.100.4", "/api/auth/login") is False

    def test_other_endpoints_and_callers_do_not_count(self, detector, store, clock):
        _visits(store, clock, 19)
        _visits(store, clock, 10, path="/api/auth/register")
        _visits(store, clock, 10, caller="198.51.100.5")
        assert detector.check("198.51.100.4", "/api/auth/login") is False

    def test_per_call_overrides(self, detector, store, clock):
        _visits(store, clock, 3)
        assert detector.check("198.51.100.4", "/api/auth/login", window_minutes=1, threshold=3) is True


class TestFailures:
    def test_scan_failure_is_not_an_attack(self, unavailable_store, clock):
        alerts = AlertEmitter(unavailable_store, clock)
        registry = BlockRegistry(unavailable_store, alerts, clock)
        detector = BruteForceDetector(unavailable_store, registry, alerts, clock)
        assert detector.check("198.51.100.4", "/api/auth/login") is False
