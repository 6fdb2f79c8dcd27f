"""
engine.py — Per-request security pipeline
=========================================
Composes the classifiers, block registry and rate limiter into a single
``evaluate`` call that returns an allow/deny ``Verdict``, and a ``record``
call that runs after the response is sent.

Evaluation order (short-circuit on first deny):
  1. Signature + bot classification   (pure, no I/O)
  2. Block registry existence check   (one store read)
  3. Rate limit check-and-consume     (one atomic store write)

Recording (off the request path):
  4. Visit append, with best-effort geo hints
  5. Brute-force scan for allowed requests
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, List, Optional

from .blocklist import BlockRegistry
from .bruteforce import BruteForceDetector
from .clock import utcnow
from .config import Settings, get_settings
from .detection import BotClassifier, BotDetection, RuleSet, SignatureClassifier, ThreatAnalysis, load_rules
from .geo import GeoResolver, IpApiGeoResolver, NullGeoResolver
from .rate_limit import RateLimiter, RateLimitResult
from .records import Visit
from .stats import StatsAggregator
from .store import SecurityStore
from .telemetry import AlertEmitter, VisitLogger

logger = logging.getLogger("threatguard.engine")

ALLOW = "allow"
DENY = "deny"

# Deny reasons
THREAT_SIGNATURE = "threat_signature"
BLOCKED_CALLER = "blocked_caller"
RATE_LIMITED = "rate_limited"
STORE_UNAVAILABLE = "store_unavailable"


@dataclass(frozen=True)
class RequestInfo:
    caller: str
    path: str
    method: str = "GET"
    client_id: Optional[str] = None
    body: Any = None

    @property
    def endpoint(self) -> str:
        """Path without its query string; the key for quotas and the visit log."""
        return self.path.partition("?")[0] or "/"


@dataclass(frozen=True)
class TraceStep:
    name: str
    outcome: str
    detail: Optional[str] = None
    duration_ms: float = 0.0


@dataclass
class Verdict:
    decision: str
    reason: Optional[str] = None
    status_code: int = 200
    message: Optional[str] = None
    threat: Optional[ThreatAnalysis] = None
    bot: Optional[BotDetection] = None
    rate_limit: Optional[RateLimitResult] = None
    retry_after: Optional[int] = None
    degraded: bool = False
    warnings: List[str] = field(default_factory=list)
    trace: List[TraceStep] = field(default_factory=list)

    @property
    def allowed(self) -> bool:
        return self.decision == ALLOW


def _step(name: str, outcome: str, detail: Optional[str], start: float) -> TraceStep:
    return TraceStep(
        name=name,
        outcome=outcome,
        detail=detail,
        duration_ms=round((time.perf_counter() - start) * 1000, 3),
    )


def _resolver_from(settings: Settings) -> GeoResolver:
    if not settings.geo_enabled:
        return NullGeoResolver()
    return IpApiGeoResolver(
        url_template=settings.geo_api_url,
        timeout=settings.geo_timeout_seconds,
        cache_ttl_seconds=settings.geo_cache_ttl_seconds,
        cache_max_entries=settings.geo_cache_max_entries,
    )


class SecurityEngine:

    def __init__(
        self,
        rules: RuleSet,
        store: SecurityStore,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        geo: Optional[GeoResolver] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store
        self.clock = clock
        self.geo = geo if geo is not None else _resolver_from(self.settings)

        fail_open = self.settings.fail_open
        self.alerts = AlertEmitter(store, clock)
        self.visits = VisitLogger(store, clock)
        self.registry = BlockRegistry(store, self.alerts, clock, fail_open=fail_open)
        self.limiter = RateLimiter(rules, store, clock, fail_open=fail_open)
        self.brute_force = BruteForceDetector(
            store,
            self.registry,
            self.alerts,
            clock,
            window_minutes=self.settings.brute_force_window_minutes,
            threshold=self.settings.brute_force_threshold,
            block_hours=self.settings.brute_force_block_hours,
        )
        self.stats = StatsAggregator(
            store,
            clock,
            top_paths=self.settings.stats_top_paths,
            top_callers=self.settings.stats_top_callers,
            top_countries=self.settings.stats_top_countries,
            recent_alerts=self.settings.stats_recent_alerts,
        )
        self._install_rules(rules)

    def _install_rules(self, rules: RuleSet) -> None:
        self.rules = rules
        self.classifier = SignatureClassifier(rules)
        self.bots = BotClassifier(rules)
        self.limiter.rules = rules

    def reload_rules(self, path: str | Path | None = None) -> RuleSet:
        """Load a rule file and swap it in. A bad file raises RuleError and changes nothing."""
        rules = load_rules(path if path is not None else self.settings.rules_path or None)
        self._install_rules(rules)
        logger.info(
            "Rules reloaded from %s (%d signatures, %d endpoint quotas)",
            rules.source, len(rules.signatures), len(rules.quotas),
        )
        return rules

    # -- request path -------------------------------------------------------

    def evaluate(self, request: RequestInfo) -> Verdict:
        trace: List[TraceStep] = []

        t = time.perf_counter()
        analysis = self.classifier.classify(
            request.path, request.method, request.client_id, request.body
        )
        bot = self.bots.detect(request.client_id)
        if analysis.should_block:
            trace.append(_step("classifier", "deny", "; ".join(analysis.threats), t))
            logger.warning(
                "Threat from %s on %s %s (%s): %s",
                request.caller, request.method, request.endpoint,
                analysis.threat_level.value, "; ".join(analysis.threats),
            )
            return Verdict(
                decision=DENY,
                reason=THREAT_SIGNATURE,
                status_code=403,
                message="Suspicious request pattern detected",
                threat=analysis,
                bot=bot,
                trace=trace,
            )
        trace.append(_step(
            "classifier", "pass",
            "; ".join(analysis.threats) or None, t,
        ))

        warnings: List[str] = []

        t = time.perf_counter()
        check = self.registry.check(request.caller)
        if check.warning:
            warnings.append(check.warning)
        if check.blocked:
            trace.append(_step("blocklist", "deny", check.warning or (check.block and check.block.reason), t))
            if check.degraded:
                return self._unavailable(analysis, bot, warnings, trace)
            return Verdict(
                decision=DENY,
                reason=BLOCKED_CALLER,
                status_code=403,
                message="Your IP address has been blocked",
                threat=analysis,
                bot=bot,
                warnings=warnings,
                trace=trace,
            )
        trace.append(_step("blocklist", "degraded" if check.degraded else "pass", check.warning, t))

        t = time.perf_counter()
        limit = self.limiter.check_and_consume(request.caller, request.endpoint)
        if limit.warning:
            warnings.append(limit.warning)
        if not limit.allowed:
            trace.append(_step(
                "rate_limit", "deny",
                limit.warning or f"quota {limit.limit} exhausted", t,
            ))
            if limit.degraded:
                return self._unavailable(analysis, bot, warnings, trace, limit)
            return Verdict(
                decision=DENY,
                reason=RATE_LIMITED,
                status_code=429,
                message="Too many requests",
                threat=analysis,
                bot=bot,
                rate_limit=limit,
                retry_after=limit.reset_in_seconds,
                degraded=check.degraded,
                warnings=warnings,
                trace=trace,
            )
        trace.append(_step(
            "rate_limit", "degraded" if limit.degraded else "pass",
            limit.warning or f"{limit.remaining}/{limit.limit} remaining", t,
        ))

        return Verdict(
            decision=ALLOW,
            threat=analysis,
            bot=bot,
            rate_limit=limit,
            degraded=check.degraded or limit.degraded,
            warnings=warnings,
            trace=trace,
        )

    def _unavailable(
        self,
        analysis: ThreatAnalysis,
        bot: BotDetection,
        warnings: List[str],
        trace: List[TraceStep],
        limit: Optional[RateLimitResult] = None,
    ) -> Verdict:
        return Verdict(
            decision=DENY,
            reason=STORE_UNAVAILABLE,
            status_code=503,
            message="Security checks are temporarily unavailable",
            threat=analysis,
            bot=bot,
            rate_limit=limit,
            degraded=True,
            warnings=warnings,
            trace=trace,
        )

    # -- after the response -------------------------------------------------

    def record(
        self,
        request: RequestInfo,
        verdict: Verdict,
        status_code: Optional[int] = None,
        response_time_ms: Optional[int] = None,
    ) -> None:
        """Append the visit and, for allowed requests, scan for brute force.

        Never raises for store failures; each component logs and drops them.
        """
        analysis = verdict.threat or self.classifier.classify(
            request.path, request.method, request.client_id, request.body
        )
        bot = verdict.bot or self.bots.detect(request.client_id)

        location = None
        try:
            location = self.geo.resolve(request.caller)
        except Exception as exc:
            logger.debug("Geo resolver raised for %s: %s", request.caller, exc)

        self.visits.record(Visit(
            ip_address=request.caller,
            user_agent=request.client_id,
            path=request.endpoint,
            method=request.method,
            status_code=status_code if status_code is not None else verdict.status_code,
            country=location.country if location else None,
            city=location.city if location else None,
            latitude=location.latitude if location else None,
            longitude=location.longitude if location else None,
            is_bot=bot.is_bot or bot.is_automated,
            is_suspicious=analysis.is_threat or self.bots.is_suspicious_automation(bot),
            threat_level=analysis.threat_level.value,
            response_time_ms=response_time_ms,
            detection={
                "threats": list(analysis.threats),
                "is_ai_bot": bot.is_bot,
                "bot_name": bot.bot_name,
                "is_known_good": bot.is_known_good,
                "decision": verdict.decision,
                "reason": verdict.reason,
            },
        ))

        if verdict.allowed and self.settings.brute_force_enabled:
            self.brute_force.check(request.caller, request.endpoint)

    def is_blocked(self, caller: str) -> bool:
        return self.registry.is_blocked(caller)
