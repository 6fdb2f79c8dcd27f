"""
detection/rules.py — Immutable rule tables
==========================================
Signature regexes, agent lists and per-endpoint quotas are read from YAML
once and frozen into a ``RuleSet``. Components receive the RuleSet through
their constructor; nothing reads the YAML on the request path.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Tuple

import yaml


DEFAULT_RULES_PATH = Path(__file__).parent / "default_rules.yml"
DEFAULT_QUOTA_KEY = "default"


class RuleError(ValueError):
    """The rule file is missing, malformed, or holds an invalid regex."""


@dataclass(frozen=True)
class Quota:
    requests: int
    window_seconds: int


@dataclass(frozen=True)
class RuleSet:
    signatures: Tuple[Tuple[str, re.Pattern], ...]
    traversal_markers: Tuple[str, ...]
    sensitive_file_pattern: re.Pattern
    max_query_params: int
    malicious_agents: Tuple[str, ...]
    ai_agents: Tuple[str, ...]
    good_bots: Tuple[str, ...]
    automated_agent_pattern: re.Pattern
    default_quota: Quota
    quotas: Mapping[str, Quota] = field(default_factory=lambda: MappingProxyType({}))
    source: str = ""

    def quota_for(self, endpoint: str) -> Quota:
        """Quota configured for exactly this endpoint, else the default."""
        return self.quotas.get(endpoint, self.default_quota)


def _compile(name: str, pattern: Any) -> re.Pattern:
    if not isinstance(pattern, str) or not pattern:
        raise RuleError(f"Rule '{name}' must be a non-empty regex string.")
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as exc:
        raise RuleError(f"Rule '{name}' has an invalid regex: {exc}") from exc


def _quota(name: str, raw: Any) -> Quota:
    if not isinstance(raw, dict):
        raise RuleError(f"Rate limit '{name}' must be a mapping.")
    try:
        requests = int(raw["requests"])
        window = int(raw["window_seconds"])
    except (KeyError, TypeError, ValueError) as exc:
        raise RuleError(f"Rate limit '{name}' needs integer requests and window_seconds.") from exc
    if requests < 0 or window <= 0:
        raise RuleError(f"Rate limit '{name}' must have requests >= 0 and window_seconds > 0.")
    return Quota(requests=requests, window_seconds=window)


def _str_list(raw: dict, key: str) -> Tuple[str, ...]:
    items = raw.get(key) or []
    if not isinstance(items, list):
        raise RuleError(f"'{key}' must be a list.")
    return tuple(str(i) for i in items if str(i))


def parse_rules(raw: Any, source: str = "<memory>") -> RuleSet:
    """Validate a decoded rule document and freeze it into a RuleSet."""
    if not isinstance(raw, dict):
        raise RuleError(f"Rule file {source} must contain a mapping at the top level.")

    signatures = raw.get("signatures") or {}
    if not isinstance(signatures, dict):
        raise RuleError("'signatures' must be a mapping of name -> regex.")

    limits = dict(raw.get("rate_limits") or {})
    if DEFAULT_QUOTA_KEY not in limits:
        raise RuleError(f"'rate_limits' must define a '{DEFAULT_QUOTA_KEY}' quota.")
    default_quota = _quota(DEFAULT_QUOTA_KEY, limits.pop(DEFAULT_QUOTA_KEY))

    try:
        max_params = int(raw.get("max_query_params", 20))
    except (TypeError, ValueError) as exc:
        raise RuleError("'max_query_params' must be an integer.") from exc

    return RuleSet(
        signatures=tuple((name, _compile(name, p)) for name, p in signatures.items()),
        traversal_markers=tuple(m.lower() for m in _str_list(raw, "traversal_markers")),
        sensitive_file_pattern=_compile(
            "sensitive_file_pattern", raw.get("sensitive_file_pattern")
        ),
        max_query_params=max_params,
        malicious_agents=_str_list(raw, "malicious_agents"),
        ai_agents=_str_list(raw, "ai_agents"),
        good_bots=_str_list(raw, "good_bots"),
        automated_agent_pattern=_compile(
            "automated_agent_pattern", raw.get("automated_agent_pattern")
        ),
        default_quota=default_quota,
        quotas=MappingProxyType({name: _quota(name, q) for name, q in limits.items()}),
        source=source,
    )


def load_rules(path: str | Path | None = None) -> RuleSet:
    """Read and validate a rule file (the bundled one when ``path`` is empty)."""
    p = Path(path) if path else DEFAULT_RULES_PATH
    if not p.exists():
        raise RuleError(f"Rule file not found: {p}")
    with p.open("r", encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise RuleError(f"Rule file {p} is not valid YAML: {exc}") from exc
    return parse_rules(raw, source=str(p))
