"""
detection/classifier.py — Signature classifier
==============================================
Pure function of (path, method, client identifier, body) and the RuleSet.
No store or network access, so it runs inline on every request.

Each rule is evaluated independently and the final level is the maximum
observed, with two exceptions:
  * a traversal marker anywhere in the path forces ``critical``
  * excessive query parameters only lift the level from ``none`` to ``low``
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, List, Optional

from ..records import ThreatLevel
from .rules import RuleSet


@dataclass(frozen=True)
class ThreatAnalysis:
    is_threat: bool
    threat_level: ThreatLevel
    threats: List[str] = field(default_factory=list)
    should_block: bool = False

    def to_dict(self) -> dict:
        return {
            "is_threat": self.is_threat,
            "threat_level": self.threat_level.value,
            "threats": list(self.threats),
            "should_block": self.should_block,
        }


def _body_text(body: Any) -> Optional[str]:
    if body is None:
        return None
    if isinstance(body, bytes):
        return body.decode("utf-8", errors="replace")
    if isinstance(body, str):
        return body
    try:
        return json.dumps(body, default=str)
    except (TypeError, ValueError):
        return str(body)


class SignatureClassifier:
    """Matches attack signatures against path, body and client identifier."""

    def __init__(self, rules: RuleSet) -> None:
        self.rules = rules

    def classify(
        self,
        path: str,
        method: str,
        client_id: Optional[str],
        body: Any = None,
    ) -> ThreatAnalysis:
        rules = self.rules
        threats: list[str] = []
        level = ThreatLevel.NONE

        if client_id:
            lowered = client_id.lower()
            for agent in rules.malicious_agents:
                if agent.lower() in lowered:
                    threats.append(f"Malicious client identifier detected: {agent}")
                    level = level.raised_to(ThreatLevel.HIGH)

        for name, pattern in rules.signatures:
            if pattern.search(path):
                threats.append(f"Suspicious pattern in path: {name}")
                level = level.raised_to(ThreatLevel.MEDIUM)

        text = _body_text(body)
        if text:
            for name, pattern in rules.signatures:
                if pattern.search(text):
                    threats.append(f"Suspicious pattern in body: {name}")
                    level = level.raised_to(ThreatLevel.HIGH)

        bare_path, _, query = path.partition("?")

        if rules.sensitive_file_pattern.search(bare_path):
            threats.append("Sensitive file access attempt")
            level = level.raised_to(ThreatLevel.HIGH)

        lowered_path = path.lower()
        if any(marker in lowered_path for marker in rules.traversal_markers):
            threats.append("Path traversal attempt detected")
            level = ThreatLevel.CRITICAL

        if query and len(query.split("&")) > rules.max_query_params:
            threats.append("Excessive query parameters")
            if level is ThreatLevel.NONE:
                level = ThreatLevel.LOW

        return ThreatAnalysis(
            is_threat=bool(threats),
            threat_level=level,
            threats=threats,
            should_block=level in (ThreatLevel.HIGH, ThreatLevel.CRITICAL),
        )
