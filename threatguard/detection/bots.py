from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .rules import RuleSet


@dataclass(frozen=True)
class BotDetection:
    is_bot: bool
    bot_name: Optional[str] = None
    is_automated: bool = False
    is_known_good: bool = False


class BotClassifier:
    """Case-insensitive substring match of client identifiers against agent lists."""

    def __init__(self, rules: RuleSet) -> None:
        self.rules = rules

    def detect(self, client_id: Optional[str]) -> BotDetection:
        if not client_id:
            return BotDetection(is_bot=False)

        lowered = client_id.lower()
        bot_name = next(
            (name for name in self.rules.ai_agents if name.lower() in lowered),
            None,
        )
        return BotDetection(
            is_bot=bot_name is not None,
            bot_name=bot_name,
            is_automated=self.rules.automated_agent_pattern.search(lowered) is not None,
            is_known_good=any(good.lower() in lowered for good in self.rules.good_bots),
        )

    def is_suspicious_automation(self, detection: BotDetection) -> bool:
        """Automated clients that are neither known crawlers nor known AI agents."""
        return detection.is_automated and not detection.is_known_good and not detection.is_bot
