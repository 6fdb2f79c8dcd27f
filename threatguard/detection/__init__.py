from .bots import BotClassifier, BotDetection
from .classifier import SignatureClassifier, ThreatAnalysis
from .rules import Quota, RuleError, RuleSet, load_rules

__all__ = [
    "BotClassifier",
    "BotDetection",
    "Quota",
    "RuleError",
    "RuleSet",
    "SignatureClassifier",
    "ThreatAnalysis",
    "load_rules",
]
