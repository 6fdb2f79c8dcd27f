"""Request threat detection, rate limiting and IP blocking engine."""

__version__ = "0.3.0"
