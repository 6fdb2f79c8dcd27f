from __future__ import annotations

import ipaddress
import sys
from functools import lru_cache
from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings


_DEFAULT_ADMIN_API_KEY = "change-me-in-production-use-long-random-string"


class Settings(BaseSettings):
    # Database
    database_url: str = "sqlite:///./threatguard.db"
    log_sql: bool = False

    # Server
    environment: str = "development"
    log_level: str = "info"
    log_format: str = "json"
    allow_cors_origins: List[str] = ["*"]

    # Rule tables (empty = bundled detection/default_rules.yml)
    rules_path: str = ""

    # Behaviour when the store cannot be reached on the request path
    fail_mode: str = "open"

    # Brute-force detection
    brute_force_enabled: bool = True
    brute_force_window_minutes: int = 5
    brute_force_threshold: int = 20
    brute_force_block_hours: int = 1

    # Dashboard aggregation
    stats_top_paths: int = 10
    stats_top_callers: int = 20
    stats_top_countries: int = 10
    stats_recent_alerts: int = 20

    # Geolocation
    geo_enabled: bool = False
    geo_api_url: str = "http://ip-api.com/json/{ip}"
    geo_timeout_seconds: float = 2.0
    geo_cache_ttl_seconds: int = 86400
    geo_cache_max_entries: int = 10000

    # Request inspection
    max_body_bytes: int = 65536

    # Peers allowed to set X-Forwarded-For / X-Real-IP / CF-Connecting-IP.
    # "*" trusts every peer; otherwise a list of addresses or CIDR ranges.
    trusted_proxies: List[str] = ["*"]

    # Admin API
    admin_api_key: str = _DEFAULT_ADMIN_API_KEY

    @field_validator("fail_mode")
    @classmethod
    def validate_fail_mode(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("open", "closed"):
            raise ValueError("fail_mode must be 'open' or 'closed'.")
        return v

    @field_validator("trusted_proxies")
    @classmethod
    def validate_trusted_proxies(cls, v: List[str]) -> List[str]:
        for entry in v:
            if entry == "*":
                continue
            try:
                ipaddress.ip_network(entry, strict=False)
            except ValueError as exc:
                raise ValueError(f"trusted_proxies entry {entry!r} is not an address or CIDR range.") from exc
        return v

    @field_validator("admin_api_key")
    @classmethod
    def validate_admin_api_key(cls, v: str, info) -> str:
        """Refuse to start in production with the default admin key."""
        env = info.data.get("environment", "development")
        if env != "development" and v == _DEFAULT_ADMIN_API_KEY:
            print(
                "\n🚨 FATAL: THREATGUARD_ADMIN_API_KEY is set to the default value.\n"
                "   Set THREATGUARD_ADMIN_API_KEY to a strong random string before "
                "running in production.\n",
                file=sys.stderr,
            )
            raise ValueError(
                "Admin API key must be changed from default in non-development environments. "
                "Set THREATGUARD_ADMIN_API_KEY env var."
            )
        return v

    @property
    def fail_open(self) -> bool:
        return self.fail_mode == "open"

    class Config:
        env_prefix = "THREATGUARD_"


@lru_cache
def get_settings() -> Settings:
    return Settings()


# Module-level singleton for convenience
settings = get_settings()
