"""Runtime settings for the realtime synchronization service.

All values come from environment variables so the same code runs locally
without Supabase (realtime simply stays off) and in a deployment where
``SUPABASE_URL`` and ``SUPABASE_ANON_KEY`` are set.
"""

from __future__ import annotations

import os
from typing import Mapping, Optional

from pydantic import BaseModel

from crm_realtime.invalidator import DebouncePolicy

DEFAULT_DEBOUNCE_MS = 500

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class Settings(BaseModel):
    """Environment-derived configuration.

    Use :meth:`from_env` rather than constructing this directly so every
    variable is validated in one place.
    """

    supabase_url: Optional[str] = None
    supabase_anon_key: Optional[str] = None
    realtime_enabled: bool = True
    debounce_ms: int = DEFAULT_DEBOUNCE_MS
    debounce_policy: DebouncePolicy = DebouncePolicy.FIXED_WINDOW
    cache_stale_seconds: Optional[float] = None
    log_level: str = "INFO"

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_anon_key)

    @property
    def debounce_seconds(self) -> float:
        return self.debounce_ms / 1000.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            supabase_url=env.get("SUPABASE_URL") or None,
            supabase_anon_key=env.get("SUPABASE_ANON_KEY") or None,
            realtime_enabled=_parse_bool(env, "REALTIME_ENABLED", True),
            debounce_ms=_parse_debounce_ms(env),
            debounce_policy=_parse_policy(env),
            cache_stale_seconds=_parse_stale_seconds(env),
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
        )


def _parse_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean for {name}: {raw!r}")


def _parse_debounce_ms(env: Mapping[str, str]) -> int:
    raw = env.get("REALTIME_DEBOUNCE_MS")
    if not raw:
        return DEFAULT_DEBOUNCE_MS
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"Invalid integer for REALTIME_DEBOUNCE_MS: {raw!r}")
    if value <= 0:
        raise ValueError("REALTIME_DEBOUNCE_MS must be positive")
    return value


def _parse_policy(env: Mapping[str, str]) -> DebouncePolicy:
    raw = (env.get("REALTIME_DEBOUNCE_POLICY") or DebouncePolicy.FIXED_WINDOW.value).strip().lower()
    try:
        return DebouncePolicy(raw)
    except ValueError:
        allowed = ", ".join(p.value for p in DebouncePolicy)
        raise ValueError(f"Invalid REALTIME_DEBOUNCE_POLICY {raw!r} (expected one of: {allowed})")


def _parse_stale_seconds(env: Mapping[str, str]) -> Optional[float]:
    raw = env.get("QUERY_CACHE_STALE_SECONDS")
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"Invalid number for QUERY_CACHE_STALE_SECONDS: {raw!r}")
    if value <= 0:
        raise ValueError("QUERY_CACHE_STALE_SECONDS must be positive")
    return value
