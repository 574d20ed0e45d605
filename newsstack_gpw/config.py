"""Global configuration for the GPW news ingestion + classification jobs.

All tunables can be overridden via environment variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_float(key: str, default: float) -> float:
    """Read an env var as float, returning *default* on parse failure."""
    try:
        return float(os.getenv(key, str(default)))
    except (ValueError, TypeError):
        return default


def _env_int(key: str, default: int) -> int:
    """Read an env var as int, returning *default* on parse failure."""
    try:
        return int(os.getenv(key, str(default)))
    except (ValueError, TypeError):
        return default


def _env_list(key: str, default: str) -> tuple[str, ...]:
    """Read a comma-separated env var as a tuple of lower-cased tokens."""
    raw = os.getenv(key, default)
    return tuple(p.strip().lower() for p in raw.split(",") if p.strip())


@dataclass(frozen=True)
class Config:
    """Central configuration – one instance per invocation.

    Environment variables are read at **instantiation** time (not module
    import time) so callers can set them programmatically before
    creating a ``Config``.
    """

    # ── AI credentials (repr=False to prevent accidental logging) ──
    openai_api_key: str = field(default_factory=lambda: os.getenv("OPENAI_API_KEY", ""), repr=False)
    anthropic_api_key: str = field(default_factory=lambda: os.getenv("ANTHROPIC_API_KEY", ""), repr=False)

    # Ordered fallback chain of AI providers.
    ai_providers: tuple[str, ...] = field(default_factory=lambda: _env_list("AI_PROVIDERS", "openai,anthropic"))
    openai_model: str = field(default_factory=lambda: os.getenv("OPENAI_MODEL", "gpt-4o-mini"))
    anthropic_model: str = field(default_factory=lambda: os.getenv("ANTHROPIC_MODEL", "claude-haiku-4-5-20251001"))

    # ── State ───────────────────────────────────────────────────
    sqlite_path: str = field(default_factory=lambda: os.getenv("SQLITE_PATH", "newsstack_gpw/state.db"))

    # ── Network ─────────────────────────────────────────────────
    fetch_timeout_s: float = field(default_factory=lambda: _env_float("FETCH_TIMEOUT_S", 15.0))
    espi_timeout_s: float = field(default_factory=lambda: _env_float("ESPI_TIMEOUT_S", 20.0))
    ai_timeout_s: float = field(default_factory=lambda: _env_float("AI_TIMEOUT_S", 30.0))
    host_min_delay_s: float = field(default_factory=lambda: _env_float("HOST_MIN_DELAY_S", 0.5))
    fetch_concurrency: int = field(default_factory=lambda: _env_int("FETCH_CONCURRENCY", 4))

    # ── Classification batch ────────────────────────────────────
    classify_concurrency: int = field(default_factory=lambda: _env_int("CLASSIFY_CONCURRENCY", 5))
    chunk_pause_s: float = field(default_factory=lambda: _env_float("CHUNK_PAUSE_S", 0.2))
    process_batch_size: int = field(default_factory=lambda: _env_int("PROCESS_BATCH_SIZE", 20))
    trigger_batch_size: int = field(default_factory=lambda: _env_int("TRIGGER_BATCH_SIZE", 5))
    ai_body_chars: int = field(default_factory=lambda: _env_int("AI_BODY_CHARS", 2000))
    claim_ttl_s: float = field(default_factory=lambda: _env_float("CLAIM_TTL_S", 600.0))
    alias_limit: int = field(default_factory=lambda: _env_int("ALIAS_LIMIT", 5000))

    # ── Resolution thresholds ───────────────────────────────────
    display_threshold: float = field(default_factory=lambda: _env_float("DISPLAY_THRESHOLD", 0.7))
    max_tickers: int = field(default_factory=lambda: _env_int("MAX_TICKERS", 5))
    authoritative_add_threshold: float = field(default_factory=lambda: _env_float("AUTHORITATIVE_ADD_THRESHOLD", 0.85))

    # ── Event grouping ──────────────────────────────────────────
    group_window_hours: float = field(default_factory=lambda: _env_float("GROUP_WINDOW_HOURS", 2.0))

    # ── Paywall degraded mode ───────────────────────────────────
    paywall_sources: tuple[str, ...] = field(default_factory=lambda: _env_list("PAYWALL_SOURCES", "rp,parkiet,pb"))
    paywall_min_chars: int = field(default_factory=lambda: _env_int("PAYWALL_MIN_CHARS", 200))

    # ── Derived helpers ─────────────────────────────────────────

    @property
    def active_ai_providers(self) -> list[str]:
        """Configured providers that also have credentials, in fallback order."""
        keys = {"openai": self.openai_api_key, "anthropic": self.anthropic_api_key}
        return [p for p in self.ai_providers if keys.get(p)]
