"""Per-invocation reference data: alias table, valid tickers, companies.

Loaded fresh once per invocation and passed explicitly to the matcher,
the classifier and the ESPI emitter resolver.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .store_sqlite import SqliteStore

logger = logging.getLogger(__name__)


class ReferenceDataError(RuntimeError):
    """Required reference data is missing; the invocation cannot proceed."""


@dataclass(frozen=True)
class ReferenceData:
    aliases: dict[str, str]  # lower-case alias → ticker
    valid_tickers: frozenset[str]
    companies: tuple[tuple[str, str], ...] = field(default_factory=tuple)  # (ticker, name)

    @classmethod
    def from_pairs(
        cls,
        alias_pairs: list[tuple[str, str]],
        companies: list[tuple[str, str]] | None = None,
    ) -> "ReferenceData":
        aliases = {a.strip().lower(): t.strip().upper() for a, t in alias_pairs if a.strip() and t.strip()}
        companies = companies or []
        valid = {t for t in aliases.values()} | {t.strip().upper() for t, _ in companies}
        return cls(aliases=aliases, valid_tickers=frozenset(valid), companies=tuple(companies))


def load_reference_data(store: SqliteStore, alias_limit: int = 5000) -> ReferenceData:
    """Load aliases + companies; raise ``ReferenceDataError`` if empty."""
    try:
        alias_pairs = store.load_aliases(alias_limit)
        companies = store.load_companies()
    except Exception as exc:
        raise ReferenceDataError(f"failed to load reference data: {exc}") from exc
    if not alias_pairs:
        raise ReferenceDataError("ticker_aliases is empty")
    ref = ReferenceData.from_pairs(alias_pairs, companies)
    logger.info("%d aliases, %d tickers loaded", len(ref.aliases), len(ref.valid_tickers))
    return ref
