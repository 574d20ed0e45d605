"""AI classification adapter: prompt building, providers, response parsing.

Providers talk to the chat-completions / messages endpoints directly over
**httpx** (no vendor SDKs).  Each provider makes exactly one call per
item; the fallback policy lives in :func:`classify_with_fallback`, which
walks the configured providers in order and records a typed
``AttemptResult`` for every try.

Responses are validated by :func:`parse_analysis`: unparseable output is
a failure, anything else is clamped/defaulted field by field.
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

import httpx

from .common_types import AIAnalysis, KeyFact
from .config import Config
from .ingest_feeds import sanitize_exc

logger = logging.getLogger(__name__)

OPENAI_URL = "https://api.openai.com/v1/chat/completions"
ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"

MAX_KNOWN_TICKERS = 200
MAX_LIST_ITEMS = 10
MAX_SUMMARY_CHARS = 500
MAX_FACT_DESCRIPTION = 200
MAX_FACT_DETAIL = 100

FACT_IMPACTS = ("positive", "negative", "neutral")
IMPACT_ASSESSMENTS = (
    "very_positive", "moderate_positive", "neutral", "moderate_negative", "very_negative",
)


class AIResponseError(RuntimeError):
    """Provider answered, but not in the expected envelope shape."""


# ── Prompt ──────────────────────────────────────────────────────

SYSTEM_PROMPT = (
    "Jesteś analitykiem rynku kapitałowego GPW. "
    "Analizujesz polskie wiadomości finansowe i zwracasz ustrukturyzowane dane JSON. "
    "Odpowiadasz WYŁĄCZNIE JSON, bez żadnego tekstu przed ani po."
)

_RESPONSE_TEMPLATE = """Zwróć JSON:
{
  "tickers": ["PKN"],
  "ticker_confidence": {"PKN": 0.9},
  "relevance_score": 0.8,
  "sector": "energy",
  "sentiment": 0.7,
  "impact_score": 7,
  "category": "earnings",
  "ai_summary": "PKN Orlen ogłosił wyniki Q4 z zyskiem 2.1 mld zł, powyżej oczekiwań.",
  "key_facts": [
    {"type": "revenue", "description": "Przychody Q4 wyniosły 45 mld zł", "detail": "+8% r/r", "impact": "positive"}
  ],
  "topics": ["wyniki_finansowe"],
  "is_breaking": false,
  "impact_assessment": "moderate_positive"
}

TYPY key_facts: revenue|profit|ebitda|dividend|ceo_change|board_change|share_issue|buyback|acquisition|contract|regulatory|guidance|rating_change|nwz|other
TYPY topics: wyniki_finansowe|dywidenda|zmiana_zarządu|emisja_akcji|skup_akcji|fuzja_przejęcie|kontrakt|regulacje|prognoza|rekomendacja|walne_zgromadzenie|debiut|inne
is_breaking: true gdy przełomowe (duży kontrakt >100mln PLN, M&A, zmiana CEO, wyniki znacznie vs konsensus)
impact_assessment: very_positive|moderate_positive|neutral|moderate_negative|very_negative
ticker_confidence: pewność 0-1, że artykuł dotyczy danej spółki
relevance_score: 0-1, jak istotny jest artykuł dla inwestora
tickers: [] jeśli makro/ogólne, max 5 tickerów"""


@dataclass
class ClassificationRequest:
    title: str
    body: str | None
    source: str
    candidates: list[str] = field(default_factory=list)  # heuristic tickers
    known_tickers: list[str] = field(default_factory=list)
    prices: dict[str, float] = field(default_factory=dict)


def build_prompt(req: ClassificationRequest, body_chars: int = 2000) -> tuple[str, str]:
    """Return ``(system, user)`` messages for one article."""
    lines = [
        f"TICKER KONTEKST: {', '.join(req.candidates) or 'brak'}",
        f"ZNANE TICKERY GPW: {', '.join(sorted(req.known_tickers)[:MAX_KNOWN_TICKERS])}",
    ]
    if req.prices:
        quoted = ", ".join(f"{t} {p:.2f}" for t, p in sorted(req.prices.items()))
        lines.append(f"OSTATNIE CENY: {quoted}")
    lines += [
        f"ŹRÓDŁO: {req.source}",
        f"TYTUŁ: {req.title}",
        f"TREŚĆ: {(req.body or '')[:body_chars]}",
        "",
        _RESPONSE_TEMPLATE,
    ]
    return SYSTEM_PROMPT, "\n".join(lines)


# ── Providers ───────────────────────────────────────────────────

class Provider(Protocol):
    name: str

    def complete(self, system: str, user: str) -> str: ...


class _HttpProvider:
    name = ""

    def __init__(self, api_key: str, model: str, timeout_s: float = 30.0, client: httpx.Client | None = None) -> None:
        self._api_key = api_key
        self.model = model
        self.timeout_s = timeout_s
        self.client = client or httpx.Client(timeout=timeout_s)

    def close(self) -> None:
        self.client.close()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(model={self.model!r})"


class OpenAIProvider(_HttpProvider):
    name = "openai"

    def complete(self, system: str, user: str) -> str:
        r = self.client.post(
            OPENAI_URL,
            headers={"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"},
            json={
                "model": self.model,
                "messages": [
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                "max_tokens": 700,
                "temperature": 0.1,
                "response_format": {"type": "json_object"},
            },
            timeout=self.timeout_s,
        )
        r.raise_for_status()
        try:
            return r.json()["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise AIResponseError(f"unexpected openai envelope: {exc!r}") from exc


class AnthropicProvider(_HttpProvider):
    name = "anthropic"

    def complete(self, system: str, user: str) -> str:
        r = self.client.post(
            ANTHROPIC_URL,
            headers={
                "x-api-key": self._api_key,
                "anthropic-version": ANTHROPIC_VERSION,
                "Content-Type": "application/json",
            },
            json={
                "model": self.model,
                "max_tokens": 700,
                "temperature": 0.1,
                "system": system,
                "messages": [{"role": "user", "content": user}],
            },
            timeout=self.timeout_s,
        )
        r.raise_for_status()
        try:
            blocks = r.json()["content"]
            return "".join(b.get("text", "") for b in blocks if b.get("type") == "text")
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise AIResponseError(f"unexpected anthropic envelope: {exc!r}") from exc


def build_providers(cfg: Config, client: httpx.Client | None = None) -> list[_HttpProvider]:
    """Instantiate the configured providers that have credentials, in order."""
    out: list[_HttpProvider] = []
    for name in cfg.active_ai_providers:
        if name == "openai":
            out.append(OpenAIProvider(cfg.openai_api_key, cfg.openai_model, cfg.ai_timeout_s, client))
        elif name == "anthropic":
            out.append(AnthropicProvider(cfg.anthropic_api_key, cfg.anthropic_model, cfg.ai_timeout_s, client))
        else:
            logger.warning("Unknown AI provider %r ignored", name)
    return out


# ── Response parsing ────────────────────────────────────────────

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*(.*?)\s*```$", re.DOTALL)


@dataclass
class ParseResult:
    ok: bool
    analysis: AIAnalysis | None = None
    error: str | None = None


def _num(v: Any) -> float | None:
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return None
    try:
        f = float(v)
    except OverflowError:
        return None
    return f if math.isfinite(f) else None


def _clamp(v: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, v))


def _str_list(v: Any, limit: int, upper: bool = False) -> list[str]:
    if not isinstance(v, list):
        return []
    out: list[str] = []
    for x in v:
        if not isinstance(x, str) or not x.strip():
            continue
        s = x.strip().upper() if upper else x.strip()
        if s not in out:
            out.append(s)
        if len(out) >= limit:
            break
    return out


def _key_facts(v: Any) -> list[KeyFact]:
    if not isinstance(v, list):
        return []
    facts: list[KeyFact] = []
    for f in v[:MAX_LIST_ITEMS]:
        if not isinstance(f, dict):
            continue
        desc = f.get("description")
        if not isinstance(desc, str) or not desc.strip():
            continue
        ftype = f.get("type")
        detail = f.get("detail")
        impact = f.get("impact")
        facts.append(KeyFact(
            type=ftype if isinstance(ftype, str) and ftype else "other",
            description=desc.strip()[:MAX_FACT_DESCRIPTION],
            impact=impact if impact in FACT_IMPACTS else "neutral",
            detail=detail[:MAX_FACT_DETAIL] if isinstance(detail, str) and detail else None,
        ))
    return facts


def parse_analysis(raw: str | None) -> ParseResult:
    """Validate a raw model response into an ``AIAnalysis``.

    Fails only when *raw* is not a JSON object; individual malformed
    fields fall back to their defaults.
    """
    text = (raw or "").strip()
    m = _FENCE_RE.match(text)
    if m:
        text = m.group(1)
    try:
        data = json.loads(text)
    except (ValueError, TypeError) as exc:
        return ParseResult(ok=False, error=f"invalid JSON: {exc}")
    if not isinstance(data, dict):
        return ParseResult(ok=False, error=f"expected a JSON object, got {type(data).__name__}")

    a = AIAnalysis()
    a.tickers = _str_list(data.get("tickers"), MAX_LIST_ITEMS, upper=True)

    conf = data.get("ticker_confidence")
    if isinstance(conf, dict):
        for k, v in conf.items():
            n = _num(v)
            if isinstance(k, str) and k.strip() and n is not None:
                a.ticker_confidence[k.strip().upper()] = _clamp(n, 0.0, 1.0)

    n = _num(data.get("relevance_score"))
    if n is not None:
        a.relevance_score = _clamp(n, 0.0, 1.0)
    n = _num(data.get("sentiment"))
    if n is not None:
        a.sentiment = _clamp(n, -1.0, 1.0)
    n = _num(data.get("impact_score"))
    if n is not None:
        a.impact_score = int(_clamp(round(n), 1, 10))

    sector = data.get("sector")
    a.sector = sector.strip() if isinstance(sector, str) and sector.strip() else None
    category = data.get("category")
    if isinstance(category, str) and category.strip():
        a.category = category.strip()
    summary = data.get("ai_summary")
    if isinstance(summary, str):
        a.ai_summary = summary.strip()[:MAX_SUMMARY_CHARS]
    a.key_facts = _key_facts(data.get("key_facts"))
    a.topics = _str_list(data.get("topics"), MAX_LIST_ITEMS)
    a.is_breaking = data.get("is_breaking") is True
    if data.get("impact_assessment") in IMPACT_ASSESSMENTS:
        a.impact_assessment = data["impact_assessment"]
    return ParseResult(ok=True, analysis=a)


# ── Fallback chain ──────────────────────────────────────────────

@dataclass
class AttemptResult:
    provider: str
    ok: bool
    error: str | None = None


@dataclass
class ClassificationOutcome:
    analysis: AIAnalysis | None
    attempts: list[AttemptResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.analysis is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "attempts": [{"provider": a.provider, "ok": a.ok, "error": a.error} for a in self.attempts],
        }


def classify_with_fallback(
    providers: Sequence[Provider],
    request: ClassificationRequest,
    body_chars: int = 2000,
) -> ClassificationOutcome:
    """Try each provider once, in order; first parseable answer wins.

    Never raises: transport errors and parse failures are recorded as
    failed attempts.  An empty provider list yields a failed outcome.
    """
    system, user = build_prompt(request, body_chars)
    attempts: list[AttemptResult] = []
    for p in providers:
        try:
            raw = p.complete(system, user)
        except Exception as exc:
            msg = sanitize_exc(exc)
            logger.warning("AI provider %s failed: %s", p.name, msg)
            attempts.append(AttemptResult(p.name, False, msg))
            continue
        try:
            parsed = parse_analysis(raw)
        except Exception as exc:
            logger.exception("AI provider %s output broke the parser", p.name)
            attempts.append(AttemptResult(p.name, False, f"parse error: {sanitize_exc(exc)}"))
            continue
        if not parsed.ok:
            logger.warning("AI provider %s returned unparseable output: %s", p.name, parsed.error)
            attempts.append(AttemptResult(p.name, False, parsed.error))
            continue
        attempts.append(AttemptResult(p.name, True))
        return ClassificationOutcome(parsed.analysis, attempts)
    return ClassificationOutcome(None, attempts)

