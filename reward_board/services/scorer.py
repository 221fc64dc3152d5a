from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path

BANNED_PREFIX = "BANNED:"
SENSITIVE_PREFIX = "SENSITIVE:"
BANNED_WEIGHT = 100
SENSITIVE_WEIGHT = 30
CURRENCY_WEIGHT = 5
URGENCY_WEIGHT = 5

_CURRENCY_RE = re.compile(r"\b(\d{1,3}(\.\d{3})*|\d+)(,\d{2})?\b")

DEFAULT_BANNED_TERMS = (
    "matar",
    "assassinar",
    "sequestro",
    "drogas",
    "invadir conta",
    "hackear",
    "endereco residencial de",
    "cpf de",
    "chantagem",
    "espionar",
    "criança",
    "pornografia",
    "explosivo",
    "arma",
    "branco/negro/gay",
)
DEFAULT_SENSITIVE_TERMS = (
    "descobrir endereco",
    "seguir pessoa",
    "monitorar",
    "localizar pessoa",
    "documentos pessoais",
    "senha",
    "codigo 2fa",
    "dados bancarios",
)
DEFAULT_URGENCY_MARKERS = ("urgent", "imediato", "immediate")


@dataclass(frozen=True, slots=True)
class Wordlists:
    banned: tuple[str, ...] = DEFAULT_BANNED_TERMS
    sensitive: tuple[str, ...] = DEFAULT_SENSITIVE_TERMS
    urgency_markers: tuple[str, ...] = DEFAULT_URGENCY_MARKERS


@dataclass(frozen=True, slots=True)
class RiskAssessment:
    score: int
    flags: tuple[str, ...] = field(default_factory=tuple)

    @property
    def has_banned_flag(self) -> bool:
        return any(flag.startswith(BANNED_PREFIX) for flag in self.flags)


DEFAULT_WORDLISTS = Wordlists()


def load_wordlists(path: str | None) -> Wordlists:
    """Read wordlists from a JSON file with optional ``banned``, ``sensitive`` and
    ``urgency_markers`` arrays. Missing keys fall back to the built-in lists.
    """
    if not path:
        return DEFAULT_WORDLISTS

    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError(f"wordlists file must contain a JSON object: {path}")

    return Wordlists(
        banned=_coerce_terms(raw.get("banned"), default=DEFAULT_BANNED_TERMS),
        sensitive=_coerce_terms(raw.get("sensitive"), default=DEFAULT_SENSITIVE_TERMS),
        urgency_markers=_coerce_terms(raw.get("urgency_markers"), default=DEFAULT_URGENCY_MARKERS),
    )


def evaluate(text: str | None, *, wordlists: Wordlists = DEFAULT_WORDLISTS) -> RiskAssessment:
    normalized = (text or "").lower()
    flags: list[str] = []
    score = 0

    for term in wordlists.banned:
        if term in normalized:
            flags.append(f"{BANNED_PREFIX}{term}")
            score += BANNED_WEIGHT

    for term in wordlists.sensitive:
        if term in normalized:
            flags.append(f"{SENSITIVE_PREFIX}{term}")
            score += SENSITIVE_WEIGHT

    # monetary amounts such as "1.500,00" or "200"
    if _CURRENCY_RE.search(normalized):
        score += CURRENCY_WEIGHT

    if any(marker in normalized for marker in wordlists.urgency_markers):
        score += URGENCY_WEIGHT

    return RiskAssessment(score=score, flags=tuple(flags))


def _coerce_terms(value: object, *, default: tuple[str, ...]) -> tuple[str, ...]:
    if value is None:
        return default
    if not isinstance(value, list):
        raise ValueError("wordlist entries must be JSON arrays of strings")

    terms: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ValueError("wordlist entries must be JSON arrays of strings")
        term = item.strip().lower()
        if term and term not in terms:
            terms.append(term)
    return tuple(terms)
