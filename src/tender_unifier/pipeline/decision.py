from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from tender_unifier.config import SourceConfig
from tender_unifier.pipeline.rules import TEXT_CANDIDATES, pick_text
from tender_unifier.utils.text import is_blank, is_strongly_english

CRITICAL_FIELDS = [
    "title",
    "description",
    "publication_date",
    "deadline_date",
    "status",
    "tender_type",
    "estimated_value",
]
MAX_MISSING_CRITICAL = 2

MIN_ENGLISH_TITLE_LEN = 20
MIN_ENGLISH_DESCRIPTION_LEN = 100
MINIMAL_DESCRIPTION_LEN = 150
MINIMAL_TITLE_LEN = 50
MAX_DESCRIPTION_LEN = 15000
QUALITY_TITLE_LEN = 10
QUALITY_DESCRIPTION_LEN = 100

_DATE_KEYS = [
    "publication_date",
    "publicationDate",
    "published_date",
    "deadline_date",
    "deadlineDate",
    "deadline",
    "closing_date",
]


@dataclass(frozen=True)
class NormalizationDecision:
    use_llm: bool
    reason: str
    rule: str

    def to_dict(self) -> dict:
        return {"use_llm": self.use_llm, "reason": self.reason, "rule": self.rule}


@dataclass
class DecisionStats:
    """Counts of decisions taken, overall and per source."""

    total: int = 0
    skipped_llm: int = 0
    by_source: dict = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record(self, source_table: str, decision: NormalizationDecision) -> None:
        with self._lock:
            self.total += 1
            entry = self.by_source.setdefault(source_table, {"total": 0, "skipped_llm": 0})
            entry["total"] += 1
            if not decision.use_llm:
                self.skipped_llm += 1
                entry["skipped_llm"] += 1

    def merge(self, other: "DecisionStats") -> "DecisionStats":
        snapshot = other.to_dict()
        with self._lock:
            self.total += snapshot["total"]
            self.skipped_llm += snapshot["skipped_llm"]
            for name, counts in snapshot["by_source"].items():
                entry = self.by_source.setdefault(name, {"total": 0, "skipped_llm": 0})
                entry["total"] += counts["total"]
                entry["skipped_llm"] += counts["skipped_llm"]
        return self

    @property
    def skip_rate(self) -> float:
        return self.skipped_llm / self.total if self.total else 0.0

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "total": self.total,
                "skipped_llm": self.skipped_llm,
                "skip_rate": round(self.skip_rate, 4),
                "by_source": {k: dict(v) for k, v in self.by_source.items()},
            }


def _declared_language(raw: dict) -> Optional[str]:
    value = raw.get("language", raw.get("lang"))
    if isinstance(value, str) and value.strip():
        return value.strip().lower()
    return None


def _count_missing(raw: dict, names: Iterable[str]) -> int:
    return sum(1 for name in names if is_blank(raw.get(name)))


def _has_any(raw: dict, keys: Iterable[str]) -> bool:
    return any(not is_blank(raw.get(k)) for k in keys)


def _decide(raw: dict, source: SourceConfig, default_language: str) -> NormalizationDecision:
    default_language = (default_language or "en").lower()
    declared = _declared_language(raw)

    if source.fast_path:
        return NormalizationDecision(False, f"{source.name} is on the fast-path list", "fast_path_source")

    if (source.language or "").lower() == default_language and declared == default_language:
        return NormalizationDecision(
            False,
            f"{source.name} publishes in {default_language} and the record declares it",
            "source_language",
        )

    missing = _count_missing(raw, CRITICAL_FIELDS)
    if missing <= MAX_MISSING_CRITICAL:
        return NormalizationDecision(False, f"only {missing} critical fields missing", "completeness")

    title = pick_text(raw, TEXT_CANDIDATES["title"]) or ""
    description = pick_text(raw, TEXT_CANDIDATES["description"]) or ""

    if declared == default_language:
        return NormalizationDecision(False, f"record declares {default_language}", "strong_english")
    if len(title) >= MIN_ENGLISH_TITLE_LEN and is_strongly_english(title):
        return NormalizationDecision(False, "title reads as English", "strong_english")
    if len(description) > MIN_ENGLISH_DESCRIPTION_LEN and is_strongly_english(description):
        return NormalizationDecision(False, "description reads as English", "strong_english")

    if len(description) < MINIMAL_DESCRIPTION_LEN and len(title) < MINIMAL_TITLE_LEN:
        return NormalizationDecision(False, "minimal content", "minimal_content")
    if len(description) > MAX_DESCRIPTION_LEN:
        return NormalizationDecision(False, "description too long for completion", "oversized")

    status = pick_text(raw, TEXT_CANDIDATES["status"])
    if (
        len(title) > QUALITY_TITLE_LEN
        and len(description) > QUALITY_DESCRIPTION_LEN
        and _has_any(raw, _DATE_KEYS)
        and status
    ):
        return NormalizationDecision(False, "fields already look normalized", "high_quality")

    return NormalizationDecision(True, "needs LLM normalization", "default")


def decide(
    raw: dict,
    source_table: str,
    sources_config: Any,
    *,
    default_language: str = "en",
    stats: Optional[DecisionStats] = None,
) -> NormalizationDecision:
    """Choose the LLM or rule path for one raw record.

    ``sources_config`` is either an AppConfig (looked up by ``source_table``)
    or a SourceConfig. The result depends only on the arguments; ``stats`` is
    updated afterwards and never read.
    """
    if isinstance(sources_config, SourceConfig):
        source = sources_config
    else:
        source = sources_config.source(source_table)
    decision = _decide(raw, source, default_language)
    if stats is not None:
        stats.record(source_table, decision)
    return decision
