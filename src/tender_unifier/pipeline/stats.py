from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

from tender_unifier.schema import LLM_FIELDS, METHOD_FALLBACK, METHOD_FAST, METHOD_LLM
from tender_unifier.utils.text import is_blank

METHOD_KEYS = {METHOD_LLM: "llm", METHOD_FAST: "fast", METHOD_FALLBACK: "fallback"}
CONTACT_FIELDS = ("contact_email", "contact_name", "contact_phone")
COUNTERS = [
    "total",
    "time_ms",
    "llm",
    "fast",
    "fallback",
    "filled_before",
    "filled_after",
    "title_changes",
    "sector_added",
    "description_improved",
    "contact_added",
    "value_added",
]
SOURCE_COUNTERS = ["total", "time_ms", "llm", "fast", "fallback", "filled_before", "filled_after"]


def count_filled(record: dict) -> int:
    """Number of canonical fields holding a value."""
    return sum(1 for name in LLM_FIELDS if not is_blank(record.get(name)))


def _pct(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def _completion(counts: dict) -> dict:
    slots = counts["total"] * len(LLM_FIELDS)
    before = _pct(counts["filled_before"], slots)
    after = _pct(counts["filled_after"], slots)
    return {"before_pct": before, "after_pct": after, "gain_pct": round(after - before, 2)}


def _average(counts: dict) -> float:
    return round(counts["time_ms"] / counts["total"], 2) if counts["total"] else 0.0


@dataclass
class NormalizationStats:
    """Timing, method mix and field completion of normalized records.

    ``filled_before`` counts canonical fields already present in the raw
    record; ``filled_after`` counts them on the normalized tender.
    """

    counts: dict = field(default_factory=lambda: {name: 0 for name in COUNTERS})
    by_source: dict = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record(self, source_table: str, raw: dict, tender: dict, method: Optional[str], time_ms: int) -> None:
        before = count_filled(raw)
        after = count_filled(tender)
        method_key = METHOD_KEYS.get(method or "")
        improvements = {
            "title_changes": not is_blank(tender.get("title")) and tender.get("title") != raw.get("title"),
            "sector_added": is_blank(raw.get("sector")) and not is_blank(tender.get("sector")),
            "description_improved": not is_blank(tender.get("description"))
            and tender.get("description") != raw.get("description"),
            "contact_added": any(is_blank(raw.get(n)) and not is_blank(tender.get(n)) for n in CONTACT_FIELDS),
            "value_added": is_blank(raw.get("estimated_value")) and tender.get("estimated_value") is not None,
        }
        with self._lock:
            entry = self.by_source.setdefault(source_table, {name: 0 for name in SOURCE_COUNTERS})
            for counts in (self.counts, entry):
                counts["total"] += 1
                counts["time_ms"] += int(time_ms or 0)
                counts["filled_before"] += before
                counts["filled_after"] += after
                if method_key:
                    counts[method_key] += 1
            for name, hit in improvements.items():
                if hit:
                    self.counts[name] += 1

    def snapshot(self) -> tuple[dict, dict]:
        with self._lock:
            return dict(self.counts), {k: dict(v) for k, v in self.by_source.items()}

    def merge(self, other: "NormalizationStats") -> "NormalizationStats":
        counts, by_source = other.snapshot()
        with self._lock:
            for name, value in counts.items():
                self.counts[name] += value
            for source_table, source_counts in by_source.items():
                entry = self.by_source.setdefault(source_table, {name: 0 for name in SOURCE_COUNTERS})
                for name, value in source_counts.items():
                    entry[name] += value
        return self

    @property
    def total(self) -> int:
        return self.counts["total"]

    @property
    def average_time_ms(self) -> float:
        return _average(self.counts)

    def to_dict(self, elapsed_s: Optional[float] = None) -> dict:
        counts, by_source = self.snapshot()
        total = counts["total"]
        data = {
            "total": total,
            "average_time_ms": _average(counts),
            "methods": {
                key: {"count": counts[key], "pct": _pct(counts[key], total)} for key in ("llm", "fast", "fallback")
            },
            "completion": _completion(counts),
            "improvements": {
                name: counts[name]
                for name in ("title_changes", "sector_added", "description_improved", "contact_added", "value_added")
            },
            "by_source": {
                name: {
                    "total": c["total"],
                    "average_time_ms": _average(c),
                    "llm": c["llm"],
                    "fast": c["fast"],
                    "fallback": c["fallback"],
                    "completion": _completion(c),
                }
                for name, c in by_source.items()
            },
        }
        if elapsed_s is not None:
            data["elapsed_s"] = round(elapsed_s, 2)
            data["per_minute"] = round(total / elapsed_s * 60, 2) if elapsed_s > 0 else 0.0
        return data

    def log_summary(self, logger: logging.Logger, label: str, elapsed_s: Optional[float] = None) -> None:
        data = self.to_dict(elapsed_s)
        if not data["total"]:
            return
        methods = data["methods"]
        completion = data["completion"]
        logger.info(
            "Stats[%s]: %s records, avg %.2f ms/record%s",
            label,
            data["total"],
            data["average_time_ms"],
            f", {data['per_minute']:.2f}/min" if "per_minute" in data else "",
        )
        logger.info(
            "Stats[%s]: methods llm=%s (%s%%) fast=%s (%s%%) fallback=%s (%s%%)",
            label,
            methods["llm"]["count"],
            methods["llm"]["pct"],
            methods["fast"]["count"],
            methods["fast"]["pct"],
            methods["fallback"]["count"],
            methods["fallback"]["pct"],
        )
        logger.info(
            "Stats[%s]: field completion %s%% -> %s%%, improvements %s",
            label,
            completion["before_pct"],
            completion["after_pct"],
            data["improvements"],
        )
        for name, source in data["by_source"].items():
            logger.info(
                "Stats[%s]: %s avg %.2f ms, completion %s%% -> %s%%",
                label,
                name,
                source["average_time_ms"],
                source["completion"]["before_pct"],
                source["completion"]["after_pct"],
            )
