from __future__ import annotations

import logging

from tender_unifier.pipeline.stats import NormalizationStats, count_filled
from tender_unifier.schema import METHOD_FAST, METHOD_LLM, empty_tender


def _tender(**values):
    tender = empty_tender()
    tender.update(values)
    return tender


RAW_A = {"title": "old", "description": "d", "sector": "Energy", "currency": "USD", "noise": "x"}
TENDER_A = _tender(
    title="New",
    description="d",
    sector="Energy",
    currency="USD",
    status="Open",
    url="https://a.test/1",
    country="Kenya",
    contact_email="a@b.test",
)
RAW_B = {"unrelated": "value"}
TENDER_B = _tender(
    title="T",
    description="D",
    sector="Works",
    estimated_value=10.0,
    currency="EUR",
    status="Open",
    url="https://b.test/2",
    country="Kenya",
)


def _stats():
    stats = NormalizationStats()
    stats.record("sam_gov", RAW_A, TENDER_A, METHOD_FAST, 10)
    stats.record("ungm", RAW_B, TENDER_B, METHOD_LLM, 30)
    return stats


def test_count_filled_ignores_blanks_and_unknown_keys():
    assert count_filled(RAW_A) == 4
    assert count_filled({"title": "  ", "document_links": [], "estimated_value": 0}) == 1
    assert count_filled(TENDER_B) == 8


def test_summary_percentages_and_improvements():
    data = _stats().to_dict()
    assert data["total"] == 2
    assert data["average_time_ms"] == 20.0
    assert data["methods"] == {
        "llm": {"count": 1, "pct": 50.0},
        "fast": {"count": 1, "pct": 50.0},
        "fallback": {"count": 0, "pct": 0.0},
    }
    assert data["completion"] == {"before_pct": 6.25, "after_pct": 25.0, "gain_pct": 18.75}
    assert data["improvements"] == {
        "title_changes": 2,
        "sector_added": 1,
        "description_improved": 1,
        "contact_added": 1,
        "value_added": 1,
    }
    assert "per_minute" not in data


def test_per_source_breakdown():
    by_source = _stats().to_dict()["by_source"]
    assert by_source["sam_gov"]["average_time_ms"] == 10.0
    assert by_source["sam_gov"]["fast"] == 1
    assert by_source["sam_gov"]["completion"] == {"before_pct": 12.5, "after_pct": 25.0, "gain_pct": 12.5}
    assert by_source["ungm"]["llm"] == 1
    assert by_source["ungm"]["completion"]["before_pct"] == 0.0


def test_rate_uses_elapsed_time():
    data = _stats().to_dict(elapsed_s=30)
    assert data["elapsed_s"] == 30
    assert data["per_minute"] == 4.0
    assert NormalizationStats().to_dict(elapsed_s=0)["per_minute"] == 0.0


def test_merge_adds_counts_and_sources():
    total = _stats()
    other = NormalizationStats()
    other.record("wb", {}, _tender(title="W"), None, 5)
    total.merge(other)
    data = total.to_dict()
    assert total.total == 3
    assert total.average_time_ms == 15.0
    assert sorted(data["by_source"]) == ["sam_gov", "ungm", "wb"]
    assert sum(m["count"] for m in data["methods"].values()) == 2
    assert other.total == 1


def test_log_summary(caplog):
    logger = logging.getLogger("tender_unifier.stats_test")
    with caplog.at_level(logging.INFO, logger="tender_unifier.stats_test"):
        NormalizationStats().log_summary(logger, "empty")
        _stats().log_summary(logger, "run", elapsed_s=60)
    messages = [r.getMessage() for r in caplog.records]
    assert not any("Stats[empty]" in m for m in messages)
    assert "Stats[run]: 2 records, avg 20.00 ms/record, 2.00/min" in messages
    assert any(m.startswith("Stats[run]: methods llm=1 (50.0%)") for m in messages)
    assert any("ungm" in m and "0.0% -> 25.0%" in m for m in messages)
