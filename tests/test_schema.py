from __future__ import annotations

from tender_unifier.schema import UNIFIED_FIELDS, clean_for_store, empty_tender
from tender_unifier.utils.rate_limit import RateLimiter, shared_limiter


def test_clean_for_store_projects_and_sanitizes():
    tender = empty_tender()
    tender.update(
        {
            "source_table": "wb",
            "source_id": 42,
            "title": "  ",
            "estimated_value": "USD 1,500",
            "status": "Pending",
            "document_links": [{"title": "", "url": " http://a "}, {"url": ""}, "http://b"],
            "normalized_method": "magic",
            "processing_time_ms": 12.7,
            "extra_key": "dropped",
        }
    )
    warnings = []
    cleaned = clean_for_store(tender, warnings)
    assert list(cleaned) == UNIFIED_FIELDS
    assert cleaned["source_id"] == "42"
    assert cleaned["title"] is None
    assert cleaned["estimated_value"] == 1500.0
    assert cleaned["status"] is None
    assert cleaned["normalized_method"] is None
    assert cleaned["processing_time_ms"] == 12
    assert cleaned["document_links"] == [
        {"title": "Document", "url": "http://a"},
        {"title": "Document", "url": "http://b"},
    ]
    assert warnings == []
    assert "" not in cleaned.values()


def test_clean_for_store_nulls_bad_amounts():
    warnings = []
    cleaned = clean_for_store({"estimated_value": "a lot", "processing_time_ms": True}, warnings)
    assert cleaned["estimated_value"] is None
    assert cleaned["processing_time_ms"] is None
    assert [w.field for w in warnings] == ["estimated_value"]


def test_rate_limiter_spaces_calls():
    now = [100.0]
    slept = []

    def fake_sleep(seconds):
        slept.append(seconds)

    limiter = RateLimiter(60, clock=lambda: now[0], sleep=fake_sleep)
    limiter.wait("openai")
    limiter.wait("openai")
    limiter.wait("other")
    assert slept == [1.0]
    assert limiter.reserve("openai") == 2.0


def test_disabled_limiter_never_waits():
    slept = []
    limiter = RateLimiter(0, sleep=slept.append)
    assert not limiter.enabled
    limiter.wait("openai")
    limiter.wait("openai")
    assert slept == []
    assert shared_limiter(0) is shared_limiter(0)
