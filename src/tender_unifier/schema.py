from __future__ import annotations

from typing import Any, Optional

from tender_unifier.utils.text import extract_numeric_value

# Fields the completion endpoint is asked to return.
LLM_FIELDS = [
    "title",
    "title_english",
    "description",
    "description_english",
    "tender_type",
    "status",
    "publication_date",
    "deadline_date",
    "country",
    "city",
    "organization_name",
    "organization_name_english",
    "organization_id",
    "buyer",
    "buyer_english",
    "project_name",
    "project_name_english",
    "project_id",
    "project_number",
    "sector",
    "estimated_value",
    "currency",
    "contact_name",
    "contact_email",
    "contact_phone",
    "contact_address",
    "url",
    "document_links",
    "language",
    "notice_id",
    "reference_number",
    "procurement_method",
]

PROVENANCE_FIELDS = [
    "normalized_at",
    "normalized_method",
    "processing_time_ms",
]

UNIFIED_FIELDS = ["source_table", "source_id"] + LLM_FIELDS + PROVENANCE_FIELDS

NUMERIC_FIELDS = {"estimated_value"}
INTEGER_FIELDS = {"processing_time_ms"}

STATUS_VALUES = {"Open", "Closed", "Awarded", "Canceled"}

METHOD_LLM = "llm"
METHOD_FAST = "rule-based-fast"
METHOD_FALLBACK = "rule-based-fallback"
NORMALIZED_METHODS = {METHOD_LLM, METHOD_FAST, METHOD_FALLBACK}


def empty_tender() -> dict:
    tender: dict[str, Any] = {name: None for name in UNIFIED_FIELDS}
    tender["document_links"] = []
    return tender


def _clean_links(value: Any) -> list[dict]:
    links: list[dict] = []
    if not isinstance(value, list):
        return links
    for item in value:
        if isinstance(item, str) and item.strip():
            links.append({"title": "Document", "url": item.strip()})
        elif isinstance(item, dict):
            url = item.get("url")
            if isinstance(url, str) and url.strip():
                title = item.get("title")
                title = title.strip() if isinstance(title, str) and title.strip() else "Document"
                links.append({"title": title, "url": url.strip()})
    return links


def _clean_scalar(value: Any) -> Optional[Any]:
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        return value or None
    if isinstance(value, (int, float, bool)):
        return value
    # Nested structures are not part of the unified schema.
    return str(value)


def clean_for_store(tender: dict, warnings: Optional[list] = None) -> dict:
    """Project a tender onto the unified columns with store-safe values.

    Unknown keys are dropped, empty strings become None, numeric fields are
    coerced to float-or-None and status outside the closed set becomes None.
    """
    cleaned: dict[str, Any] = {}
    for name in UNIFIED_FIELDS:
        value = tender.get(name)
        if name == "document_links":
            cleaned[name] = _clean_links(value)
        elif name in NUMERIC_FIELDS:
            cleaned[name] = extract_numeric_value(value, field=name, warnings=warnings)
        elif name in INTEGER_FIELDS:
            cleaned[name] = int(value) if isinstance(value, (int, float)) and not isinstance(value, bool) else None
        else:
            cleaned[name] = _clean_scalar(value)

    if cleaned.get("status") not in STATUS_VALUES:
        cleaned["status"] = None
    if cleaned.get("source_id") is not None:
        cleaned["source_id"] = str(cleaned["source_id"])
    if cleaned.get("normalized_method") not in NORMALIZED_METHODS:
        cleaned["normalized_method"] = None
    return cleaned
