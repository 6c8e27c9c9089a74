from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Any, Iterable, Optional

from dateutil import parser as dtparser

from tender_unifier.errors import FieldExtractionWarning
from tender_unifier.schema import STATUS_VALUES, empty_tender
from tender_unifier.utils.text import (
    capitalize_first,
    collapse_spaces,
    extract_currency,
    extract_numeric_value,
    is_blank,
)

TEXT_CANDIDATES: dict[str, list[str]] = {
    "title": ["title", "opportunity_title", "name", "project_name", "contract_title", "notice_title", "tender_title"],
    "title_english": ["title_english", "title_en"],
    "description": [
        "description",
        "body",
        "summary",
        "details",
        "project_description",
        "notice_details",
        "short_description",
        "tender_description",
    ],
    "description_english": ["description_english", "description_en"],
    "status": ["status", "state", "opportunity_status", "tender_status"],
    "country": ["country", "country_name", "countryName", "nation", "location_country", "borrower_country", "delivery_country"],
    "city": ["city", "cityName", "town", "location_city", "place"],
    "organization_name": [
        "organization_name",
        "organizationName",
        "agency",
        "authority",
        "contracting_authority",
        "buyer_name",
    ],
    "organization_name_english": ["organization_name_english"],
    "organization_id": ["organization_id", "organizationId", "agency_id", "authority_id"],
    "buyer": ["buyer", "buyerName"],
    "buyer_english": ["buyer_english"],
    "project_name": ["project_name", "projectName"],
    "project_name_english": ["project_name_english"],
    "project_id": ["project_id", "projectId"],
    "project_number": ["project_number", "projectNumber"],
    "sector": ["sector", "sectorName"],
    "tender_type": ["tender_type", "tenderType", "notice_type"],
    "procurement_method": ["procurement_method", "procurementMethod"],
    "notice_id": ["notice_id", "noticeId", "id", "tender_id", "opportunity_id", "document_number"],
    "reference_number": ["reference_number", "referenceNumber", "reference", "ref", "solicitation_number"],
    "language": ["language", "lang"],
    "url": ["url", "link", "web_link", "noticeUrl", "tenderUrl"],
}

DATE_CANDIDATES: dict[str, list[str]] = {
    "publication_date": [
        "publication_date",
        "publicationDate",
        "published_date",
        "published",
        "publish_date",
        "issued_date",
        "date_published",
        "created_at",
    ],
    "deadline_date": [
        "deadline_date",
        "deadlineDate",
        "deadline",
        "closing_date",
        "response_date",
        "submission_deadline",
    ],
}

MONEY_CANDIDATES = [
    "estimated_value",
    "estimatedValue",
    "value",
    "amount",
    "contract_value",
    "budget",
    "potential_award_amount",
]

CONTACT_CANDIDATES: dict[str, list[str]] = {
    "contact_name": ["contact_name", "contactName", "contact_person", "poc", "point_of_contact", "contact"],
    "contact_email": ["contact_email", "contactEmail", "email"],
    "contact_phone": ["contact_phone", "contactPhone", "phone", "telephone"],
    "contact_address": ["contact_address", "contactAddress", "address"],
}

SOURCE_ID_CANDIDATES = ["id", "tender_id", "notice_id"]

DATE_FORMATS = ["%d/%m/%Y", "%d-%m-%Y", "%Y/%m/%d", "%Y-%m-%d"]
# Numbers below this are not read as epoch seconds (1973-03-03).
MIN_EPOCH_SECONDS = 1e8
YEAR_ONLY_RE = re.compile(r"\d{4}")

STATUS_KEYWORDS: dict[str, str] = {
    "open": "Open",
    "active": "Open",
    "ongoing": "Open",
    "current": "Open",
    "published": "Open",
    "closed": "Closed",
    "expired": "Closed",
    "archived": "Closed",
    "completed": "Closed",
    "inactive": "Closed",
    "awarded": "Awarded",
    "contract awarded": "Awarded",
    "winner selected": "Awarded",
    "canceled": "Canceled",
    "cancelled": "Canceled",
    "terminated": "Canceled",
    "withdrawn": "Canceled",
}

SECTOR_KEYWORDS: dict[str, list[str]] = {
    "Information Technology": [
        "IT", "software", "hardware", "computer", "technology", "digital", "cloud",
        "data center", "system integration", "ERP", "SAP", "AI",
        "artificial intelligence", "machine learning", "database",
    ],
    "Healthcare": [
        "health", "medical", "hospital", "clinic", "pharmaceutical", "drug", "healthcare",
        "medicine", "patient", "doctor", "nurse", "diagnostic", "treatment",
    ],
    "Construction": [
        "construction", "building", "infrastructure", "road", "bridge", "dam", "highway",
        "renovation", "civil works", "contractor", "concrete", "asphalt", "engineering",
    ],
    "Education": [
        "education", "school", "university", "college", "training", "learning", "academic",
        "student", "teacher", "educational", "curriculum", "classroom",
    ],
    "Agriculture": [
        "agriculture", "farming", "crop", "livestock", "irrigation", "farm", "agricultural",
        "food", "seed", "fertilizer", "harvesting", "plantation",
    ],
    "Energy": [
        "energy", "power", "electricity", "renewable", "solar", "wind", "hydroelectric",
        "fossil fuel", "gas", "oil", "nuclear", "grid", "transmission", "generator", "generators",
    ],
    "Transportation": [
        "transport", "logistics", "shipping", "freight", "rail", "railway", "airport", "port",
        "vessel", "car", "truck", "bus", "metro", "transit",
    ],
    "Telecommunications": [
        "telecom", "communication", "network", "cellular", "mobile", "fiber optic", "broadband",
        "internet", "wireless", "5G", "4G", "LTE", "cable",
    ],
    "Financial Services": [
        "financial", "banking", "insurance", "investment", "finance", "loan", "credit", "bank",
        "capital", "fund", "pension", "accounting", "audit",
    ],
    "Environmental": [
        "environment", "environmental", "conservation", "sustainability", "waste", "pollution",
        "recycling", "climate", "green", "eco", "biodiversity", "wastewater",
    ],
    "Water & Sanitation": [
        "water", "sanitation", "sewage", "plumbing", "drainage", "potable", "clean water",
        "drinking water", "pump", "pipe", "WASH", "hygiene",
    ],
    "Defense & Security": [
        "defense", "security", "military", "weapon", "surveillance", "protection", "police",
        "intelligence", "radar", "armor", "combat", "cyber",
    ],
    "Mining": [
        "mining", "mineral", "ore", "extraction", "quarry", "coal", "gold", "silver", "copper",
        "excavation", "drill",
    ],
    "Manufacturing": [
        "manufacturing", "factory", "industrial", "assembly", "production", "machinery",
        "fabrication", "processing",
    ],
    "Retail & Consumer Goods": [
        "retail", "consumer", "merchandise", "product", "store", "ecommerce", "supply chain",
    ],
    "Tourism & Hospitality": [
        "tourism", "hospitality", "hotel", "restaurant", "travel", "leisure", "accommodation",
        "tourist",
    ],
}

TENDER_TYPE_KEYWORDS: dict[str, list[str]] = {
    "Request for Proposal (RFP)": ["request for proposal", "RFP"],
    "Request for Quotation (RFQ)": ["request for quotation", "RFQ", "price quotation", "quote"],
    "Invitation to Bid (ITB)": ["invitation to bid", "ITB", "bidding"],
    "Expression of Interest (EOI)": ["expression of interest", "EOI"],
    "Request for Information (RFI)": ["request for information", "RFI", "sources sought"],
    "Pre-Qualification": ["pre-qualification", "prequalification"],
    "Direct Contract": ["direct contract", "direct award", "sole source"],
    "Framework Agreement": ["framework agreement", "framework", "indefinite delivery"],
    "Construction Contract": ["construction contract", "works contract", "civil works"],
    "Service Contract": ["service contract", "services"],
    "Supply Contract": ["supply contract", "supply of", "supplies", "goods"],
    "Consulting Services": ["consulting", "consultant", "consultancy"],
}

MIN_SCORE = 2
SECTOR_TITLE_WEIGHT = 2
TENDER_TYPE_TITLE_WEIGHT = 3

EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
PHONE_RE = re.compile(r"(?<!\w)\+?[0-9]{1,3}[-. (]?[0-9]{3}[-. )]?[0-9]{3}[-. ]?[0-9]{4}\b")

_PATTERN_CACHE: dict[str, re.Pattern] = {}


def keyword_pattern(keyword: str) -> re.Pattern:
    """Whole-word pattern; keywords carrying uppercase letters are acronyms and match case-sensitively."""
    pattern = _PATTERN_CACHE.get(keyword)
    if pattern is None:
        flags = 0 if any(ch.isupper() for ch in keyword) else re.IGNORECASE
        pattern = re.compile(rf"(?<!\w){re.escape(keyword)}(?!\w)", flags)
        _PATTERN_CACHE[keyword] = pattern
    return pattern


def score_categories(
    title: Optional[str],
    description: Optional[str],
    table: dict[str, list[str]],
    *,
    title_weight: int,
    count_occurrences: bool,
    min_score: int = MIN_SCORE,
) -> Optional[str]:
    """Pick the best-scoring category or None when below ``min_score`` or tied."""
    title = title or ""
    description = description or ""
    if not title and not description:
        return None

    scores: dict[str, int] = {}
    for category, keywords in table.items():
        score = 0
        for keyword in keywords:
            pattern = keyword_pattern(keyword)
            if count_occurrences:
                score += len(pattern.findall(description))
                score += len(pattern.findall(title)) * title_weight
            else:
                if pattern.search(title):
                    score += title_weight
                if pattern.search(description):
                    score += 1
        if score:
            scores[category] = score

    if not scores:
        return None
    best = max(scores.values())
    if best < min_score:
        return None
    leaders = [c for c, s in scores.items() if s == best]
    if len(leaders) != 1:
        return None
    return leaders[0]


def infer_sector(title: Optional[str], description: Optional[str]) -> Optional[str]:
    return score_categories(
        title,
        description,
        SECTOR_KEYWORDS,
        title_weight=SECTOR_TITLE_WEIGHT,
        count_occurrences=True,
    )


def infer_tender_type(title: Optional[str], description: Optional[str]) -> Optional[str]:
    return score_categories(
        title,
        description,
        TENDER_TYPE_KEYWORDS,
        title_weight=TENDER_TYPE_TITLE_WEIGHT,
        count_occurrences=False,
    )


def _scalar_text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list, tuple, set)):
        return None
    if isinstance(value, bool):
        return None
    text = collapse_spaces(str(value))
    return text or None


def pick_field(raw: dict, candidates: Iterable[str]) -> Any:
    """First present, non-null, non-blank value among ``candidates``."""
    for key in candidates:
        value = raw.get(key)
        if not is_blank(value):
            return value
    return None


def pick_text(raw: dict, candidates: Iterable[str]) -> Optional[str]:
    for key in candidates:
        text = _scalar_text(raw.get(key))
        if text:
            return text
    return None


def parse_date(
    value: Any,
    *,
    field: str = "date",
    warnings: Optional[list] = None,
) -> Optional[str]:
    """Normalize a date-ish value to ``YYYY-MM-DD``; unparsable input yields None."""
    if is_blank(value):
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if abs(value) < MIN_EPOCH_SECONDS:
            # 20240315 style numbers are compact dates; anything else is ambiguous.
            try:
                return datetime.strptime(str(int(value)), "%Y%m%d").date().isoformat()
            except (ValueError, OverflowError):
                if warnings is not None:
                    warnings.append(FieldExtractionWarning(field, value, "number is not a date"))
                return None
        seconds = float(value) / 1000.0 if abs(value) > 1e11 else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc).date().isoformat()
        except (OverflowError, OSError, ValueError):
            if warnings is not None:
                warnings.append(FieldExtractionWarning(field, value, "timestamp out of range"))
            return None

    text = str(value).strip()
    if YEAR_ONLY_RE.fullmatch(text):
        if warnings is not None:
            warnings.append(FieldExtractionWarning(field, value, "year without month and day"))
        return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date().isoformat()
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    try:
        return dtparser.parse(text, dayfirst=True).date().isoformat()
    except (ValueError, OverflowError):
        if warnings is not None:
            warnings.append(FieldExtractionWarning(field, value, "unparsable date"))
        return None


def extract_date(
    raw: dict,
    field: str,
    candidates: Iterable[str],
    warnings: Optional[list] = None,
) -> Optional[str]:
    for key in candidates:
        value = raw.get(key)
        if is_blank(value):
            continue
        parsed = parse_date(value, field=field, warnings=warnings)
        if parsed:
            return parsed
    return None


def parse_money(value: Any, warnings: Optional[list] = None) -> tuple[Optional[float], Optional[str]]:
    """Split a money value into (amount, currency); both None when the amount is unusable."""
    if isinstance(value, dict):
        inner = value.get("value", value.get("amount"))
        amount = extract_numeric_value(inner, warnings=warnings)
        currency = value.get("currency")
        if isinstance(currency, str) and currency.strip():
            currency = currency.strip().upper()
        else:
            currency = extract_currency(inner) if isinstance(inner, str) else None
        if amount is None:
            return None, None
        return amount, currency
    amount = extract_numeric_value(value, warnings=warnings)
    if amount is None:
        return None, None
    return amount, extract_currency(value) if isinstance(value, str) else None


def extract_money(raw: dict, warnings: Optional[list] = None) -> tuple[Optional[float], Optional[str]]:
    amount: Optional[float] = None
    currency: Optional[str] = None
    for key in MONEY_CANDIDATES:
        value = raw.get(key)
        if is_blank(value) or isinstance(value, bool):
            continue
        amount, currency = parse_money(value, warnings=warnings)
        break

    explicit = pick_text(raw, ["currency", "currency_code"])
    if explicit:
        currency = explicit.upper()
    return amount, currency


def _primary_contact(raw: dict) -> Optional[dict]:
    contacts = raw.get("contacts")
    if not isinstance(contacts, list):
        original = raw.get("original_data")
        contacts = original.get("contacts") if isinstance(original, dict) else None
    if not isinstance(contacts, list):
        return None
    entries = [c for c in contacts if isinstance(c, dict)]
    if not entries:
        return None
    for entry in entries:
        if str(entry.get("contact_type", "")).lower() == "primary":
            return entry
    return entries[0]


def extract_contacts(raw: dict, description: Optional[str]) -> dict:
    found = {name: pick_text(raw, keys) for name, keys in CONTACT_CANDIDATES.items()}

    primary = _primary_contact(raw)
    if primary:
        found["contact_name"] = found["contact_name"] or _scalar_text(
            primary.get("full_name") or primary.get("name")
        )
        found["contact_email"] = found["contact_email"] or _scalar_text(primary.get("email"))
        found["contact_phone"] = found["contact_phone"] or _scalar_text(primary.get("phone"))

    if description:
        if not found["contact_email"]:
            match = EMAIL_RE.search(description)
            if match:
                found["contact_email"] = match.group(0)
        if not found["contact_phone"]:
            match = PHONE_RE.search(description)
            if match:
                found["contact_phone"] = match.group(0).strip()
    return found


def _link_from(item: Any, default_title: str) -> Optional[dict]:
    if isinstance(item, str):
        url = item.strip()
        return {"title": default_title, "url": url} if url else None
    if isinstance(item, dict):
        url = item.get("url") or item.get("link") or item.get("file_url")
        if isinstance(url, str) and url.strip():
            title = item.get("title") or item.get("name") or default_title
            return {"title": collapse_spaces(str(title)), "url": url.strip()}
    return None


def extract_document_links(raw: dict) -> list[dict]:
    for key, default_title in (("attachments", "Attachment"), ("documents", "Document")):
        items = raw.get(key)
        if isinstance(items, list):
            links = [_link_from(item, default_title) for item in items]
            return [link for link in links if link]

    single = raw.get("document_url") or raw.get("attachment_url")
    if isinstance(single, str) and single.strip():
        title = raw.get("document_title") or raw.get("attachment_title") or "Document"
        return [{"title": str(title), "url": single.strip()}]
    return []


def normalize_status(value: Any, aliases: Optional[dict[str, str]] = None) -> Optional[str]:
    """Map a raw status onto the closed set; unknown values become None."""
    text = _scalar_text(value)
    if not text:
        return None
    if text in STATUS_VALUES:
        return text
    key = text.lower()
    if aliases:
        lowered = {str(k).lower(): v for k, v in aliases.items()}
        mapped = lowered.get(key)
        if mapped in STATUS_VALUES:
            return mapped
    return STATUS_KEYWORDS.get(key)


def infer_status_from_deadline(deadline: Optional[str], today: Optional[date] = None) -> Optional[str]:
    if not deadline:
        return None
    try:
        deadline_day = date.fromisoformat(deadline[:10])
    except ValueError:
        return None
    today = today or datetime.now(timezone.utc).date()
    return "Open" if deadline_day >= today else "Closed"


def _source_id(raw: dict) -> Optional[str]:
    value = pick_field(raw, SOURCE_ID_CANDIDATES)
    return _scalar_text(value)


_CAPITALIZED_FIELDS = ("title", "organization_name", "buyer", "project_name")


def normalize_without_llm(
    raw: dict,
    source_table: str,
    *,
    mode: str = "fast",
    status_aliases: Optional[dict[str, str]] = None,
    warnings: Optional[list] = None,
    logger=None,
) -> dict:
    """Rule-based mapping of a raw record onto the unified field set.

    Pure function of its inputs: ``raw`` is read, never mutated.
    """
    if warnings is None:
        warnings = []
    tender = empty_tender()
    tender["source_table"] = source_table
    tender["source_id"] = _source_id(raw)

    for name, candidates in TEXT_CANDIDATES.items():
        if name == "status":
            continue
        tender[name] = pick_text(raw, candidates)

    for name, candidates in DATE_CANDIDATES.items():
        tender[name] = extract_date(raw, name, candidates, warnings)

    amount, currency = extract_money(raw, warnings)
    tender["estimated_value"] = amount
    tender["currency"] = currency

    tender.update(extract_contacts(raw, tender.get("description")))
    tender["document_links"] = extract_document_links(raw)

    raw_status = pick_field(raw, TEXT_CANDIDATES["status"])
    status = normalize_status(raw_status, status_aliases)
    if raw_status is not None and status is None:
        warnings.append(FieldExtractionWarning("status", raw_status, "unknown status"))
    tender["status"] = status or infer_status_from_deadline(tender.get("deadline_date"))

    if not tender.get("tender_type"):
        tender["tender_type"] = infer_tender_type(tender.get("title"), tender.get("description"))
    if not tender.get("sector"):
        tender["sector"] = infer_sector(tender.get("title"), tender.get("description"))

    for name in _CAPITALIZED_FIELDS:
        if tender.get(name):
            tender[name] = capitalize_first(tender[name])

    if logger:
        for warning in warnings:
            logger.debug("Rules[%s]: %s/%s %s", mode, source_table, tender.get("source_id"), warning)
    return tender
