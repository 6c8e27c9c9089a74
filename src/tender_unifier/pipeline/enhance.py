from __future__ import annotations

import re
from typing import Optional

from tender_unifier.pipeline.rules import (
    EMAIL_RE,
    PHONE_RE,
    infer_sector,
    infer_status_from_deadline,
    infer_tender_type,
)
from tender_unifier.utils.text import (
    MAX_ABS_AMOUNT,
    capitalize_first,
    collapse_spaces,
    extract_numeric_value,
    is_blank,
    is_english_text,
)

MAX_CLEAN_PASSES = 5

TITLE_PREFIX_PATTERNS = [
    re.compile(r"^FORECAST(?:\s+[IVX\d]+)?\s*--\s*", re.IGNORECASE),
    re.compile(r"^[A-Z]{1,2}\s*--\s*"),
    re.compile(r"^\d+\s*--\s*"),
    re.compile(r"^(?:REF|RFP|RFQ|ITB|NO)\s*[:#]\s*", re.IGNORECASE),
    re.compile(r"^Sources\s+Sought\s*(?::|--?)\s*", re.IGNORECASE),
    re.compile(
        r"^(?:Tender|Notice|Solicitation|Combined\s+Synopsis(?:/Solicitation)?|Project\s+Title|"
        r"Title|Brief\s+Description|Short\s+Title|Purchase\s+of)\s*:\s*",
        re.IGNORECASE,
    ),
    re.compile(r"^Amendment\s+(?:No\.?\s*)?\d+\s+to\s+", re.IGNORECASE),
    re.compile(r"^(?:Modified|Revised|Updated?)\s*(?::|--?)\s*", re.IGNORECASE),
    re.compile(r"^Correction\s+to\s*:?\s*", re.IGNORECASE),
    re.compile(r"^Re\s*:\s*", re.IGNORECASE),
]

ABBREVIATION_SUFFIX_RE = re.compile(r"\s*\(([A-Z]{2,5}|\d{1,4})\)\s*$")
TRAILING_GROUP_RE = re.compile(r"^(.*?)\s*\(([^()]*)\)\s*$")
EMPTY_PARENS_RE = re.compile(r"\(\s*\)")

REFERENCE_TOKEN_PATTERNS = [
    re.compile(r"(?<![\w/-])[A-Z]{2,4}-\d{2,}-\d{2,}(?![\w/-])"),
    re.compile(r"(?<![\w/-])\d{5,}(?![\w/-])"),
    re.compile(r"(?<![\w/-])[A-Z]{2,}\d{4,}(?![\w/-])"),
    re.compile(r"(?<![\w/-])[A-Z]{1,3}/\d{2,}/\d{2,}(?![\w/-])"),
    re.compile(r"(?<![\w/-])RFx\d{4,}(?![\w/-])"),
    re.compile(r"(?<![\w/-])RF[QP]-\d{4,}(?![\w/-])"),
]

MINOR_WORDS = {
    "a", "an", "the", "and", "but", "or", "for", "nor", "on", "at", "to", "from",
    "by", "in", "of", "with", "under", "above", "between", "among",
}

ACRONYMS = {
    "ICB": "International Competitive Bidding",
    "NCB": "National Competitive Bidding",
    "RFP": "Request for Proposal",
    "EOI": "Expression of Interest",
    "USAID": "United States Agency for International Development",
    "USPSC": "US Personal Services Contractor",
    "IQC": "Indefinite Quantity Contract",
    "SOL": "",
    "PSC": "Personal Services Contractor",
    "IDIQ": "Indefinite Delivery Indefinite Quantity",
    "FSN": "Foreign Service National",
    "COP": "Chief of Party",
    "PAD": "Project Appraisal Document",
    "RFQ": "Request for Quotation",
    "ITB": "Invitation to Bid",
    "PMSC": "Project Management Support Consultant",
    "SME": "Small and Medium Enterprises",
    "CSO": "Civil Society Organization",
    "NGO": "Non-Governmental Organization",
    "UNDP": "United Nations Development Programme",
    "ADB": "Asian Development Bank",
    "WB": "World Bank",
    "EPC": "Engineering, Procurement and Construction",
    "HVAC": "Heating, Ventilation and Air Conditioning",
    "MOU": "Memorandum of Understanding",
    "CLIN": "Contract Line Item Number",
    "GSA": "General Services Administration",
    "MRO": "Maintenance, Repair and Operations",
    "WASH": "Water, Sanitation and Hygiene",
    "PPE": "Personal Protective Equipment",
    "VAT": "Value Added Tax",
}
ACRONYM_RE = re.compile(
    r"(?<![\w-])(" + "|".join(sorted(ACRONYMS, key=len, reverse=True)) + r")(?![\w-])"
)

REPEATED_WORD_RE = re.compile(r"\b(\w+)(?:\s+\1\b)+", re.IGNORECASE)
ELLIPSIS_RE = re.compile(r"\s*(?:\.{3,}|…)$")
GENERIC_PREFIX_RE = re.compile(
    r"^(?:Supply\s+of|Provision\s+of|Procurement\s+of|Purchase\s+of|Tender\s+for|Contract\s+for)\s+",
    re.IGNORECASE,
)
TRAILING_PUNCT_RE = re.compile(r"[\s.,;:\-]+$")
ROMAN_RE = re.compile(r"^[IVX]+$")

ALWAYS_UPPER = ["COVID-19", "COVID", "UN", "US", "UK", "EU", "IT", "IoT", "AI", "API", "ICT", "SMS"]
# Tokens safe to re-case when the author wrote them in lower case.
LOWERCASE_FIXES = ["COVID-19", "COVID", "IoT", "API", "ICT", "SMS", "EU", "UK"]

ORGANIZATION_IDS = {
    "100171790": "USAID (US Agency for International Development)",
    "100175108": "USAID East Africa",
    "100175112": "USAID Southern Africa",
    "100181493": "USAID Afghanistan",
    "100184904": "USAID Kosovo",
    "100187934": "USAID Sudan",
    "100000000": "World Bank",
    "100000001": "Asian Development Bank",
    "100000002": "European Union",
    "100000003": "United Nations Development Programme",
}

BUYER_PATTERNS = [
    re.compile(
        r"\b(?:issued by|purchaser|buyer|procuring entity|contracting authority|client)\s*[:\-]?\s+(?:the\s+)?([^.,;\n]+)",
        re.IGNORECASE,
    ),
    re.compile(r"\bon behalf of\s+(?:the\s+)?([^.,;\n]+)", re.IGNORECASE),
]

PROJECT_PATTERNS = [
    re.compile(r"\b(?:project name|project title|project|programme|program)\s*:\s*([^.;\n]+)", re.IGNORECASE),
    re.compile(r"\b(?:contract for|related to)\s+(?:the\s+)?([^.,;\n]+?)\s+project\b", re.IGNORECASE),
]

_REF_VALUE = r"((?=[\w/.-]*\d)[A-Za-z0-9][\w/.-]{2,})"
REFERENCE_PATTERNS = [
    re.compile(r"\b([A-Z]{2,4}[-/]\d{2,}[-/]\d{2,}(?:[-/][A-Za-z0-9]+)?)\b"),
    re.compile(r"\bRef(?:erence)?\b\.?\s*(?:No\b\.?|Number|#)?\s*[:.]?\s*" + _REF_VALUE, re.IGNORECASE),
    re.compile(r"\b(?:RFP|RFQ|ITB|IFB|EOI)\s*(?:No\b\.?|Number|#)\s*[:.]?\s*" + _REF_VALUE, re.IGNORECASE),
    re.compile(r"\bNo\.\s*" + _REF_VALUE),
    re.compile(r"\b(?:Tender|Notice|Project)\s+ID\s*[:.]?\s*" + _REF_VALUE, re.IGNORECASE),
]

CONTACT_NAME_PATTERNS = [
    re.compile(
        r"(?i:for more information,?\s+contact|contact person|contact|attention|attn)\.?\s*[:\-]?\s*"
        r"((?:Mr\.|Ms\.|Mrs\.|Dr\.)?\s*[A-Z][a-z]+(?:\s+[A-Z][a-zA-Z'.-]+){1,3})"
    ),
]

MONEY_PATTERNS = [
    re.compile(
        r"(?P<currency>US\$|USD|EUR|GBP|\$|€|£)\s*(?P<amount>\d[\d,]*(?:\.\d+)?)\s*"
        r"(?:(?P<scale>million|billion|m|bn)\b)?",
        re.IGNORECASE,
    ),
    re.compile(
        r"(?P<amount>\d[\d,]*(?:\.\d+)?)\s*(?:(?P<scale>million|billion|m|bn)\s*)?"
        r"(?P<currency>USD|EUR|GBP|dollars|euros|pounds)\b",
        re.IGNORECASE,
    ),
]
CURRENCY_WORDS = {
    "$": "USD",
    "us$": "USD",
    "usd": "USD",
    "dollars": "USD",
    "€": "EUR",
    "eur": "EUR",
    "euros": "EUR",
    "£": "GBP",
    "gbp": "GBP",
    "pounds": "GBP",
}
SCALES = {"million": 1e6, "m": 1e6, "billion": 1e9, "bn": 1e9}

COUNTRIES = [
    "Afghanistan", "Albania", "Algeria", "Angola", "Argentina", "Armenia", "Azerbaijan",
    "Bangladesh", "Belarus", "Benin", "Bhutan", "Bolivia", "Bosnia and Herzegovina", "Botswana",
    "Brazil", "Burkina Faso", "Burundi", "Cambodia", "Cameroon", "Central African Republic",
    "Chad", "Chile", "China", "Colombia", "Costa Rica", "Cote d'Ivoire", "Democratic Republic of the Congo",
    "Djibouti", "Dominican Republic", "Ecuador", "Egypt", "El Salvador", "Eritrea", "Ethiopia",
    "Fiji", "Gabon", "Gambia", "Georgia", "Ghana", "Guatemala", "Guinea", "Haiti", "Honduras",
    "India", "Indonesia", "Iraq", "Jamaica", "Jordan", "Kazakhstan", "Kenya", "Kosovo",
    "Kyrgyz Republic", "Laos", "Lebanon", "Lesotho", "Liberia", "Madagascar", "Malawi",
    "Mali", "Mauritania", "Mexico", "Moldova", "Mongolia", "Morocco", "Mozambique", "Myanmar",
    "Namibia", "Nepal", "Nicaragua", "Niger", "Nigeria", "Pakistan", "Panama",
    "Papua New Guinea", "Paraguay", "Peru", "Philippines", "Rwanda", "Senegal", "Sierra Leone",
    "Somalia", "South Africa", "South Sudan", "Sri Lanka", "Sudan", "Tajikistan", "Tanzania",
    "Thailand", "Togo", "Tunisia", "Turkey", "Uganda", "Ukraine", "United Kingdom",
    "United States", "Uruguay", "Uzbekistan", "Vietnam", "Yemen", "Zambia", "Zimbabwe",
]
COUNTRY_RE = re.compile(
    r"\b(" + "|".join(re.escape(c) for c in sorted(COUNTRIES, key=len, reverse=True)) + r")\b",
    re.IGNORECASE,
)
_COUNTRY_LOOKUP = {c.lower(): c for c in COUNTRIES}

SPECIAL_PLACE_FORMS = {
    "usa": "USA",
    "us": "US",
    "uk": "UK",
    "uae": "UAE",
    "drc": "DRC",
    "united states": "United States",
    "united states of america": "United States of America",
    "united kingdom": "United Kingdom",
    "united arab emirates": "United Arab Emirates",
}
PLACE_MINOR_WORDS = {"of", "and", "the", "d'", "de", "la"}

ENGLISH_PAIRS = [
    ("title", "title_english"),
    ("description", "description_english"),
    ("organization_name", "organization_name_english"),
    ("buyer", "buyer_english"),
    ("project_name", "project_name_english"),
]


def _fix_tokens(text: str, tokens: list[str]) -> str:
    for token in tokens:
        pattern = re.compile(rf"(?<![\w-]){re.escape(token)}(?![\w-])", re.IGNORECASE)
        text = pattern.sub(lambda _m, t=token: t, text)
    return text


def _title_word(word: str, first: bool) -> str:
    bare = word.strip("()[],.:;\"'")
    if not first and bare.lower() in MINOR_WORDS and bare == word:
        return word.lower()
    if ROMAN_RE.match(bare) and len(bare) <= 4:
        return word
    lowered = word.lower()
    for i, ch in enumerate(lowered):
        if ch.isalpha():
            return lowered[:i] + ch.upper() + lowered[i + 1 :]
    return lowered


def to_title_case(text: str) -> str:
    words = text.split(" ")
    return " ".join(_title_word(w, i == 0) for i, w in enumerate(words))


def _is_all_caps(text: str) -> bool:
    return len(text) > 10 and any(ch.isalpha() for ch in text) and text == text.upper()


def _strip_prefixes(title: str) -> str:
    changed = True
    while changed:
        changed = False
        for pattern in TITLE_PREFIX_PATTERNS:
            stripped = pattern.sub("", title, count=1)
            if stripped != title and stripped.strip():
                title = stripped.strip()
                changed = True
    return title


def _strip_abbreviation_suffix(title: str, reference_number: Optional[str]) -> str:
    match = ABBREVIATION_SUFFIX_RE.search(title)
    if not match or match.group(1) == reference_number:
        return title
    stripped = title[: match.start()].strip()
    return stripped or title


def _pull_references(body: str) -> tuple[str, list[str]]:
    refs: list[str] = []
    for pattern in REFERENCE_TOKEN_PATTERNS:
        for match in pattern.finditer(body):
            if match.group(0) not in refs:
                refs.append(match.group(0))
        body = pattern.sub(" ", body)
    return collapse_spaces(body), refs


def _clean_once(title: str, reference_number: Optional[str]) -> str:
    title = collapse_spaces(title)
    title = _strip_prefixes(title)
    title = _strip_abbreviation_suffix(title, reference_number)

    match = TRAILING_GROUP_RE.match(title)
    if match:
        body, suffix = match.group(1), match.group(2).strip()
    else:
        body, suffix = title, ""

    without_refs, refs = _pull_references(body)
    without_refs = TRAILING_PUNCT_RE.sub("", without_refs)
    if refs and without_refs:
        if suffix:
            without_refs = f"{without_refs} ({suffix})"
        body = without_refs
        suffix = reference_number or " ".join(refs)

    recased = _is_all_caps(body)
    if recased:
        body = to_title_case(collapse_spaces(body))
    body = ACRONYM_RE.sub(lambda m: ACRONYMS[m.group(1)], body)
    body = REPEATED_WORD_RE.sub(r"\1", body)
    body = ELLIPSIS_RE.sub("", body)
    if len(body.split()) > 5:
        body = GENERIC_PREFIX_RE.sub("", body, count=1)
    body = collapse_spaces(EMPTY_PARENS_RE.sub("", body))
    body = TRAILING_PUNCT_RE.sub("", body)
    body = capitalize_first(body)
    body = _fix_tokens(body, ALWAYS_UPPER if recased else LOWERCASE_FIXES)

    suffix = collapse_spaces(suffix)
    if not body:
        return f"({suffix})" if suffix else ""
    return f"{body} ({suffix})" if suffix else body


def clean_title(title: str, reference_number: Optional[str] = None) -> str:
    """Run the title cleanup steps until the title stops changing."""
    if reference_number is not None:
        reference_number = str(reference_number).strip() or None
    current = title
    for _ in range(MAX_CLEAN_PASSES):
        cleaned = _clean_once(current, reference_number)
        if not cleaned:
            return current
        if cleaned == current:
            break
        current = cleaned
    return current


def recase_place(value: str) -> str:
    key = collapse_spaces(value).lower()
    if key in SPECIAL_PLACE_FORMS:
        return SPECIAL_PLACE_FORMS[key]
    if value != value.upper() and value != value.lower():
        return value
    words = key.split(" ")
    out = []
    for i, word in enumerate(words):
        if i and word in PLACE_MINOR_WORDS:
            out.append(word)
        else:
            out.append("-".join(capitalize_first(part) for part in word.split("-")))
    return " ".join(out)


def _first_group(patterns: list[re.Pattern], text: str, min_len: int, max_len: int) -> Optional[str]:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            value = collapse_spaces(match.group(1)).rstrip(".")
            if min_len < len(value) < max_len:
                return value
    return None


def extract_reference(title: Optional[str], description: Optional[str]) -> Optional[str]:
    for text in (title, description):
        if not text:
            continue
        value = _first_group(REFERENCE_PATTERNS, text, 2, 60)
        if value:
            return value
    return None


def extract_money_phrase(text: str) -> tuple[Optional[float], Optional[str]]:
    for pattern in MONEY_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        amount = extract_numeric_value(match.group("amount"), field="estimated_value")
        if amount is None:
            continue
        scale = match.group("scale")
        if scale:
            amount *= SCALES[scale.lower()]
        if abs(amount) > MAX_ABS_AMOUNT:
            continue
        return amount, CURRENCY_WORDS.get(match.group("currency").lower())
    return None, None


def fill_missing(tender: dict) -> dict:
    """Back-fill empty fields from the ones already present. Never overwrites."""
    result = dict(tender)

    def empty(name: str) -> bool:
        return is_blank(result.get(name))

    if empty("organization_name") and not empty("organization_id"):
        known = ORGANIZATION_IDS.get(str(result["organization_id"]).strip())
        if known:
            result["organization_name"] = known

    if empty("status"):
        result["status"] = infer_status_from_deadline(result.get("deadline_date"))

    title = result.get("title") if isinstance(result.get("title"), str) else None
    description = result.get("description") if isinstance(result.get("description"), str) else None

    if description:
        if empty("buyer"):
            result["buyer"] = _first_group(BUYER_PATTERNS, description, 3, 100)
        if empty("project_name"):
            result["project_name"] = _first_group(PROJECT_PATTERNS, description, 3, 100)
        if empty("country"):
            match = COUNTRY_RE.search(description)
            if match:
                result["country"] = _COUNTRY_LOOKUP[match.group(1).lower()]
        if empty("contact_email"):
            match = EMAIL_RE.search(description)
            if match:
                result["contact_email"] = match.group(0)
        if empty("contact_name"):
            result["contact_name"] = _first_group(CONTACT_NAME_PATTERNS, description, 3, 50)
        if empty("contact_phone"):
            match = PHONE_RE.search(description)
            if match:
                result["contact_phone"] = match.group(0).strip()
        if result.get("estimated_value") is None:
            amount, currency = extract_money_phrase(description)
            if amount is not None:
                result["estimated_value"] = amount
                if empty("currency"):
                    result["currency"] = currency

    if empty("reference_number"):
        result["reference_number"] = extract_reference(title, description)
    if empty("tender_type"):
        result["tender_type"] = infer_tender_type(title, description)
    if empty("sector"):
        result["sector"] = infer_sector(title, description)

    for name in ("city", "country"):
        if isinstance(result.get(name), str) and result[name].strip():
            result[name] = recase_place(result[name])

    # After every other back-fill.
    for primary, english in ENGLISH_PAIRS:
        if empty(english) and not empty(primary) and is_english_text(result[primary]):
            result[english] = result[primary]
    return result


def enhance(tender: dict) -> dict:
    """Clean titles and back-fill missing fields; returns a new dict.

    Applying it to its own output gives the same output.
    """
    result = dict(tender)
    reference_number = result.get("reference_number")
    for name in ("title", "title_english"):
        value = result.get(name)
        if isinstance(value, str) and value.strip():
            result[name] = clean_title(value, reference_number)
    return fill_missing(result)
