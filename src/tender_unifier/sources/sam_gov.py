from __future__ import annotations

from typing import Any, Dict, Optional

from tender_unifier.sources.base import BaseSourceAdapter

STATUS_MAP = {
    "active": "Open",
    "inactive": "Closed",
    "archived": "Closed",
    "cancelled": "Canceled",
    "awarded": "Awarded",
}

ACTIVE_FLAGS = {"yes": "Open", "no": "Closed"}

OPPORTUNITY_TYPES = {
    "o": "Solicitation",
    "p": "Presolicitation",
    "k": "Combined Synopsis/Solicitation",
    "r": "Sources Sought",
    "g": "Sale of Surplus Property",
    "s": "Special Notice",
    "i": "Intent to Bundle Requirements",
    "a": "Award Notice",
    "u": "Justification and Approval",
}

# Longer NAICS prefixes first so "336" wins over "33".
NAICS_SECTORS = [
    ("336", "Transportation"),
    ("541", "Professional Services"),
    ("236", "Construction"),
    ("237", "Construction"),
    ("238", "Construction"),
    ("517", "Telecommunications"),
    ("518", "Information Technology"),
    ("621", "Healthcare"),
    ("622", "Healthcare"),
    ("611", "Education"),
    ("221", "Energy"),
    ("31", "Manufacturing"),
    ("32", "Manufacturing"),
    ("33", "Manufacturing"),
    ("11", "Agriculture"),
    ("21", "Mining"),
    ("48", "Transportation"),
    ("49", "Transportation"),
    ("92", "Defense & Security"),
]

PROMPT = (
    "This record comes from SAM.gov, the US federal contract opportunities system. "
    "All values are in USD. The country is the United States unless a place of performance "
    "says otherwise. 'type' codes: o=Solicitation, p=Presolicitation, k=Combined "
    "Synopsis/Solicitation, r=Sources Sought, a=Award Notice. Use the NAICS code to infer the "
    "sector and the primary point of contact for contact fields."
)


def naics_sector(code: Any) -> Optional[str]:
    text = str(code or "").strip()
    if not text:
        return None
    for prefix, sector in NAICS_SECTORS:
        if text.startswith(prefix):
            return sector
    return None


class SamGovAdapter(BaseSourceAdapter):
    source_table = "sam_gov"
    id_candidates = ["opportunity_id", "notice_id", "noticeId", "id"]
    prompt = PROMPT

    def generate_url(self, raw: Dict[str, Any]) -> Optional[str]:
        source_id = self.get_source_id(raw)
        if not source_id:
            return super().generate_url(raw)
        return f"https://sam.gov/opp/{source_id}/view"

    def status_aliases(self) -> Dict[str, str]:
        return dict(STATUS_MAP)

    def map_fields(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        opportunity_type = str(raw.get("type") or raw.get("opportunity_type") or "").strip().lower()
        status = str(raw.get("opportunity_status") or "").strip().lower()
        active = str(raw.get("active") or "").strip().lower()
        return {
            "title": raw.get("title"),
            "description": raw.get("description"),
            "country": "UNITED STATES",
            "currency": "USD",
            "organization_name": raw.get("department") or raw.get("agency"),
            "buyer": raw.get("office") or raw.get("sub_tier"),
            "reference_number": raw.get("solicitation_number"),
            "notice_id": self.get_source_id(raw),
            "status": STATUS_MAP.get(status) or ACTIVE_FLAGS.get(active),
            "tender_type": OPPORTUNITY_TYPES.get(opportunity_type),
            "sector": naics_sector(raw.get("naics_code") or raw.get("naics")),
            "language": "en",
        }
