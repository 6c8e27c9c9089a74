from __future__ import annotations

from typing import Any, Dict

from tender_unifier.sources.base import BaseSourceAdapter

STATUS_ALIASES = {
    "en cours": "Open",
    "ouvert": "Open",
    "clôturé": "Closed",
    "terminé": "Closed",
    "attribué": "Awarded",
    "annulé": "Canceled",
}

PROMPT = (
    "This record comes from Agence Française de Développement. Most notices are in French: keep "
    "the original text in title/description and put translations in the *_english fields. "
    "'contracting_authority' or 'organization' is the buyer; 'location' may hold the country. "
    "Status values: en cours=Open, clôturé/terminé=Closed, attribué=Awarded, annulé=Canceled."
)


class AfdAdapter(BaseSourceAdapter):
    source_table = "afd_tenders"
    id_candidates = ["tender_id", "id"]
    prompt = PROMPT

    def status_aliases(self) -> Dict[str, str]:
        return dict(STATUS_ALIASES)

    def map_fields(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "title": raw.get("tender_title"),
            "description": raw.get("tender_description"),
            "notice_id": raw.get("tender_id") or raw.get("notice_number"),
            "reference_number": raw.get("tender_reference"),
            "buyer": raw.get("contracting_authority") or raw.get("organization"),
            "organization_name": "Agence Française de Développement",
            "country": raw.get("location"),
            "tender_type": raw.get("tender_type") or "Tender",
            "sector": raw.get("category"),
            "currency": "EUR",
        }
