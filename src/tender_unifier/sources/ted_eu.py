from __future__ import annotations

from typing import Any, Dict, Optional

from tender_unifier.sources.base import BaseSourceAdapter

NOTICE_URL = "https://ted.europa.eu/udl?uri=TED:NOTICE:{document_id}:TEXT:EN:HTML"

NOTICE_TYPES = {
    "cn": "Contract Notice",
    "pin": "Prior Information Notice",
    "can": "Contract Award Notice",
    "qs": "Qualification System",
    "veat": "Voluntary Ex Ante Transparency Notice",
}

STATUS_ALIASES = {
    "ouvert": "Open",
    "offen": "Open",
    "abierto": "Open",
    "aperto": "Open",
    "clôturé": "Closed",
    "geschlossen": "Closed",
    "cerrado": "Closed",
    "chiuso": "Closed",
    "attribué": "Awarded",
    "vergeben": "Awarded",
    "adjudicado": "Awarded",
    "aggiudicato": "Awarded",
    "annulé": "Canceled",
    "storniert": "Canceled",
    "cancelado": "Canceled",
    "annullato": "Canceled",
}

PROMPT = (
    "This record comes from TED (Tenders Electronic Daily), the EU public procurement journal. "
    "Titles and descriptions are often in the buyer's national language: keep the original in "
    "title/description and put translations in the *_english fields. Amounts are usually in EUR. "
    "CPV codes describe the sector. Notice types: CN=Contract Notice, PIN=Prior Information "
    "Notice, CAN=Contract Award Notice."
)


class TedEuAdapter(BaseSourceAdapter):
    source_table = "ted_eu"
    id_candidates = ["document_id", "notice_id", "id"]
    prompt = PROMPT

    def generate_url(self, raw: Dict[str, Any]) -> Optional[str]:
        document_id = self.get_source_id(raw)
        if not document_id:
            return super().generate_url(raw)
        return NOTICE_URL.format(document_id=document_id)

    def status_aliases(self) -> Dict[str, str]:
        return dict(STATUS_ALIASES)

    def map_fields(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        notice_type = str(raw.get("notice_type") or "").strip().lower()
        return {
            "organization_name": raw.get("buyer_name") or raw.get("contracting_authority"),
            "country": raw.get("buyer_country") or raw.get("country"),
            "city": raw.get("buyer_city") or raw.get("town"),
            "tender_type": NOTICE_TYPES.get(notice_type),
            "procurement_method": raw.get("procedure_type"),
            "currency": raw.get("currency") or "EUR",
            "notice_id": self.get_source_id(raw),
            "language": raw.get("language") or raw.get("original_language"),
        }
