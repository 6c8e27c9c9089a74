from __future__ import annotations

from typing import Dict, List, Optional

from tender_unifier.sources.adb import AdbAdapter
from tender_unifier.sources.afd import AfdAdapter
from tender_unifier.sources.base import BaseSourceAdapter, GenericAdapter
from tender_unifier.sources.iadb import IadbAdapter
from tender_unifier.sources.sam_gov import SamGovAdapter
from tender_unifier.sources.ted_eu import TedEuAdapter
from tender_unifier.sources.ungm import UngmAdapter
from tender_unifier.sources.wb import WorldBankAdapter


class SourceRegistry:
    def __init__(self, adapters: Optional[List[BaseSourceAdapter]] = None) -> None:
        self._adapters: Dict[str, BaseSourceAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: BaseSourceAdapter) -> None:
        if not adapter.source_table:
            raise ValueError("Adapter must declare a source_table")
        self._adapters[adapter.source_table] = adapter

    def has_adapter(self, source_table: str) -> bool:
        return source_table in self._adapters

    def get_adapter(self, source_table: str, *, generic: bool = True) -> Optional[BaseSourceAdapter]:
        adapter = self._adapters.get(source_table)
        if adapter is None and generic:
            return GenericAdapter(source_table)
        return adapter

    def sources(self) -> List[str]:
        return sorted(self._adapters)


def default_registry() -> SourceRegistry:
    return SourceRegistry(
        [
            SamGovAdapter(),
            WorldBankAdapter(),
            AdbAdapter(),
            AfdAdapter(),
            UngmAdapter(),
            IadbAdapter(),
            TedEuAdapter(),
        ]
    )
