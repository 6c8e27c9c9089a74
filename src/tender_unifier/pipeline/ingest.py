from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

from tender_unifier.config import AppConfig
from tender_unifier.errors import StoreConflict, StoreError
from tender_unifier.pipeline.decision import DecisionStats
from tender_unifier.pipeline.normalize import normalize_record
from tender_unifier.pipeline.stats import NormalizationStats
from tender_unifier.schema import METHOD_FALLBACK, METHOD_FAST, METHOD_LLM, clean_for_store
from tender_unifier.sources.base import BaseSourceAdapter
from tender_unifier.store import RawCandidate, TenderStore, to_utc_iso

INSERTED = "inserted"
UPDATED = "updated"
SKIPPED = "skipped"
ERROR = "error"


@dataclass
class RecordResult:
    row_id: int
    source_id: Optional[str]
    outcome: str
    method: Optional[str] = None
    quota_exhausted: bool = False
    error: Optional[str] = None


@dataclass
class IngestResult:
    source_table: str
    processed: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    fallback: int = 0
    fast_normalization: int = 0
    llm: int = 0
    attempts: int = 0
    decisions: DecisionStats = field(default_factory=DecisionStats)
    performance: NormalizationStats = field(default_factory=NormalizationStats)

    def add(self, record: RecordResult) -> None:
        if record.method:
            self.attempts += 1
            if record.method == METHOD_FALLBACK:
                self.fallback += 1
            elif record.method == METHOD_FAST:
                self.fast_normalization += 1
            elif record.method == METHOD_LLM:
                self.llm += 1
        if record.outcome == INSERTED:
            self.processed += 1
        elif record.outcome == UPDATED:
            self.processed += 1
            self.updated += 1
        elif record.outcome == SKIPPED:
            self.skipped += 1
        else:
            self.errors += 1

    def merge(self, other: "IngestResult") -> "IngestResult":
        self.processed += other.processed
        self.updated += other.updated
        self.skipped += other.skipped
        self.errors += other.errors
        self.fallback += other.fallback
        self.fast_normalization += other.fast_normalization
        self.llm += other.llm
        self.attempts += other.attempts
        self.decisions.merge(other.decisions)
        self.performance.merge(other.performance)
        return self

    def __add__(self, other: "IngestResult") -> "IngestResult":
        name = self.source_table if self.source_table == other.source_table else "*"
        combined = IngestResult(source_table=name)
        return combined.merge(self).merge(other)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.errors,
            "fallback": self.fallback,
            "fastNormalization": self.fast_normalization,
        }


def _is_newer(raw_ts: Optional[str], stored_ts: Optional[str]) -> bool:
    raw_iso = to_utc_iso(raw_ts)
    stored_iso = to_utc_iso(stored_ts)
    # Without both timestamps an existing record is left alone.
    if not raw_iso or not stored_iso:
        return False
    return raw_iso > stored_iso


def _select_candidates(
    candidates: List[RawCandidate],
    adapter: BaseSourceAdapter,
    store: TenderStore,
    source_table: str,
    force_reprocess: bool,
    result: IngestResult,
    logger=None,
) -> tuple[list[tuple[RawCandidate, str, bool]], list[int]]:
    """Split candidates into work items and rows that only need marking."""
    identified: list[tuple[RawCandidate, str]] = []
    done: list[int] = []
    seen: set[str] = set()
    for candidate in candidates:
        source_id = adapter.get_source_id(candidate.payload)
        if not source_id:
            if logger:
                logger.warning("Ingest[%s]: raw row %s has no source id, dropped", source_table, candidate.row_id)
            result.skipped += 1
            done.append(candidate.row_id)
            continue
        if source_id in seen:
            # An older copy of a record already queued in this batch.
            result.skipped += 1
            done.append(candidate.row_id)
            continue
        seen.add(source_id)
        identified.append((candidate, source_id))

    existing = store.fetch_existing_freshness(source_table, [sid for _, sid in identified])

    work: list[tuple[RawCandidate, str, bool]] = []
    for candidate, source_id in identified:
        exists = source_id in existing
        if not exists or force_reprocess or _is_newer(candidate.updated_at, existing[source_id]):
            work.append((candidate, source_id, exists))
        else:
            result.skipped += 1
            done.append(candidate.row_id)
    return work, done


def _write(store: TenderStore, tender: dict, exists: bool) -> str:
    if exists and store.update_unified(tender):
        return UPDATED
    try:
        store.insert_unified(tender)
    except StoreConflict:
        return SKIPPED
    return INSERTED


def ingest(
    source_table: str,
    limit: int = 100,
    force_reprocess: bool = False,
    *,
    store: TenderStore,
    adapter: BaseSourceAdapter,
    config: AppConfig,
    logger: Optional[logging.Logger] = None,
    invoke: Optional[Callable] = None,
    llm_disabled: Optional[threading.Event] = None,
    seen_rows: Optional[Set[int]] = None,
) -> IngestResult:
    """Normalize fresh raw records of one source into the unified store.

    At most ``limit`` records are written (0 = no limit); rows past the limit
    stay pending for the next call. Rows listed in ``seen_rows`` are ignored
    and every row this call handles is added to it.

    Only a failure to read candidates raises; every per-record failure is
    counted in the returned result.
    """
    result = IngestResult(source_table=source_table)
    if llm_disabled is None:
        llm_disabled = threading.Event()
    settings = config.ingest
    chunk_size = max(1, int(settings.chunk_size))
    concurrency = max(1, int(settings.concurrency))
    limited = bool(limit and limit > 0)

    candidates = store.fetch_raw_tenders(source_table, force_reprocess=force_reprocess)
    if seen_rows is not None:
        candidates = [c for c in candidates if c.row_id not in seen_rows]
    work, done = _select_candidates(candidates, adapter, store, source_table, force_reprocess, result, logger)
    store.mark_raw_processed(done)
    if seen_rows is not None:
        seen_rows.update(done)

    if logger:
        logger.info(
            "Ingest[%s]: %s candidates, %s to normalize, %s already current",
            source_table,
            len(candidates),
            len(work),
            len(done),
        )

    llm_pool = ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="llm")

    def _process(candidate: RawCandidate, source_id: str, exists: bool, index: int) -> RecordResult:
        delay = (index // concurrency) * settings.stagger_s
        if delay > 0:
            time.sleep(delay)
        method = None
        quota = False
        try:
            outcome = normalize_record(
                candidate.payload,
                source_table,
                adapter=adapter,
                config=config,
                llm_executor=llm_pool,
                llm_disabled=llm_disabled,
                stats=result.decisions,
                invoke=invoke,
                logger=logger,
            )
            method = outcome.method
            quota = outcome.quota_exhausted
            tender = clean_for_store(outcome.tender, outcome.warnings)
            result.performance.record(source_table, candidate.payload, tender, method, outcome.processing_time_ms)
            status = _write(store, tender, exists)
            return RecordResult(candidate.row_id, source_id, status, method=method, quota_exhausted=quota)
        except StoreError as exc:
            if logger:
                logger.error("Ingest[%s]: store write failed for %s: %s", source_table, source_id, exc)
            return RecordResult(candidate.row_id, source_id, ERROR, method=method, quota_exhausted=quota, error=str(exc))
        except Exception as exc:
            if logger:
                logger.exception("Ingest[%s]: normalization failed for %s", source_table, source_id)
            return RecordResult(candidate.row_id, source_id, ERROR, method=method, quota_exhausted=quota, error=str(exc))

    quota_logged = False
    cursor = 0
    chunk_no = 0
    try:
        with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="ingest") as pool:
            while cursor < len(work):
                size = chunk_size
                if limited:
                    remaining = limit - result.processed
                    if remaining <= 0:
                        break
                    size = min(size, remaining)
                chunk = work[cursor:cursor + size]
                cursor += len(chunk)
                chunk_no += 1
                futures = [
                    pool.submit(_process, candidate, source_id, exists, index)
                    for index, (candidate, source_id, exists) in enumerate(chunk)
                ]
                records = [f.result() for f in futures]

                for record in records:
                    result.add(record)
                    if record.quota_exhausted and not quota_logged and logger:
                        logger.warning("Ingest[%s]: LLM quota exhausted, using rule-based path for the rest of the run", source_table)
                        quota_logged = True
                store.mark_raw_processed([r.row_id for r in records if r.outcome != ERROR])
                if seen_rows is not None:
                    seen_rows.update(r.row_id for r in records)

                if logger:
                    logger.info(
                        "Ingest[%s]: chunk %s done (processed=%s, skipped=%s, errors=%s)",
                        source_table,
                        chunk_no,
                        result.processed,
                        result.skipped,
                        result.errors,
                    )
    finally:
        llm_pool.shutdown(wait=False)

    if logger:
        logger.info("Ingest[%s]: %s", source_table, result.to_dict())
    return result


def ingest_all_sources(
    store: TenderStore,
    registry,
    config: AppConfig,
    *,
    per_source_limit: Optional[int] = None,
    force_reprocess: bool = False,
    sources: Optional[List[str]] = None,
    continuous: bool = False,
    logger: Optional[logging.Logger] = None,
    invoke: Optional[Callable] = None,
) -> dict:
    """Spread a run over the sources in round-robin batches.

    Every round writes up to ``round_batch_size`` records per source until
    ``per_source_limit`` is used up (0 = one unbounded pass). In
    ``continuous`` mode a source with nothing left to read is dropped from
    later rounds. A source whose store access fails is reported and dropped;
    the others carry on.
    """
    if sources:
        names = list(dict.fromkeys(sources))
    else:
        names = [name for name in config.enabled_sources() if registry.has_adapter(name)]
    limit = config.ingest.default_limit if per_source_limit is None else per_source_limit
    remaining: Optional[int] = limit if limit and limit > 0 else None
    batch_size = max(1, int(config.ingest.round_batch_size))
    llm_disabled = threading.Event()
    started = time.monotonic()

    results: Dict[str, IngestResult] = {name: IngestResult(source_table=name) for name in names}
    seen: Dict[str, Set[int]] = {name: set() for name in names}
    errors: Dict[str, str] = {}
    active = list(names)
    rounds = 0

    while active:
        rounds += 1
        round_limit = min(batch_size, remaining) if remaining is not None else 0
        progressed = False
        for name in list(active):
            try:
                result = ingest(
                    name,
                    round_limit,
                    force_reprocess,
                    store=store,
                    adapter=registry.get_adapter(name),
                    config=config,
                    logger=logger,
                    invoke=invoke,
                    llm_disabled=llm_disabled,
                    seen_rows=seen[name],
                )
            except StoreError as exc:
                if logger:
                    logger.error("Ingest[%s]: source failed: %s", name, exc)
                errors[name] = str(exc)
                active.remove(name)
                continue
            results[name].merge(result)
            if result.processed + result.skipped + result.errors:
                progressed = True
            if continuous and result.processed + result.skipped == 0:
                if logger:
                    logger.info("Ingest[%s]: nothing left to read, leaving the rotation", name)
                active.remove(name)
        if remaining is None:
            break
        remaining -= round_limit
        if remaining <= 0 or not progressed:
            break

    elapsed = time.monotonic() - started
    report: Dict[str, dict] = {}
    totals = IngestResult(source_table="*")
    for name in names:
        totals.merge(results[name])
        if name in errors:
            report[name] = {"status": "failed", "error": errors[name], **results[name].to_dict()}
        else:
            report[name] = {"status": "ok", **results[name].to_dict()}

    if logger:
        logger.info("Ingest: %s rounds over %s sources", rounds, len(names))
        totals.performance.log_summary(logger, "run", elapsed)

    return {
        "sources": report,
        "totals": totals.to_dict(),
        "failed": [name for name in names if name in errors],
        "decisions": totals.decisions.to_dict(),
        "performance": totals.performance.to_dict(elapsed),
        "rounds": rounds,
    }
