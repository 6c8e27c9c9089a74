from __future__ import annotations

import argparse
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo

from tender_unifier.config import AppConfig, load_config
from tender_unifier.errors import StoreError
from tender_unifier.pipeline.ingest import ingest_all_sources
from tender_unifier.sources.registry import default_registry
from tender_unifier.store import RunRecord, TenderStore


def _now_local(tz_name: str) -> datetime:
    try:
        return datetime.now(ZoneInfo(tz_name))
    except (KeyError, ValueError):
        return datetime.now()


def now_utc_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def _setup_logging(log_dir: Path, tz_name: str) -> logging.Logger:
    log_dir.mkdir(parents=True, exist_ok=True)
    now_local = _now_local(tz_name)
    log_path = log_dir / f"run_{now_local:%Y%m%d}.log"

    logger = logging.getLogger("tender_unifier")
    logger.setLevel(logging.INFO)

    if not logger.handlers:
        fmt = logging.Formatter("%(asctime)s | %(levelname)s | %(message)s")
        fh = logging.FileHandler(log_path, encoding="utf-8")
        fh.setFormatter(fmt)
        sh = logging.StreamHandler()
        sh.setFormatter(fmt)
        logger.addHandler(fh)
        logger.addHandler(sh)

    logger.info("Logging to %s", log_path)
    return logger


def _load_settings(config_path: Optional[str]) -> AppConfig:
    path = Path(config_path).expanduser().resolve() if config_path else None
    return load_config(path)


def _read_raw_file(path: Path) -> list[dict]:
    """Raw records from a JSON array or a JSON-lines file."""
    text = path.read_text(encoding="utf-8").strip()
    if not text:
        return []
    if text.startswith("["):
        data = json.loads(text)
        return [item for item in data if isinstance(item, dict)]
    records = []
    for line in text.splitlines():
        line = line.strip()
        if line:
            item = json.loads(line)
            if isinstance(item, dict):
                records.append(item)
    return records


def main(argv: Optional[list[str]] = None) -> int:
    pre_parser = argparse.ArgumentParser(add_help=False)
    pre_parser.add_argument("--config", help="Path to YAML config.")
    pre_args, _ = pre_parser.parse_known_args(argv)

    settings = _load_settings(pre_args.config)

    parser = argparse.ArgumentParser(prog="tender-unifier")
    parser.add_argument("--config", help="Path to YAML config.")
    parser.add_argument(
        "--source",
        action="append",
        dest="sources",
        help="Source table to ingest (repeatable). Defaults to every enabled source.",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=settings.ingest.default_limit,
        help="Stop a source after this many writes (0 = no limit).",
    )
    parser.add_argument("--force", action="store_true", help="Reprocess records already up to date.")
    parser.add_argument("--no-llm", action="store_true", help="Use rule-based normalization only.")
    parser.add_argument(
        "--continuous",
        action="store_true",
        help="Drop a source from the rotation once it has nothing left to read.",
    )
    parser.add_argument(
        "--load",
        help="Stage raw records from a JSON or JSON-lines file before ingesting (needs one --source).",
    )
    args = parser.parse_args(argv)

    if args.config and args.config != pre_args.config:
        settings = _load_settings(args.config)
    if args.no_llm:
        settings.llm.enabled = False

    paths = settings.paths
    logger = _setup_logging(paths.log_dir, settings.timezone)

    if args.load and len(args.sources or []) != 1:
        logger.error("--load needs exactly one --source")
        return 2

    try:
        store = TenderStore(paths.db_path, logger=logger).open()
    except StoreError:
        logger.exception("Cannot open SQLite store at %s", paths.db_path)
        return 1
    logger.info("SQLite store: %s", paths.db_path)
    if not settings.llm.available:
        logger.info("LLM disabled or no API key; records needing it use the rule-based fallback")

    run_id = None
    try:
        if args.load:
            try:
                records = _read_raw_file(Path(args.load).expanduser())
            except (OSError, ValueError):
                logger.exception("Cannot read raw records from %s", args.load)
                return 1
            for record in records:
                store.add_raw_tender(args.sources[0], record)
            logger.info("Staged %s raw records for %s", len(records), args.sources[0])

        registry = default_registry()
        sources = args.sources or [n for n in settings.enabled_sources() if registry.has_adapter(n)]
        run_id = store.start_run(
            RunRecord(started_at=now_utc_iso(), sources=sources, force_reprocess=args.force)
        )
        report = ingest_all_sources(
            store,
            registry,
            settings,
            per_source_limit=args.limit,
            force_reprocess=args.force,
            sources=sources,
            continuous=args.continuous,
            logger=logger,
        )
        for name, summary in report["sources"].items():
            logger.info("Source %s: %s", name, summary)
        logger.info("Totals: %s", report["totals"])
        logger.info(
            "LLM skipped for %s of %s records",
            report["decisions"]["skipped_llm"],
            report["decisions"]["total"],
        )

        failed = report["failed"]
        store.finish_run(
            run_id,
            finished_at=now_utc_iso(),
            status="error" if failed else "ok",
            error=",".join(failed) if failed else None,
            totals=report["totals"],
        )
    except StoreError:
        logger.exception("Ingest failed")
        if run_id is not None:
            try:
                store.finish_run(run_id, finished_at=now_utc_iso(), status="error", error="ingest_failed")
            except StoreError:
                logger.exception("Cannot record the failed run")
        return 1
    finally:
        store.close()
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
