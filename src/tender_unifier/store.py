from __future__ import annotations

import json
import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from dateutil import parser as dtparser

from tender_unifier.errors import StoreConflict, StoreError
from tender_unifier.schema import UNIFIED_FIELDS

_KEY_FIELDS = ("source_table", "source_id")
_WRITABLE_FIELDS = [f for f in UNIFIED_FIELDS if f not in _KEY_FIELDS]
_FRESHNESS_KEYS = ("updated_at", "last_updated", "last_modified", "modified_at", "modified_date")


def _now_utc_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def to_utc_iso(value: Any) -> Optional[str]:
    """Normalize a timestamp to second-precision UTC ISO text, or None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = dtparser.parse(str(value))
        except (ValueError, OverflowError):
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).replace(microsecond=0).isoformat()


MIGRATIONS: list[tuple[int, str]] = [
    (
        1,
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            started_at TEXT NOT NULL,
            finished_at TEXT,
            sources TEXT,
            force_reprocess INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'ok',
            processed_count INTEGER DEFAULT 0,
            updated_count INTEGER DEFAULT 0,
            skipped_count INTEGER DEFAULT 0,
            error_count INTEGER DEFAULT 0,
            fallback_count INTEGER DEFAULT 0,
            fast_count INTEGER DEFAULT 0,
            error TEXT
        );

        CREATE TABLE IF NOT EXISTS raw_tenders (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            source_table TEXT NOT NULL,
            payload TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT,
            last_processed_at TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_raw_tenders_source
            ON raw_tenders(source_table, created_at);
        CREATE INDEX IF NOT EXISTS idx_runs_finished_at ON runs(finished_at);
        """,
    ),
    (
        2,
        """
        CREATE TABLE IF NOT EXISTS unified_tenders (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            source_table TEXT NOT NULL,
            source_id TEXT NOT NULL,
            notice_id TEXT,
            reference_number TEXT,
            title TEXT,
            title_english TEXT,
            description TEXT,
            description_english TEXT,
            tender_type TEXT,
            status TEXT CHECK (status IS NULL OR status IN ('Open', 'Closed', 'Awarded', 'Canceled')),
            publication_date TEXT,
            deadline_date TEXT,
            country TEXT,
            city TEXT,
            organization_name TEXT,
            organization_name_english TEXT,
            organization_id TEXT,
            buyer TEXT,
            buyer_english TEXT,
            project_name TEXT,
            project_name_english TEXT,
            project_id TEXT,
            project_number TEXT,
            sector TEXT,
            estimated_value REAL,
            currency TEXT,
            contact_name TEXT,
            contact_email TEXT,
            contact_phone TEXT,
            contact_address TEXT,
            url TEXT,
            document_links TEXT,
            language TEXT,
            procurement_method TEXT,
            normalized_at TEXT,
            normalized_method TEXT,
            processing_time_ms INTEGER,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (source_table, source_id)
        );

        CREATE INDEX IF NOT EXISTS idx_unified_tenders_updated_at
            ON unified_tenders(source_table, updated_at);
        """,
    ),
]


def _apply_migrations(conn: sqlite3.Connection, logger: logging.Logger) -> None:
    conn.execute(
        "CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)"
    )
    applied = {
        row[0] for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    for version, sql in MIGRATIONS:
        if version in applied:
            continue
        logger.info("Applying DB migration %s", version)
        conn.executescript(sql)
        conn.execute(
            "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
            (version, _now_utc_iso()),
        )
    conn.commit()


@dataclass(frozen=True)
class RawCandidate:
    row_id: int
    source_table: str
    payload: dict
    created_at: str
    updated_at: Optional[str]


@dataclass
class RunRecord:
    started_at: str
    sources: list[str]
    force_reprocess: bool


def _column_value(name: str, value: Any) -> Any:
    if name == "document_links":
        return json.dumps(value or [], ensure_ascii=False)
    return value


def _row_to_tender(row: sqlite3.Row) -> dict:
    data = dict(row)
    links = data.get("document_links")
    data["document_links"] = json.loads(links) if links else []
    return data


class TenderStore:
    def __init__(self, db_path: Path, logger: Optional[logging.Logger] = None) -> None:
        self.db_path = Path(db_path)
        self.logger = logger or logging.getLogger(__name__)
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    def open(self) -> "TenderStore":
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            _apply_migrations(self.conn, self.logger)
        except (OSError, sqlite3.Error) as exc:
            raise StoreError(f"Cannot open store at {self.db_path}: {exc}") from exc
        return self

    def close(self) -> None:
        if self.conn:
            self.conn.close()
            self.conn = None

    def _require_conn(self) -> sqlite3.Connection:
        if not self.conn:
            raise StoreError("Store is not open")
        return self.conn

    def add_raw_tender(
        self,
        source_table: str,
        payload: dict,
        *,
        updated_at: Any = None,
        created_at: Any = None,
    ) -> int:
        conn = self._require_conn()
        if updated_at is None:
            for key in _FRESHNESS_KEYS:
                if payload.get(key):
                    updated_at = payload[key]
                    break
        with self._lock:
            try:
                cur = conn.execute(
                    """
                    INSERT INTO raw_tenders (source_table, payload, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (
                        source_table,
                        json.dumps(payload, ensure_ascii=False, default=str),
                        to_utc_iso(created_at) or _now_utc_iso(),
                        to_utc_iso(updated_at),
                    ),
                )
                conn.commit()
            except sqlite3.Error as exc:
                raise StoreError(f"Cannot stage raw tender for {source_table}: {exc}") from exc
        return int(cur.lastrowid)

    def fetch_raw_tenders(
        self,
        source_table: str,
        *,
        force_reprocess: bool = False,
        limit: Optional[int] = None,
    ) -> list[RawCandidate]:
        conn = self._require_conn()
        sql = """
            SELECT id, source_table, payload, created_at, updated_at
            FROM raw_tenders
            WHERE source_table = ?
        """
        if not force_reprocess:
            sql += """
              AND (
                last_processed_at IS NULL
                OR (updated_at IS NOT NULL AND updated_at > last_processed_at)
              )
            """
        sql += " ORDER BY created_at DESC, updated_at DESC, id DESC"
        params: list[Any] = [source_table]
        if limit and limit > 0:
            sql += " LIMIT ?"
            params.append(int(limit))
        try:
            with self._lock:
                rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(f"Cannot fetch raw tenders for {source_table}: {exc}") from exc
        return [
            RawCandidate(
                row_id=int(row["id"]),
                source_table=str(row["source_table"]),
                payload=json.loads(row["payload"]),
                created_at=str(row["created_at"]),
                updated_at=row["updated_at"],
            )
            for row in rows
        ]

    def mark_raw_processed(self, row_ids: Iterable[int], processed_at: Optional[str] = None) -> None:
        conn = self._require_conn()
        ids = [int(i) for i in row_ids]
        if not ids:
            return
        stamp = processed_at or _now_utc_iso()
        with self._lock:
            conn.executemany(
                "UPDATE raw_tenders SET last_processed_at = ? WHERE id = ?",
                [(stamp, i) for i in ids],
            )
            conn.commit()

    def fetch_existing_freshness(
        self,
        source_table: str,
        source_ids: Iterable[str],
    ) -> dict[str, Optional[str]]:
        conn = self._require_conn()
        ids = list(dict.fromkeys(str(i) for i in source_ids if i is not None))
        found: dict[str, Optional[str]] = {}
        try:
            with self._lock:
                for start in range(0, len(ids), 500):
                    batch = ids[start:start + 500]
                    placeholders = ", ".join("?" for _ in batch)
                    rows = conn.execute(
                        f"""
                        SELECT source_id, updated_at
                        FROM unified_tenders
                        WHERE source_table = ? AND source_id IN ({placeholders})
                        """,
                        [source_table, *batch],
                    ).fetchall()
                    for row in rows:
                        found[str(row["source_id"])] = row["updated_at"]
        except sqlite3.Error as exc:
            raise StoreError(f"Cannot fetch existing tenders for {source_table}: {exc}") from exc
        return found

    def fetch_unified(self, source_table: str, source_id: str) -> Optional[dict]:
        conn = self._require_conn()
        with self._lock:
            row = conn.execute(
                "SELECT * FROM unified_tenders WHERE source_table = ? AND source_id = ?",
                (source_table, str(source_id)),
            ).fetchone()
        return _row_to_tender(row) if row else None

    def count_unified(self, source_table: Optional[str] = None) -> int:
        conn = self._require_conn()
        with self._lock:
            if source_table:
                row = conn.execute(
                    "SELECT COUNT(*) FROM unified_tenders WHERE source_table = ?",
                    (source_table,),
                ).fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) FROM unified_tenders").fetchone()
        return int(row[0])

    def insert_unified(self, tender: dict) -> None:
        conn = self._require_conn()
        if not tender.get("source_table") or tender.get("source_id") is None:
            raise StoreError("Unified tender requires source_table and source_id")
        now = _now_utc_iso()
        columns = list(_KEY_FIELDS) + _WRITABLE_FIELDS + ["created_at", "updated_at"]
        values = [tender["source_table"], str(tender["source_id"])]
        values += [_column_value(name, tender.get(name)) for name in _WRITABLE_FIELDS]
        values += [now, now]
        placeholders = ", ".join("?" for _ in columns)
        with self._lock:
            try:
                conn.execute(
                    f"INSERT INTO unified_tenders ({', '.join(columns)}) VALUES ({placeholders})",
                    values,
                )
                conn.commit()
            except sqlite3.IntegrityError as exc:
                conn.rollback()
                if "UNIQUE" in str(exc).upper():
                    raise StoreConflict(
                        f"{tender['source_table']}/{tender['source_id']} already exists"
                    ) from exc
                raise StoreError(str(exc)) from exc
            except sqlite3.Error as exc:
                conn.rollback()
                raise StoreError(str(exc)) from exc

    def update_unified(self, tender: dict) -> bool:
        conn = self._require_conn()
        if not tender.get("source_table") or tender.get("source_id") is None:
            raise StoreError("Unified tender requires source_table and source_id")
        assignments = ", ".join(f"{name} = ?" for name in _WRITABLE_FIELDS)
        values = [_column_value(name, tender.get(name)) for name in _WRITABLE_FIELDS]
        values += [_now_utc_iso(), tender["source_table"], str(tender["source_id"])]
        with self._lock:
            try:
                cur = conn.execute(
                    f"""
                    UPDATE unified_tenders
                    SET {assignments}, updated_at = ?
                    WHERE source_table = ? AND source_id = ?
                    """,
                    values,
                )
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                raise StoreError(str(exc)) from exc
        return cur.rowcount > 0

    def start_run(self, record: RunRecord) -> int:
        conn = self._require_conn()
        with self._lock:
            try:
                cur = conn.execute(
                    """
                    INSERT INTO runs (started_at, sources, force_reprocess)
                    VALUES (?, ?, ?)
                    """,
                    (
                        record.started_at,
                        ",".join(record.sources),
                        1 if record.force_reprocess else 0,
                    ),
                )
                conn.commit()
            except sqlite3.Error as exc:
                raise StoreError(f"Cannot record run start: {exc}") from exc
        return int(cur.lastrowid)

    def finish_run(
        self,
        run_id: int,
        *,
        finished_at: str,
        status: str = "ok",
        error: Optional[str] = None,
        totals: Optional[dict] = None,
    ) -> None:
        conn = self._require_conn()
        totals = totals or {}
        with self._lock:
            try:
                conn.execute(
                    """
                    UPDATE runs
                    SET finished_at = ?,
                        status = ?,
                        error = ?,
                        processed_count = ?,
                        updated_count = ?,
                        skipped_count = ?,
                        error_count = ?,
                        fallback_count = ?,
                        fast_count = ?
                    WHERE id = ?
                    """,
                    (
                        finished_at,
                        status,
                        error,
                        int(totals.get("processed", 0)),
                        int(totals.get("updated", 0)),
                        int(totals.get("skipped", 0)),
                        int(totals.get("errors", 0)),
                        int(totals.get("fallback", 0)),
                        int(totals.get("fastNormalization", 0)),
                        run_id,
                    ),
                )
                conn.commit()
            except sqlite3.Error as exc:
                raise StoreError(f"Cannot record run finish: {exc}") from exc

    def fetch_run(self, run_id: int) -> Optional[dict]:
        conn = self._require_conn()
        with self._lock:
            row = conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
        return dict(row) if row else None
