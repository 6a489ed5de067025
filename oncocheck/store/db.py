# Purpose: SQLite-backed guideline text store (FTS5 ranking + substring search)
# and append-only history of validation and benchmark runs.
from __future__ import annotations
import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import URL, Engine, TextClause, bindparam, create_engine, event, text
from sqlalchemy.engine import Connection, RowMapping
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from oncocheck.config import Settings
from oncocheck.retrieval.schema import (
    GuidelineRecord,
    GuidelineSectionRecord,
    RecommendationChunkRecord,
    SearchHit,
)
from oncocheck.utils.clock import now_iso
from oncocheck.validation.types import BenchmarkReport, CaseInput, ValidationResult

log = logging.getLogger("oncocheck.store")

FTS_LIMIT_MAX = 50

SCHEMA = """
CREATE TABLE IF NOT EXISTS guidelines (
  id TEXT PRIMARY KEY,
  code INTEGER,
  version INTEGER,
  name TEXT NOT NULL,
  publish_date TEXT,
  status INTEGER NOT NULL,
  apply_status TEXT,
  source_url TEXT NOT NULL,
  pdf_url TEXT NOT NULL,
  is_oncology INTEGER NOT NULL DEFAULT 1,
  created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_guidelines_name ON guidelines(name);
CREATE INDEX IF NOT EXISTS idx_guidelines_publish_date ON guidelines(publish_date);
CREATE INDEX IF NOT EXISTS idx_guidelines_status ON guidelines(status);
CREATE INDEX IF NOT EXISTS idx_guidelines_code ON guidelines(code);

CREATE TABLE IF NOT EXISTS guideline_sections (
  guideline_id TEXT NOT NULL,
  section_id TEXT NOT NULL,
  section_title TEXT NOT NULL,
  section_html TEXT NOT NULL,
  section_text TEXT NOT NULL,
  created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
  PRIMARY KEY (guideline_id, section_id),
  FOREIGN KEY (guideline_id) REFERENCES guidelines(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_sections_guideline ON guideline_sections(guideline_id);
CREATE INDEX IF NOT EXISTS idx_sections_section_id ON guideline_sections(section_id);

CREATE TABLE IF NOT EXISTS recommendation_chunks (
  chunk_id TEXT PRIMARY KEY,
  guideline_id TEXT NOT NULL,
  section_id TEXT NOT NULL,
  chunk_text TEXT NOT NULL,
  tags TEXT NOT NULL,
  evidence_level TEXT,
  source_anchor TEXT,
  created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
  FOREIGN KEY (guideline_id) REFERENCES guidelines(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_chunks_guideline ON recommendation_chunks(guideline_id);
CREATE INDEX IF NOT EXISTS idx_chunks_section ON recommendation_chunks(section_id);

CREATE VIRTUAL TABLE IF NOT EXISTS recommendation_chunks_fts
USING fts5(chunk_id UNINDEXED, chunk_text, tags);

CREATE TABLE IF NOT EXISTS cases (
  case_id TEXT PRIMARY KEY,
  source TEXT,
  diagnosis TEXT NOT NULL,
  stage TEXT,
  biomarkers TEXT NOT NULL,
  created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS case_events (
  event_id TEXT PRIMARY KEY,
  case_id TEXT NOT NULL,
  event_date TEXT NOT NULL,
  event_type TEXT NOT NULL,
  payload_json TEXT NOT NULL,
  created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
  FOREIGN KEY (case_id) REFERENCES cases(case_id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_case_events_case ON case_events(case_id);
CREATE INDEX IF NOT EXISTS idx_case_events_date ON case_events(event_date);

CREATE TABLE IF NOT EXISTS validation_runs (
  run_id TEXT PRIMARY KEY,
  case_id TEXT,
  as_of_date TEXT NOT NULL,
  result_json TEXT NOT NULL,
  latency_ms INTEGER NOT NULL,
  created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
  FOREIGN KEY (case_id) REFERENCES cases(case_id) ON DELETE SET NULL
);
CREATE INDEX IF NOT EXISTS idx_validation_created ON validation_runs(created_at DESC);

CREATE TABLE IF NOT EXISTS benchmark_runs (
  bench_id TEXT PRIMARY KEY,
  dataset_version TEXT NOT NULL,
  metrics_json TEXT NOT NULL,
  created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_benchmark_created ON benchmark_runs(created_at DESC);

CREATE TABLE IF NOT EXISTS trials_cache (
  query_key TEXT PRIMARY KEY,
  fetched_at TEXT NOT NULL,
  payload_json TEXT NOT NULL
);
"""

_HIT_COLUMNS = """
  rc.chunk_id,
  rc.guideline_id,
  g.name AS guideline_name,
  rc.section_id,
  gs.section_title,
  rc.chunk_text,
  rc.tags,
  rc.evidence_level,
  rc.source_anchor
"""

_HIT_JOINS = """
JOIN guidelines g ON g.id = rc.guideline_id
LEFT JOIN guideline_sections gs
  ON gs.guideline_id = rc.guideline_id
  AND gs.section_id = rc.section_id
"""


class StoreError(RuntimeError):
    """The text store could not be opened or its schema could not be created."""


def _casefold(value: Optional[str]) -> Optional[str]:
    # SQLite lower() folds ASCII only; guideline names are Cyrillic.
    return value.lower() if isinstance(value, str) else value


def _json_list(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return []
    return [str(x) for x in data] if isinstance(data, list) else []


def _row_to_hit(row: RowMapping) -> SearchHit:
    return SearchHit(
        chunk_id=str(row["chunk_id"]),
        guideline_id=str(row["guideline_id"]),
        guideline_name=str(row["guideline_name"]),
        section_id=str(row["section_id"]),
        section_title=str(row["section_title"] or ""),
        chunk_text=str(row["chunk_text"]),
        tags=_json_list(row["tags"]),
        evidence_level=row["evidence_level"] or None,
        source_anchor=row["source_anchor"] or None,
        score=float(row["score"] or 0.0),
    )


def _row_to_guideline(row: RowMapping) -> GuidelineRecord:
    return GuidelineRecord(**{k: row[k] for k in row.keys() if k in GuidelineRecord.model_fields})


def _scope_filters(guideline_ids: Sequence[str], section_ids: Sequence[str]) -> Tuple[List[str], Dict[str, Any]]:
    """IN-list filters for the hit queries; bound with expanding parameters."""
    filters: List[str] = []
    params: Dict[str, Any] = {}
    if guideline_ids:
        filters.append("rc.guideline_id IN :guideline_ids")
        params["guideline_ids"] = list(guideline_ids)
    if section_ids:
        filters.append("rc.section_id IN :section_ids")
        params["section_ids"] = list(section_ids)
    return filters, params


def _bind_lists(stmt: TextClause, params: Dict[str, Any]) -> TextClause:
    expanding = [bindparam(k, expanding=True) for k in ("guideline_ids", "section_ids") if k in params]
    return stmt.bindparams(*expanding) if expanding else stmt


def _schema_statements() -> List[str]:
    return [s.strip() for s in SCHEMA.split(";") if s.strip()]


def create_store_engine(path: str) -> Engine:
    """
    SQLite engine for the store. pysqlite's own transaction handling is
    switched off so that BEGIN/SAVEPOINT come from SQLAlchemy (needed for
    begin_nested); every pooled connection gets the casefold function.
    """
    in_memory = path == ":memory:"
    kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if in_memory:
        kwargs["poolclass"] = StaticPool
    engine = create_engine(URL.create("sqlite", database=path), **kwargs)

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        dbapi_connection.create_function("casefold_text", 1, _casefold, deterministic=True)
        cursor = dbapi_connection.cursor()
        if not in_memory:
            cursor.execute("PRAGMA journal_mode = WAL")
        cursor.execute("PRAGMA foreign_keys = ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


class GuidelineStore:
    """
    One handle = one SQLAlchemy engine over a SQLite file. Schema setup runs
    once per handle (init_schema). transaction() opened inside another
    transaction on the same thread becomes a SAVEPOINT of the outer one.
    """

    def __init__(self, path: str = "data/oncology.db"):
        self.path = path
        self.engine = create_store_engine(path)
        self._initialized = False
        self._init_lock = threading.Lock()
        self._local = threading.local()

    # ---------- connection / schema ----------

    def init_schema(self) -> "GuidelineStore":
        with self._init_lock:
            if self._initialized:
                return self
            try:
                if self.path != ":memory:":
                    Path(self.path).parent.mkdir(parents=True, exist_ok=True)
                with self.engine.begin() as conn:
                    for stmt in _schema_statements():
                        conn.exec_driver_sql(stmt)
            except (SQLAlchemyError, sqlite3.Error, OSError) as e:
                raise StoreError(f"schema setup failed for {self.path}: {e}") from e
            self._initialized = True
            log.debug("schema ready at %s", self.path)
        return self

    def close(self) -> None:
        with self._init_lock:
            self.engine.dispose()
            self._initialized = False

    def table_names(self) -> List[str]:
        rows = self._query("SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name")
        return [r["name"] for r in rows]

    def _current(self) -> Optional[Connection]:
        return getattr(self._local, "conn", None)

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """
        BEGIN ... COMMIT; any exception rolls back and propagates.
        Nested use runs in a SAVEPOINT of the outer transaction.
        """
        outer = self._current()
        if outer is not None:
            with outer.begin_nested():
                yield outer
            return
        self.init_schema()
        with self.engine.begin() as conn:
            self._local.conn = conn
            try:
                yield conn
            finally:
                self._local.conn = None

    def _query(self, stmt: str | TextClause, params: Optional[Dict[str, Any]] = None) -> List[RowMapping]:
        self.init_schema()
        if isinstance(stmt, str):
            stmt = text(stmt)
        conn = self._current()
        if conn is not None:
            return list(conn.execute(stmt, params or {}).mappings())
        with self.engine.connect() as conn:
            return list(conn.execute(stmt, params or {}).mappings())

    # ---------- guideline writes (ingestion collaborator) ----------

    def upsert_guideline(self, record: GuidelineRecord) -> None:
        with self.transaction() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO guidelines (
                      id, code, version, name, publish_date, status, apply_status, source_url, pdf_url, is_oncology
                    ) VALUES (
                      :id, :code, :version, :name, :publish_date, :status, :apply_status, :source_url, :pdf_url,
                      :is_oncology
                    )
                    ON CONFLICT(id) DO UPDATE SET
                      code = excluded.code,
                      version = excluded.version,
                      name = excluded.name,
                      publish_date = excluded.publish_date,
                      status = excluded.status,
                      apply_status = excluded.apply_status,
                      source_url = excluded.source_url,
                      pdf_url = excluded.pdf_url,
                      is_oncology = excluded.is_oncology
                    """
                ),
                record.model_dump(),
            )

    def replace_guideline_sections(self, guideline_id: str, sections: Sequence[GuidelineSectionRecord]) -> None:
        with self.transaction() as conn:
            conn.execute(text("DELETE FROM guideline_sections WHERE guideline_id = :gid"), {"gid": guideline_id})
            if not sections:
                return
            conn.execute(
                text(
                    """
                    INSERT INTO guideline_sections (guideline_id, section_id, section_title, section_html, section_text)
                    VALUES (:guideline_id, :section_id, :section_title, :section_html, :section_text)
                    ON CONFLICT(guideline_id, section_id) DO UPDATE SET
                      section_title = excluded.section_title,
                      section_html = excluded.section_html,
                      section_text = excluded.section_text
                    """
                ),
                [s.model_dump() for s in sections],
            )

    def replace_recommendation_chunks(self, guideline_id: str, chunks: Sequence[RecommendationChunkRecord]) -> None:
        with self.transaction() as conn:
            conn.execute(
                text(
                    """
                    DELETE FROM recommendation_chunks_fts WHERE chunk_id IN (
                      SELECT chunk_id FROM recommendation_chunks WHERE guideline_id = :gid
                    )
                    """
                ),
                {"gid": guideline_id},
            )
            conn.execute(text("DELETE FROM recommendation_chunks WHERE guideline_id = :gid"), {"gid": guideline_id})
            if not chunks:
                return
            conn.execute(
                text(
                    """
                    INSERT INTO recommendation_chunks (
                      chunk_id, guideline_id, section_id, chunk_text, tags, evidence_level, source_anchor
                    ) VALUES (
                      :chunk_id, :guideline_id, :section_id, :chunk_text, :tags, :evidence_level, :source_anchor
                    )
                    """
                ),
                [{**c.model_dump(), "tags": json.dumps(c.tags, ensure_ascii=False)} for c in chunks],
            )
            conn.execute(
                text("INSERT INTO recommendation_chunks_fts (chunk_id, chunk_text, tags) VALUES (:chunk_id, :chunk_text, :tags)"),
                [{"chunk_id": c.chunk_id, "chunk_text": c.chunk_text, "tags": " ".join(c.tags)} for c in chunks],
            )

    # ---------- guideline reads ----------

    def find_guidelines_by_name(self, patterns: Sequence[str]) -> List[GuidelineRecord]:
        """Guidelines whose lowercased name is LIKE any pattern, newest publish date first."""
        if not patterns:
            return []
        params = {f"p{i}": p.lower() for i, p in enumerate(patterns)}
        where = " OR ".join(f"casefold_text(name) LIKE :{k}" for k in params)
        rows = self._query(
            f"""
            SELECT id, code, version, name, publish_date, status, apply_status, source_url, pdf_url, is_oncology
            FROM guidelines
            WHERE ({where})
            ORDER BY publish_date DESC
            """,
            params,
        )
        return [_row_to_guideline(r) for r in rows]

    def recent_oncology_guidelines(self, limit: int) -> List[GuidelineRecord]:
        rows = self._query(
            """
            SELECT id, code, version, name, publish_date, status, apply_status, source_url, pdf_url, is_oncology
            FROM guidelines
            WHERE is_oncology = 1
            ORDER BY publish_date DESC
            LIMIT :limit
            """,
            {"limit": max(0, int(limit))},
        )
        return [_row_to_guideline(r) for r in rows]

    def list_guideline_sources(self, limit: int = 500) -> List[Dict[str, Any]]:
        rows = self._query(
            """
            SELECT g.id, g.name, g.publish_date, g.status, g.source_url, g.pdf_url,
                   COUNT(gs.section_id) AS section_count
            FROM guidelines g
            LEFT JOIN guideline_sections gs ON gs.guideline_id = g.id
            GROUP BY g.id
            ORDER BY g.publish_date DESC
            LIMIT :limit
            """,
            {"limit": max(0, int(limit))},
        )
        return [dict(r) for r in rows]

    def guideline_counts(self) -> Dict[str, int]:
        g = self._query("SELECT COUNT(*) AS n FROM guidelines")[0]["n"]
        c = self._query("SELECT COUNT(*) AS n FROM recommendation_chunks")[0]["n"]
        return {"guidelines": int(g), "chunks": int(c)}

    # ---------- search ----------

    def fts_search(
        self,
        fts_query: str,
        *,
        guideline_ids: Sequence[str] = (),
        section_ids: Sequence[str] = (),
        limit: int = 12,
    ) -> List[SearchHit]:
        """BM25-ranked hits (lower score = better)."""
        if not fts_query:
            return []
        filters, params = _scope_filters(guideline_ids, section_ids)
        params.update(match=fts_query, limit=max(1, min(FTS_LIMIT_MAX, int(limit))))
        where_filters = f"AND {' AND '.join(filters)}" if filters else ""

        stmt = text(
            f"""
            SELECT {_HIT_COLUMNS},
              bm25(recommendation_chunks_fts) AS score
            FROM recommendation_chunks_fts
            JOIN recommendation_chunks rc ON rc.chunk_id = recommendation_chunks_fts.chunk_id
            {_HIT_JOINS}
            WHERE recommendation_chunks_fts MATCH :match
            {where_filters}
            ORDER BY score ASC
            LIMIT :limit
            """
        )
        rows = self._query(_bind_lists(stmt, params), params)
        return [_row_to_hit(r) for r in rows]

    def substring_search(
        self,
        needle: str,
        *,
        guideline_ids: Sequence[str] = (),
        section_ids: Sequence[str] = (),
        markers: Sequence[str] = (),
        boosted_score: float = 0.5,
        base_score: float = 1.0,
        limit: int = 8,
    ) -> List[SearchHit]:
        """
        Case-insensitive substring hits. Chunks containing any marker phrase
        get boosted_score, others base_score; ties go to the newest chunk.
        """
        if not needle:
            return []
        filters, params = _scope_filters(guideline_ids, section_ids)
        marker_params = {f"m{i}": f"%{m.lower()}%" for i, m in enumerate(markers)}
        params.update(marker_params)
        params.update(needle=f"%{needle.lower()}%", boosted=float(boosted_score), base=float(base_score),
                      limit=max(1, int(limit)))
        if marker_params:
            cond = " OR ".join(f"casefold_text(rc.chunk_text) LIKE :{k}" for k in marker_params)
            score_sql = f"CASE WHEN {cond} THEN :boosted ELSE :base END"
        else:
            score_sql = ":base"

        stmt = text(
            f"""
            SELECT {_HIT_COLUMNS},
              {score_sql} AS score
            FROM recommendation_chunks rc
            {_HIT_JOINS}
            WHERE {' AND '.join(["casefold_text(rc.chunk_text) LIKE :needle"] + filters)}
            ORDER BY score ASC, rc.created_at DESC, rc.rowid DESC
            LIMIT :limit
            """
        )
        rows = self._query(_bind_lists(stmt, params), params)
        return [_row_to_hit(r) for r in rows]

    # ---------- cases / run history (append-only) ----------

    def save_case(self, case: CaseInput, source: str = "api") -> str:
        case_id = str(uuid.uuid4())
        with self.transaction() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO cases (case_id, source, diagnosis, stage, biomarkers)
                    VALUES (:case_id, :source, :diagnosis, :stage, :biomarkers)
                    """
                ),
                {"case_id": case_id, "source": source, "diagnosis": case.diagnosis, "stage": case.stage,
                 "biomarkers": json.dumps(case.biomarkers, ensure_ascii=False)},
            )
            if case.timeline:
                conn.execute(
                    text(
                        """
                        INSERT INTO case_events (event_id, case_id, event_date, event_type, payload_json)
                        VALUES (:event_id, :case_id, :event_date, :event_type, :payload_json)
                        """
                    ),
                    [{"event_id": str(uuid.uuid4()), "case_id": case_id, "event_date": ev.event_date,
                      "event_type": ev.event_type, "payload_json": json.dumps(ev.payload, ensure_ascii=False)}
                     for ev in case.timeline],
                )
        return case_id

    def case_event_count(self, case_id: str) -> int:
        rows = self._query("SELECT COUNT(*) AS n FROM case_events WHERE case_id = :cid", {"cid": case_id})
        return int(rows[0]["n"])

    def save_validation_run(self, *, run_id: str, case_id: Optional[str], as_of_date: str,
                            result: ValidationResult, latency_ms: int) -> None:
        with self.transaction() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO validation_runs (run_id, case_id, as_of_date, result_json, latency_ms)
                    VALUES (:run_id, :case_id, :as_of_date, :result_json, :latency_ms)
                    """
                ),
                {"run_id": run_id, "case_id": case_id, "as_of_date": as_of_date,
                 "result_json": result.model_dump_json(), "latency_ms": int(latency_ms)},
            )

    def recent_validation_runs(self, limit: int = 20) -> List[ValidationResult]:
        rows = self._query(
            "SELECT result_json FROM validation_runs ORDER BY created_at DESC, rowid DESC LIMIT :limit",
            {"limit": max(1, int(limit))},
        )
        return [ValidationResult.model_validate_json(r["result_json"]) for r in rows]

    def save_benchmark_run(self, *, bench_id: str, dataset_version: str, report: BenchmarkReport) -> None:
        with self.transaction() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO benchmark_runs (bench_id, dataset_version, metrics_json)
                    VALUES (:bench_id, :dataset_version, :metrics_json)
                    """
                ),
                {"bench_id": bench_id, "dataset_version": dataset_version, "metrics_json": report.model_dump_json()},
            )

    def latest_benchmark_run(self) -> Optional[BenchmarkReport]:
        rows = self._query(
            "SELECT bench_id, metrics_json FROM benchmark_runs ORDER BY created_at DESC, rowid DESC LIMIT 1"
        )
        if not rows:
            return None
        return BenchmarkReport.model_validate_json(rows[0]["metrics_json"])

    # ---------- trials cache ----------

    def read_trials_cache(self, query_key: str) -> Optional[Dict[str, str]]:
        rows = self._query(
            "SELECT fetched_at, payload_json FROM trials_cache WHERE query_key = :key", {"key": query_key}
        )
        return dict(rows[0]) if rows else None

    def upsert_trials_cache(self, query_key: str, payload: Any) -> None:
        with self.transaction() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO trials_cache (query_key, fetched_at, payload_json) VALUES (:key, :fetched_at, :payload)
                    ON CONFLICT(query_key) DO UPDATE SET
                      fetched_at = excluded.fetched_at,
                      payload_json = excluded.payload_json
                    """
                ),
                {"key": query_key, "fetched_at": now_iso(), "payload": json.dumps(payload, ensure_ascii=False)},
            )


def open_store(settings: Settings) -> GuidelineStore:
    return GuidelineStore(settings.db_path).init_schema()
