#!/usr/bin/env python3
"""
Full-text search index over cheatsheet records.

The index lives in its own directory as an SQLite database with an FTS5
table (`documents_fts`) holding pre-segmented `name`, `description` and
`content`, and a plain `documents` table holding the display fields and the
exact-match `lang`/`category` facets.

Writes and reads use separate capabilities:
- `IndexManager` opens a short-lived writer connection per mutation and
  commits it in one transaction.
- `IndexReader` keeps one connection parked inside a read transaction, so
  searches see a fixed snapshot until `reload()` moves it to the latest
  commit. Every mutation reloads before returning.
"""

from __future__ import annotations

import contextlib
import dataclasses
import pathlib
import sqlite3
import threading
import time
from typing import Dict, Iterable, Iterator, List, Sequence, Tuple

from query_syntax import FACET_FIELDS, CompiledQuery, compile_query
from query_tokens import Tokenizer
from rtfm_records import Command

INDEX_VERSION = "1"
DEFAULT_INDEX_DB_NAME = "search.sqlite3"
DEFAULT_WEIGHTS = (1.0, 1.0, 1.0)


class SearchIndexError(sqlite3.OperationalError):
    """Raised when the index cannot be opened or a write cannot be committed."""


class ReadWriteLock:
    """Many concurrent readers or one writer; waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextlib.contextmanager
    def shared(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextlib.contextmanager
    def exclusive(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclasses.dataclass
class SearchHit:
    name: str
    description: str
    category: str
    lang: str
    score: float

    def to_dict(self) -> Dict[str, object]:
        return dataclasses.asdict(self)


@dataclasses.dataclass
class SearchResponse:
    total: int
    results: List[SearchHit]
    took_ms: int

    def to_dict(self) -> Dict[str, object]:
        return {
            "total": self.total,
            "results": [hit.to_dict() for hit in self.results],
            "took_ms": self.took_ms,
        }


def _with_lang(query: str, lang: str | None) -> str:
    if not lang:
        return query
    quoted = lang.replace("\\", "\\\\").replace('"', '\\"')
    return f'({query}) AND lang:"{quoted}"'


def _connect(db_path: pathlib.Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path), timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_index_schema(conn: sqlite3.Connection) -> None:
    mode = conn.execute("PRAGMA journal_mode=WAL").fetchone()[0]
    if str(mode).lower() != "wal":
        raise SearchIndexError(f"index requires WAL journaling, filesystem gave '{mode}'")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS documents (
            id INTEGER PRIMARY KEY,
            doc_key TEXT NOT NULL,
            name TEXT NOT NULL,
            description TEXT NOT NULL,
            category TEXT NOT NULL,
            platform TEXT NOT NULL,
            lang TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_documents_key ON documents(doc_key);
        CREATE INDEX IF NOT EXISTS idx_documents_lang ON documents(lang);

        CREATE VIRTUAL TABLE IF NOT EXISTS documents_fts USING fts5(
            name,
            description,
            content,
            tokenize='unicode61'
        );
        """
    )
    conn.execute(
        "INSERT INTO meta(key, value) VALUES('index_version', ?) ON CONFLICT(key) DO NOTHING",
        (INDEX_VERSION,),
    )


class IndexReader:
    """Read capability: a connection pinned to one committed snapshot."""

    def __init__(self, db_path: pathlib.Path) -> None:
        self.db_path = db_path
        self._conn = _connect(db_path)
        self._conn_lock = threading.Lock()
        self._pin()

    def _pin(self) -> None:
        self._conn.execute("BEGIN")
        # A read transaction only takes its snapshot at the first read.
        self._conn.execute("SELECT COUNT(*) FROM documents").fetchone()

    def reload(self) -> None:
        with self._conn_lock:
            if self._conn.in_transaction:
                self._conn.execute("COMMIT")
            self._pin()

    def query(self, sql: str, params: Sequence[object] = ()) -> List[sqlite3.Row]:
        with self._conn_lock:
            return self._conn.execute(sql, tuple(params)).fetchall()

    def count(self, lang: str | None = None, key: str | None = None) -> int:
        sql = "SELECT COUNT(*) AS c FROM documents WHERE 1 = 1"
        params: List[object] = []
        if lang is not None:
            sql += " AND lang = ?"
            params.append(lang)
        if key is not None:
            sql += " AND doc_key = ?"
            params.append(key)
        return int(self.query(sql, params)[0]["c"])

    def close(self) -> None:
        with self._conn_lock:
            if self._conn.in_transaction:
                self._conn.execute("COMMIT")
            self._conn.close()


class IndexManager:
    """Write capability plus the search entry point for one index directory."""

    def __init__(
        self,
        index_dir: pathlib.Path,
        tokenizer: Tokenizer | None = None,
        weights: Tuple[float, float, float] = DEFAULT_WEIGHTS,
        lock: ReadWriteLock | None = None,
    ) -> None:
        self.index_dir = index_dir
        self.db_path = index_dir / DEFAULT_INDEX_DB_NAME
        self.tokenizer = tokenizer or Tokenizer()
        self.weights = tuple(float(w) for w in weights)
        self.lock = lock or ReadWriteLock()

        if index_dir.exists() and not index_dir.is_dir():
            raise SearchIndexError(f"index dir is not a directory: {index_dir}")
        try:
            index_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise SearchIndexError(f"failed to prepare index dir {index_dir}: {exc}") from exc

        try:
            conn = _connect(self.db_path)
            try:
                init_index_schema(conn)
            finally:
                conn.close()
            self.reader = IndexReader(self.db_path)
        except SearchIndexError:
            raise
        except sqlite3.Error as exc:
            hint = " (this sqlite build lacks FTS5)" if "fts5" in str(exc).lower() else ""
            raise SearchIndexError(f"failed to open search index at {self.db_path}: {exc}{hint}") from exc

    @contextlib.contextmanager
    def _writer(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = _connect(self.db_path)
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            raise SearchIndexError(f"failed to open index writer at {self.db_path}: {exc}") from exc
        try:
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise SearchIndexError(f"index write failed, nothing was committed: {exc}") from exc
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def _add(self, conn: sqlite3.Connection, cmd: Command) -> None:
        cur = conn.execute(
            """
            INSERT INTO documents(doc_key, name, description, category, platform, lang)
            VALUES(?, ?, ?, ?, ?, ?)
            """,
            (cmd.key, cmd.name, cmd.description, cmd.category, cmd.platform, cmd.lang),
        )
        conn.execute(
            "INSERT INTO documents_fts(rowid, name, description, content) VALUES(?, ?, ?, ?)",
            (
                cur.lastrowid,
                self.tokenizer.tokenize(cmd.name),
                self.tokenizer.tokenize(cmd.description),
                self.tokenizer.tokenize(cmd.content),
            ),
        )

    def _delete_all(self, conn: sqlite3.Connection) -> None:
        conn.execute("DELETE FROM documents_fts")
        conn.execute("DELETE FROM documents")

    def _reload_unlocked(self) -> None:
        try:
            self.reader.reload()
        except sqlite3.Error as exc:
            raise SearchIndexError(f"failed to reload index snapshot: {exc}") from exc

    def reload(self) -> None:
        with self.lock.exclusive():
            self._reload_unlocked()

    def rebuild(self, commands: Iterable[Command]) -> int:
        """Replace every document with one per command, atomically."""
        with self.lock.exclusive():
            added = 0
            with self._writer() as conn:
                self._delete_all(conn)
                for cmd in commands:
                    self._add(conn, cmd)
                    added += 1
            self._reload_unlocked()
            return added

    def upsert_one(self, cmd: Command, replace: bool = True) -> None:
        """Index one command; with `replace`, earlier documents for its key go first."""
        with self.lock.exclusive():
            with self._writer() as conn:
                if replace:
                    rows = conn.execute("SELECT id FROM documents WHERE doc_key = ?", (cmd.key,)).fetchall()
                    for row in rows:
                        conn.execute("DELETE FROM documents_fts WHERE rowid = ?", (row["id"],))
                        conn.execute("DELETE FROM documents WHERE id = ?", (row["id"],))
                self._add(conn, cmd)
            self._reload_unlocked()

    def clear(self) -> None:
        with self.lock.exclusive():
            with self._writer() as conn:
                self._delete_all(conn)
            self._reload_unlocked()

    index_all = rebuild
    index_one = upsert_one
    clear_index = clear

    def document_count(self, lang: str | None = None, key: str | None = None) -> int:
        with self.lock.shared():
            return self.reader.count(lang=lang, key=key)

    def build_query(self, query: str, lang: str | None = None) -> str | None:
        escaped = self.tokenizer.tokenize_and_escape(query)
        if not escaped:
            return None
        return _with_lang(escaped, lang)

    def search(self, query: str, lang: str | None = None, limit: int = 20, raw: bool = False) -> SearchResponse:
        """Rank documents for `query`; `raw` compiles the text without escaping."""
        start = time.perf_counter()
        if limit <= 0:
            return SearchResponse(total=0, results=[], took_ms=0)
        if raw:
            text = _with_lang(query, lang) if query.strip() else ""
        else:
            text = self.build_query(query, lang)
        if not text or not text.strip():
            return SearchResponse(total=0, results=[], took_ms=int((time.perf_counter() - start) * 1000))

        compiled = compile_query(text)
        with self.lock.shared():
            hits = self._execute(compiled, limit)
        return SearchResponse(total=len(hits), results=hits, took_ms=int((time.perf_counter() - start) * 1000))

    def _facet_sql(self, compiled: CompiledQuery) -> Tuple[str, List[object]]:
        clauses: List[str] = []
        params: List[object] = []
        for field, value in compiled.required_facets:
            if field not in FACET_FIELDS:
                continue
            clauses.append(f"d.{field} = ? COLLATE NOCASE")
            params.append(value)
        for field, value in compiled.excluded_facets:
            if field not in FACET_FIELDS:
                continue
            clauses.append(f"d.{field} != ? COLLATE NOCASE")
            params.append(value)
        return "".join(f" AND {clause}" for clause in clauses), params

    def _execute(self, compiled: CompiledQuery, limit: int) -> List[SearchHit]:
        if compiled.matches_nothing:
            return []
        facet_sql, facet_params = self._facet_sql(compiled)
        if compiled.match is None:
            sql = (
                "SELECT d.name, d.description, d.category, d.lang, 0.0 AS raw_score "
                f"FROM documents d WHERE 1 = 1{facet_sql} ORDER BY d.id LIMIT ?"
            )
            params: List[object] = [*facet_params, limit]
        else:
            wn, wd, wc = self.weights
            sql = (
                "SELECT d.name, d.description, d.category, d.lang, "
                f"bm25(documents_fts, {wn:.6f}, {wd:.6f}, {wc:.6f}) AS raw_score "
                "FROM documents_fts JOIN documents d ON d.id = documents_fts.rowid "
                f"WHERE documents_fts MATCH ?{facet_sql} "
                "ORDER BY raw_score, d.id LIMIT ?"
            )
            params = [compiled.match, *facet_params, limit]
        try:
            rows = self.reader.query(sql, params)
        except sqlite3.Error as exc:
            raise SearchIndexError(f"search failed: {exc}") from exc
        return [
            SearchHit(
                name=str(row["name"]),
                description=str(row["description"]),
                category=str(row["category"]),
                lang=str(row["lang"]),
                score=max(0.0, -float(row["raw_score"])),
            )
            for row in rows
        ]

    def close(self) -> None:
        self.reader.close()
