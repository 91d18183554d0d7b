#!/usr/bin/env python3
"""
Cheatsheet records and the durable record store.

A `Command` is the unit everything else exchanges: parsers produce it, the
store persists it keyed by (lang, name), and the search index is rebuilt from
it. The store is a small SQLite file with one JSON payload per record plus a
`meta` key/value table for import metadata.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import json
import pathlib
import sqlite3
import time
from typing import Dict, Iterable, List, Mapping, Sequence

STORE_VERSION = "1"
DEFAULT_DB_NAME = "data.sqlite3"
DEFAULT_METADATA_VERSION = "0.0.0"


@dataclasses.dataclass
class Example:
    description: str
    code: str

    def to_dict(self) -> Dict[str, str]:
        return {"description": self.description, "code": self.code}


@dataclasses.dataclass
class Command:
    name: str
    description: str
    category: str
    platform: str
    lang: str
    examples: List[Example] = dataclasses.field(default_factory=list)
    content: str = ""

    @property
    def key(self) -> str:
        return f"{self.lang}:{self.name}"

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "platform": self.platform,
            "lang": self.lang,
            "examples": [item.to_dict() for item in self.examples],
            "content": self.content,
        }


@dataclasses.dataclass
class Metadata:
    version: str = DEFAULT_METADATA_VERSION
    command_count: int = 0
    last_update: str = "never"
    languages: List[str] = dataclasses.field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return dataclasses.asdict(self)


def command_from_dict(payload: Mapping[str, object]) -> Command:
    name = str(payload.get("name", "")).strip()
    if not name:
        raise ValueError("command record has no name")
    examples = []
    for item in payload.get("examples") or []:
        if not isinstance(item, Mapping):
            continue
        examples.append(Example(description=str(item.get("description", "")), code=str(item.get("code", ""))))
    return Command(
        name=name,
        description=str(payload.get("description", "")),
        category=str(payload.get("category", "")),
        platform=str(payload.get("platform", "")),
        lang=str(payload.get("lang", "")),
        examples=examples,
        content=str(payload.get("content", "")),
    )


def utc_now() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat()


def open_store(data_dir: pathlib.Path, db_name: str = DEFAULT_DB_NAME) -> sqlite3.Connection:
    if data_dir.exists() and not data_dir.is_dir():
        raise sqlite3.OperationalError(f"data dir is not a directory: {data_dir}")
    try:
        data_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise sqlite3.OperationalError(f"failed to prepare data dir {data_dir}: {exc}") from exc

    db_path = data_dir / db_name
    last_exc: sqlite3.OperationalError | None = None
    for attempt in range(2):
        try:
            conn = sqlite3.connect(str(db_path), timeout=30)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            init_store_schema(conn)
            return conn
        except sqlite3.OperationalError as exc:
            last_exc = exc
            # Retry once for transient lock contention.
            if "locked" in str(exc).lower() and attempt == 0:
                time.sleep(0.2)
                continue
            break

    detail = str(last_exc) if last_exc else "unknown sqlite operational error"
    raise sqlite3.OperationalError(
        f"failed to open record store at {db_path}: {detail}. "
        "Try: `rtfm reset --yes` to start from an empty store."
    ) from last_exc


def init_store_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS commands (
            lang TEXT NOT NULL,
            name TEXT NOT NULL,
            payload_json TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY(lang, name)
        );
        """
    )
    ensure_meta_default(conn, "store_version", STORE_VERSION)
    conn.commit()


def upsert_meta(conn: sqlite3.Connection, key: str, value: str) -> None:
    conn.execute(
        """
        INSERT INTO meta(key, value) VALUES(?, ?)
        ON CONFLICT(key) DO UPDATE SET value=excluded.value
        """,
        (key, value),
    )


def ensure_meta_default(conn: sqlite3.Connection, key: str, value: str) -> None:
    conn.execute(
        """
        INSERT INTO meta(key, value) VALUES(?, ?)
        ON CONFLICT(key) DO NOTHING
        """,
        (key, value),
    )


def fetch_meta(conn: sqlite3.Connection) -> Dict[str, str]:
    rows = conn.execute("SELECT key, value FROM meta").fetchall()
    return {str(row["key"]): str(row["value"]) for row in rows}


def _write_command(conn: sqlite3.Connection, cmd: Command, now: str) -> None:
    conn.execute(
        """
        INSERT INTO commands(lang, name, payload_json, updated_at) VALUES(?, ?, ?, ?)
        ON CONFLICT(lang, name) DO UPDATE SET
            payload_json=excluded.payload_json,
            updated_at=excluded.updated_at
        """,
        (cmd.lang, cmd.name, json.dumps(cmd.to_dict(), ensure_ascii=False), now),
    )


def save_command(conn: sqlite3.Connection, cmd: Command) -> None:
    _write_command(conn, cmd, utc_now())
    conn.commit()


def save_commands(conn: sqlite3.Connection, commands: Iterable[Command]) -> int:
    now = utc_now()
    saved = 0
    try:
        for cmd in commands:
            _write_command(conn, cmd, now)
            saved += 1
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise
    return saved


def get_command(conn: sqlite3.Connection, name: str, lang: str) -> Command | None:
    row = conn.execute(
        "SELECT payload_json FROM commands WHERE lang = ? AND name = ?",
        (lang, name),
    ).fetchone()
    if row is None:
        return None
    return command_from_dict(json.loads(row["payload_json"]))


def get_all_commands(conn: sqlite3.Connection, lang: str | None = None) -> List[Command]:
    if lang:
        rows = conn.execute(
            "SELECT payload_json FROM commands WHERE lang = ? ORDER BY name",
            (lang,),
        ).fetchall()
    else:
        rows = conn.execute("SELECT payload_json FROM commands ORDER BY lang, name").fetchall()
    return [command_from_dict(json.loads(row["payload_json"])) for row in rows]


def count_commands(conn: sqlite3.Connection, lang: str | None = None) -> int:
    if lang:
        row = conn.execute("SELECT COUNT(*) AS c FROM commands WHERE lang = ?", (lang,)).fetchone()
    else:
        row = conn.execute("SELECT COUNT(*) AS c FROM commands").fetchone()
    return int(row["c"])


def list_languages(conn: sqlite3.Connection) -> List[str]:
    rows = conn.execute("SELECT DISTINCT lang FROM commands ORDER BY lang").fetchall()
    return [str(row["lang"]) for row in rows]


def clear_commands(conn: sqlite3.Connection, keep_langs: Sequence[str] = ()) -> int:
    """Delete stored records (except those in `keep_langs`) and the import metadata."""
    if keep_langs:
        marks = ",".join("?" for _ in keep_langs)
        cur = conn.execute(f"DELETE FROM commands WHERE lang NOT IN ({marks})", tuple(keep_langs))
    else:
        cur = conn.execute("DELETE FROM commands")
    conn.execute("DELETE FROM meta WHERE key LIKE 'metadata.%'")
    conn.commit()
    return int(cur.rowcount)


def save_metadata(conn: sqlite3.Connection, metadata: Metadata) -> None:
    upsert_meta(conn, "metadata.version", metadata.version)
    upsert_meta(conn, "metadata.command_count", str(int(metadata.command_count)))
    upsert_meta(conn, "metadata.last_update", metadata.last_update)
    upsert_meta(conn, "metadata.languages", json.dumps(sorted(metadata.languages), ensure_ascii=False))
    conn.commit()


def get_metadata(conn: sqlite3.Connection) -> Metadata:
    meta = fetch_meta(conn)
    if "metadata.version" not in meta:
        return Metadata()
    try:
        languages = [str(x) for x in json.loads(meta.get("metadata.languages", "[]"))]
    except json.JSONDecodeError:
        languages = []
    return Metadata(
        version=meta["metadata.version"],
        command_count=int(meta.get("metadata.command_count", "0") or 0),
        last_update=meta.get("metadata.last_update", "never"),
        languages=languages,
    )


def refresh_metadata(conn: sqlite3.Connection, version: str | None = None) -> Metadata:
    """Recompute counts and languages from the stored records and persist them."""
    current = get_metadata(conn)
    metadata = Metadata(
        version=version or current.version,
        command_count=count_commands(conn),
        last_update=utc_now(),
        languages=list_languages(conn),
    )
    save_metadata(conn, metadata)
    return metadata
