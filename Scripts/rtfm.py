#!/usr/bin/env python3
"""
Offline cheatsheet lookup CLI.

Key capabilities:
- Import tldr-pages archives and local markdown pages into a durable store
- Learn commands from their local `--help` / man page output
- Full-text search (CJK aware) over name, description and content
- Every command prints one JSON document on stdout; progress goes to stderr
"""

from __future__ import annotations

import argparse
import json
import pathlib
import signal
import sqlite3
import sys
import threading
from typing import Dict, List, Sequence

from help_capture import (
    HelpUnavailableError,
    ManualPageStrategy,
    PathScanStrategy,
    default_strategies,
    learn_all,
    learn_one,
    list_available_commands,
    probe_capabilities,
)
from help_text import LOCAL_LANG
from query_syntax import QuerySyntaxError
from query_tokens import Tokenizer
from rtfm_config import AppConfig, DATA_CONFIG_NAME, load_config, render_default_toml, resolve_data_dir
from rtfm_index import IndexManager
from rtfm_records import (
    Command,
    clear_commands,
    count_commands,
    get_all_commands,
    get_command,
    get_metadata,
    open_store,
    refresh_metadata,
    save_commands,
)
from tldr_pages import ArchiveFormatError, import_local, parse_tldr_archive

LOOKUP_FALLBACK_LANGS = ("en", "zh", LOCAL_LANG)


def emit(payload: Dict[str, object]) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def progress(config: AppConfig, message: str, debug: bool = False) -> None:
    level = config.logging.level
    if level == "quiet" or (debug and level != "debug"):
        return
    print(f"[rtfm] {message}", file=sys.stderr)


class Context:
    def __init__(self, args: argparse.Namespace) -> None:
        self.config = load_config(getattr(args, "config", None))
        self.data_dir = resolve_data_dir(self.config, getattr(args, "data_dir", None))
        self.conn = open_store(self.data_dir, self.config.storage.db_filename)
        self._index: IndexManager | None = None

    @property
    def index(self) -> IndexManager:
        if self._index is None:
            self._index = IndexManager(
                self.data_dir / self.config.storage.index_dirname,
                tokenizer=Tokenizer(self.config.search.segmentation),
                weights=self.config.weights,
            )
        return self._index

    def close(self) -> None:
        if self._index is not None:
            self._index.close()
        self.conn.close()


def open_context(args: argparse.Namespace) -> Context:
    return Context(args)


def rebuild_from_store(ctx: Context) -> int:
    commands = get_all_commands(ctx.conn)
    progress(ctx.config, f"indexing {len(commands)} commands")
    return ctx.index.rebuild(commands)


def lookup_command(conn: sqlite3.Connection, name: str, lang: str) -> Command | None:
    langs: List[str] = []
    for candidate_lang in (lang, *LOOKUP_FALLBACK_LANGS):
        if candidate_lang and candidate_lang not in langs:
            langs.append(candidate_lang)
    names = [name]
    hyphenated = "-".join(name.split())
    if hyphenated != name:
        names.append(hyphenated)
    for candidate in names:
        for candidate_lang in langs:
            cmd = get_command(conn, candidate, candidate_lang)
            if cmd is not None:
                return cmd
    return None


def not_found_payload(stage: str, name: str) -> Dict[str, object]:
    return {
        "ok": False,
        "stage": stage,
        "error": "not_found",
        "message": f"No cheatsheet found for '{name}'.",
        "hint": (
            f"Run `rtfm update <tldr-archive>` or `rtfm import <path>` to add cheatsheets, "
            f"or `rtfm learn {name}` to learn it from local help."
        ),
    }


def cmd_init(args: argparse.Namespace) -> int:
    ctx = open_context(args)
    try:
        emit(
            {
                "ok": True,
                "data_dir": str(ctx.data_dir),
                "db": str(ctx.data_dir / ctx.config.storage.db_filename),
                "index": str(ctx.index.db_path),
                "config_source": ctx.config.source,
            }
        )
    finally:
        ctx.close()
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    ctx = open_context(args)
    try:
        emit(
            {
                "ok": True,
                "data_dir": str(ctx.data_dir),
                "metadata": get_metadata(ctx.conn).to_dict(),
                "stored_commands": count_commands(ctx.conn),
                "indexed_documents": ctx.index.document_count(),
            }
        )
    finally:
        ctx.close()
    return 0


def cmd_search(args: argparse.Namespace) -> int:
    ctx = open_context(args)
    try:
        limit = ctx.config.clamp_limit(args.limit)
        response = ctx.index.search(args.query, lang=args.lang, limit=limit, raw=args.raw)
        payload: Dict[str, object] = {"ok": True, "query": args.query, "lang": args.lang, **response.to_dict()}
        if not response.results:
            payload["hint"] = not_found_payload("search", args.query)["hint"]
        emit(payload)
    finally:
        ctx.close()
    return 0


def cmd_show(args: argparse.Namespace) -> int:
    ctx = open_context(args)
    try:
        name = " ".join(args.name).strip()
        lang = args.lang or ctx.config.search.default_lang
        cmd = lookup_command(ctx.conn, name, lang)
        if cmd is not None:
            emit({"ok": True, "command": cmd.to_dict()})
            return 0

        response = ctx.index.search(name, limit=ctx.config.search.default_limit)
        if len(response.results) == 1:
            hit = response.results[0]
            found = get_command(ctx.conn, hit.name, hit.lang)
            if found is not None:
                emit({"ok": True, "command": found.to_dict()})
                return 0
        if response.results:
            emit({"ok": True, "matches": [hit.to_dict() for hit in response.results]})
            return 0
        emit(not_found_payload("show", name))
        return 1
    finally:
        ctx.close()


def cmd_list(args: argparse.Namespace) -> int:
    ctx = open_context(args)
    try:
        commands = get_all_commands(ctx.conn, args.lang)
        emit(
            {
                "ok": True,
                "lang": args.lang,
                "count": len(commands),
                "commands": [
                    {"name": cmd.name, "lang": cmd.lang, "platform": cmd.platform, "description": cmd.description}
                    for cmd in commands
                ],
            }
        )
    finally:
        ctx.close()
    return 0


def cmd_import(args: argparse.Namespace) -> int:
    ctx = open_context(args)
    try:
        result = import_local(pathlib.Path(args.path).expanduser(), lang=args.lang, platform=args.platform)
        progress(ctx.config, f"parsed {len(result.commands)} pages, skipped {result.skipped}")
        save_commands(ctx.conn, result.commands)
        indexed = rebuild_from_store(ctx)
        metadata = refresh_metadata(ctx.conn)
        emit({"ok": True, **result.counts(), "indexed": indexed, "metadata": metadata.to_dict()})
    finally:
        ctx.close()
    return 0


def cmd_update(args: argparse.Namespace) -> int:
    ctx = open_context(args)
    try:
        archive = pathlib.Path(args.archive).expanduser()
        languages = args.languages if args.languages is not None else ctx.config.update.languages
        result = parse_tldr_archive(archive.read_bytes(), languages=languages)
        progress(ctx.config, f"parsed {len(result.commands)} pages from {archive.name}, skipped {result.skipped}")
        if args.replace:
            removed = clear_commands(ctx.conn, keep_langs=(LOCAL_LANG,))
            progress(ctx.config, f"removed {removed} previously imported commands")
        save_commands(ctx.conn, result.commands)
        indexed = rebuild_from_store(ctx)
        version = args.version or archive.name.split(".")[0]
        metadata = refresh_metadata(ctx.conn, version=version)
        emit({"ok": True, **result.counts(), "indexed": indexed, "metadata": metadata.to_dict()})
    finally:
        ctx.close()
    return 0


def cmd_learn(args: argparse.Namespace) -> int:
    ctx = open_context(args)
    try:
        caps = probe_capabilities()
        strategies = default_strategies(caps, prefer_man=args.man, section=args.section)
        outcome = learn_one(ctx.conn, ctx.index, args.name, strategies, force=args.force)
        if outcome.status == "learned":
            refresh_metadata(ctx.conn)
            progress(ctx.config, f"learned {outcome.command.name} from {outcome.source}")
        emit({"ok": True, **outcome.to_dict()})
    finally:
        ctx.close()
    return 0


def cmd_learn_all(args: argparse.Namespace) -> int:
    ctx = open_context(args)
    stop = threading.Event()
    previous = signal.signal(signal.SIGINT, lambda signum, frame: stop.set())
    try:
        caps = probe_capabilities()
        section = args.section or ctx.config.learn.section
        source = args.source or ctx.config.learn.source
        if source == "auto":
            source = "powershell" if caps.windows else "man"
        entries = list_available_commands(source, section, caps)
        progress(ctx.config, f"found {len(entries)} candidate commands from {source}")
        if source == "man":
            strategies = [ManualPageStrategy(section, program=caps.man or "man"), PathScanStrategy()]
        else:
            strategies = default_strategies(caps)
        report = learn_all(
            ctx.conn,
            ctx.index,
            entries,
            strategies,
            limit=args.limit,
            prefix=args.prefix,
            skip_existing=args.skip_existing,
            should_stop=stop.is_set,
            progress=lambda message: progress(ctx.config, message),
        )
        for name, reason in report.failures.items():
            progress(ctx.config, f"failed {name}: {reason}", debug=True)
        refresh_metadata(ctx.conn)
        emit({"ok": True, "source": source, **report.to_dict()})
    finally:
        signal.signal(signal.SIGINT, previous)
        ctx.close()
    return 0


def cmd_reindex(args: argparse.Namespace) -> int:
    ctx = open_context(args)
    try:
        indexed = rebuild_from_store(ctx)
        emit({"ok": True, "indexed": indexed})
    finally:
        ctx.close()
    return 0


def cmd_reset(args: argparse.Namespace) -> int:
    if not args.yes:
        emit(
            {
                "ok": False,
                "stage": "reset",
                "error": "confirmation_required",
                "message": "reset deletes every stored cheatsheet and the search index.",
                "hint": "Re-run with `rtfm reset --yes`.",
            }
        )
        return 1
    ctx = open_context(args)
    try:
        removed = clear_commands(ctx.conn)
        ctx.index.clear()
        emit({"ok": True, "removed": removed, "indexed_documents": ctx.index.document_count()})
    finally:
        ctx.close()
    return 0


def cmd_config_show(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    emit({"ok": True, "data_dir": str(resolve_data_dir(config, args.data_dir)), "config": config.to_dict()})
    return 0


def cmd_config_init(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    target = pathlib.Path(args.path) if args.path else resolve_data_dir(config, args.data_dir) / DATA_CONFIG_NAME
    if target.exists() and not args.force:
        emit(
            {
                "ok": False,
                "stage": "config-init",
                "error": "exists",
                "message": f"config file already exists: {target}",
                "hint": "Pass --force to overwrite it.",
            }
        )
        return 1
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(render_default_toml(), encoding="utf-8")
    emit({"ok": True, "path": str(target)})
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Offline cheatsheet lookup with full-text search.")
    parser.add_argument("--data-dir", default=None, help="Data directory (default: $RTFM_DATA_DIR or platform data dir).")
    parser.add_argument("--config", default=None, help="Explicit config file path.")

    sub = parser.add_subparsers(dest="command", required=True)

    p_init = sub.add_parser("init", help="Create the data directory, store and index.")
    p_init.set_defaults(func=cmd_init)

    p_status = sub.add_parser("status", help="Show store metadata and index size.")
    p_status.set_defaults(func=cmd_status)

    p_search = sub.add_parser("search", help="Full-text search over cheatsheets.")
    p_search.add_argument("query")
    p_search.add_argument("--lang", default=None)
    p_search.add_argument("--limit", type=int, default=None)
    p_search.add_argument("--raw", action="store_true", help="Use query syntax (fields, AND/OR/NOT) unescaped.")
    p_search.set_defaults(func=cmd_search)

    p_show = sub.add_parser("show", help="Show one command's cheatsheet.")
    p_show.add_argument("name", nargs="+")
    p_show.add_argument("--lang", default=None)
    p_show.set_defaults(func=cmd_show)

    p_list = sub.add_parser("list", help="List stored commands.")
    p_list.add_argument("--lang", default=None)
    p_list.set_defaults(func=cmd_list)

    p_import = sub.add_parser("import", help="Import a markdown page, directory or archive of pages.")
    p_import.add_argument("path")
    p_import.add_argument("--lang", default="zh")
    p_import.add_argument("--platform", default="common")
    p_import.set_defaults(func=cmd_import)

    p_update = sub.add_parser("update", help="Import a downloaded tldr-pages archive (zip or tar).")
    p_update.add_argument("archive")
    p_update.add_argument("--version", default=None)
    p_update.add_argument("--languages", nargs="*", default=None, help="Override update.languages (empty = all).")
    p_update.add_argument("--replace", action="store_true", help="Drop previously imported pages first.")
    p_update.set_defaults(func=cmd_update)

    p_learn = sub.add_parser("learn", help="Learn a command from its local help or man page.")
    p_learn.add_argument("name")
    p_learn.add_argument("--force", action="store_true")
    p_learn.add_argument("--man", action="store_true", help="Try the man page before --help.")
    p_learn.add_argument("--section", default=None)
    p_learn.set_defaults(func=cmd_learn)

    p_learn_all = sub.add_parser("learn-all", help="Learn every command listed by man, PATH or PowerShell.")
    p_learn_all.add_argument("--source", choices=["auto", "man", "path", "powershell"], default=None)
    p_learn_all.add_argument("--section", default=None)
    p_learn_all.add_argument("--limit", type=int, default=None)
    p_learn_all.add_argument("--prefix", default=None)
    p_learn_all.add_argument("--skip-existing", action="store_true")
    p_learn_all.set_defaults(func=cmd_learn_all)

    p_reindex = sub.add_parser("reindex", help="Rebuild the search index from the store.")
    p_reindex.set_defaults(func=cmd_reindex)

    p_reset = sub.add_parser("reset", help="Delete every stored command and clear the index.")
    p_reset.add_argument("--yes", action="store_true")
    p_reset.set_defaults(func=cmd_reset)

    p_config_show = sub.add_parser("config-show", help="Print the effective configuration.")
    p_config_show.set_defaults(func=cmd_config_show)

    p_config_init = sub.add_parser("config-init", help="Write a default config.toml.")
    p_config_init.add_argument("--path", default=None)
    p_config_init.add_argument("--force", action="store_true")
    p_config_init.set_defaults(func=cmd_config_init)

    return parser


def error_payload(stage: str, error: str, message: str, hint: str) -> Dict[str, object]:
    return {"ok": False, "stage": stage, "error": error, "message": message, "hint": hint}


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    stage = str(getattr(args, "command", "unknown"))
    try:
        return int(args.func(args))
    except sqlite3.OperationalError as exc:
        emit(error_payload(stage, "sqlite_operational_error", str(exc), "Run `rtfm reindex`, or `rtfm reset --yes` to start over."))
    except ArchiveFormatError as exc:
        emit(error_payload(stage, "archive_format_error", str(exc), "Pass a tldr-pages .zip or .tar.gz archive."))
    except QuerySyntaxError as exc:
        emit(error_payload(stage, "query_syntax_error", str(exc), "Drop --raw to search the text literally."))
    except HelpUnavailableError as exc:
        payload = error_payload(stage, "help_unavailable", str(exc), "Check the command name or try `--man`.")
        payload.update(exc.to_dict())
        emit(payload)
    except OSError as exc:
        error = "file_not_found" if isinstance(exc, FileNotFoundError) else "file_error"
        emit(error_payload(stage, error, str(exc), "Check the path and its permissions, then retry."))
    except ValueError as exc:
        emit(error_payload(stage, "invalid_argument", str(exc), "Check the arguments and retry."))
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
