#!/usr/bin/env python3
"""
Acquire help text for locally installed commands and learn them.

Acquisition is an ordered list of strategies chosen once from a capability
probe. Each strategy runs one external process and either returns
`(text, source_tag)` or raises `AcquisitionFailed` with its own reason; the
chain collects every reason so a terminal failure names what was tried.
"""

from __future__ import annotations

import dataclasses
import os
import pathlib
import shutil
import sqlite3
import subprocess
import sys
from typing import Callable, Dict, List, Mapping, Sequence, Tuple

from help_text import LOCAL_LANG, is_valid_help_content, parse_heuristic_with_notes, parse_man_list_line, strip_ansi_codes
from rtfm_index import IndexManager
from rtfm_records import Command, get_command, save_command

MAN_ENV = {"MANPAGER": "cat", "MANWIDTH": "80", "GROFF_NO_SGR": "1"}
GET_HELP_REJECT_MARKERS = ("No help topic found", "Get-Help cannot")
GET_HELP_REJECT_MAX_CHARS = 200
CMD_HELP_REJECT_MARKER = "is not supported"
LIST_SOURCES = ("auto", "man", "path", "powershell")


@dataclasses.dataclass
class ProcessOutput:
    returncode: int
    stdout: str
    stderr: str


Runner = Callable[[Sequence[str], Mapping[str, str] | None], ProcessOutput]


def run_process(args: Sequence[str], env: Mapping[str, str] | None = None) -> ProcessOutput:
    merged = None
    if env:
        merged = dict(os.environ)
        merged.update(env)
    proc = subprocess.run(
        list(args),
        capture_output=True,
        text=True,
        errors="replace",
        stdin=subprocess.DEVNULL,
        env=merged,
        check=False,
    )
    return ProcessOutput(returncode=proc.returncode, stdout=proc.stdout or "", stderr=proc.stderr or "")


class AcquisitionFailed(Exception):
    """One strategy could not produce usable help text."""


class HelpUnavailableError(RuntimeError):
    def __init__(self, name: str, failures: Sequence[Tuple[str, str]]) -> None:
        self.name = name
        self.failures = list(failures)
        detail = "; ".join(f"{label}: {reason}" for label, reason in self.failures)
        super().__init__(f"no help available for '{name}' ({detail})")

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "failures": [{"strategy": label, "reason": reason} for label, reason in self.failures],
        }


def _invoke(runner: Runner, args: Sequence[str], env: Mapping[str, str] | None = None) -> ProcessOutput:
    try:
        return runner(args, env)
    except FileNotFoundError as exc:
        raise AcquisitionFailed(f"program not found: {args[0]}") from exc
    except OSError as exc:
        raise AcquisitionFailed(f"failed to start {args[0]}: {exc}") from exc


class HelpStrategy:
    label = "strategy"

    def __init__(self, runner: Runner = run_process) -> None:
        self.runner = runner

    def attempt(self, name: str) -> Tuple[str, str]:
        raise NotImplementedError


class HelpFlagStrategy(HelpStrategy):
    def __init__(self, flag: str, runner: Runner = run_process) -> None:
        super().__init__(runner)
        self.flag = flag
        self.label = flag

    def attempt(self, name: str) -> Tuple[str, str]:
        out = _invoke(self.runner, [name, self.flag])
        if out.stdout.strip() and is_valid_help_content(out.stdout):
            return out.stdout, self.flag
        if out.stderr.strip() and is_valid_help_content(out.stderr):
            return out.stderr, f"{self.flag} (stderr)"
        raise AcquisitionFailed(f"exit status {out.returncode} without usable help output")


class ManualPageStrategy(HelpStrategy):
    def __init__(self, section: str | None = None, program: str = "man", runner: Runner = run_process) -> None:
        super().__init__(runner)
        self.section = section
        self.program = program
        self.label = f"man({section})" if section else "man"

    def attempt(self, name: str) -> Tuple[str, str]:
        args = [self.program]
        if self.section:
            args.append(self.section)
        args.append(name)
        out = _invoke(self.runner, args, MAN_ENV)
        if out.returncode != 0:
            reason = out.stderr.strip().splitlines()[0] if out.stderr.strip() else f"exit status {out.returncode}"
            raise AcquisitionFailed(reason)
        text = strip_ansi_codes(out.stdout)
        if not is_valid_help_content(text):
            raise AcquisitionFailed("manual page was empty")
        return text, self.label


class PlatformNativeHelpStrategy(HelpStrategy):
    """Windows help sources: `/?`, PowerShell `Get-Help` and `cmd /c help`."""

    KINDS = ("help-flag", "cmdlet", "console")

    def __init__(self, kind: str, program: str | None = None, runner: Runner = run_process) -> None:
        super().__init__(runner)
        if kind not in self.KINDS:
            raise ValueError(f"unknown native help kind: {kind}")
        self.kind = kind
        self.program = program
        self.label = {"help-flag": "/?", "cmdlet": "Get-Help (PowerShell)", "console": "help (cmd)"}[kind]

    def attempt(self, name: str) -> Tuple[str, str]:
        if self.kind == "help-flag":
            out = _invoke(self.runner, [name, "/?"])
            text = out.stdout if out.stdout.strip() else out.stderr
            if is_valid_help_content(text):
                return text, self.label
            raise AcquisitionFailed(f"exit status {out.returncode} without usable help output")

        if self.kind == "cmdlet":
            script = f"Get-Help {name} -ErrorAction SilentlyContinue | Out-String -Width 120"
            out = _invoke(self.runner, [self.program or "powershell", "-NoProfile", "-Command", script])
            text = out.stdout
            if any(marker in text for marker in GET_HELP_REJECT_MARKERS) and len(text) < GET_HELP_REJECT_MAX_CHARS:
                raise AcquisitionFailed("no help topic found")
            if not is_valid_help_content(text):
                raise AcquisitionFailed("Get-Help returned no usable text")
            return text, self.label

        out = _invoke(self.runner, [self.program or "cmd", "/c", "help", name])
        text = out.stdout
        if CMD_HELP_REJECT_MARKER in text:
            raise AcquisitionFailed("not a built-in console command")
        if not is_valid_help_content(text):
            raise AcquisitionFailed("console help returned no usable text")
        return text, self.label


class PathScanStrategy(HelpStrategy):
    """Last link of the chain: only explains whether the program exists."""

    label = "path"

    def __init__(self, which: Callable[[str], str | None] = shutil.which) -> None:
        super().__init__()
        self.which = which

    def attempt(self, name: str) -> Tuple[str, str]:
        location = self.which(name)
        if location:
            raise AcquisitionFailed(f"command '{name}' exists at {location} but provides no help text")
        raise AcquisitionFailed(f"command '{name}' not found (program not found)")


@dataclasses.dataclass(frozen=True)
class Capabilities:
    windows: bool
    man: str | None
    powershell: str | None
    console: str | None


def probe_capabilities(
    which: Callable[[str], str | None] = shutil.which,
    platform: str = sys.platform,
) -> Capabilities:
    windows = platform.startswith("win")
    powershell = which("pwsh") or which("powershell")
    return Capabilities(
        windows=windows,
        man=which("man"),
        powershell=powershell,
        console=which("cmd") if windows else None,
    )


def default_strategies(
    caps: Capabilities,
    runner: Runner = run_process,
    prefer_man: bool = False,
    section: str | None = None,
    which: Callable[[str], str | None] = shutil.which,
) -> List[HelpStrategy]:
    chain: List[HelpStrategy] = [HelpFlagStrategy("--help", runner), HelpFlagStrategy("-h", runner)]
    if caps.windows:
        chain.append(PlatformNativeHelpStrategy("help-flag", runner=runner))
        if caps.powershell:
            chain.append(PlatformNativeHelpStrategy("cmdlet", program=caps.powershell, runner=runner))
        if caps.console:
            chain.append(PlatformNativeHelpStrategy("console", program=caps.console, runner=runner))
    if caps.man:
        manual = ManualPageStrategy(section, program=caps.man, runner=runner)
        if prefer_man:
            chain.insert(0, manual)
        else:
            chain.append(manual)
    chain.append(PathScanStrategy(which))
    return chain


def acquire_help(name: str, strategies: Sequence[HelpStrategy]) -> Tuple[str, str]:
    failures: List[Tuple[str, str]] = []
    for strategy in strategies:
        try:
            return strategy.attempt(name)
        except AcquisitionFailed as exc:
            failures.append((strategy.label, str(exc)))
    raise HelpUnavailableError(name, failures)


def _dedupe(entries: Sequence[Tuple[str, str]]) -> List[Tuple[str, str]]:
    seen: Dict[str, str] = {}
    for name, desc in entries:
        if name not in seen:
            seen[name] = desc
    return sorted(seen.items())


def list_man_commands(section: str = "1", runner: Runner = run_process) -> List[Tuple[str, str]]:
    attempts = [["man", "-k", "-s", section, "."], ["man", "-k", "."], ["apropos", "."]]
    for args in attempts:
        try:
            out = runner(args, None)
        except OSError:
            continue
        entries = [parsed for parsed in (parse_man_list_line(line, section) for line in out.stdout.splitlines()) if parsed]
        if entries:
            return _dedupe(entries)
    return []


def list_path_commands(path_env: str | None = None) -> List[Tuple[str, str]]:
    search_path = os.environ.get("PATH", "") if path_env is None else path_env
    entries = []
    for directory in search_path.split(os.pathsep):
        if not directory:
            continue
        base = pathlib.Path(directory)
        try:
            children = list(base.iterdir())
        except OSError:
            continue
        for child in children:
            try:
                if child.is_file() and os.access(child, os.X_OK):
                    entries.append((child.stem if sys.platform.startswith("win") else child.name, "PATH executable"))
            except OSError:
                continue
    return _dedupe(entries)


def list_powershell_commands(program: str = "powershell", runner: Runner = run_process) -> List[Tuple[str, str]]:
    script = "Get-Command -CommandType Cmdlet | ForEach-Object { $_.Name }"
    try:
        out = runner([program, "-NoProfile", "-Command", script], None)
    except OSError:
        return []
    return _dedupe([(line.strip(), "PowerShell cmdlet") for line in out.stdout.splitlines() if line.strip()])


def list_available_commands(
    source: str,
    section: str,
    caps: Capabilities,
    runner: Runner = run_process,
) -> List[Tuple[str, str]]:
    if source not in LIST_SOURCES:
        raise ValueError(f"unknown command source: {source}")
    if source == "auto":
        source = "powershell" if caps.windows else "man"
    if source == "man":
        return list_man_commands(section, runner)
    if source == "powershell":
        return list_powershell_commands(caps.powershell or "powershell", runner)
    return list_path_commands()


@dataclasses.dataclass
class LearnOutcome:
    status: str
    command: Command
    source: str = ""
    notes: List[str] = dataclasses.field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "status": self.status,
            "name": self.command.name,
            "description": self.command.description,
            "examples": len(self.command.examples),
            "source": self.source,
            "notes": self.notes,
        }


@dataclasses.dataclass
class LearnAllReport:
    total: int = 0
    learned: int = 0
    skipped: int = 0
    failed: int = 0
    stopped: bool = False
    failures: Dict[str, str] = dataclasses.field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        return dataclasses.asdict(self)


def validate_command_name(name: str) -> str:
    cleaned = name.strip()
    if not cleaned or cleaned.startswith("-") or any(ch in cleaned for ch in "\x00\n\r"):
        raise ValueError(f"invalid command name: {name!r}")
    return cleaned


def learn_one(
    conn: sqlite3.Connection,
    index: IndexManager,
    name: str,
    strategies: Sequence[HelpStrategy],
    force: bool = False,
) -> LearnOutcome:
    name = validate_command_name(name)
    if not force:
        existing = get_command(conn, name, LOCAL_LANG)
        if existing is not None:
            return LearnOutcome(status="exists", command=existing)
    text, source = acquire_help(name, strategies)
    result = parse_heuristic_with_notes(name, text, source)
    save_command(conn, result.command)
    index.upsert_one(result.command)
    return LearnOutcome(status="learned", command=result.command, source=source, notes=result.notes())


def learn_all(
    conn: sqlite3.Connection,
    index: IndexManager,
    entries: Sequence[Tuple[str, str]],
    strategies: Sequence[HelpStrategy],
    limit: int | None = None,
    prefix: str | None = None,
    skip_existing: bool = False,
    should_stop: Callable[[], bool] | None = None,
    progress: Callable[[str], None] | None = None,
) -> LearnAllReport:
    """Learn each listed command in turn, one external process at a time."""
    selected = list(entries)
    if prefix:
        wanted = prefix.lower()
        selected = [entry for entry in selected if entry[0].lower().startswith(wanted)]
    if limit is not None and limit >= 0:
        selected = selected[:limit]

    report = LearnAllReport(total=len(selected))
    for position, (name, _desc) in enumerate(selected, start=1):
        if should_stop is not None and should_stop():
            report.stopped = True
            break
        if skip_existing and get_command(conn, name, LOCAL_LANG) is not None:
            report.skipped += 1
            continue
        try:
            learn_one(conn, index, name, strategies, force=True)
        except (HelpUnavailableError, ValueError) as exc:
            report.failed += 1
            report.failures[name] = str(exc)
            continue
        report.learned += 1
        if progress is not None:
            progress(f"[{position}/{report.total}] learned {name}")
    return report
