#!/usr/bin/env python3
"""
Best-effort parsing of free-form `--help` and manual page text.

Nothing here raises on odd input: every parse yields a usable `Command`,
and `parse_heuristic_with_notes` reports which fields fell back to
synthetic defaults so strict callers can decide what to trust.
"""

from __future__ import annotations

import dataclasses
import re
import sys
from typing import List, Tuple

from rtfm_records import Command, Example

LOCAL_LANG = "local"
LOCAL_CATEGORY = "local"
DESCRIPTION_SCAN_LINES = 20
DESCRIPTION_MAX_CHARS = 200
EXAMPLE_DESC_MAX_CHARS = 100
MAX_COMMAND_EXAMPLES = 10
MAX_OPTION_EXAMPLES = 5
DEFAULT_EXAMPLE_DESCRIPTION = "Example usage"
HELP_KEYWORDS = ("usage", "options", "help", "commands", "synopsis", "description")
VALID_HELP_MIN_CHARS = 50
SECTION_HEADINGS = {
    "arguments",
    "commands",
    "description",
    "example",
    "examples",
    "flags",
    "name",
    "options",
    "see also",
    "synopsis",
    "usage",
}

ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
# Running header of a rendered man page, e.g. "LS(1)   User Commands   LS(1)".
MAN_HEADER_RE = re.compile(r"^\S+\(\d\w*\)\s.*\S+\(\d\w*\)$")
MAN_NAME_TAIL_RE = re.compile(r"^(\(\w+\))?(\s*,\s*[^\s,()]+(\(\w+\))?)*$")
OPTION_SPLIT_RE = re.compile(r" {2,}|\t+")
WHITESPACE_RE = re.compile(r"\s+")


@dataclasses.dataclass
class HeuristicResult:
    command: Command
    synthetic_description: bool
    option_examples: bool

    def notes(self) -> List[str]:
        out = []
        if self.synthetic_description:
            out.append("description is a synthetic default")
        if self.option_examples:
            out.append("examples were derived from option flags")
        if not self.command.examples:
            out.append("no examples found")
        return out


def current_platform() -> str:
    if sys.platform.startswith("win"):
        return "windows"
    if sys.platform == "darwin":
        return "osx"
    return "linux"


def strip_ansi_codes(text: str) -> str:
    """Remove ANSI escapes and backspace overstrike from rendered man output."""
    text = ANSI_RE.sub("", text)
    if "\b" not in text:
        return text
    out: List[str] = []
    for ch in text:
        if ch == "\b":
            if out:
                out.pop()
        else:
            out.append(ch)
    return "".join(out)


def is_valid_help_content(text: str) -> bool:
    if not text or not text.strip():
        return False
    lowered = text.lower()
    return any(keyword in lowered for keyword in HELP_KEYWORDS) or len(text.strip()) > VALID_HELP_MIN_CHARS


def _starts_with_name(line: str, name: str) -> bool:
    if not line.startswith(name):
        return False
    rest = line[len(name):]
    return not rest or rest[0] in " \t(,"


def _man_name_line(line: str, name: str) -> str | None:
    """Return the description of a `<name>[(N)][, alias...] - <description>` line."""
    if not _starts_with_name(line, name) or " - " not in line:
        return None
    head, desc = line.split(" - ", 1)
    rest = head[len(name):].strip()
    if rest and not MAN_NAME_TAIL_RE.match(rest):
        return None
    return desc.strip() or None


def _is_section_heading(line: str) -> bool:
    return line.lower().rstrip(":").strip() in SECTION_HEADINGS


def extract_description(lines: List[str], name: str) -> str | None:
    collected: List[str] = []
    seen = 0
    for raw in lines:
        line = raw.strip()
        if not line:
            if collected:
                break
            continue
        seen += 1
        if seen > DESCRIPTION_SCAN_LINES:
            break
        if line.lower().startswith("usage"):
            continue
        man_desc = _man_name_line(line, name)
        if man_desc:
            return man_desc
        if MAN_HEADER_RE.match(line) or (line.isupper() and _is_section_heading(line)):
            continue
        if line.startswith("-") or line.startswith("[") or "--" in line:
            continue
        collected.append(line)
        if len(" ".join(collected)) > DESCRIPTION_MAX_CHARS:
            break
    if not collected:
        return None
    return WHITESPACE_RE.sub(" ", " ".join(collected)).strip() or None


def parse_option_line(line: str) -> Tuple[str, str] | None:
    """Split `-v, --verbose  Enable verbose mode` into ("--verbose", "Enable verbose mode")."""
    parts = OPTION_SPLIT_RE.split(line.strip(), maxsplit=1)
    if len(parts) != 2:
        return None
    flags, desc = parts[0].strip(), parts[1].strip()
    if not flags or not desc:
        return None
    candidates = [piece.strip() for piece in flags.split(",") if piece.strip()]
    if not candidates:
        return None
    long_form = next((piece for piece in candidates if piece.startswith("--")), None)
    return long_form or candidates[0], desc


def _command_examples(lines: List[str], name: str) -> List[Example]:
    examples: List[Example] = []
    pending = ""
    for raw in lines:
        line = raw.strip()
        if not line:
            continue
        code = line[2:] if line.startswith("$ ") else line
        if _starts_with_name(code, name) and _man_name_line(code, name) is None:
            if pending:
                desc = pending
            elif "#" in code:
                desc = code.split("#", 1)[1].strip() or DEFAULT_EXAMPLE_DESCRIPTION
            else:
                desc = DEFAULT_EXAMPLE_DESCRIPTION
            examples.append(Example(description=desc, code=code))
            pending = ""
            if len(examples) >= MAX_COMMAND_EXAMPLES:
                break
            continue
        if _is_section_heading(line):
            pending = ""
            continue
        if not line.startswith("-") and not line.startswith("[") and len(line) < EXAMPLE_DESC_MAX_CHARS:
            pending = line.rstrip(":").strip()
    return examples


def _option_examples(lines: List[str], name: str) -> List[Example]:
    examples: List[Example] = []
    in_options = False
    for raw in lines:
        line = raw.strip()
        lowered = line.lower()
        if lowered.startswith("options") or lowered.startswith("flags"):
            in_options = True
            continue
        if not in_options or not line.startswith("-"):
            continue
        parsed = parse_option_line(line)
        if parsed is None:
            continue
        flag, desc = parsed
        examples.append(Example(description=desc, code=f"{name} {flag}"))
        if len(examples) >= MAX_OPTION_EXAMPLES:
            break
    return examples


def parse_heuristic_with_notes(name: str, raw_text: str, source_tag: str) -> HeuristicResult:
    lines = raw_text.splitlines()
    description = extract_description(lines, name)
    synthetic_description = description is None
    if description is None:
        description = f"{name} command (learned from local system)"

    examples = _command_examples(lines, name)
    option_examples = False
    if not examples:
        examples = _option_examples(lines, name)
        option_examples = bool(examples)

    command = Command(
        name=name,
        description=description,
        category=LOCAL_CATEGORY,
        platform=current_platform(),
        lang=LOCAL_LANG,
        examples=examples,
        content=f"Source: {source_tag}\n\n{raw_text}",
    )
    return HeuristicResult(
        command=command,
        synthetic_description=synthetic_description,
        option_examples=option_examples,
    )


def parse_heuristic(name: str, raw_text: str, source_tag: str) -> Command:
    return parse_heuristic_with_notes(name, raw_text, source_tag).command


def parse_man_list_line(line: str, section: str) -> Tuple[str, str] | None:
    """Parse one `man -k` / `apropos` line, e.g. `docker-ps (1) - list containers`."""
    if f"({section})" not in line and f"({section}," not in line:
        return None
    name = re.split(r"[(, ]", line.strip(), maxsplit=1)[0].strip()
    if not name:
        return None
    desc = line.split(" - ", 1)[1].strip() if " - " in line else ""
    return name, desc
