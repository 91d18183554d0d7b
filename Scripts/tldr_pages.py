#!/usr/bin/env python3
"""
tldr-style markdown pages: path classification, parsing and source readers.

A page looks like:

    # tar
    > Archiving utility.
    > More information: <https://www.gnu.org/software/tar>.

    - Create an archive from files:

    `tar cf target.tar file1 file2`

Readers accept a tldr-pages archive (ZIP or tar, any compression tarfile
understands), a local directory of pages, a single page, or a local archive.
"""

from __future__ import annotations

import dataclasses
import io
import lzma
import os
import pathlib
import re
import tarfile
import zipfile
import zlib
from typing import Iterable, Iterator, List, Sequence, Tuple

from rtfm_records import Command, Example

PAGES_SEGMENT = "pages"
DEFAULT_LANG = "en"
LOCAL_IMPORT_LANG = "zh"
LOCAL_IMPORT_PLATFORM = "common"
FALLBACK_EXAMPLE_DESCRIPTION = "Example"
ARCHIVE_SUFFIXES = (".zip", ".tar", ".tar.gz", ".tgz", ".tar.bz2", ".tbz2", ".tar.xz", ".txz")

# Blockquote lines carrying these markers are reference links, not descriptions.
MORE_INFO_MARKERS = (
    "more information",
    "更多信息",
    "更多資訊",
    "plus d'informations",
    "weitere informationen",
    "más información",
    "mais informações",
    "詳しくはこちら",
    "더 많은 정보",
)

FENCE_RE = re.compile(r"^(```+|~~~+)")
HEADING_RE = re.compile(r"^#{1,6}(\s|$)")
LIST_ITEM_RE = re.compile(r"^[-*+]\s+(.*)$")
ORDERED_ITEM_RE = re.compile(r"^\d+[.)]\s+(.*)$")
INLINE_CODE_LINE_RE = re.compile(r"^(`+)(.+?)\1$")


class ArchiveFormatError(ValueError):
    """Raised when an archive cannot be recognised or is corrupt."""


@dataclasses.dataclass(frozen=True)
class PagePath:
    lang: str
    platform: str
    name: str


@dataclasses.dataclass
class ImportResult:
    commands: List[Command]
    skipped: int = 0
    scanned: int = 0

    def counts(self) -> dict:
        return {"scanned": self.scanned, "imported": len(self.commands), "skipped": self.skipped}


def classify_path(path: str) -> PagePath | None:
    """Recover (lang, platform, name) from `.../pages[.lang]/platform/.../name.md`."""
    parts = path.replace("\\", "/").split("/")
    pages_idx = None
    for idx, part in enumerate(parts):
        if part == PAGES_SEGMENT or part.startswith(PAGES_SEGMENT + "."):
            pages_idx = idx
            break
    if pages_idx is None or len(parts) < pages_idx + 3:
        return None

    marker = parts[pages_idx]
    lang = marker.split(".")[1] if "." in marker else DEFAULT_LANG
    platform = parts[pages_idx + 1]
    name = os.path.splitext(parts[-1])[0]
    if not lang or not platform or not name:
        return None
    return PagePath(lang=lang, platform=platform, name=name)


def _decode(markdown: str | bytes) -> str | None:
    if isinstance(markdown, bytes):
        try:
            markdown = markdown.decode("utf-8")
        except UnicodeDecodeError:
            return None
    if "\x00" in markdown:
        return None
    return markdown.lstrip("﻿")


def _is_reference_line(text: str) -> bool:
    lowered = text.lower()
    if any(marker in lowered for marker in MORE_INFO_MARKERS):
        return True
    return text.startswith("http") or text.startswith("<")


def _clean_description(text: str) -> str:
    return " ".join(text.split()).strip().rstrip(":").strip()


def parse_structured(markdown: str | bytes, name: str, lang: str, platform: str) -> Command | None:
    """Parse one tldr page.

    Returns None only when the input cannot be read as markdown text.
    """
    text = _decode(markdown)
    if text is None:
        return None

    summary: List[str] = []
    examples: List[Example] = []
    pending: str | None = None
    fence: str | None = None
    code_lines: List[str] = []

    for raw in text.splitlines():
        line = raw.strip()

        if fence is not None:
            if line.startswith(fence) and not line[len(fence):].strip():
                code = "\n".join(code_lines).strip()
                if code:
                    examples.append(Example(description=pending or FALLBACK_EXAMPLE_DESCRIPTION, code=code))
                pending = None
                fence = None
                code_lines = []
            else:
                code_lines.append(raw)
            continue

        fence_match = FENCE_RE.match(line)
        if fence_match:
            fence = fence_match.group(1)
            code_lines = []
            continue

        if not line or HEADING_RE.match(line):
            continue

        if line.startswith(">"):
            quoted = line.lstrip(">").strip()
            if quoted and not _is_reference_line(quoted):
                summary.append(quoted)
            continue

        item = LIST_ITEM_RE.match(line) or ORDERED_ITEM_RE.match(line)
        if item:
            described = _clean_description(item.group(1))
            pending = described or None
            continue

        inline = INLINE_CODE_LINE_RE.match(line)
        if inline and pending:
            code = inline.group(2).strip()
            if code:
                examples.append(Example(description=pending, code=code))
            pending = None

    if fence is not None:
        code = "\n".join(code_lines).strip()
        if code:
            examples.append(Example(description=pending or FALLBACK_EXAMPLE_DESCRIPTION, code=code))

    description = " ".join(summary).strip() or name
    return Command(
        name=name,
        description=description,
        category=platform,
        platform=platform,
        lang=lang,
        examples=examples,
        content=text,
    )


def page_name_from_filename(filename: str) -> str:
    base = os.path.basename(filename.replace("\\", "/"))
    return base[:-3] if base.lower().endswith(".md") else base


def parse_local_markdown(
    content: str | bytes,
    filename: str,
    lang: str = LOCAL_IMPORT_LANG,
    platform: str = LOCAL_IMPORT_PLATFORM,
) -> Command | None:
    return parse_structured(content, page_name_from_filename(filename), lang, platform)


def is_archive_name(filename: str) -> bool:
    lowered = filename.lower()
    return any(lowered.endswith(suffix) for suffix in ARCHIVE_SUFFIXES)


def iter_archive_markdown(data: bytes) -> List[Tuple[str, bytes]]:
    """Return every `.md` member of a ZIP or tar archive as (path, bytes).

    The whole archive is read before anything is returned, so a corrupt
    archive yields an ArchiveFormatError and no entries at all.
    """
    buffer = io.BytesIO(data)
    if zipfile.is_zipfile(buffer):
        try:
            with zipfile.ZipFile(buffer) as archive:
                return [
                    (info.filename, archive.read(info))
                    for info in archive.infolist()
                    if not info.is_dir() and info.filename.lower().endswith(".md")
                ]
        except (
            zipfile.BadZipFile,
            zipfile.LargeZipFile,
            OSError,
            EOFError,
            zlib.error,
            RuntimeError,
            NotImplementedError,
        ) as exc:
            raise ArchiveFormatError(f"corrupt zip archive: {exc}") from exc

    buffer.seek(0)
    try:
        archive = tarfile.open(fileobj=buffer, mode="r:*")
    except (tarfile.TarError, OSError, EOFError, zlib.error, lzma.LZMAError) as exc:
        raise ArchiveFormatError("Unrecognized archive format (expected zip or tar)") from exc

    entries = []
    try:
        with archive:
            for member in archive:
                if not member.isfile() or not member.name.lower().endswith(".md"):
                    continue
                handle = archive.extractfile(member)
                if handle is None:
                    continue
                entries.append((member.name, handle.read()))
    except (tarfile.TarError, OSError, EOFError, zlib.error, lzma.LZMAError) as exc:
        raise ArchiveFormatError(f"corrupt tar archive: {exc}") from exc
    return entries


def parse_tldr_archive(data: bytes, languages: Sequence[str] | None = None) -> ImportResult:
    """Parse every page of a tldr-pages archive.

    Entries outside the `pages[.lang]/platform/name.md` layout, or that fail to
    parse, are skipped. `languages` restricts the import when non-empty.
    """
    allowed = {lang for lang in (languages or []) if lang}
    result = ImportResult(commands=[])
    for path, payload in iter_archive_markdown(data):
        result.scanned += 1
        page = classify_path(path)
        if page is None:
            result.skipped += 1
            continue
        if allowed and page.lang not in allowed:
            result.skipped += 1
            continue
        cmd = parse_structured(payload, page.name, page.lang, page.platform)
        if cmd is None:
            result.skipped += 1
            continue
        result.commands.append(cmd)
    return result


def _parse_local_entry(path: str, payload: bytes, lang: str, platform: str) -> Command | None:
    page = classify_path(path)
    if page is not None:
        return parse_structured(payload, page.name, page.lang, page.platform)
    return parse_local_markdown(payload, path, lang=lang, platform=platform)


def _walk_markdown(root: pathlib.Path) -> Iterator[pathlib.Path]:
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
        for filename in sorted(filenames):
            if filename.lower().endswith(".md"):
                yield pathlib.Path(dirpath) / filename


def import_local(
    path: pathlib.Path,
    lang: str = LOCAL_IMPORT_LANG,
    platform: str = LOCAL_IMPORT_PLATFORM,
) -> ImportResult:
    """Import a directory of pages, a single page, or a local archive."""
    if not path.exists():
        raise FileNotFoundError(f"import path not found: {path}")

    result = ImportResult(commands=[])
    entries: Iterable[Tuple[str, bytes]]
    if path.is_dir():
        entries = ((p.relative_to(path).as_posix(), p.read_bytes()) for p in _walk_markdown(path))
    elif is_archive_name(path.name):
        entries = iter_archive_markdown(path.read_bytes())
    else:
        entries = [(path.name, path.read_bytes())]

    for entry_path, payload in entries:
        result.scanned += 1
        cmd = _parse_local_entry(entry_path, payload, lang, platform)
        if cmd is None:
            result.skipped += 1
            continue
        result.commands.append(cmd)
    return result
