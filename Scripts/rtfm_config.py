#!/usr/bin/env python3
"""
Configuration for the rtfm CLI.

Looked up in order: an explicit `--config` path, `./rtfm.toml`, then
`<data_dir>/config.toml`. A missing or broken file falls back to defaults
with a warning on stderr.
"""

from __future__ import annotations

import dataclasses
import os
import pathlib
import sys
import tomllib
from typing import Dict, List, Mapping

DATA_DIR_ENV = "RTFM_DATA_DIR"
LOCAL_CONFIG_NAME = "rtfm.toml"
DATA_CONFIG_NAME = "config.toml"
LOG_LEVELS = ("quiet", "info", "debug")


@dataclasses.dataclass
class SearchConfig:
    default_limit: int = 20
    max_limit: int = 100
    default_lang: str = "en"
    name_weight: float = 1.0
    description_weight: float = 1.0
    content_weight: float = 1.0
    segmentation: str = "default"


@dataclasses.dataclass
class StorageConfig:
    data_dir: str = ""
    db_filename: str = "data.sqlite3"
    index_dirname: str = "index"


@dataclasses.dataclass
class UpdateConfig:
    languages: List[str] = dataclasses.field(default_factory=lambda: ["en", "zh"])


@dataclasses.dataclass
class LearnConfig:
    section: str = "1"
    source: str = "auto"


@dataclasses.dataclass
class LoggingConfig:
    level: str = "info"


@dataclasses.dataclass
class AppConfig:
    search: SearchConfig = dataclasses.field(default_factory=SearchConfig)
    storage: StorageConfig = dataclasses.field(default_factory=StorageConfig)
    update: UpdateConfig = dataclasses.field(default_factory=UpdateConfig)
    learn: LearnConfig = dataclasses.field(default_factory=LearnConfig)
    logging: LoggingConfig = dataclasses.field(default_factory=LoggingConfig)
    source: str = "defaults"

    def to_dict(self) -> Dict[str, object]:
        return dataclasses.asdict(self)

    @property
    def weights(self) -> tuple:
        return (self.search.name_weight, self.search.description_weight, self.search.content_weight)

    def clamp_limit(self, limit: int | None) -> int:
        value = self.search.default_limit if limit is None else int(limit)
        return max(0, min(value, self.search.max_limit))


def warn(message: str) -> None:
    print(f"[rtfm] warning: {message}", file=sys.stderr)


def default_data_dir() -> pathlib.Path:
    env = os.environ.get(DATA_DIR_ENV, "").strip()
    if env:
        return pathlib.Path(env).expanduser()
    if sys.platform.startswith("win"):
        base = os.environ.get("LOCALAPPDATA") or str(pathlib.Path.home() / "AppData" / "Local")
        return pathlib.Path(base) / "rtfm"
    xdg = os.environ.get("XDG_DATA_HOME", "").strip()
    base = pathlib.Path(xdg) if xdg else pathlib.Path.home() / ".local" / "share"
    return base / "rtfm"


def _coerce_section(name: str, target: object, values: Mapping[str, object]) -> None:
    for field in dataclasses.fields(target):
        if field.name not in values:
            continue
        current = getattr(target, field.name)
        value = values[field.name]
        if isinstance(current, bool) or isinstance(value, bool):
            ok = isinstance(current, bool) and isinstance(value, bool)
        elif isinstance(current, float):
            ok = isinstance(value, (int, float))
            value = float(value) if ok else value
        elif isinstance(current, list):
            ok = isinstance(value, list) and all(isinstance(item, str) for item in value)
        else:
            ok = isinstance(value, type(current))
        if not ok:
            warn(f"ignoring {name}.{field.name}={value!r}: expected {type(current).__name__}")
            continue
        setattr(target, field.name, value)


def config_from_mapping(data: Mapping[str, object], source: str = "mapping") -> AppConfig:
    config = AppConfig(source=source)
    for section in ("search", "storage", "update", "learn", "logging"):
        values = data.get(section)
        if values is None:
            continue
        if not isinstance(values, Mapping):
            warn(f"ignoring [{section}]: expected a table")
            continue
        _coerce_section(section, getattr(config, section), values)
    if config.logging.level not in LOG_LEVELS:
        warn(f"unknown logging.level {config.logging.level!r}, using 'info'")
        config.logging.level = "info"
    if config.search.segmentation not in ("default", "search"):
        warn(f"unknown search.segmentation {config.search.segmentation!r}, using 'default'")
        config.search.segmentation = "default"
    if config.search.max_limit < 1:
        config.search.max_limit = 1
    return config


def load_config_file(path: pathlib.Path) -> AppConfig:
    try:
        with path.open("rb") as handle:
            data = tomllib.load(handle)
    except (OSError, tomllib.TOMLDecodeError) as exc:
        warn(f"failed to read config {path}: {exc}; using defaults")
        return AppConfig()
    return config_from_mapping(data, source=str(path))


def load_config(explicit: str | None = None, cwd: pathlib.Path | None = None) -> AppConfig:
    if explicit:
        return load_config_file(pathlib.Path(explicit).expanduser())
    local = (cwd or pathlib.Path.cwd()) / LOCAL_CONFIG_NAME
    if local.is_file():
        return load_config_file(local)
    data_config = default_data_dir() / DATA_CONFIG_NAME
    if data_config.is_file():
        return load_config_file(data_config)
    return AppConfig()


def resolve_data_dir(config: AppConfig, override: str | None = None) -> pathlib.Path:
    if override:
        return pathlib.Path(override).expanduser()
    if config.storage.data_dir:
        return pathlib.Path(config.storage.data_dir).expanduser()
    return default_data_dir()


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    text = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


def render_default_toml(config: AppConfig | None = None) -> str:
    config = config or AppConfig()
    lines = ["# rtfm configuration", ""]
    for section in ("search", "storage", "update", "learn", "logging"):
        lines.append(f"[{section}]")
        for field in dataclasses.fields(getattr(config, section)):
            lines.append(f"{field.name} = {_toml_value(getattr(getattr(config, section), field.name))}")
        lines.append("")
    return "\n".join(lines)
