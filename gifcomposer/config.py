"""
Runtime configuration and external-tool discovery.

This module holds the engine settings (output folder, search folders,
cache locations, encoder knobs) and locates the external tools (ffmpeg,
ffprobe, gifsicle) used by the toolchain adapter.
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping

import yaml

from gifcomposer.exceptions import ToolchainUnavailableError
from gifcomposer.types import DitherMode

ENV_PREFIX = "GIFCOMPOSER_"

INSTALL_HINTS = {
    "ffmpeg": "Install FFmpeg (brew install ffmpeg / apt install ffmpeg).",
    "ffprobe": "ffprobe ships with FFmpeg (brew install ffmpeg / apt install ffmpeg).",
    "gifsicle": "Install gifsicle (brew install gifsicle / apt install gifsicle).",
}


def default_data_dir() -> Path:
    """Return the platform-appropriate base directory for gifcomposer data."""
    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        base = Path(xdg)
    elif os.name == "nt":
        base = Path(os.environ.get(
            "LOCALAPPDATA",
            str(Path.home() / "AppData" / "Local"),
        ))
    else:
        base = Path.home() / ".local" / "share"
    return base / "gifcomposer"


def default_cache_dir() -> Path:
    """Return the platform-appropriate cache directory."""
    xdg = os.environ.get("XDG_CACHE_HOME")
    if xdg:
        return Path(xdg) / "gifcomposer"
    if os.name == "nt":
        return default_data_dir() / "cache"
    return Path.home() / ".cache" / "gifcomposer"


def _default_workers() -> int:
    cpu = os.cpu_count() or 2
    return max(1, cpu - 1)


@dataclass
class ComposerConfig:
    """Engine settings shared by every job."""
    output_dir: Path = field(default_factory=lambda: default_data_dir() / "exports")
    search_folders: list[Path] = field(default_factory=list)
    cache_dir: Path = field(default_factory=lambda: default_cache_dir() / "sources")
    conversion_cache_dir: Path | None = field(
        default_factory=lambda: default_cache_dir() / "converted")
    max_concurrent_jobs: int = 0          # 0 = auto (cpu_count - 1)
    dither: DitherMode = DitherMode.SMOOTH_GRADIENT
    optimize: bool = True
    optimize_lossy: int = 80              # gifsicle --lossy=N (0 = lossless)
    min_converted_frames: int = 2
    max_output_frames: int | None = None  # None = no cap
    fallback_fps: float = 15.0
    subprocess_timeout_s: float = 600.0
    ffmpeg: str = "ffmpeg"
    ffprobe: str = "ffprobe"
    gifsicle: str = "gifsicle"

    @property
    def worker_count(self) -> int:
        if self.max_concurrent_jobs > 0:
            return self.max_concurrent_jobs
        return _default_workers()

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ComposerConfig:
        """Build a config from a plain mapping (e.g. a parsed YAML file).

        Unknown keys are ignored; path-like keys are expanded.
        """
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            key = key.replace("-", "_")
            if key not in known or value is None:
                continue
            kwargs[key] = _coerce(key, value)
        return cls(**kwargs)

    @classmethod
    def from_file(cls, path: Path) -> ComposerConfig:
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping at the top level")
        return cls.from_mapping(data)

    def with_env(self, environ: Mapping[str, str] | None = None) -> ComposerConfig:
        """Return a copy with ``GIFCOMPOSER_*`` environment overrides applied."""
        environ = os.environ if environ is None else environ
        overrides: dict[str, Any] = {}
        for f in fields(self):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            if f.name == "search_folders":
                overrides[f.name] = [p for p in raw.split(os.pathsep) if p]
            else:
                overrides[f.name] = raw
        if not overrides:
            return self
        merged = {f.name: getattr(self, f.name) for f in fields(self)}
        merged.update({k: _coerce(k, v) for k, v in overrides.items()})
        return ComposerConfig(**merged)


_PATH_KEYS = {"output_dir", "cache_dir", "conversion_cache_dir"}
_INT_KEYS = {"max_concurrent_jobs", "optimize_lossy", "min_converted_frames", "max_output_frames"}
_FLOAT_KEYS = {"fallback_fps", "subprocess_timeout_s"}


def _coerce(key: str, value: Any) -> Any:
    if key in _PATH_KEYS:
        return Path(value).expanduser()
    if key == "search_folders":
        return [Path(p).expanduser() for p in value]
    if key in _INT_KEYS:
        return int(value)
    if key in _FLOAT_KEYS:
        return float(value)
    if key == "optimize":
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return bool(value)
    if key == "dither":
        return value if isinstance(value, DitherMode) else DitherMode(value)
    return value


@dataclass(frozen=True)
class ResolvedTools:
    """Absolute paths to external binaries resolved at startup."""

    ffmpeg: Path | None
    ffprobe: Path | None
    gifsicle: Path | None


def resolve_tool(name: str) -> Path:
    """Find the absolute path to *name* or raise ToolchainUnavailableError."""
    path = shutil.which(name)
    if path is None:
        tool = Path(name).name
        raise ToolchainUnavailableError(tool, INSTALL_HINTS.get(tool, ""))
    return Path(path)


def resolve_all(config: ComposerConfig) -> ResolvedTools:
    """Resolve every external tool at once; missing ones map to None."""
    found = {}
    for attr in ("ffmpeg", "ffprobe", "gifsicle"):
        path = shutil.which(getattr(config, attr))
        found[attr] = Path(path) if path else None
    return ResolvedTools(**found)
