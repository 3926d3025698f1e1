"""
Source and conversion caches.

Two caches live on disk, both owned by the caller and injected into the
engine:

Content cache
-------------
Animated sources fetched ahead of time (e.g. by a sync watcher) are
stored flat under one directory::

    <root>/
        <cache_id><ext>           the media file (.gif / .mp4 / .mov)
        <cache_id>.meta.json      {cacheId, originalFilename, driveFileId,
                                   timestamp, size, ext}

Lookups go by cache id first, then by the original filename.  Zero-byte
media files are treated as corrupt: the file and its metadata are
evicted and the lookup misses.

Conversion cache
----------------
Clips resampled to a GIF are kept under ``<root>/<md5>.gif`` keyed by
the clip's path, size, mtime, the target size and the dither mode, so a
re-export of an unchanged clip skips ffmpeg entirely.
"""

from __future__ import annotations

import abc
import hashlib
import json
import logging
import os
import shutil
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from gifcomposer.exceptions import CacheError
from gifcomposer.types import ANIMATED_EXTENSIONS, DitherMode

logger = logging.getLogger(__name__)

META_SUFFIX = ".meta.json"


def _ensure_dir(path: Path) -> Path:
    """Create directory if it does not exist."""
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise CacheError(f"cannot create cache directory {path}: {exc}") from exc
    return path


@dataclass(frozen=True)
class CacheEntry:
    """One media file in the content cache."""
    cache_id: str
    path: Path
    original_filename: str
    size: int
    timestamp: float
    ext: str
    drive_file_id: str | None = None


# ---------------------------------------------------------------------------
# Content cache
# ---------------------------------------------------------------------------

class ContentCache(abc.ABC):
    """Lookup service the resolver queries before touching search folders."""

    @abc.abstractmethod
    def get_by_id(self, cache_id: str) -> Path | None:
        """Return the media file stored under *cache_id*, or None."""

    @abc.abstractmethod
    def get_by_name(self, filename: str) -> Path | None:
        """Return the newest media file whose original name is *filename*."""

    @abc.abstractmethod
    def put(
        self,
        source: Path,
        original_filename: str | None = None,
        cache_id: str | None = None,
        drive_file_id: str | None = None,
    ) -> CacheEntry:
        """Copy *source* into the cache and record its metadata."""

    @abc.abstractmethod
    def entries(self) -> list[CacheEntry]:
        """Return every readable entry."""


class DirectoryContentCache(ContentCache):
    """Content cache backed by a flat directory of media + sidecar JSON."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        _ensure_dir(self.root)

    # -- Paths -------------------------------------------------------------

    def _meta_path(self, cache_id: str) -> Path:
        return self.root / f"{cache_id}{META_SUFFIX}"

    def _media_path(self, cache_id: str) -> Path | None:
        for ext in ANIMATED_EXTENSIONS:
            candidate = self.root / f"{cache_id}{ext}"
            if candidate.is_file():
                return candidate
        return None

    def _read_meta(self, meta_path: Path) -> dict[str, Any] | None:
        try:
            data = json.loads(meta_path.read_text("utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.debug("Skipping unreadable cache metadata %s", meta_path)
            return None
        return data if isinstance(data, dict) else None

    def _usable(self, cache_id: str, path: Path) -> bool:
        """Evict zero-byte media files; return True if *path* is usable."""
        if path.stat().st_size > 0:
            return True
        logger.warning("Evicting empty cache file %s", path.name)
        self.evict(cache_id)
        return False

    # -- Lookup ------------------------------------------------------------

    def get_by_id(self, cache_id: str) -> Path | None:
        path = self._media_path(cache_id)
        if path is None or not self._usable(cache_id, path):
            return None
        return path

    def get_by_name(self, filename: str) -> Path | None:
        matches = [e for e in self.entries() if e.original_filename == filename]
        for entry in sorted(matches, key=lambda e: e.timestamp, reverse=True):
            if self._usable(entry.cache_id, entry.path):
                return entry.path
        return None

    def entries(self) -> list[CacheEntry]:
        found: list[CacheEntry] = []
        if not self.root.is_dir():
            return found
        for meta_path in sorted(self.root.glob(f"*{META_SUFFIX}")):
            data = self._read_meta(meta_path)
            if data is None:
                continue
            cache_id = str(data.get("cacheId") or meta_path.name[: -len(META_SUFFIX)])
            media = self._media_path(cache_id)
            if media is None:
                continue
            found.append(CacheEntry(
                cache_id=cache_id,
                path=media,
                original_filename=str(data.get("originalFilename") or media.name),
                size=int(data.get("size") or 0),
                timestamp=float(data.get("timestamp") or 0.0),
                ext=str(data.get("ext") or media.suffix),
                drive_file_id=data.get("driveFileId"),
            ))
        return found

    # -- Store -------------------------------------------------------------

    def put(
        self,
        source: Path,
        original_filename: str | None = None,
        cache_id: str | None = None,
        drive_file_id: str | None = None,
    ) -> CacheEntry:
        source = Path(source)
        ext = source.suffix.lower()
        if ext not in ANIMATED_EXTENSIONS:
            raise CacheError(f"unsupported media type {ext!r} for {source.name}")
        cache_id = cache_id or uuid.uuid4().hex[:16]
        dest = self.root / f"{cache_id}{ext}"
        try:
            shutil.copy2(source, dest)
        except OSError as exc:
            raise CacheError(f"cannot store {source.name}: {exc}") from exc

        entry = CacheEntry(
            cache_id=cache_id,
            path=dest,
            original_filename=original_filename or source.name,
            size=dest.stat().st_size,
            timestamp=time.time(),
            ext=ext,
            drive_file_id=drive_file_id,
        )
        meta = {
            "cacheId": entry.cache_id,
            "originalFilename": entry.original_filename,
            "driveFileId": entry.drive_file_id,
            "timestamp": entry.timestamp,
            "size": entry.size,
            "ext": entry.ext,
        }
        self._meta_path(cache_id).write_text(json.dumps(meta, indent=2), encoding="utf-8")
        return entry

    def evict(self, cache_id: str) -> None:
        """Remove the media file and its metadata."""
        for ext in ANIMATED_EXTENSIONS:
            (self.root / f"{cache_id}{ext}").unlink(missing_ok=True)
        self._meta_path(cache_id).unlink(missing_ok=True)

    # -- Maintenance -------------------------------------------------------

    def clean_older_than(self, days: float) -> int:
        """Remove entries stored more than *days* ago.  Returns the count."""
        cutoff = time.time() - days * 86400
        removed = 0
        for entry in self.entries():
            stamp = entry.timestamp or entry.path.stat().st_mtime
            if stamp < cutoff:
                self.evict(entry.cache_id)
                removed += 1
        return removed

    def stats(self) -> dict[str, Any]:
        """Return cache statistics."""
        entries = self.entries()
        size_bytes = sum(e.path.stat().st_size for e in entries)
        by_ext: dict[str, int] = {}
        for e in entries:
            by_ext[e.ext] = by_ext.get(e.ext, 0) + 1
        return {
            "entries": len(entries),
            "size_mb": round(size_bytes / (1024 * 1024), 2),
            "by_ext": by_ext,
            "root": str(self.root),
        }


# ---------------------------------------------------------------------------
# Conversion cache
# ---------------------------------------------------------------------------

class ConversionCache:
    """Resampled clips keyed by source identity and conversion settings."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        _ensure_dir(self.root)

    @staticmethod
    def key(source: Path, size: tuple[int, int], dither: DitherMode) -> str:
        st = source.stat()
        raw = f"{source.resolve()}|{st.st_size}|{st.st_mtime}|{size[0]}x{size[1]}|{dither.value}"
        return hashlib.md5(raw.encode("utf-8")).hexdigest()

    def get(self, key: str) -> Path | None:
        path = self.root / f"{key}.gif"
        if path.is_file() and path.stat().st_size > 0:
            return path
        return None

    def put(self, key: str, converted: Path) -> Path:
        dest = self.root / f"{key}.gif"
        # Writer-unique temp name; concurrent jobs may store the same key.
        tmp = self.root / f"{key}.{uuid.uuid4().hex}.tmp"
        try:
            shutil.copy2(converted, tmp)
            os.replace(tmp, dest)
        finally:
            tmp.unlink(missing_ok=True)
        return dest

    def clear(self) -> int:
        count = 0
        for path in self.root.glob("*.gif"):
            path.unlink(missing_ok=True)
            count += 1
        return count

    def stats(self) -> dict[str, Any]:
        files = list(self.root.glob("*.gif"))
        return {
            "entries": len(files),
            "size_mb": round(sum(f.stat().st_size for f in files) / (1024 * 1024), 2),
            "root": str(self.root),
        }
