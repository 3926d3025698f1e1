"""
Source resolution.

Maps a source descriptor (filename and optional cache id) to a readable
local media file.  Strategies run in a fixed order and the first hit
wins:

    1. content cache, by cache id
    2. content cache, by exact original filename
    3. content cache, fuzzy filename match
    4. search folders, exact then fuzzy match (folder order)
    5. single-source auto-match: when the job has one source and the
       search folders hold exactly one candidate file

Every attempted strategy is recorded so a miss can tell the user what
was tried.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Iterable, Sequence

from gifcomposer.cache import ContentCache
from gifcomposer.exceptions import SourceNotFoundError
from gifcomposer.types import ANIMATED_EXTENSIONS, SourceDescriptor

logger = logging.getLogger(__name__)

_DUPLICATE_SUFFIX = re.compile(r"_\d+$")
_CAPTURE_TIMESTAMP = re.compile(r"\d{1,2}-\d{1,2}-\d{4}\s+\d{1,2}-\d{1,2}-\d{1,2}")
_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")

# Substrings marking files this engine (or an earlier version) exported.
EXPORT_MARKERS = ("_exported", "exportedgif", "导出")
LOOSE_MIN_LENGTH = 5


def clean_stem(name: str) -> str:
    """Strip the extension and an OS duplicate suffix such as ``_1``."""
    return _DUPLICATE_SUFFIX.sub("", Path(name).stem)


def is_candidate(name: str) -> bool:
    """True for visible, non-exported .gif/.mp4/.mov files."""
    if name.startswith("."):
        return False
    lowered = name.lower()
    if any(marker in lowered for marker in EXPORT_MARKERS):
        return False
    return Path(name).suffix.lower() in ANIMATED_EXTENSIONS


def fuzzy_match(target: str, candidate: str) -> bool:
    """Loose filename equivalence used once exact matches fail.

    Handles renamed duplicates (``clip_2.mov``), changed extensions
    (``clip.gif`` vs ``clip.mov``), truncated names, punctuation
    differences and screen recordings sharing a capture timestamp.
    """
    target_clean = clean_stem(target)
    cand_clean = clean_stem(candidate)
    if not target_clean or not cand_clean:
        return False

    if target_clean == cand_clean:
        return True
    if target_clean in cand_clean or cand_clean in target_clean:
        return True

    target_simple = _NON_ALNUM.sub("", target_clean).lower()
    cand_simple = _NON_ALNUM.sub("", cand_clean).lower()
    if len(target_simple) > LOOSE_MIN_LENGTH and len(cand_simple) > LOOSE_MIN_LENGTH:
        if target_simple in cand_simple or cand_simple in target_simple:
            return True

    target_time = _CAPTURE_TIMESTAMP.search(target_clean)
    cand_time = _CAPTURE_TIMESTAMP.search(cand_clean)
    return bool(target_time and cand_time and target_time.group(0) == cand_time.group(0))


class SourceResolver:
    """Locate the media file behind each source descriptor."""

    def __init__(
        self,
        cache: ContentCache | None = None,
        search_folders: Sequence[Path] = (),
    ) -> None:
        self.cache = cache
        self.search_folders = [Path(p) for p in search_folders]

    def _folder_files(self) -> Iterable[tuple[Path, list[str]]]:
        for folder in self.search_folders:
            if not folder.is_dir():
                continue
            names = sorted(
                p.name for p in folder.iterdir()
                if p.is_file() and is_candidate(p.name)
            )
            yield folder, names

    def resolve(self, descriptor: SourceDescriptor, *, sibling_count: int = 1) -> Path:
        """Return a readable path for *descriptor* or raise SourceNotFoundError."""
        filename = descriptor.filename
        attempted: list[str] = []

        if self.cache is not None:
            if descriptor.cache_id:
                attempted.append(f"content cache by id {descriptor.cache_id!r}")
                path = self.cache.get_by_id(descriptor.cache_id)
                if path is not None:
                    logger.info("Resolved %s from cache id %s", filename, descriptor.cache_id)
                    return path

            if filename:
                attempted.append("content cache by exact filename")
                path = self.cache.get_by_name(filename)
                if path is not None:
                    logger.info("Resolved %s from cache by name", filename)
                    return path

                attempted.append("content cache by fuzzy filename")
                for entry in self.cache.entries():
                    if fuzzy_match(filename, entry.original_filename):
                        path = self.cache.get_by_id(entry.cache_id)
                        if path is not None:
                            logger.info(
                                "Resolved %s from cache via fuzzy match %s",
                                filename, entry.original_filename,
                            )
                            return path

        if filename:
            for folder, names in self._folder_files():
                attempted.append(f"search folder {folder}")
                if filename in names:
                    return folder / filename
                for name in names:
                    if fuzzy_match(filename, name):
                        logger.info("Resolved %s via fuzzy match %s in %s", filename, name, folder)
                        return folder / name

        if sibling_count == 1:
            attempted.append("single-source auto-match")
            candidates = [folder / name for folder, names in self._folder_files() for name in names]
            if len(candidates) == 1:
                logger.info("Auto-matched the only candidate %s", candidates[0].name)
                return candidates[0]
            logger.debug("Auto-match skipped: %d candidates", len(candidates))

        raise SourceNotFoundError(filename or str(descriptor.cache_id), attempted)
