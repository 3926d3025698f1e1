"""
External tool probing and diagnostics.

``gifcomposer doctor`` reports which media tools are installed and which
pipeline features they unlock, plus the versions of the Python imaging
stack.
"""

from __future__ import annotations

import logging
import platform
import re
import subprocess
from dataclasses import dataclass
from importlib import metadata
from pathlib import Path
from typing import Dict, Optional

from gifcomposer.config import INSTALL_HINTS, ComposerConfig, resolve_all

logger = logging.getLogger(__name__)

# tool -> (version flag, feature it enables)
MEDIA_TOOLS = {
    "ffmpeg": ("-version", "video clip sources"),
    "ffprobe": ("-version", "video clip sources"),
    "gifsicle": ("--version", "output optimization (optional)"),
}
PYTHON_STACK = ("Pillow", "numpy", "PyYAML", "tqdm")

_VERSION = re.compile(r"version\s+(\S+)", re.IGNORECASE)


@dataclass
class ToolProbe:
    """Outcome of looking for one tool or library."""
    name: str
    found: bool
    path: Optional[Path] = None
    version: Optional[str] = None
    notes: Optional[str] = None


def _tool_version(path: Path, flag: str) -> tuple[Optional[str], Optional[str]]:
    """Return ``(version, notes)`` parsed from ``<tool> <flag>``."""
    try:
        result = subprocess.run(
            [str(path), flag], capture_output=True, text=True, timeout=10,
        )
    except (subprocess.TimeoutExpired, OSError) as exc:
        return None, f"version check failed: {exc}"
    banner = (result.stdout or result.stderr).strip().splitlines()
    if not banner:
        return None, None
    match = _VERSION.search(banner[0])
    return (match.group(1) if match else banner[0]), None


def _library_probe(dist_name: str) -> ToolProbe:
    try:
        return ToolProbe(dist_name, True, version=metadata.version(dist_name))
    except metadata.PackageNotFoundError:
        return ToolProbe(dist_name, False)


def probe_system(config: ComposerConfig | None = None) -> Dict[str, ToolProbe]:
    """Probe the configured media tools and the Python stack."""
    config = config or ComposerConfig()
    resolved = resolve_all(config)
    probes: Dict[str, ToolProbe] = {}
    for name, (flag, _) in MEDIA_TOOLS.items():
        path = getattr(resolved, name)
        if path is None:
            logger.debug("%s not found (configured as %r)", name, getattr(config, name))
            probes[name] = ToolProbe(name, False)
            continue
        version, notes = _tool_version(path, flag)
        probes[name] = ToolProbe(name, True, path, version, notes)
    for dist in PYTHON_STACK:
        probes[dist] = _library_probe(dist)
    return probes


def print_diagnostics(config: ComposerConfig | None = None) -> str:
    """Return the ``doctor`` report as text."""
    probes = probe_system(config)
    lines = [
        "gifcomposer diagnostics",
        "=" * 40,
        f"Platform: {platform.system()} {platform.release()}",
        f"Python:   {platform.python_version()}",
        "",
        "Media tools:",
    ]
    for name, (_, feature) in MEDIA_TOOLS.items():
        probe = probes[name]
        if probe.found:
            lines.append(f"  {name:10s} {probe.version or 'unknown version':24s} {probe.path}")
        else:
            lines.append(f"  {name:10s} missing; needed for {feature}")
            lines.append(f"             {INSTALL_HINTS[name]}")
        if probe.notes:
            lines.append(f"             {probe.notes}")

    lines += ["", "Python stack:"]
    for dist in PYTHON_STACK:
        probe = probes[dist]
        lines.append(f"  {dist:10s} {probe.version if probe.found else 'missing'}")

    usable_clips = probes["ffmpeg"].found and probes["ffprobe"].found
    lines += ["", f"Clip sources: {'enabled' if usable_clips else 'disabled'}",
              f"Optimization: {'enabled' if probes['gifsicle'].found else 'skipped'}"]
    return "\n".join(lines)
