"""
Progress reporting.

Stages report ``(percent, message)`` pairs.  ``ProgressTracker`` keeps
the reported percentage inside 0..100 and never lets it go backwards,
whatever order stages and retries report in.  ``ConsoleProgress`` is the
sink the CLI plugs in: a tqdm bar on stderr.
"""

from __future__ import annotations

import logging
import sys
import threading
from typing import Any, Callable, Optional

from tqdm import tqdm

from gifcomposer.types import ProgressSink

logger = logging.getLogger(__name__)

# (start, end) percent of each stage.
BANDS = {
    "resolve": (0, 5),
    "convert": (5, 10),
    "extract": (10, 30),
    "compose": (30, 70),
    "overlay": (70, 80),
    "encode": (80, 88),
    "optimize": (88, 96),
    "done": (100, 100),
}


class ProgressTracker:
    """Monotonic, clamped progress forwarded to an optional sink."""

    def __init__(self, sink: Optional[ProgressSink] = None) -> None:
        self.sink = sink
        self.percent = 0
        self.message = ""
        self._lock = threading.Lock()

    def report(self, percent: float, message: str = "") -> None:
        value = int(max(0, min(100, percent)))
        with self._lock:
            if value < self.percent:
                value = self.percent
            self.percent = value
            self.message = message or self.message
        logger.debug("Progress %d%% %s", value, message)
        if self.sink is not None:
            self.sink(value, message)

    def stage(self, name: str, message: str = "") -> None:
        """Report the start of stage *name*."""
        start, _ = BANDS[name]
        self.report(start, message or name)

    def fraction(self, name: str, done: float, total: float, message: str = "") -> None:
        """Report *done* of *total* units inside stage *name*'s band."""
        start, end = BANDS[name]
        ratio = done / total if total else 1.0
        self.report(start + (end - start) * ratio, message or name)

    def frame_callback(self, name: str, label: str) -> Callable[[int, int], None]:
        """Return an ``on_frame(done, total)`` callback for stage *name*."""
        def _on_frame(done: int, total: int) -> None:
            self.fraction(name, done, total, f"{label} {done}/{total}")
        return _on_frame


class ConsoleProgress:
    """tqdm-backed sink for terminal use."""

    def __init__(self, description: str = "Exporting") -> None:
        self._bar: Any = tqdm(
            total=100, desc=description, unit="%",
            file=sys.stderr, dynamic_ncols=True,
        )

    def __call__(self, percent: int, message: str) -> None:
        if message:
            self._bar.set_postfix_str(message)
        self._bar.update(max(0, percent - self._bar.n))

    def close(self) -> None:
        self._bar.close()
