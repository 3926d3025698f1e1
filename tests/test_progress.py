"""
Tests for progress tracking.
"""

from __future__ import annotations

from gifcomposer.progress import BANDS, ConsoleProgress, ProgressTracker


def _tracker():
    seen = []
    return ProgressTracker(lambda p, m: seen.append((p, m))), seen


class TestProgressTracker:
    def test_clamped(self):
        tracker, seen = _tracker()
        tracker.report(-5, "a")
        tracker.report(150, "b")
        assert seen == [(0, "a"), (100, "b")]

    def test_never_goes_backwards(self):
        tracker, seen = _tracker()
        tracker.stage("compose")
        tracker.stage("resolve")
        assert [p for p, _ in seen] == [30, 30]
        assert tracker.percent == 30

    def test_fraction_within_band(self):
        tracker, seen = _tracker()
        tracker.fraction("compose", 5, 10)
        start, end = BANDS["compose"]
        assert seen[-1][0] == (start + end) // 2
        tracker.fraction("extract", 0, 0)
        assert tracker.percent == 50

    def test_frame_callback_message(self):
        tracker, seen = _tracker()
        tracker.frame_callback("overlay", "Overlaying frame")(2, 4)
        assert seen == [(75, "Overlaying frame 2/4")]

    def test_without_sink(self):
        tracker = ProgressTracker()
        tracker.report(40, "x")
        assert tracker.percent == 40
        assert tracker.message == "x"


def test_console_progress():
    bar = ConsoleProgress("Testing")
    bar(10, "resolve")
    bar(5, "")
    bar(100, "done")
    assert bar._bar.n == 100
    bar.close()
