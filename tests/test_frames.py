"""
Tests for frame extraction and delay normalisation.
"""

from __future__ import annotations

import pytest

from conftest import FakeToolchain, make_gif
from gifcomposer.exceptions import ExtractionFailedError
from gifcomposer.frames import FrameExtractor, normalize_delay, representative_delay


class TestRepresentativeDelay:
    def test_most_common(self):
        assert representative_delay([4, 4, 4, 6]) == 4

    def test_tie_goes_to_smallest(self):
        assert representative_delay([6, 6, 4, 4]) == 4

    def test_ignores_sub_minimum(self):
        assert representative_delay([1, 1, 1, 5]) == 5

    def test_default_when_nothing_usable(self):
        assert representative_delay([]) == 10
        assert representative_delay([0, 1]) == 10


class TestNormalizeDelay:
    @pytest.mark.parametrize("raw,expected", [(0, 10), (1, 10), (2, 2), (7, 7)])
    def test_values(self, raw, expected):
        assert normalize_delay(raw) == expected


class TestFrameExtractor:
    def test_extracts_frames_and_delays(self, tmp_path):
        gif = make_gif(tmp_path / "a.gif", n_frames=5, duration_ms=40, size=(12, 8))
        fs = FrameExtractor(FakeToolchain()).extract(gif)
        assert fs.frame_count == 5
        assert fs.delays_cs == (4, 4, 4, 4, 4)
        assert fs.delay_cs == 4
        assert fs.total_duration_cs == 20
        assert fs.size == (12, 8)
        assert all(f.mode == "RGBA" for f in fs.frames)

    def test_per_frame_delays_kept(self, tmp_path):
        gif = make_gif(tmp_path / "v.gif", n_frames=3, duration_ms=[40, 60, 60])
        fs = FrameExtractor(FakeToolchain()).extract(gif)
        assert fs.delays_cs == (4, 6, 6)
        assert fs.delay_cs == 6
        assert fs.total_duration_s == pytest.approx(0.16)

    def test_tiny_delays_play_as_ten(self, tmp_path):
        gif = make_gif(tmp_path / "fast.gif", n_frames=4, duration_ms=10)
        fs = FrameExtractor(FakeToolchain()).extract(gif)
        assert fs.delays_cs == (10, 10, 10, 10)
        assert fs.total_duration_cs == 40

    def test_corrupt_file(self, tmp_path):
        bad = tmp_path / "bad.gif"
        bad.write_bytes(b"GIF89a-not-really")
        with pytest.raises(ExtractionFailedError) as info:
            FrameExtractor(FakeToolchain()).extract(bad)
        assert info.value.stage == "extract"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ExtractionFailedError):
            FrameExtractor(FakeToolchain()).extract(tmp_path / "nope.gif")
