"""
Tests for timeline compositing and layer order.
"""

from __future__ import annotations

import pytest
from PIL import Image

from conftest import FakeToolchain, make_frame_set, png_bytes
from gifcomposer.compositor import TimelineCompositor, split_static_layers
from gifcomposer.exceptions import CompositionFailedError, ExportCancelled
from gifcomposer.types import (
    Bounds,
    Color,
    ExportJob,
    SourceDescriptor,
    StaticLayer,
    VisibilityRange,
)

RED = (255, 0, 0, 255)
BLUE = (0, 0, 255, 255)
GREEN = (0, 255, 0, 255)
WHITE = (255, 255, 255, 255)


def _source(name, z, bounds=(0, 0, 10, 10), layer_id=None):
    return SourceDescriptor(filename=name, bounds=Bounds(*bounds), z_index=z, layer_id=layer_id)


def _job(sources, **kwargs):
    kwargs.setdefault("annotation_bytes", png_bytes((10, 10)))
    return ExportJob(frame_name="Frame", sources=sources, frame_size=(10, 10), **kwargs)


def _pixel(path, xy=(5, 5)):
    with Image.open(path) as im:
        return im.convert("RGBA").getpixel(xy)


@pytest.fixture
def compositor():
    return TimelineCompositor(FakeToolchain())


class TestLayerOrder:
    def test_higher_z_on_top(self, compositor, tmp_path):
        sources = [_source("red.gif", 1), _source("blue.gif", 2)]
        sets = [make_frame_set(2, 10, (10, 10), RED), make_frame_set(2, 10, (10, 10), BLUE)]
        seq = compositor.compose(sets, sources, _job(sources), tmp_path)
        assert _pixel(seq.paths[0]) == BLUE

    def test_z_order_not_list_order(self, compositor, tmp_path):
        sources = [_source("red.gif", 5), _source("blue.gif", 2)]
        sets = [make_frame_set(2, 10, (10, 10), RED), make_frame_set(2, 10, (10, 10), BLUE)]
        seq = compositor.compose(sets, sources, _job(sources), tmp_path)
        assert _pixel(seq.paths[0]) == RED

    def test_interleaved_static_layer(self, compositor, tmp_path):
        sources = [_source("red.gif", 1), _source("blue.gif", 3, bounds=(0, 0, 5, 5))]
        static = StaticLayer(data=png_bytes((10, 10), GREEN), index=2)
        sets = [make_frame_set(2, 10, (10, 10), RED), make_frame_set(2, 10, (5, 5), BLUE)]
        job = _job(sources, static_layers=[static])
        seq = compositor.compose(sets, sources, job, tmp_path)
        assert _pixel(seq.paths[0], (7, 7)) == GREEN    # static covers red
        assert _pixel(seq.paths[0], (2, 2)) == BLUE     # blue above static

    def test_background_and_bottom_layer(self, compositor, tmp_path):
        sources = [_source("red.gif", 1, bounds=(0, 0, 4, 4))]
        bottom = png_bytes((10, 10), box=(8, 8, 10, 10), box_color=GREEN)
        job = _job(sources, background=Color(255, 255, 255, 1.0), bottom_layer_bytes=bottom)
        seq = compositor.compose([make_frame_set(1, 10, (4, 4), RED)], sources, job, tmp_path)
        assert _pixel(seq.paths[0], (1, 1)) == RED
        assert _pixel(seq.paths[0], (5, 5)) == WHITE
        assert _pixel(seq.paths[0], (9, 9)) == GREEN

    def test_split_static_layers(self):
        sources = [_source("a", 2), _source("b", 4)]
        statics = [StaticLayer(b"", i) for i in (0, 3, 5, 1)]
        below, between, above = split_static_layers(statics, sources)
        assert [s.index for s in below] == [0, 1]
        assert [s.index for s in between] == [3]
        assert [s.index for s in above] == [5]


class TestPaths:
    def test_direct_path_keeps_delays(self, compositor, tmp_path):
        sources = [_source("a.gif", 0)]
        fs = make_frame_set(3, 4, (10, 10), RED, delays=(4, 6, 8))
        seq = compositor.compose([fs], sources, _job(sources), tmp_path)
        assert seq.delays_cs == [4, 6, 8]
        assert len(seq.paths) == 3
        assert seq.timeline is None

    def test_timeline_path(self, compositor, tmp_path):
        sources = [_source("a.gif", 0), _source("b.gif", 1, bounds=(5, 0, 5, 10))]
        sets = [make_frame_set(50, 4, (10, 10), RED), make_frame_set(50, 6, (5, 10), BLUE)]
        seq = compositor.compose(sets, sources, _job(sources), tmp_path)
        assert len(seq.paths) == 75
        assert set(seq.delays_cs) == {4}
        assert seq.uniform_delay == 4
        assert seq.timeline.total_frames == 75
        assert seq.source_indices[50] == 50

    def test_visibility_window_forces_timeline(self, compositor, tmp_path):
        sources = [_source("a.gif", 0, layer_id="L1")]
        job = _job(sources, background=Color(255, 255, 255, 1.0),
                   visibility={"L1": VisibilityRange(0, 50)})
        seq = compositor.compose([make_frame_set(11, 10, (10, 10), RED)], sources, job, tmp_path)
        assert seq.timeline is not None
        # Trimmed to the window: frames 0..5 of 11.
        assert len(seq.paths) == 6
        assert _pixel(seq.paths[0]) == RED

    def test_layer_hidden_outside_window(self, compositor, tmp_path):
        sources = [_source("a.gif", 0, layer_id="A"), _source("b.gif", 1, layer_id="B")]
        job = _job(sources, visibility={"A": VisibilityRange(0, 40),
                                        "B": VisibilityRange(50, 100)})
        sets = [make_frame_set(11, 10, (10, 10), RED), make_frame_set(11, 10, (10, 10), BLUE)]
        seq = compositor.compose(sets, sources, job, tmp_path)
        assert len(seq.paths) == 11
        assert _pixel(seq.paths[0]) == RED
        assert _pixel(seq.paths[4]) == RED
        assert _pixel(seq.paths[5]) == BLUE
        assert _pixel(seq.paths[10]) == BLUE

    def test_fully_clipped_source_skipped(self, compositor, tmp_path):
        clipped = SourceDescriptor("a.gif", Bounds(0, 0, 10, 10),
                                   clip_bounds=Bounds(20, 20, 5, 5))
        job = _job([clipped], background=Color(255, 255, 255, 1.0))
        seq = compositor.compose([make_frame_set(1, 10, (10, 10), RED)], [clipped], job, tmp_path)
        assert _pixel(seq.paths[0]) == WHITE

    def test_mismatched_inputs(self, compositor, tmp_path):
        sources = [_source("a.gif", 0)]
        with pytest.raises(CompositionFailedError):
            compositor.compose([], sources, _job(sources), tmp_path)


class TestCancellation:
    def test_cancel_inside_frame_loop(self, compositor, tmp_path):
        sources = [_source("a.gif", 0)]
        job = _job(sources, should_cancel=lambda: True)
        with pytest.raises(ExportCancelled):
            compositor.compose([make_frame_set(3, 10, (10, 10), RED)], sources, job, tmp_path)

    def test_progress_callback(self, compositor, tmp_path):
        seen = []
        sources = [_source("a.gif", 0)]
        compositor.compose([make_frame_set(3, 10, (10, 10), RED)], sources, _job(sources),
                           tmp_path, on_frame=lambda done, total: seen.append((done, total)))
        assert seen == [(1, 3), (2, 3), (3, 3)]
