"""
Tests for job request parsing and job files.
"""

from __future__ import annotations

import base64
import json

import pytest

from conftest import png_bytes
from gifcomposer.exceptions import JobValidationError
from gifcomposer.request import decode_bytes, load_job_file, parse_job_request
from gifcomposer.types import DitherMode, ScaleMode

ANNOTATION = png_bytes((40, 30))


def _request(**overrides):
    request = {
        "frameName": "Home",
        "frameBounds": {"x": 0, "y": 0, "width": 40, "height": 30},
        "sourceDescriptors": [
            {"filename": "capture.gif", "bounds": {"x": 4, "y": 2, "width": 20, "height": 10}},
        ],
        "annotationBytes": list(ANNOTATION),
    }
    request.update(overrides)
    return request


class TestDecodeBytes:
    def test_forms(self):
        assert decode_bytes(b"abc", "f") == b"abc"
        assert decode_bytes([97, 98, 99], "f") == b"abc"
        assert decode_bytes(base64.b64encode(b"abc").decode(), "f") == b"abc"
        assert decode_bytes(None, "f") == b""

    def test_bad_values(self):
        with pytest.raises(JobValidationError):
            decode_bytes([1, 300], "f")
        with pytest.raises(JobValidationError):
            decode_bytes("not base64!!", "f")
        with pytest.raises(JobValidationError):
            decode_bytes(3.5, "f")


class TestParseJobRequest:
    def test_minimal(self):
        job = parse_job_request(_request())
        assert job.frame_name == "Home"
        assert job.frame_size == (40, 30)
        assert job.annotation_bytes == ANNOTATION
        assert job.dither is DitherMode.SMOOTH_GRADIENT
        src = job.sources[0]
        assert src.filename == "capture.gif"
        assert (src.bounds.x, src.bounds.width) == (4, 20)
        assert src.z_index == 0
        assert src.image_fill.scale_mode is ScaleMode.FILL

    def test_full_source(self):
        job = parse_job_request(_request(
            gifInfos=[{
                "filename": "a.mp4",
                "cacheId": "abc123",
                "bounds": {"x": 0, "y": 0, "width": 10, "height": 10},
                "cornerRadius": 4,
                "clipBounds": {"x": 0, "y": 0, "width": 5, "height": 5},
                "clipCornerRadius": 2,
                "zIndex": 7,
                "layerId": "1:2",
                "imageFillInfo": {
                    "scaleMode": "crop",
                    "imageTransform": [[0.5, 0, 0.25], [0, 1, 0]],
                },
            }],
            sourceDescriptors=None,
        ))
        src = job.sources[0]
        assert src.cache_id == "abc123"
        assert src.corner_radius == 4
        assert src.clip_bounds.width == 5
        assert src.z_index == 7
        assert src.layer_id == "1:2"
        assert src.image_fill.scale_mode is ScaleMode.CROP
        assert src.image_fill.scale_and_offset() == (0.5, 1.0, 0.25, 0.0)

    def test_z_index_defaults_to_position(self):
        bounds = {"width": 5, "height": 5}
        job = parse_job_request(_request(sourceDescriptors=[
            {"filename": "a.gif", "bounds": bounds},
            {"filename": "b.gif", "bounds": bounds},
        ]))
        assert [s.z_index for s in job.sources] == [0, 1]

    def test_background_unit_floats(self):
        job = parse_job_request(_request(frameBackground={"r": 1, "g": 0.5, "b": 0, "a": 1}))
        assert job.background.as_rgba() == (255, 128, 0, 255)

    def test_background_bytes(self):
        job = parse_job_request(_request(frameBackground={"r": 200, "g": 10, "b": 0, "a": 1}))
        assert job.background.as_rgba() == (200, 10, 0, 255)

    def test_layers_and_visibility(self):
        layer = {"bytes": list(png_bytes((40, 30))), "index": 3, "name": "Logo", "layerId": "9"}
        job = parse_job_request(_request(
            staticLayers=[layer],
            annotationLayers=[dict(layer, index=0)],
            timelineData={"9": {"start": 10, "end": 60}},
            gifAlgorithm="less_noise",
            connectionId="conn-1",
        ))
        assert job.static_layers[0].index == 3
        assert job.static_layers[0].name == "Logo"
        assert job.annotation_layers[0].index == 0
        assert job.visibility["9"].start == 10
        assert job.has_visibility_edits
        assert job.dither is DitherMode.LESS_NOISE
        assert job.session_id == "conn-1"

    @pytest.mark.parametrize("overrides, field", [
        ({"sourceDescriptors": []}, "sourceDescriptors"),
        ({"sourceDescriptors": "nope"}, "sourceDescriptors"),
        ({"frameBounds": {"width": 0, "height": 10}}, "frameBounds"),
        ({"annotationBytes": None}, "annotationBytes"),
        ({"gifAlgorithm": "floyd"}, "gifAlgorithm"),
        ({"timelineData": {"x": {"start": 70, "end": 20}}}, "timelineData[x]"),
        ({"sourceDescriptors": [{"filename": "a.gif"}]}, "sourceDescriptors[0].bounds"),
        ({"sourceDescriptors": [{"filename": "a.gif",
                                 "bounds": {"width": "wide", "height": 1}}]},
         "sourceDescriptors[0].bounds.width"),
        ({"sourceDescriptors": [{"bounds": {"width": 1, "height": 1}}]},
         "sourceDescriptors[0]"),
    ])
    def test_invalid(self, overrides, field):
        with pytest.raises(JobValidationError) as info:
            parse_job_request(_request(**overrides))
        assert info.value.field == field


class TestLoadJobFile:
    def test_yaml_with_relative_rasters(self, tmp_path):
        (tmp_path / "annotation.png").write_bytes(ANNOTATION)
        (tmp_path / "job.yaml").write_text(
            "frameName: Home\n"
            "frameBounds: {width: 40, height: 30}\n"
            "annotationPath: annotation.png\n"
            "sourceDescriptors:\n"
            "  - filename: capture.gif\n"
            "    bounds: {x: 0, y: 0, width: 40, height: 30}\n",
            encoding="utf-8",
        )
        job = load_job_file(tmp_path / "job.yaml")
        assert job.annotation_bytes == ANNOTATION

    def test_json(self, tmp_path):
        path = tmp_path / "job.json"
        path.write_text(json.dumps(_request(
            annotationBytes=base64.b64encode(ANNOTATION).decode())), encoding="utf-8")
        assert load_job_file(path).annotation_bytes == ANNOTATION

    def test_missing_raster_file(self, tmp_path):
        path = tmp_path / "job.json"
        path.write_text(json.dumps(_request(annotationBytes=None,
                                            annotationPath="gone.png")), encoding="utf-8")
        with pytest.raises(JobValidationError, match="cannot read"):
            load_job_file(path)

    @pytest.mark.parametrize("text", ["[1, 2]", "{broken"])
    def test_unparseable(self, tmp_path, text):
        path = tmp_path / "job.yaml"
        path.write_text(text, encoding="utf-8")
        with pytest.raises(JobValidationError):
            load_job_file(path)
