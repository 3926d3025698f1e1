"""
Tests for the content cache and the conversion cache.
"""

from __future__ import annotations

import json
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import make_gif
from gifcomposer.cache import ConversionCache, DirectoryContentCache
from gifcomposer.exceptions import CacheError
from gifcomposer.types import DitherMode


@pytest.fixture
def cache(tmp_path):
    return DirectoryContentCache(tmp_path / "cache")


@pytest.fixture
def sample_gif(tmp_path):
    return make_gif(tmp_path / "src" / "Recording 1.gif", n_frames=3)


class TestDirectoryContentCache:
    def test_initial_state(self, cache):
        assert cache.root.is_dir()
        assert cache.entries() == []
        assert cache.stats()["entries"] == 0

    def test_put_and_get_by_id(self, cache, sample_gif):
        entry = cache.put(sample_gif, cache_id="abc123")
        assert entry.path.name == "abc123.gif"
        assert cache.get_by_id("abc123") == entry.path
        meta = json.loads((cache.root / "abc123.meta.json").read_text("utf-8"))
        assert meta["cacheId"] == "abc123"
        assert meta["originalFilename"] == "Recording 1.gif"
        assert meta["ext"] == ".gif"
        assert meta["size"] == sample_gif.stat().st_size

    def test_get_by_id_miss(self, cache):
        assert cache.get_by_id("missing") is None

    def test_get_by_name_prefers_newest(self, cache, sample_gif):
        cache.put(sample_gif, cache_id="old")
        time.sleep(0.01)
        cache.put(sample_gif, cache_id="new")
        assert cache.get_by_name("Recording 1.gif").name == "new.gif"

    def test_get_by_name_miss(self, cache, sample_gif):
        cache.put(sample_gif, cache_id="x")
        assert cache.get_by_name("Other.gif") is None

    def test_generated_cache_id(self, cache, sample_gif):
        entry = cache.put(sample_gif)
        assert entry.cache_id
        assert cache.get_by_id(entry.cache_id) == entry.path

    def test_unsupported_extension(self, cache, tmp_path):
        png = tmp_path / "still.png"
        png.write_bytes(b"png")
        with pytest.raises(CacheError):
            cache.put(png)

    def test_zero_byte_file_is_evicted(self, cache, tmp_path):
        empty = tmp_path / "empty.gif"
        empty.write_bytes(b"")
        cache.put(empty, cache_id="empty")
        assert cache.get_by_id("empty") is None
        assert not (cache.root / "empty.gif").exists()
        assert not (cache.root / "empty.meta.json").exists()

    def test_corrupt_metadata_skipped(self, cache, sample_gif):
        cache.put(sample_gif, cache_id="good")
        (cache.root / "bad.gif").write_bytes(b"GIF89a")
        (cache.root / "bad.meta.json").write_text("{not json", encoding="utf-8")
        assert [e.cache_id for e in cache.entries()] == ["good"]

    def test_clean_older_than(self, cache, sample_gif):
        cache.put(sample_gif, cache_id="fresh")
        cache.put(sample_gif, cache_id="stale")
        meta_path = cache.root / "stale.meta.json"
        meta = json.loads(meta_path.read_text("utf-8"))
        meta["timestamp"] = time.time() - 10 * 86400
        meta_path.write_text(json.dumps(meta), encoding="utf-8")

        assert cache.clean_older_than(7) == 1
        assert cache.get_by_id("stale") is None
        assert cache.get_by_id("fresh") is not None

    def test_stats(self, cache, sample_gif):
        cache.put(sample_gif, cache_id="a")
        cache.put(sample_gif, cache_id="b")
        s = cache.stats()
        assert s["entries"] == 2
        assert s["by_ext"] == {".gif": 2}
        assert s["root"] == str(cache.root)


class TestConversionCache:
    def test_key_depends_on_settings(self, tmp_path, sample_gif):
        k1 = ConversionCache.key(sample_gif, (10, 10), DitherMode.SMOOTH_GRADIENT)
        k2 = ConversionCache.key(sample_gif, (10, 10), DitherMode.LESS_NOISE)
        k3 = ConversionCache.key(sample_gif, (20, 10), DitherMode.SMOOTH_GRADIENT)
        assert len({k1, k2, k3}) == 3
        assert k1 == ConversionCache.key(sample_gif, (10, 10), DitherMode.SMOOTH_GRADIENT)

    def test_put_get_clear(self, tmp_path, sample_gif):
        cc = ConversionCache(tmp_path / "converted")
        assert cc.get("k") is None
        stored = cc.put("k", sample_gif)
        assert cc.get("k") == stored
        assert cc.stats()["entries"] == 1
        assert cc.clear() == 1
        assert cc.get("k") is None

    def test_concurrent_put_same_key(self, tmp_path, sample_gif):
        cc = ConversionCache(tmp_path / "converted")
        expected = sample_gif.read_bytes()

        def store(_):
            for _ in range(30):
                cc.put("shared", sample_gif)

        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(store, range(4)))
        assert cc.get("shared").read_bytes() == expected
        assert list(cc.root.glob("*.tmp")) == []
