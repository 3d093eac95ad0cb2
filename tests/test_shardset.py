"""Multi-shard discovery and lookup tests."""

import os

import numpy as np
import pytest

from safeshard import open_model
from safeshard.errors import (
    DuplicateTensorError,
    HeaderOverrunError,
    NoShardsFoundError,
    PartialShardFailure,
    ShardIOError,
    TensorNotFoundError,
    TooSmallError,
)
from safeshard.reader import ShardCatalog
from safeshard.shardset import ShardSet, discover_shards

from stfixtures import bf16_bits, write_raw, write_safetensors


def _shard(model_dir, name, tensors):
    return write_safetensors(os.path.join(model_dir, name), tensors)


def _f32(*values):
    return np.array(values, dtype="<f4")


@pytest.fixture
def sharded_dir(tmp_path):
    """Three shards, written out of order, plus unrelated files."""
    d = str(tmp_path)
    _shard(d, "model-00003-of-00003.safetensors", {"layer.2.w": _f32(2, 2)})
    _shard(d, "model-00001-of-00003.safetensors", {
        "layer.0.w": _f32(0, 0),
        "embed": ("BF16", [2], bf16_bits([1.0, 3.140625]).tobytes()),
    })
    _shard(d, "model-00002-of-00003.safetensors", {"layer.1.w": _f32(1, 1)})
    with open(os.path.join(d, "model.safetensors.index.json"), "w") as f:
        f.write("{}")
    _shard(d, "other.safetensors", {"stray": _f32(9)})
    return d


def test_lexicographic_shard_order(sharded_dir):
    with open_model(sharded_dir) as model:
        names = [os.path.basename(p) for p in model.paths]
    assert names == [
        "model-00001-of-00003.safetensors",
        "model-00002-of-00003.safetensors",
        "model-00003-of-00003.safetensors",
    ]


def test_discover_shards_matches_open_order(sharded_dir):
    with open_model(sharded_dir) as model:
        assert discover_shards(sharded_dir) == model.paths


def test_find_across_shards(sharded_dir):
    with open_model(sharded_dir) as model:
        assert len(model) == 3
        tensor, shard = model.find("layer.1.w")
        assert os.path.basename(shard.path) == "model-00002-of-00003.safetensors"
        assert tensor.shape == (2,)
        np.testing.assert_array_equal(model.read_f32("layer.2.w"), [2.0, 2.0])
        assert model.bf16_view("embed").tolist() == [0x3F80, 0x4049]
        assert bytes(model.raw_bytes("layer.0.w")) == _f32(0, 0).tobytes()
        assert "stray" not in model
        assert model.get("stray") is None
        with pytest.raises(TensorNotFoundError, match="stray"):
            model.find("stray")


def test_list_tensors_in_shard_order(sharded_dir):
    with open_model(sharded_dir) as model:
        assert [t.name for t in model.list_tensors()] == [
            "layer.0.w", "embed", "layer.1.w", "layer.2.w",
        ]
        assert model.tensor_names() == ["layer.0.w", "embed", "layer.1.w", "layer.2.w"]
        assert [t.name for t in model] == model.tensor_names()


def test_order_ignores_creation_order(tmp_path):
    d = str(tmp_path)
    _shard(d, "model-00002-of-00002.safetensors", {"w": _f32(2)})
    _shard(d, "model-00001-of-00002.safetensors", {"w": _f32(1)})
    os.utime(os.path.join(d, "model-00001-of-00002.safetensors"), (2_000_000_000, 2_000_000_000))
    with open_model(d) as model:
        assert os.path.basename(model.paths[0]) == "model-00001-of-00002.safetensors"


def test_duplicate_name_resolves_to_first_shard(tmp_path):
    d = str(tmp_path)
    _shard(d, "model-00002-of-00002.safetensors", {"shared": _f32(2), "b": _f32(0)})
    _shard(d, "model-00001-of-00002.safetensors", {"a": _f32(0), "shared": _f32(1)})
    with open_model(d) as model:
        tensor, shard = model.find("shared")
        assert shard.path.endswith("model-00001-of-00002.safetensors")
        np.testing.assert_array_equal(model.read_f32("shared"), [1.0])
        dupes = model.duplicates()
        assert list(dupes) == ["shared"]
        assert [os.path.basename(p) for p in dupes["shared"]] == [
            "model-00001-of-00002.safetensors",
            "model-00002-of-00002.safetensors",
        ]
        assert any("present in 2 shards" in e for e in model.validate())


def test_strict_mode_rejects_duplicates(tmp_path, mapping_spy):
    d = str(tmp_path)
    _shard(d, "model-00001-of-00002.safetensors", {"shared": _f32(1)})
    _shard(d, "model-00002-of-00002.safetensors", {"shared": _f32(2)})
    with pytest.raises(DuplicateTensorError, match="shared"):
        open_model(d, strict=True)
    assert len(mapping_spy) == 2
    assert all(m.closed for m in mapping_spy)


def test_single_file_preferred(tmp_path):
    d = str(tmp_path)
    write_safetensors(os.path.join(d, "model.safetensors"), {"single": _f32(1)})
    _shard(d, "model-00001-of-00002.safetensors", {"stray": _f32(2)})
    with open_model(d) as model:
        assert len(model) == 1
        assert os.path.basename(model.paths[0]) == "model.safetensors"
        assert "single" in model
        assert "stray" not in model
    assert discover_shards(d) == [os.path.join(d, "model.safetensors")]


def test_open_model_on_a_file(tmp_path):
    path = write_safetensors(tmp_path / "weights.safetensors", {"w": _f32(3)})
    with open_model(path) as model:
        assert model.paths == [path]
        np.testing.assert_array_equal(model.read_f32("w"), [3.0])


def test_broken_single_file_falls_back_to_shards(tmp_path, caplog):
    d = str(tmp_path)
    (tmp_path / "model.safetensors").write_bytes(b"\x00")
    _shard(d, "model-00001-of-00001.safetensors", {"w": _f32(1)})
    with caplog.at_level("WARNING", logger="safeshard"):
        with open_model(d) as model:
            assert "w" in model
    assert "unusable" in caplog.text


def test_discover_skips_broken_single_file(tmp_path):
    d = str(tmp_path)
    (tmp_path / "model.safetensors").write_bytes(b"\x00")
    _shard(d, "model-00001-of-00001.safetensors", {"w": _f32(1)})
    with open_model(d) as model:
        assert discover_shards(d) == model.paths
    assert discover_shards(d) == [os.path.join(d, "model-00001-of-00001.safetensors")]


def test_broken_single_file_without_shards(tmp_path):
    (tmp_path / "model.safetensors").write_bytes(b"\x00")
    with pytest.raises(NoShardsFoundError) as exc_info:
        open_model(tmp_path)
    assert isinstance(exc_info.value.__cause__, TooSmallError)


def test_no_shards_found(tmp_path):
    write_safetensors(tmp_path / "weights.safetensors", {"w": _f32(1)})
    with pytest.raises(NoShardsFoundError) as exc_info:
        open_model(tmp_path)
    assert exc_info.value.stage == "discovery"
    assert exc_info.value.path == str(tmp_path)


def test_missing_directory(tmp_path):
    with pytest.raises(ShardIOError, match="does not exist"):
        open_model(tmp_path / "nope")


def test_max_shards_keeps_first(sharded_dir, caplog):
    with caplog.at_level("WARNING", logger="safeshard"):
        with open_model(sharded_dir, max_shards=2) as model:
            assert [os.path.basename(p) for p in model.paths] == [
                "model-00001-of-00003.safetensors",
                "model-00002-of-00003.safetensors",
            ]
            assert "layer.2.w" not in model
    assert "keeping the first 2" in caplog.text


def test_truncated_middle_shard_fails_whole_load(tmp_path, mapping_spy):
    d = str(tmp_path)
    _shard(d, "model-00001-of-00003.safetensors", {"a": _f32(1)})
    bad = write_raw(os.path.join(d, "model-00002-of-00003.safetensors"), b"{}", header_len=4096)
    _shard(d, "model-00003-of-00003.safetensors", {"c": _f32(3)})

    with pytest.raises(PartialShardFailure) as exc_info:
        open_model(d)

    err = exc_info.value
    assert err.path == bad
    assert "header-size" in str(err)
    assert isinstance(err.__cause__, HeaderOverrunError)
    # Shard 3 is never attempted; shard 1 was opened and must be unmapped again.
    assert [m.path for m in mapping_spy] == [
        os.path.join(d, "model-00001-of-00003.safetensors"), bad,
    ]
    assert all(m.closed for m in mapping_spy)


def test_close_closes_every_shard(sharded_dir, mapping_spy):
    model = open_model(sharded_dir)
    model.close()
    assert len(mapping_spy) == 3
    assert all(m.closed for m in mapping_spy)
    assert len(model) == 0
    model.close()


def test_close_continues_past_a_failure(sharded_dir, mapping_spy, monkeypatch):
    model = open_model(sharded_dir)
    first = model.shards[0]

    def broken_close():
        raise OSError("unmap failed")

    monkeypatch.setattr(first, "close", broken_close)
    with pytest.raises(OSError, match="unmap failed"):
        model.close()
    assert [m.closed for m in mapping_spy] == [False, True, True]
    ShardCatalog.close(first)


def test_shardset_from_catalogs(tmp_path):
    a = ShardCatalog(write_safetensors(tmp_path / "a.safetensors", {"x": _f32(1)}))
    b = ShardCatalog(write_safetensors(tmp_path / "b.safetensors", {"y": _f32(2)}))
    with ShardSet([a, b]) as model:
        assert model.find("y")[1] is b
        assert "File: " in model.describe()
    assert a.closed and b.closed


@pytest.mark.parametrize("max_shards", [0, -1])
def test_max_shards_must_be_positive(sharded_dir, max_shards):
    with pytest.raises(ValueError, match="at least 1"):
        open_model(sharded_dir, max_shards=max_shards)
