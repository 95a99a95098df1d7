from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from segengine.utils.config import SegmenterConfig, get, load_yaml
from segengine.utils.errors import ConfigError
from segengine.utils.logger import get_logger
from segengine.utils.types import Shape, ShapeProfile

REPO_ROOT = Path(__file__).resolve().parents[1]


def test_shape_count_and_str():
    shape = Shape(1, 3, 640, 640)
    assert shape.count == 1228800
    assert shape.spatial == (640, 640)
    assert str(shape) == "1x3x640x640"
    assert shape.with_channels(19) == Shape(1, 19, 640, 640)


def test_shape_rejects_bad_dims():
    with pytest.raises(ValueError):
        Shape(1, -3, 4, 4)
    with pytest.raises(ValueError):
        Shape.of([1, 3, 4])


def test_profile_for_max_shape():
    profile = ShapeProfile.for_max_shape(Shape(1, 3, 640, 640))
    assert profile.min == Shape(1, 3, 1, 1)
    assert profile.opt == profile.max == Shape(1, 3, 640, 640)
    assert profile.accepts(Shape(1, 3, 384, 640))
    assert not profile.accepts(Shape(1, 3, 672, 640))


def test_dotted_get():
    cfg = {"engine": {"cache_dir": "engines"}}
    assert get(cfg, "engine.cache_dir") == "engines"
    assert get(cfg, "engine.missing", 5) == 5
    assert get(cfg, "engine.cache_dir.deeper") is None


def test_shipped_yaml_parses():
    cfg = load_yaml(REPO_ROOT / "configs" / "segmentation.yaml")
    config = SegmenterConfig.from_dict(cfg)
    assert config.max_shape == Shape(1, 3, 640, 640)
    assert config.num_classes == 19
    assert config.pad_value == 114
    assert config.sync_timeout_s is None
    assert config.cache_path == Path("engines") / "bisenet_fp16.engine"
    assert config.max_output_shape == Shape(1, 19, 640, 640)
    assert "project" in config.extra


def test_relative_paths_resolve_against_base_dir(tmp_path):
    cfg = {"model": {"onnx_path": "models/m.onnx"}, "engine": {"cache_dir": "cache"}}
    config = SegmenterConfig.from_dict(cfg, base_dir=tmp_path)
    assert config.onnx_path == tmp_path / "models" / "m.onnx"
    assert config.cache_path == tmp_path / "cache" / "model.engine"


def test_from_yaml(tmp_path):
    path = tmp_path / "seg.yaml"
    path.write_text(
        yaml.safe_dump({"model": {"onnx_path": "m.onnx", "max_shape": [1, 3, 320, 320]}, "engine": {"backend": "ONNXRuntime"}}),
        encoding="utf-8",
    )
    config = SegmenterConfig.from_yaml(path)
    assert config.backend == "onnxruntime"
    assert config.max_shape == Shape(1, 3, 320, 320)


def test_missing_config_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_yaml(tmp_path / "nope.yaml")


@pytest.mark.parametrize(
    "override",
    [
        {"model": {"onnx_path": "m.onnx", "max_shape": [2, 3, 640, 640]}},
        {"model": {"onnx_path": "m.onnx", "max_shape": [1, 3, 630, 640]}},
        {"model": {"onnx_path": "m.onnx", "max_shape": [1, 3, 640]}},
        {"model": {"onnx_path": "m.onnx", "num_classes": 300}},
        {"model": {"onnx_path": "m.onnx"}, "engine": {"backend": "openvino"}},
        {"model": {"onnx_path": "m.onnx"}, "postprocess": {"method": "gpu"}},
        {"model": {"onnx_path": "m.onnx"}, "preprocess": {"std": [0.2, 0.0, 0.2]}},
        {"model": {"onnx_path": "m.onnx"}, "preprocess": {"mean": [0.5]}},
        {"model": {"onnx_path": "m.onnx"}, "runtime": {"sync_timeout_s": 0}},
        {"engine": {"backend": "onnxruntime"}},
    ],
)
def test_invalid_config_raises(override):
    with pytest.raises(ConfigError):
        SegmenterConfig.from_dict(override)


def test_module_loggers_share_root():
    assert get_logger("runtime.executor").name == "segengine.runtime.executor"
    assert get_logger("segengine.runtime").name == "segengine.runtime"
    assert get_logger().name == "segengine"
