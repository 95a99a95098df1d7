from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import numpy as np
import pytest

from segengine.utils.config import SegmenterConfig
from segengine.utils.types import Shape

NUM_CLASSES = 4


def write_pointwise_model(path: Path, num_classes: int = NUM_CLASSES) -> Path:
    """
    1x1 convolution with dynamic height/width. Class c < 3 scores input
    channel c; the last class only carries a 0.5 bias, so all-zero
    (padding) pixels land on it.
    """
    onnx = pytest.importorskip("onnx")
    from onnx import TensorProto, helper, numpy_helper

    weight = np.zeros((num_classes, 3, 1, 1), dtype=np.float32)
    for c in range(min(3, num_classes - 1)):
        weight[c, c, 0, 0] = 1.0
    bias = np.zeros(num_classes, dtype=np.float32)
    bias[-1] = 0.5

    node = helper.make_node("Conv", ["input", "weight", "bias"], ["logits"], kernel_shape=[1, 1])
    graph = helper.make_graph(
        [node],
        "pointwise_seg",
        [helper.make_tensor_value_info("input", TensorProto.FLOAT, [1, 3, "height", "width"])],
        [helper.make_tensor_value_info("logits", TensorProto.FLOAT, [1, num_classes, "height", "width"])],
        initializer=[numpy_helper.from_array(weight, "weight"), numpy_helper.from_array(bias, "bias")],
    )
    model = helper.make_model(graph, opset_imports=[helper.make_opsetid("", 13)])
    model.ir_version = 8
    onnx.checker.check_model(model)

    path.parent.mkdir(parents=True, exist_ok=True)
    onnx.save(model, str(path))
    return path


@pytest.fixture
def seg_config(tmp_path) -> SegmenterConfig:
    """Small identity-normalized config; the ONNX file is not written."""
    return SegmenterConfig(
        onnx_path=tmp_path / "models" / "pointwise.onnx",
        engine_cache_dir=tmp_path / "engines",
        engine_name="pointwise.engine",
        backend="onnxruntime",
        max_shape=Shape(1, 3, 64, 64),
        num_classes=NUM_CLASSES,
        mean=(0.0, 0.0, 0.0),
        std=(1.0, 1.0, 1.0),
        pad_value=0,
        stride=32,
        postprocess="host",
    )


@pytest.fixture
def onnx_config(seg_config) -> SegmenterConfig:
    pytest.importorskip("onnxruntime")
    write_pointwise_model(seg_config.onnx_path)
    return seg_config


@pytest.fixture
def parallel_config(onnx_config) -> SegmenterConfig:
    return replace(onnx_config, postprocess="parallel")
