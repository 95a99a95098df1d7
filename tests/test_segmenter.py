from __future__ import annotations

from dataclasses import replace

import numpy as np
import pytest

from segengine.perception.segmentation.engine_segmenter import EngineSegmenter
from segengine.runtime.backends.onnxruntime_backend import OnnxRuntimeBackend
from segengine.runtime.engine_cache import LoaderState
from segengine.runtime.executor import InferenceExecutor
from segengine.utils.errors import CorruptArtifactError, InferenceError, InferenceTimeoutError, MissingArtifactError
from segengine.utils.types import Shape

from conftest import NUM_CLASSES


def _blue_image(h, w):
    image = np.zeros((h, w, 3), dtype=np.uint8)
    image[..., 0] = 255
    return image


def test_end_to_end_labels_follow_letterbox(onnx_config):
    with EngineSegmenter(onnx_config) as seg:
        out = seg.infer(_blue_image(32, 64))

    mask = out["mask"]
    assert mask.shape == (64, 64)
    assert mask.dtype == np.uint8
    # 32 rows of content centered in a 64-row canvas; padding scores only the bias class
    assert (mask[:16] == NUM_CLASSES - 1).all()
    assert (mask[16:48] == 0).all()
    assert (mask[48:] == NUM_CLASSES - 1).all()
    assert set(out["stages_ms"]) == {"preprocess", "inference", "postprocess"}
    assert out["latency_ms"] > 0.0


def test_host_and_parallel_postprocess_agree(onnx_config, parallel_config):
    image = np.random.default_rng(2).integers(0, 256, (50, 40, 3), dtype=np.uint8)
    with EngineSegmenter(onnx_config) as seg:
        host = seg.infer(image)["mask"]
    with EngineSegmenter(parallel_config) as seg:
        assert seg.postprocessor.name == "torch"
        parallel = seg.infer(image)["mask"]
    np.testing.assert_array_equal(host, parallel)


def test_cached_engine_matches_fresh_compile(onnx_config):
    image = np.random.default_rng(6).integers(0, 256, (64, 48, 3), dtype=np.uint8)
    with EngineSegmenter(onnx_config) as seg:
        assert seg.loader.source == "compiled"
        fresh = seg.infer(image)["mask"]
    assert onnx_config.cache_path.exists()

    onnx_config.onnx_path.unlink()
    with EngineSegmenter(onnx_config) as seg:
        assert seg.loader.source == "cache"
        assert seg.loader.history == [LoaderState.START, LoaderState.LOADING, LoaderState.LOADED]
        cached = seg.infer(image)["mask"]
    np.testing.assert_array_equal(fresh, cached)


def test_engine_reused_across_resolutions_without_reallocating(onnx_config):
    config = replace(onnx_config, letterbox_auto=True)
    seg = EngineSegmenter(config)
    allocator = seg.backend.allocator
    allocations = allocator.total_allocations

    small = seg.infer(_blue_image(32, 64))
    assert seg.input_shape == Shape(1, 3, 32, 64)
    assert seg.output_shape == Shape(1, NUM_CLASSES, 32, 64)
    assert small["mask"].shape == (32, 64)
    assert (small["mask"] == 0).all()

    large = seg.infer(_blue_image(64, 64))
    assert seg.input_shape == Shape(1, 3, 64, 64)
    assert large["mask"].shape == (64, 64)

    assert allocator.total_allocations == allocations
    seg.close()
    assert allocator.live_allocations == 0


def test_restore_returns_source_resolution(onnx_config):
    with EngineSegmenter(onnx_config) as seg:
        out = seg.infer(_blue_image(30, 70), restore=True)
    assert out["mask"].shape == (30, 70)
    assert (out["mask"] == 0).all()


def test_confidence_reported_when_enabled(onnx_config):
    config = replace(onnx_config, compute_confidence=True)
    with EngineSegmenter(config) as seg:
        out = seg.infer(_blue_image(64, 64))
    assert 1.0 / NUM_CLASSES < out["confidence"] <= 1.0


def test_empty_image_gives_empty_labels(onnx_config):
    with EngineSegmenter(onnx_config) as seg:
        assert seg.extract(None).shape == (0, 0)
        out = seg.infer(np.zeros((0, 0, 3), dtype=np.uint8))
    assert out["mask"].size == 0
    assert out["meta"] is None


def test_closed_segmenter_refuses_work(onnx_config):
    seg = EngineSegmenter(onnx_config)
    seg.close()
    seg.close()
    with pytest.raises(InferenceError):
        seg.infer(_blue_image(8, 8))


def test_missing_model_fails_construction(seg_config):
    pytest.importorskip("onnxruntime")
    backend = OnnxRuntimeBackend()
    with pytest.raises(MissingArtifactError):
        EngineSegmenter(seg_config, backend=backend)
    assert backend.allocator.total_allocations == 0


def test_garbage_cache_is_corrupt(onnx_config):
    onnx_config.cache_path.parent.mkdir(parents=True, exist_ok=True)
    onnx_config.cache_path.write_bytes(b"\x00not an engine")
    with pytest.raises(CorruptArtifactError):
        EngineSegmenter(onnx_config)

    with EngineSegmenter(replace(onnx_config, rebuild_on_corrupt_cache=True)) as seg:
        assert seg.loader.source == "compiled"


class _StuckStream:
    def __init__(self):
        self.timeouts = []

    def synchronize(self, timeout=None):
        self.timeouts.append(timeout)
        if timeout is not None:
            raise InferenceTimeoutError(f"stream did not drain within {timeout:.3f}s")


def test_executor_bounds_synchronize(onnx_config):
    with EngineSegmenter(onnx_config) as seg:
        seg.preprocess(_blue_image(64, 64))
        stream = _StuckStream()
        executor = InferenceExecutor(seg.handle, seg.pool, stream, NUM_CLASSES, timeout_s=0.01)
        with pytest.raises(InferenceTimeoutError):
            executor.run(seg.input_shape)
        assert stream.timeouts == [0.01]


class _FaultyStream:
    def synchronize(self, timeout=None):
        raise InferenceError("device lost")


def test_close_releases_everything_when_stream_fails(onnx_config):
    seg = EngineSegmenter(onnx_config)
    allocator = seg.backend.allocator
    seg.stream = _FaultyStream()

    with pytest.raises(InferenceError, match="device lost"):
        seg.close()
    seg.close()

    assert allocator.live_allocations == 0
    assert seg.handle is None
    assert seg.postprocessor is None
    assert seg.stream is None


def test_timeout_faults_segmenter_until_closed(onnx_config):
    seg = EngineSegmenter(replace(onnx_config, sync_timeout_s=0.01))
    allocator = seg.backend.allocator
    stuck = _StuckStream()
    seg.stream = seg.executor.stream = stuck

    with pytest.raises(InferenceTimeoutError):
        seg.infer(_blue_image(64, 64))
    with pytest.raises(InferenceError) as excinfo:
        seg.infer(_blue_image(64, 64))
    assert not isinstance(excinfo.value, InferenceTimeoutError)
    with pytest.raises(InferenceError):
        seg.postprocess()

    seg.close()
    # one bounded wait in forward, one bounded drain in close
    assert stuck.timeouts == [0.01, 0.01]
    assert allocator.live_allocations == 0


def test_postprocessor_uses_configured_timeout(onnx_config):
    with EngineSegmenter(replace(onnx_config, sync_timeout_s=0.25)) as seg:
        assert seg.postprocessor.timeout_s == 0.25


def test_confidence_on_closed_segmenter_raises(onnx_config):
    seg = EngineSegmenter(onnx_config)
    seg.close()
    with pytest.raises(InferenceError):
        seg.confidence(Shape(1, NUM_CLASSES, 8, 8))
