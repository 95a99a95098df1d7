from __future__ import annotations

import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

import numpy as np

from segengine.perception.segmentation.base_segmenter import BaseSegmenter
from segengine.perception.segmentation.postprocess import create_postprocessor, mean_confidence, restore_mask
from segengine.perception.segmentation.preprocess import PreprocessResult, Preprocessor
from segengine.runtime.backends.base import EngineBackend, create_backend
from segengine.runtime.buffer_pool import BufferPool
from segengine.runtime.engine_cache import EngineLoader
from segengine.runtime.executor import InferenceExecutor
from segengine.utils.config import SegmenterConfig
from segengine.utils.errors import InferenceError, InferenceTimeoutError
from segengine.utils.logger import get_logger
from segengine.utils.timing import StageTimer
from segengine.utils.types import Shape


class EngineSegmenter(BaseSegmenter):
    """
    Semantic segmentation on a compiled engine.

    Owns the engine handle, the buffer pool and the stream. Calls on one
    instance must be serialized by the caller; use one instance per thread.
    """

    def __init__(self, config: SegmenterConfig, backend: Optional[EngineBackend] = None):
        self.config = config
        self.logger = get_logger(__name__)
        self._closed = False
        self._faulted = False
        self._owns_backend = backend is None
        self.backend: Optional[EngineBackend] = backend
        self.loader: Optional[EngineLoader] = None
        self.handle = None
        self.pool: Optional[BufferPool] = None
        self.stream: Any = None
        self.executor: Optional[InferenceExecutor] = None
        self.postprocessor = None

        self.preprocessor = Preprocessor(
            target_hw=config.max_shape.spatial,
            mean=config.mean,
            std=config.std,
            pad_value=config.pad_value,
            stride=config.stride,
            auto=config.letterbox_auto,
            to_rgb=config.to_rgb,
        )
        self.input_shape = Shape()
        self.output_shape = Shape()
        self.last_meta = None

        try:
            if self.backend is None:
                self.backend = create_backend(config.backend, config.device_id)
            self.loader = EngineLoader(config, self.backend)
            self.handle = self.loader.obtain()
            self.pool = BufferPool.allocate(self.backend.allocator, config.max_shape, config.max_output_shape)
            self.stream = self.backend.create_stream()
            self.executor = InferenceExecutor(
                self.handle, self.pool, self.stream, config.num_classes, timeout_s=config.sync_timeout_s
            )
            self.postprocessor = create_postprocessor(
                config.postprocess, self.backend.allocator, config.max_shape.spatial, timeout_s=config.sync_timeout_s
            )
        except BaseException:
            try:
                self.close()
            except Exception as e:
                self.logger.error("Cleanup after failed construction also failed: %s", e)
            raise

        self.logger.info(
            "Segmenter ready: backend=%s engine=%s postprocess=%s max_shape=%s classes=%d",
            self.backend.name,
            self.loader.source,
            self.postprocessor.name,
            config.max_shape,
            config.num_classes,
        )

    @classmethod
    def from_yaml(cls, path: str | Path, backend: Optional[EngineBackend] = None) -> "EngineSegmenter":
        return cls(SegmenterConfig.from_yaml(path), backend=backend)

    def _ensure_open(self) -> None:
        if self._closed:
            raise InferenceError("Segmenter is closed")
        if self._faulted:
            raise InferenceError("Stream timed out earlier and buffers may still be in use; close the segmenter")

    @contextmanager
    def _watch_stream(self) -> Iterator[None]:
        try:
            yield
        except InferenceTimeoutError:
            self._faulted = True
            self.logger.error("Stream did not drain within %ss; segmenter is unusable", self.config.sync_timeout_s)
            raise

    def preprocess(self, image: Optional[np.ndarray]) -> Optional[PreprocessResult]:
        self._ensure_open()
        result = self.preprocessor(image, self.pool.input.host)
        if result is not None:
            self.input_shape = result.input_shape
            self.output_shape = result.input_shape.with_channels(self.config.num_classes)
            self.last_meta = result.meta
        return result

    def forward(self, input_shape: Optional[Shape] = None) -> Shape:
        self._ensure_open()
        with self._watch_stream():
            self.output_shape = self.executor.run(input_shape or self.input_shape)
        return self.output_shape

    def postprocess(self, output_shape: Optional[Shape] = None) -> np.ndarray:
        self._ensure_open()
        with self._watch_stream():
            return self.postprocessor(self.pool, output_shape or self.output_shape, self.stream)

    def confidence(self, output_shape: Optional[Shape] = None) -> float:
        self._ensure_open()
        shape = output_shape or self.output_shape
        with self._watch_stream():
            self.pool.output.to_host(shape.count, self.stream, self.config.sync_timeout_s)
        scores = self.pool.output.host[: shape.count].reshape(shape.channels, shape.height, shape.width)
        return mean_confidence(scores)

    def extract(self, image: Optional[np.ndarray]) -> np.ndarray:
        """Label image at network resolution; an empty input gives an empty result."""
        result = self.preprocess(image)
        if result is None:
            return np.zeros((0, 0), dtype=np.uint8)
        return self.postprocess(self.forward(result.input_shape))

    def infer(self, frame: np.ndarray, restore: bool = False) -> Dict[str, Any]:
        start = time.perf_counter()
        timer = StageTimer()
        with timer.stage("preprocess"):
            result = self.preprocess(frame)
        if result is None:
            return {"mask": np.zeros((0, 0), dtype=np.uint8), "confidence": 0.0, "latency_ms": 0.0, "stages_ms": {}, "meta": None}

        with timer.stage("inference"):
            output_shape = self.forward(result.input_shape)
        with timer.stage("postprocess"):
            mask = self.postprocess(output_shape)
            if restore:
                mask = restore_mask(mask, result.meta)
        confidence = self.confidence(output_shape) if self.config.compute_confidence else 0.0

        return {
            "mask": mask,
            "confidence": confidence,
            "latency_ms": (time.perf_counter() - start) * 1000.0,
            "stages_ms": dict(timer.stages_ms),
            "meta": result.meta,
        }

    def _drain_stream(self) -> None:
        if self.stream is None:
            return
        try:
            self.stream.synchronize(self.config.sync_timeout_s)
        except InferenceTimeoutError as e:
            self.logger.warning("Releasing resources with work still queued: %s", e)

    def _release_handle(self) -> None:
        if self.handle is not None:
            self.handle.close()
            self.handle = None
        self.executor = None

    def _release_postprocessor(self) -> None:
        if self.postprocessor is not None:
            self.postprocessor.close()
            self.postprocessor = None

    def _release_pool(self) -> None:
        if self.pool is not None:
            self.pool.close()

    def _release_backend(self) -> None:
        if self._owns_backend and self.backend is not None:
            self.backend.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # stream -> context/engine/runtime -> pinned host memory -> device memory -> CUDA context
        steps = (
            self._drain_stream,
            self._release_handle,
            self._release_postprocessor,
            self._release_pool,
            self._release_backend,
        )
        first_error: Optional[BaseException] = None
        for step in steps:
            try:
                step()
            except Exception as e:
                self.logger.error("Teardown step %s failed: %s", step.__name__, e)
                if first_error is None:
                    first_error = e
        self.stream = None
        if first_error is not None:
            raise first_error
        self.logger.debug("Segmenter closed")
