from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Any, List, Optional, Sequence

import numpy as np
import onnxruntime as ort

from segengine.runtime.backends.base import EngineBackend, EngineHandle
from segengine.runtime.device import HostAllocator
from segengine.utils.errors import CompilationError, CorruptArtifactError, InferenceError, ShapeError
from segengine.utils.logger import get_logger
from segengine.utils.types import Shape, ShapeProfile


class OnnxRuntimeHandle(EngineHandle):
    def __init__(self, options: ort.SessionOptions, session: ort.InferenceSession, profile: ShapeProfile):
        self._options = options
        self._session = session
        self.profile = profile
        self.input_name = session.get_inputs()[0].name
        self.output_name = session.get_outputs()[0].name
        self._input_dims = list(session.get_inputs()[0].shape)
        self._bound: Optional[Shape] = None

    @property
    def input_channels(self) -> Optional[int]:
        c = self._input_dims[1] if len(self._input_dims) > 1 else None
        return c if isinstance(c, int) and c > 0 else None

    def bind_input_shape(self, shape: Shape) -> None:
        if not self.profile.accepts(shape):
            raise ShapeError(f"Input shape {shape} is outside the engine profile [{self.profile.min}, {self.profile.max}]")
        self._bound = shape

    def execute_async(self, bindings: List[Any], stream: Any) -> None:
        if self._session is None:
            raise InferenceError("Engine handle is closed")
        if self._bound is None:
            raise InferenceError("Input shape must be bound before execution")
        d_input, d_output = bindings[0], bindings[1]
        shape = self._bound
        x = d_input[: shape.count].reshape(shape.as_tuple())
        try:
            out = self._session.run([self.output_name], {self.input_name: x})[0]
        except Exception as e:
            raise InferenceError(f"ONNX Runtime execution failed: {e}") from e
        if out.ndim != 4 or out.shape[0] != shape.num or tuple(out.shape[2:]) != shape.spatial:
            raise InferenceError(f"Engine output {tuple(out.shape)} does not match input {shape}")
        if out.size > d_output.size:
            raise ShapeError(f"Engine output of {out.size} elements exceeds output buffer of {d_output.size}")
        d_output[: out.size] = np.asarray(out, dtype=d_output.dtype).ravel()

    def close(self) -> None:
        self._bound = None
        self._session = None
        self._options = None


class OnnxRuntimeBackend(EngineBackend):
    """
    CPU execution through ONNX Runtime. Compilation applies the graph
    optimizations and serializes the optimized model, which is the cached
    artifact.
    """

    name = "onnxruntime"

    def __init__(self, device_id: int = 0, providers: Sequence[str] = ("CPUExecutionProvider",)):
        self.logger = get_logger(__name__)
        self.device_id = device_id
        available = ort.get_available_providers()
        self.providers = [p for p in providers if p in available] or ["CPUExecutionProvider"]
        self.allocator = HostAllocator()

    def supports_fp16(self) -> bool:
        return False

    def compile(self, onnx_path: Path, profile: ShapeProfile, use_fp16: bool, workspace_mb: int) -> bytes:
        with tempfile.TemporaryDirectory(prefix="segengine_ort_") as tmp:
            optimized = Path(tmp) / "optimized.onnx"
            opts = ort.SessionOptions()
            opts.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_EXTENDED
            opts.optimized_model_filepath = str(optimized)
            try:
                session = ort.InferenceSession(str(onnx_path), sess_options=opts, providers=self.providers)
            except Exception as e:
                raise CompilationError(f"Could not parse ONNX model {onnx_path}: {e}") from e
            inp = session.get_inputs()[0]
            self.logger.info("ONNX input %s dims=%s profile min=%s opt=%s max=%s", inp.name, inp.shape, profile.min, profile.opt, profile.max)
            del session
            if not optimized.exists():
                raise CompilationError(f"ONNX Runtime did not write an optimized model for {onnx_path}")
            return optimized.read_bytes()

    def deserialize(self, blob: bytes, profile: ShapeProfile) -> OnnxRuntimeHandle:
        opts = ort.SessionOptions()
        opts.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_BASIC
        try:
            session = ort.InferenceSession(bytes(blob), sess_options=opts, providers=self.providers)
        except Exception as e:
            raise CorruptArtifactError(f"Could not deserialize ONNX Runtime artifact ({len(blob)} bytes): {e}") from e
        return OnnxRuntimeHandle(opts, session, profile)
