from __future__ import annotations

from pathlib import Path
from typing import Any, List, Optional

try:
    import tensorrt as trt
except ImportError:  # pragma: no cover
    trt = None

from segengine.runtime.backends.base import EngineBackend, EngineHandle
from segengine.runtime.device import CudaAllocator, CudaDevice
from segengine.utils.errors import CompilationError, CorruptArtifactError, EngineLoadError, InferenceError, ShapeError
from segengine.utils.logger import get_logger
from segengine.utils.types import Shape, ShapeProfile


class TensorRTHandle(EngineHandle):
    def __init__(self, runtime: Any, engine: Any, context: Any, profile: ShapeProfile):
        self._runtime = runtime
        self._engine = engine
        self._context = context
        self.profile = profile
        # TensorRT >= 8.5 exposes named IO tensors; older releases only binding indices.
        self._named_io = hasattr(engine, "num_io_tensors")
        if self._named_io:
            names = [engine.get_tensor_name(i) for i in range(engine.num_io_tensors)]
            inputs = [n for n in names if engine.get_tensor_mode(n) == trt.TensorIOMode.INPUT]
            outputs = [n for n in names if engine.get_tensor_mode(n) == trt.TensorIOMode.OUTPUT]
            self.input_name, self.output_name = inputs[0], outputs[0]
        else:
            self.input_name = engine.get_binding_name(0)
            self.output_name = engine.get_binding_name(1)

    @property
    def input_channels(self) -> Optional[int]:
        if self._named_io:
            dims = self._engine.get_tensor_shape(self.input_name)
        else:
            dims = self._engine.get_binding_shape(0)
        c = int(dims[1]) if len(dims) > 1 else -1
        return c if c > 0 else None

    def bind_input_shape(self, shape: Shape) -> None:
        if not self.profile.accepts(shape):
            raise ShapeError(f"Input shape {shape} is outside the engine profile [{self.profile.min}, {self.profile.max}]")
        dims = shape.as_tuple()
        if hasattr(self._context, "set_input_shape"):
            ok = self._context.set_input_shape(self.input_name, dims)
        else:
            ok = self._context.set_binding_shape(0, trt.Dims4(*dims))
        if ok is False:
            raise ShapeError(f"TensorRT rejected input shape {shape}")

    def execute_async(self, bindings: List[Any], stream: Any) -> None:
        if self._context is None:
            raise InferenceError("Engine handle is closed")
        ptrs = [int(b) for b in bindings]
        if hasattr(self._context, "execute_async_v3"):
            self._context.set_tensor_address(self.input_name, ptrs[0])
            self._context.set_tensor_address(self.output_name, ptrs[1])
            ok = self._context.execute_async_v3(stream_handle=stream.handle)
        else:
            ok = self._context.execute_async_v2(bindings=ptrs, stream_handle=stream.handle)
        if not ok:
            raise InferenceError("TensorRT failed to enqueue inference")

    def close(self) -> None:
        self._context = None
        self._engine = None
        self._runtime = None


class TensorRTBackend(EngineBackend):
    name = "tensorrt"

    def __init__(self, device_id: int = 0, severity: Any = None):
        if trt is None:
            raise ImportError("tensorrt is required for the TensorRT backend")
        self.logger = get_logger(__name__)
        self.device = CudaDevice(device_id)
        self.trt_logger = trt.Logger(severity if severity is not None else trt.Logger.WARNING)
        self.allocator = CudaAllocator()

    def supports_fp16(self) -> bool:
        builder = trt.Builder(self.trt_logger)
        fast_fp16 = getattr(builder, "platform_has_fast_fp16", None)
        if fast_fp16 is not None:
            return bool(fast_fp16)
        return tuple(self.device.compute_capability()) >= (5, 3)

    def compile(self, onnx_path: Path, profile: ShapeProfile, use_fp16: bool, workspace_mb: int) -> bytes:
        builder = trt.Builder(self.trt_logger)
        network = builder.create_network(1 << int(trt.NetworkDefinitionCreationFlag.EXPLICIT_BATCH))
        parser = trt.OnnxParser(network, self.trt_logger)
        if not parser.parse(Path(onnx_path).read_bytes()):
            errors = [str(parser.get_error(i)) for i in range(parser.num_errors)]
            raise CompilationError(f"Could not parse ONNX model {onnx_path}: {'; '.join(errors) or 'unknown error'}")

        build_config = builder.create_builder_config()
        inp = network.get_input(0)
        self.logger.info("ONNX input %s dims=%s", inp.name, list(inp.shape))

        opt_profile = builder.create_optimization_profile()
        opt_profile.set_shape(inp.name, profile.min.as_tuple(), profile.opt.as_tuple(), profile.max.as_tuple())
        build_config.add_optimization_profile(opt_profile)

        workspace_bytes = int(workspace_mb) * 1024 * 1024
        if hasattr(build_config, "set_memory_pool_limit"):
            build_config.set_memory_pool_limit(trt.MemoryPoolType.WORKSPACE, workspace_bytes)
        else:
            build_config.max_workspace_size = workspace_bytes

        if use_fp16:
            build_config.set_flag(trt.BuilderFlag.FP16)

        serialized = builder.build_serialized_network(network, build_config)
        if serialized is None:
            raise CompilationError(f"TensorRT failed to build an engine from {onnx_path}")
        return bytes(serialized)

    def deserialize(self, blob: bytes, profile: ShapeProfile) -> TensorRTHandle:
        runtime = trt.Runtime(self.trt_logger)
        try:
            engine = runtime.deserialize_cuda_engine(blob)
        except Exception as e:
            raise CorruptArtifactError(f"Could not deserialize TensorRT engine ({len(blob)} bytes): {e}") from e
        if engine is None:
            raise CorruptArtifactError(f"Could not deserialize TensorRT engine ({len(blob)} bytes)")
        context = engine.create_execution_context()
        if context is None:
            raise EngineLoadError("TensorRT could not create an execution context")
        return TensorRTHandle(runtime, engine, context, profile)

    def close(self) -> None:
        self.device.close()
