from __future__ import annotations

import abc
from pathlib import Path
from typing import Any, List, Optional

from segengine.utils.types import Shape, ShapeProfile


class EngineHandle(abc.ABC):
    """
    Runnable engine: runtime -> engine -> execution context. close()
    releases them in the reverse order (context, engine, runtime).
    """

    profile: ShapeProfile

    @property
    @abc.abstractmethod
    def input_channels(self) -> Optional[int]:
        """Channel count declared by the network input, None if dynamic."""

    @abc.abstractmethod
    def bind_input_shape(self, shape: Shape) -> None:
        ...

    @abc.abstractmethod
    def execute_async(self, bindings: List[Any], stream: Any) -> None:
        ...

    @abc.abstractmethod
    def close(self) -> None:
        ...

    def __enter__(self) -> "EngineHandle":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class EngineBackend(abc.ABC):
    """Compiler + runtime for one kind of accelerator."""

    name: str = "base"
    allocator: Any = None

    @abc.abstractmethod
    def supports_fp16(self) -> bool:
        ...

    @abc.abstractmethod
    def compile(self, onnx_path: Path, profile: ShapeProfile, use_fp16: bool, workspace_mb: int) -> bytes:
        ...

    @abc.abstractmethod
    def deserialize(self, blob: bytes, profile: ShapeProfile) -> EngineHandle:
        ...

    def create_stream(self) -> Any:
        return self.allocator.create_stream()

    def close(self) -> None:
        return None


def create_backend(name: str, device_id: int = 0) -> EngineBackend:
    name = name.lower()
    if name == "tensorrt":
        from segengine.runtime.backends.tensorrt_backend import TensorRTBackend

        return TensorRTBackend(device_id=device_id)
    if name == "onnxruntime":
        from segengine.runtime.backends.onnxruntime_backend import OnnxRuntimeBackend

        return OnnxRuntimeBackend(device_id=device_id)
    raise ValueError(f"Unknown engine backend: {name}")
