from __future__ import annotations

from typing import Any, Optional

from segengine.runtime.backends.base import EngineHandle
from segengine.runtime.buffer_pool import BufferPool
from segengine.utils.logger import get_logger
from segengine.utils.types import Shape


class InferenceExecutor:
    """One synchronous forward pass over the pool's input/output buffers."""

    def __init__(
        self,
        handle: EngineHandle,
        pool: BufferPool,
        stream: Any,
        num_classes: int,
        timeout_s: Optional[float] = None,
    ):
        self.handle = handle
        self.pool = pool
        self.stream = stream
        self.num_classes = num_classes
        self.timeout_s = timeout_s
        self.logger = get_logger(__name__)

    def run(self, input_shape: Shape) -> Shape:
        output_shape = input_shape.with_channels(self.num_classes)
        self.pool.check_input(input_shape)
        self.pool.check_output(output_shape)

        self.pool.input.to_device(input_shape.count, self.stream)
        self.handle.bind_input_shape(input_shape)
        self.handle.execute_async(self.pool.bindings, self.stream)
        self.stream.synchronize(self.timeout_s)
        self.logger.debug("Forward pass %s -> %s", input_shape, output_shape)
        return output_shape
