from __future__ import annotations

from typing import Any, List, Optional

import numpy as np

from segengine.utils.errors import ShapeError
from segengine.utils.logger import get_logger
from segengine.utils.types import Shape


class BufferPair:
    """
    One logical tensor: a host region the CPU writes/reads and a device
    region the engine binds. Both hold `capacity` elements; only the first
    `count` of the most recent run are meaningful.
    """

    def __init__(self, allocator: Any, capacity: int, dtype: Any = np.float32, name: str = "tensor"):
        self.allocator = allocator
        self.capacity = int(capacity)
        self.dtype = np.dtype(dtype)
        self.name = name
        self.host: Optional[Any] = None
        self.device: Optional[Any] = None
        try:
            self.host = allocator.alloc_host(self.capacity, self.dtype)
            self.device = allocator.alloc_device(self.capacity, self.dtype)
        except BaseException:
            self.close()
            raise

    @property
    def nbytes(self) -> int:
        return self.capacity * self.dtype.itemsize

    @property
    def closed(self) -> bool:
        return self.host is None and self.device is None

    def check(self, count: int) -> None:
        if count > self.capacity:
            raise ShapeError(f"{self.name}: {count} elements requested, buffer holds {self.capacity}")

    def to_device(self, count: int, stream: Any = None) -> None:
        self.check(count)
        self.allocator.copy_to_device(self.host, self.device, count, stream)

    def to_host(self, count: int, stream: Any = None, timeout: Optional[float] = None) -> None:
        self.check(count)
        self.allocator.copy_to_host(self.host, self.device, count, stream, timeout)

    def device_view(self, count: int) -> Any:
        """Array view of the device region; only host-addressable allocators support it."""
        self.check(count)
        return self.allocator.device_array(self.device, count)

    def release_host(self) -> None:
        if self.host is not None:
            self.allocator.free_host(self.host)
            self.host = None

    def release_device(self) -> None:
        if self.device is not None:
            self.allocator.free_device(self.device)
            self.device = None

    def close(self) -> None:
        self.release_host()
        self.release_device()

    def __enter__(self) -> "BufferPair":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class BufferPool:
    """Input and output buffer pairs sized once from the maximum shapes."""

    def __init__(self, input: BufferPair, output: BufferPair, max_input_shape: Shape, max_output_shape: Shape):
        self.input = input
        self.output = output
        self.max_input_shape = max_input_shape
        self.max_output_shape = max_output_shape
        self.logger = get_logger(__name__)

    @classmethod
    def allocate(
        cls,
        allocator: Any,
        max_input_shape: Shape,
        max_output_shape: Shape,
        dtype: Any = np.float32,
    ) -> "BufferPool":
        input_pair = BufferPair(allocator, max_input_shape.count, dtype, name="input")
        try:
            output_pair = BufferPair(allocator, max_output_shape.count, dtype, name="output")
        except BaseException:
            input_pair.close()
            raise
        pool = cls(input_pair, output_pair, max_input_shape, max_output_shape)
        pool.logger.info(
            "Allocated %s buffers: input %s (%d B), output %s (%d B)",
            getattr(allocator, "kind", "host"),
            max_input_shape,
            input_pair.nbytes,
            max_output_shape,
            output_pair.nbytes,
        )
        return pool

    @property
    def bindings(self) -> List[Any]:
        return [self.input.device, self.output.device]

    def check_input(self, shape: Shape) -> None:
        if not shape.fits_within(self.max_input_shape):
            raise ShapeError(f"Input shape {shape} exceeds the allocated maximum {self.max_input_shape}")

    def check_output(self, shape: Shape) -> None:
        if not shape.fits_within(self.max_output_shape):
            raise ShapeError(f"Output shape {shape} exceeds the allocated maximum {self.max_output_shape}")

    def close(self) -> None:
        # pinned host regions go first, then device regions
        self.input.release_host()
        self.output.release_host()
        self.input.release_device()
        self.output.release_device()

    def __enter__(self) -> "BufferPool":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
