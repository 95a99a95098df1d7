from __future__ import annotations

import time
from typing import Any, Dict, Optional

import numpy as np

try:
    import pycuda.driver as cuda
except ImportError:  # pragma: no cover
    cuda = None

from segengine.utils.errors import AllocationError, InferenceTimeoutError
from segengine.utils.logger import get_logger


def _nbytes(count: int, dtype: Any) -> int:
    return int(count) * np.dtype(dtype).itemsize


class _AllocationLedger:
    """Tracks live regions so leaks show up in tests and logs."""

    def __init__(self) -> None:
        self._live: Dict[int, int] = {}
        self.total_allocations = 0

    def record(self, region: Any, nbytes: int) -> None:
        self._live[id(region)] = nbytes
        self.total_allocations += 1

    def release(self, region: Any) -> bool:
        return self._live.pop(id(region), None) is not None

    @property
    def live_allocations(self) -> int:
        return len(self._live)

    @property
    def live_bytes(self) -> int:
        return sum(self._live.values())


class HostStream:
    """Stream stand-in for backends that execute synchronously on the host."""

    handle = 0

    def synchronize(self, timeout: Optional[float] = None) -> None:
        return None

    def is_done(self) -> bool:
        return True


class HostAllocator(_AllocationLedger):
    """
    Both "host" and "device" regions are ordinary numpy arrays. Used by
    backends whose execution engine reads host memory directly.
    """

    kind = "host"

    def alloc_host(self, count: int, dtype: Any = np.float32) -> np.ndarray:
        return self._alloc(count, dtype)

    def alloc_device(self, count: int, dtype: Any = np.float32) -> np.ndarray:
        return self._alloc(count, dtype)

    def _alloc(self, count: int, dtype: Any) -> np.ndarray:
        try:
            region = np.zeros(int(count), dtype=dtype)
        except MemoryError as e:
            raise AllocationError(f"Could not allocate {_nbytes(count, dtype)} bytes of host memory") from e
        self.record(region, region.nbytes)
        return region

    def free_host(self, region: Any) -> None:
        self.release(region)

    def free_device(self, region: Any) -> None:
        self.release(region)

    def copy_to_device(self, host: np.ndarray, device: np.ndarray, count: int, stream: Any = None) -> None:
        np.copyto(device[:count], host[:count])

    def copy_to_host(
        self, host: np.ndarray, device: np.ndarray, count: int, stream: Any = None, timeout: Optional[float] = None
    ) -> None:
        np.copyto(host[:count], device[:count])

    def device_array(self, device: np.ndarray, count: int) -> np.ndarray:
        return device[:count]

    def create_stream(self) -> HostStream:
        return HostStream()


class CudaStream:
    """pycuda stream with an optional bounded synchronize."""

    def __init__(self, poll_interval_s: float = 0.0005):
        if cuda is None:
            raise ImportError("pycuda is required for CUDA streams")
        self.raw = cuda.Stream()
        self.poll_interval_s = poll_interval_s

    @property
    def handle(self) -> int:
        return self.raw.handle

    def is_done(self) -> bool:
        return self.raw.is_done()

    def synchronize(self, timeout: Optional[float] = None) -> None:
        if timeout is None:
            self.raw.synchronize()
            return
        deadline = time.monotonic() + timeout
        while not self.raw.is_done():
            if time.monotonic() >= deadline:
                raise InferenceTimeoutError(f"CUDA stream did not drain within {timeout:.3f}s")
            time.sleep(self.poll_interval_s)


class CudaAllocator(_AllocationLedger):
    """Page-locked host memory plus device memory through pycuda."""

    kind = "cuda"

    def __init__(self) -> None:
        super().__init__()
        if cuda is None:
            raise ImportError("pycuda is required for CudaAllocator")

    def alloc_host(self, count: int, dtype: Any = np.float32, mapped: bool = False) -> np.ndarray:
        flags = cuda.host_alloc_flags.DEVICEMAP if mapped else 0
        try:
            region = cuda.pagelocked_zeros(int(count), dtype, mem_flags=flags)
        except (cuda.MemoryError, cuda.Error) as e:
            raise AllocationError(f"Could not allocate {_nbytes(count, dtype)} bytes of pinned host memory") from e
        self.record(region, region.nbytes)
        return region

    def alloc_device(self, count: int, dtype: Any = np.float32) -> Any:
        nbytes = _nbytes(count, dtype)
        try:
            region = cuda.mem_alloc(nbytes)
        except (cuda.MemoryError, cuda.Error) as e:
            raise AllocationError(f"Could not allocate {nbytes} bytes of device memory") from e
        self.record(region, nbytes)
        return region

    def free_host(self, region: Any) -> None:
        if self.release(region):
            region.base.free()

    def free_device(self, region: Any) -> None:
        if self.release(region):
            region.free()

    def copy_to_device(self, host: np.ndarray, device: Any, count: int, stream: CudaStream) -> None:
        cuda.memcpy_htod_async(device, host[:count], stream.raw)

    def copy_to_host(
        self, host: np.ndarray, device: Any, count: int, stream: CudaStream, timeout: Optional[float] = None
    ) -> None:
        cuda.memcpy_dtoh_async(host[:count], device, stream.raw)
        stream.synchronize(timeout)

    def device_array(self, device: Any, count: int) -> np.ndarray:
        raise TypeError("CUDA device memory is not addressable from the host")

    def create_stream(self) -> CudaStream:
        return CudaStream()


class CudaDevice:
    """Owns the CUDA context for one device id; released after everything else."""

    def __init__(self, device_id: int = 0):
        if cuda is None:
            raise ImportError("pycuda is required for the TensorRT backend")
        self.logger = get_logger(__name__)
        cuda.init()
        self.device_id = device_id
        self.device = cuda.Device(device_id)
        self.context = self.device.make_context(cuda.ctx_flags.SCHED_AUTO | cuda.ctx_flags.MAP_HOST)
        self.logger.info("CUDA device %d: %s", device_id, self.device.name())

    def compute_capability(self) -> tuple:
        return self.device.compute_capability()

    def close(self) -> None:
        if self.context is None:
            return
        self.context.pop()
        self.context = None
        self.logger.debug("CUDA context for device %d released", self.device_id)
