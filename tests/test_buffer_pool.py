from __future__ import annotations

import numpy as np
import pytest

from segengine.runtime.buffer_pool import BufferPair, BufferPool
from segengine.runtime.device import HostAllocator
from segengine.utils.errors import AllocationError, ShapeError
from segengine.utils.types import Shape

MAX_IN = Shape(1, 3, 64, 64)
MAX_OUT = Shape(1, 19, 64, 64)


class FailingAllocator(HostAllocator):
    """Refuses the n-th allocation."""

    def __init__(self, fail_on: int):
        super().__init__()
        self.fail_on = fail_on
        self.calls = 0

    def _alloc(self, count, dtype):
        self.calls += 1
        if self.calls == self.fail_on:
            raise AllocationError("out of memory")
        return super()._alloc(count, dtype)


def test_pool_sizes_from_max_shapes():
    allocator = HostAllocator()
    pool = BufferPool.allocate(allocator, MAX_IN, MAX_OUT)

    assert pool.input.capacity == MAX_IN.count
    assert pool.output.capacity == MAX_OUT.count
    assert pool.input.nbytes == MAX_IN.count * 4
    assert allocator.live_allocations == 4
    assert allocator.live_bytes == 2 * (MAX_IN.count + MAX_OUT.count) * 4

    pool.close()
    assert allocator.live_allocations == 0
    assert pool.input.closed and pool.output.closed


def test_bindings_are_input_then_output():
    pool = BufferPool.allocate(HostAllocator(), MAX_IN, MAX_OUT)
    assert pool.bindings[0] is pool.input.device
    assert pool.bindings[1] is pool.output.device
    pool.close()


def test_close_twice_is_noop():
    allocator = HostAllocator()
    with BufferPool.allocate(allocator, MAX_IN, MAX_OUT) as pool:
        pass
    pool.close()
    assert allocator.live_allocations == 0
    assert allocator.total_allocations == 4


def test_oversized_shapes_rejected():
    pool = BufferPool.allocate(HostAllocator(), MAX_IN, MAX_OUT)
    with pytest.raises(ShapeError):
        pool.check_input(Shape(1, 3, 96, 64))
    with pytest.raises(ShapeError):
        pool.check_output(Shape(1, 20, 64, 64))
    with pytest.raises(ShapeError):
        pool.input.to_device(MAX_IN.count + 1)
    pool.check_input(Shape(1, 3, 32, 64))
    pool.close()


def test_copies_only_the_used_prefix():
    pool = BufferPool.allocate(HostAllocator(), MAX_IN, MAX_OUT)
    pool.input.host[:10] = np.arange(10, dtype=np.float32)
    pool.input.device[:] = -1.0
    pool.input.to_device(6)
    np.testing.assert_array_equal(pool.input.device[:6], np.arange(6, dtype=np.float32))
    assert pool.input.device[6] == -1.0

    pool.output.device[:4] = 7.0
    pool.output.to_host(4)
    np.testing.assert_array_equal(pool.output.host[:4], np.full(4, 7.0, dtype=np.float32))
    pool.close()


@pytest.mark.parametrize("fail_on", [2, 3, 4])
def test_failed_allocation_releases_earlier_regions(fail_on):
    allocator = FailingAllocator(fail_on)
    with pytest.raises(AllocationError):
        BufferPool.allocate(allocator, MAX_IN, MAX_OUT)
    assert allocator.live_allocations == 0


def test_pair_closes_host_region_when_device_fails():
    allocator = FailingAllocator(2)
    with pytest.raises(AllocationError):
        BufferPair(allocator, 16)
    assert allocator.live_allocations == 0
