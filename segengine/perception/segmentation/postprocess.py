from __future__ import annotations

import abc
from typing import Any, Optional, Tuple

import cv2
import numpy as np
import torch

from segengine.perception.segmentation.preprocess import LetterboxMeta
from segengine.runtime.buffer_pool import BufferPool
from segengine.utils.types import Shape

# One thread per pixel; classes are scanned in order and only a strictly
# greater score (or the first NaN) replaces the current best.
ARGMAX_KERNEL = r"""
__global__ void argmax_labels(const float* __restrict__ scores,
                              int channels, int height, int width,
                              unsigned char* __restrict__ labels)
{
    int col = blockIdx.x * blockDim.x + threadIdx.x;
    int row = blockIdx.y * blockDim.y + threadIdx.y;
    if (col >= width || row >= height) return;

    int plane = height * width;
    int pos = row * width + col;
    float best = scores[pos];
    int best_idx = 0;
    for (int c = 1; c < channels; ++c) {
        float v = scores[pos + c * plane];
        if (v > best || (v != v && best == best)) {
            best = v;
            best_idx = c;
        }
    }
    labels[pos] = (unsigned char)best_idx;
}
"""


def softmax(scores: np.ndarray, axis: int = 0) -> np.ndarray:
    shifted = scores - np.max(scores, axis=axis, keepdims=True)
    e = np.exp(shifted)
    return e / np.sum(e, axis=axis, keepdims=True)


def mean_confidence(scores: np.ndarray) -> float:
    """Mean over pixels of the winning class probability; scores are (C, H, W)."""
    if scores.size == 0:
        return 0.0
    return float(softmax(scores, axis=0).max(axis=0).mean())


def argmax_labels(scores: np.ndarray) -> np.ndarray:
    """(C, H, W) class scores -> (H, W) uint8 labels, lowest index on ties."""
    c, h, w = scores.shape
    if c == 0:
        return np.zeros((h, w), dtype=np.uint8)
    return np.argmax(scores, axis=0).astype(np.uint8)


def restore_mask(mask: np.ndarray, meta: LetterboxMeta) -> np.ndarray:
    """Drop letterbox padding and resize labels back to the source image size."""
    uh, uw = meta.unpadded_hw
    cropped = mask[meta.pad_top : meta.pad_top + uh, meta.pad_left : meta.pad_left + uw]
    sh, sw = meta.source_hw
    if cropped.shape[:2] == (sh, sw):
        return cropped.copy()
    return cv2.resize(cropped, (sw, sh), interpolation=cv2.INTER_NEAREST)


class ArgmaxPostprocessor(abc.ABC):
    name = "base"

    def __init__(self, timeout_s: Optional[float] = None):
        self.timeout_s = timeout_s

    @abc.abstractmethod
    def __call__(self, pool: BufferPool, output_shape: Shape, stream: Any = None) -> np.ndarray:
        """Label image of the first `output_shape.count` output elements."""

    def close(self) -> None:
        return None


class HostArgmax(ArgmaxPostprocessor):
    """Copies the full score tensor to the host and scans it there."""

    name = "host"

    def __call__(self, pool: BufferPool, output_shape: Shape, stream: Any = None) -> np.ndarray:
        c, h, w = output_shape.channels, output_shape.height, output_shape.width
        pool.output.to_host(output_shape.count, stream, self.timeout_s)
        scores = pool.output.host[: c * h * w].reshape(c, h, w)
        return argmax_labels(scores)


class TorchArgmax(ArgmaxPostprocessor):
    """Parallel reduction straight over a host-resident device region."""

    name = "torch"

    def __call__(self, pool: BufferPool, output_shape: Shape, stream: Any = None) -> np.ndarray:
        c, h, w = output_shape.channels, output_shape.height, output_shape.width
        if c == 0:
            return np.zeros((h, w), dtype=np.uint8)
        region = pool.output.device_view(c * h * w)
        scores = torch.from_numpy(region).view(c, h, w)
        return torch.argmax(scores, dim=0).to(torch.uint8).numpy()


class CudaArgmax(ArgmaxPostprocessor):
    """
    One CUDA thread per pixel reading the device output tensor and writing
    bytes into mapped pinned memory, so only labels cross the bus.
    """

    name = "cuda"

    def __init__(
        self,
        allocator: Any,
        max_hw: Tuple[int, int],
        block: Tuple[int, int, int] = (16, 16, 1),
        timeout_s: Optional[float] = None,
    ):
        from pycuda.compiler import SourceModule

        super().__init__(timeout_s)
        self.allocator = allocator
        self.block = block
        self._module = SourceModule(ARGMAX_KERNEL)
        self._kernel = self._module.get_function("argmax_labels")
        self._labels: Optional[np.ndarray] = allocator.alloc_host(max_hw[0] * max_hw[1], np.uint8, mapped=True)
        self._labels_ptr = np.intp(self._labels.base.get_device_pointer())

    def __call__(self, pool: BufferPool, output_shape: Shape, stream: Any = None) -> np.ndarray:
        c, h, w = output_shape.channels, output_shape.height, output_shape.width
        if c == 0:
            return np.zeros((h, w), dtype=np.uint8)
        bx, by = self.block[0], self.block[1]
        grid = ((w + bx - 1) // bx, (h + by - 1) // by)
        self._kernel(
            pool.output.device,
            np.int32(c),
            np.int32(h),
            np.int32(w),
            self._labels_ptr,
            block=self.block,
            grid=grid,
            stream=stream.raw,
        )
        stream.synchronize(self.timeout_s)
        return self._labels[: h * w].reshape(h, w).copy()

    def close(self) -> None:
        if self._labels is not None:
            self.allocator.free_host(self._labels)
            self._labels = None


def create_postprocessor(
    method: str, allocator: Any, max_hw: Tuple[int, int], timeout_s: Optional[float] = None
) -> ArgmaxPostprocessor:
    if method == "host":
        return HostArgmax(timeout_s)
    if method == "parallel":
        if getattr(allocator, "kind", "host") == "cuda":
            return CudaArgmax(allocator, max_hw, timeout_s=timeout_s)
        return TorchArgmax(timeout_s)
    raise ValueError(f"Unknown postprocess method: {method}")
