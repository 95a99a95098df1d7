from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import cv2
import numpy as np

from segengine.utils.errors import ShapeError
from segengine.utils.types import Shape


@dataclass(frozen=True)
class LetterboxMeta:
    """Where the resized source sits inside the padded canvas."""

    ratio: float
    pad_left: int
    pad_top: int
    unpadded_hw: Tuple[int, int]
    source_hw: Tuple[int, int]
    canvas_hw: Tuple[int, int]


@dataclass(frozen=True)
class PreprocessResult:
    input_shape: Shape
    meta: LetterboxMeta


def _align(value: int, stride: int) -> int:
    return int(math.ceil(value / stride) * stride)


def letterbox(
    img: np.ndarray,
    new_shape: Tuple[int, int] = (640, 640),
    color: int = 114,
    stride: int = 32,
    auto: bool = False,
) -> Tuple[np.ndarray, LetterboxMeta]:
    """
    Aspect-preserving resize of the longer side onto `new_shape` (h, w),
    then symmetric padding with `color`. The canvas is rounded up to a
    multiple of `stride`; with `auto` only the padding needed to reach the
    next stride multiple is added.
    """
    h, w = img.shape[:2]
    th, tw = _align(new_shape[0], stride), _align(new_shape[1], stride)

    r = min(th / h, tw / w)
    new_w = min(tw, max(1, int(round(w * r))))
    new_h = min(th, max(1, int(round(h * r))))

    dw, dh = tw - new_w, th - new_h
    if auto:
        dw, dh = dw % stride, dh % stride
    dw /= 2
    dh /= 2

    if (new_w, new_h) != (w, h):
        resized = cv2.resize(img, (new_w, new_h), interpolation=cv2.INTER_LINEAR)
        if resized.ndim == 2 and img.ndim == 3:
            resized = resized[..., None]
    else:
        resized = img

    top, bottom = int(round(dh - 0.1)), int(round(dh + 0.1))
    left, right = int(round(dw - 0.1)), int(round(dw + 0.1))

    canvas_shape = (new_h + top + bottom, new_w + left + right) + tuple(img.shape[2:])
    canvas = np.full(canvas_shape, color, dtype=img.dtype)
    canvas[top : top + new_h, left : left + new_w] = resized

    meta = LetterboxMeta(
        ratio=r,
        pad_left=left,
        pad_top=top,
        unpadded_hw=(new_h, new_w),
        source_hw=(h, w),
        canvas_hw=canvas_shape[:2],
    )
    return canvas, meta


def scale_values(img: np.ndarray) -> np.ndarray:
    """Map integer pixels onto [0, 1] by the dtype's maximum value."""
    if np.issubdtype(img.dtype, np.integer):
        return img.astype(np.float32) / np.float32(np.iinfo(img.dtype).max)
    return img.astype(np.float32, copy=False)


def normalize(img: np.ndarray, mean: Sequence[float], std: Sequence[float]) -> np.ndarray:
    mean_arr = np.asarray(mean, dtype=np.float32)
    std_arr = np.asarray(std, dtype=np.float32)
    return (img - mean_arr) / std_arr


def to_planar(img: np.ndarray, host_buffer: np.ndarray) -> Shape:
    """Split an interleaved (H, W, C) image into C contiguous planes of `host_buffer`."""
    h, w, c = img.shape
    shape = Shape(1, c, h, w)
    if shape.count > host_buffer.size:
        raise ShapeError(f"Preprocessed tensor {shape} does not fit the input buffer ({host_buffer.size} elements)")
    planes = host_buffer[: shape.count].reshape(c, h, w)
    for ch in range(c):
        planes[ch] = img[:, :, ch]
    return shape


class Preprocessor:
    def __init__(
        self,
        target_hw: Tuple[int, int],
        mean: Sequence[float],
        std: Sequence[float],
        pad_value: int = 114,
        stride: int = 32,
        auto: bool = False,
        to_rgb: bool = False,
    ):
        self.target_hw = (int(target_hw[0]), int(target_hw[1]))
        self.mean = tuple(mean)
        self.std = tuple(std)
        self.pad_value = pad_value
        self.stride = stride
        self.auto = auto
        self.to_rgb = to_rgb

    @property
    def channels(self) -> int:
        return len(self.mean)

    def transform(self, image: np.ndarray) -> Tuple[np.ndarray, LetterboxMeta]:
        """Letterbox, scale and normalize; returns an interleaved float32 image."""
        if image.ndim == 2:
            image = image[..., None]
        if image.shape[2] != self.channels:
            raise ShapeError(f"Expected a {self.channels}-channel image, got shape {image.shape}")
        if self.to_rgb and self.channels == 3:
            image = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)

        boxed, meta = letterbox(image, self.target_hw, self.pad_value, self.stride, self.auto)
        return normalize(scale_values(boxed), self.mean, self.std), meta

    def preprocess(self, image: Optional[np.ndarray], host_buffer: np.ndarray) -> Optional[PreprocessResult]:
        """Fill `host_buffer` with the planar network input; None for an empty image."""
        if image is None or image.size == 0:
            return None
        sample, meta = self.transform(image)
        return PreprocessResult(input_shape=to_planar(sample, host_buffer), meta=meta)

    __call__ = preprocess
