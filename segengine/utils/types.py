from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Tuple


@dataclass(frozen=True)
class Shape:
    """NCHW tensor layout."""

    num: int = 0
    channels: int = 0
    height: int = 0
    width: int = 0

    def __post_init__(self) -> None:
        for name, value in zip(("num", "channels", "height", "width"), self.as_tuple()):
            if int(value) != value or value < 0:
                raise ValueError(f"Shape.{name} must be a non-negative int, got {value!r}")

    @classmethod
    def of(cls, dims: Iterable[int]) -> "Shape":
        values = [int(d) for d in dims]
        if len(values) != 4:
            raise ValueError(f"Expected 4 dims (N, C, H, W), got {values}")
        return cls(*values)

    @property
    def count(self) -> int:
        return self.num * self.channels * self.height * self.width

    @property
    def spatial(self) -> Tuple[int, int]:
        return self.height, self.width

    def as_tuple(self) -> Tuple[int, int, int, int]:
        return self.num, self.channels, self.height, self.width

    def with_channels(self, channels: int) -> "Shape":
        return Shape(self.num, channels, self.height, self.width)

    def fits_within(self, other: "Shape") -> bool:
        return all(a <= b for a, b in zip(self.as_tuple(), other.as_tuple()))

    def __str__(self) -> str:
        return "x".join(str(d) for d in self.as_tuple())


@dataclass(frozen=True)
class ShapeProfile:
    """min/opt/max input shapes an engine is compiled for."""

    min: Shape
    opt: Shape
    max: Shape

    @classmethod
    def for_max_shape(cls, max_shape: Shape) -> "ShapeProfile":
        return cls(
            min=Shape(1, max_shape.channels, 1, 1),
            opt=max_shape,
            max=max_shape,
        )

    def accepts(self, shape: Shape) -> bool:
        return self.min.fits_within(shape) and shape.fits_within(self.max)
