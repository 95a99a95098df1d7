from __future__ import annotations

import abc
import numpy as np


class BaseSegmenter(abc.ABC):
    @abc.abstractmethod
    def infer(self, frame: np.ndarray) -> dict:
        """
        Input:
            frame: BGR or RGB image (H, W, 3)
        Output:
            {
              "mask": np.ndarray (h, w) uint8   # class IDs at network resolution
              "confidence": float
              "latency_ms": float
            }
        """
        raise NotImplementedError

    def close(self) -> None:
        return None

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self.close()
