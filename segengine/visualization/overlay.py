from __future__ import annotations

from typing import Dict, Optional

import cv2
import numpy as np

# Cityscapes train-id colors (RGB), the 19 classes BiSeNet is usually trained on.
CITYSCAPES_PALETTE = np.array(
    [
        (128, 64, 128),
        (244, 35, 232),
        (70, 70, 70),
        (102, 102, 156),
        (190, 153, 153),
        (153, 153, 153),
        (250, 170, 30),
        (220, 220, 0),
        (107, 142, 35),
        (152, 251, 152),
        (70, 130, 180),
        (220, 20, 60),
        (255, 0, 0),
        (0, 0, 142),
        (0, 0, 70),
        (0, 60, 100),
        (0, 80, 100),
        (0, 0, 230),
        (119, 11, 32),
    ],
    dtype=np.uint8,
)


def build_palette(num_classes: int, seed: int = 7) -> np.ndarray:
    """BGR palette with one row per class; Cityscapes colors first, random after."""
    rgb = CITYSCAPES_PALETTE[:num_classes]
    if num_classes > len(rgb):
        rng = np.random.default_rng(seed)
        extra = rng.integers(0, 256, size=(num_classes - len(rgb), 3), dtype=np.uint8)
        rgb = np.concatenate([rgb, extra], axis=0)
    return rgb[:, ::-1].copy()


def colorize_mask(mask: np.ndarray, palette: Optional[np.ndarray] = None) -> np.ndarray:
    if palette is None:
        palette = build_palette(int(mask.max()) + 1 if mask.size else 1)
    return palette[np.clip(mask, 0, len(palette) - 1)]


def draw_segmentation(frame: np.ndarray, mask: np.ndarray, palette: Optional[np.ndarray] = None, alpha: float = 0.45) -> np.ndarray:
    """Blend class colors over the frame; the mask must already match the frame size."""
    if mask.shape[:2] != frame.shape[:2]:
        mask = cv2.resize(mask, (frame.shape[1], frame.shape[0]), interpolation=cv2.INTER_NEAREST)
    color = colorize_mask(mask, palette)
    return cv2.addWeighted(frame, 1.0 - alpha, color, alpha, 0.0)


def draw_hud(frame: np.ndarray, latency_ms: float, stages_ms: Dict[str, float]) -> np.ndarray:
    """Minimal HUD overlay with total latency and stage timings."""
    render = frame.copy()
    y = 25
    cv2.putText(render, f"segengine | {latency_ms:6.1f} ms", (15, y), cv2.FONT_HERSHEY_SIMPLEX, 0.7, (255, 255, 255), 2)
    y += 28

    for name, ms in list(stages_ms.items())[:6]:
        cv2.putText(render, f"{name}: {ms:5.1f} ms", (15, y), cv2.FONT_HERSHEY_SIMPLEX, 0.6, (220, 220, 220), 2)
        y += 22

    return render
