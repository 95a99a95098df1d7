from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from segengine.utils.errors import ConfigError
from segengine.utils.types import Shape

BACKENDS = ("tensorrt", "onnxruntime")
POSTPROCESS_METHODS = ("host", "parallel")


def load_yaml(path: str | Path) -> Dict[str, Any]:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path.resolve()}")
    with config_path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def get(cfg: Dict[str, Any], key: str, default: Any = None) -> Any:
    """
    Dot-access helper:
      get(cfg, "engine.cache_dir", "engines")
    """
    cur: Any = cfg
    for part in key.split("."):
        if not isinstance(cur, dict) or part not in cur:
            return default
        cur = cur[part]
    return cur


@dataclass(frozen=True)
class SegmenterConfig:
    onnx_path: Path
    engine_cache_dir: Path = Path("engines")
    engine_name: str = "model.engine"
    backend: str = "tensorrt"
    device_id: int = 0
    use_fp16: bool = False
    workspace_mb: int = 1024
    rebuild_on_corrupt_cache: bool = False
    max_shape: Shape = Shape(1, 3, 640, 640)
    num_classes: int = 19
    mean: Tuple[float, ...] = (0.485, 0.456, 0.406)
    std: Tuple[float, ...] = (0.229, 0.224, 0.225)
    pad_value: int = 114
    stride: int = 32
    letterbox_auto: bool = False
    to_rgb: bool = False
    postprocess: str = "parallel"
    compute_confidence: bool = False
    sync_timeout_s: Optional[float] = None
    extra: Dict[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        self.validate()

    @property
    def cache_path(self) -> Path:
        return Path(self.engine_cache_dir) / self.engine_name

    @property
    def max_output_shape(self) -> Shape:
        return self.max_shape.with_channels(self.num_classes)

    def validate(self) -> None:
        if self.backend not in BACKENDS:
            raise ConfigError(f"Unknown backend {self.backend!r}; expected one of {BACKENDS}")
        if self.postprocess not in POSTPROCESS_METHODS:
            raise ConfigError(f"Unknown postprocess method {self.postprocess!r}; expected one of {POSTPROCESS_METHODS}")
        if self.max_shape.num != 1:
            raise ConfigError(f"Only a batch of 1 is supported, got max_shape {self.max_shape}")
        if self.max_shape.channels <= 0 or self.max_shape.height <= 0 or self.max_shape.width <= 0:
            raise ConfigError(f"max_shape must be positive, got {self.max_shape}")
        if self.stride <= 0:
            raise ConfigError(f"stride must be positive, got {self.stride}")
        if self.max_shape.height % self.stride or self.max_shape.width % self.stride:
            raise ConfigError(f"max_shape {self.max_shape} is not a multiple of stride {self.stride}")
        if self.num_classes <= 0 or self.num_classes > 256:
            raise ConfigError(f"num_classes must be in [1, 256] for uint8 labels, got {self.num_classes}")
        if len(self.mean) != self.max_shape.channels or len(self.std) != self.max_shape.channels:
            raise ConfigError(
                f"mean/std need {self.max_shape.channels} values, got {len(self.mean)}/{len(self.std)}"
            )
        if any(s == 0 for s in self.std):
            raise ConfigError("std values must be non-zero")
        if self.sync_timeout_s is not None and self.sync_timeout_s <= 0:
            raise ConfigError(f"sync_timeout_s must be positive, got {self.sync_timeout_s}")

    @classmethod
    def from_dict(cls, cfg: Dict[str, Any], base_dir: str | Path | None = None) -> "SegmenterConfig":
        onnx_path = get(cfg, "model.onnx_path")
        if not onnx_path:
            raise ConfigError("model.onnx_path is required")

        def _path(value: Any) -> Path:
            p = Path(value)
            if base_dir is not None and not p.is_absolute():
                p = Path(base_dir) / p
            return p

        max_shape = get(cfg, "model.max_shape", [1, 3, 640, 640])
        try:
            shape = Shape.of(max_shape)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid model.max_shape {max_shape!r}: {e}") from e

        timeout = get(cfg, "runtime.sync_timeout_s")
        return cls(
            onnx_path=_path(onnx_path),
            engine_cache_dir=_path(get(cfg, "engine.cache_dir", "engines")),
            engine_name=str(get(cfg, "engine.name", "model.engine")),
            backend=str(get(cfg, "engine.backend", "tensorrt")).lower(),
            device_id=int(get(cfg, "engine.device_id", 0)),
            use_fp16=bool(get(cfg, "engine.use_fp16", False)),
            workspace_mb=int(get(cfg, "engine.workspace_mb", 1024)),
            rebuild_on_corrupt_cache=bool(get(cfg, "engine.rebuild_on_corrupt_cache", False)),
            max_shape=shape,
            num_classes=int(get(cfg, "model.num_classes", 19)),
            mean=tuple(float(v) for v in get(cfg, "preprocess.mean", (0.485, 0.456, 0.406))),
            std=tuple(float(v) for v in get(cfg, "preprocess.std", (0.229, 0.224, 0.225))),
            pad_value=int(get(cfg, "preprocess.pad_value", 114)),
            stride=int(get(cfg, "preprocess.stride", 32)),
            letterbox_auto=bool(get(cfg, "preprocess.letterbox_auto", False)),
            to_rgb=bool(get(cfg, "preprocess.to_rgb", False)),
            postprocess=str(get(cfg, "postprocess.method", "parallel")).lower(),
            compute_confidence=bool(get(cfg, "postprocess.compute_confidence", False)),
            sync_timeout_s=float(timeout) if timeout is not None else None,
            extra={k: v for k, v in cfg.items() if k not in ("engine", "model", "preprocess", "postprocess", "runtime")},
        )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "SegmenterConfig":
        """Relative paths inside the file resolve against the current directory."""
        return cls.from_dict(load_yaml(path))
