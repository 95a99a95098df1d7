from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import List, Optional

from segengine.runtime.backends.base import EngineBackend, EngineHandle
from segengine.utils.config import SegmenterConfig
from segengine.utils.errors import (
    ConfigError,
    CorruptArtifactError,
    EngineLoadError,
    MissingArtifactError,
    SegEngineError,
)
from segengine.utils.logger import get_logger
from segengine.utils.types import ShapeProfile


class LoaderState(str, Enum):
    START = "START"
    LOADING = "LOADING"  # deserializing an artifact (cached or freshly compiled)
    COMPILING = "COMPILING"
    LOADED = "LOADED"
    FAILED = "FAILED"


def read_artifact(path: Path) -> bytes:
    try:
        return Path(path).read_bytes()
    except OSError as e:
        raise EngineLoadError(f"Can't read cached engine from {path}: {e}") from e


def save_artifact(blob: bytes, path: Path) -> None:
    """Write the whole artifact in one go, overwriting any previous file."""
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(blob)
    except OSError as e:
        raise EngineLoadError(f"Can't write cached engine to {path}: {e}") from e


class EngineLoader:
    """
    Produces a runnable engine handle, from the cache file when present and
    otherwise by compiling the ONNX description. A freshly compiled engine
    is persisted first and then deserialized from the very same bytes, so
    both routes share the LOADING step.
    """

    def __init__(self, config: SegmenterConfig, backend: EngineBackend):
        self.config = config
        self.backend = backend
        self.logger = get_logger(__name__)
        self.profile = ShapeProfile.for_max_shape(config.max_shape)
        self.state = LoaderState.START
        self.history: List[LoaderState] = [LoaderState.START]
        self.source: Optional[str] = None  # "cache" or "compiled"
        self.fp16_enabled = False

    def _transition(self, state: LoaderState) -> None:
        self.logger.debug("Engine loader %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def obtain(self) -> EngineHandle:
        if self.state is not LoaderState.START:
            raise RuntimeError(f"EngineLoader already ran (state={self.state.value})")
        try:
            handle = self._obtain()
        except SegEngineError as e:
            self._transition(LoaderState.FAILED)
            self.logger.error("Engine load failed: %s", e)
            raise
        except Exception:
            self._transition(LoaderState.FAILED)
            self.logger.exception("Engine load failed in backend %s", self.backend.name)
            raise
        self._transition(LoaderState.LOADED)
        self.logger.info("Engine ready (%s, backend=%s, fp16=%s)", self.source, self.backend.name, self.fp16_enabled)
        return handle

    def _obtain(self) -> EngineHandle:
        cache_path = self.config.cache_path
        if cache_path.exists():
            self.logger.info("Reading cached engine %s", cache_path)
            self._transition(LoaderState.LOADING)
            try:
                handle = self._load(read_artifact(cache_path))
            except CorruptArtifactError:
                if not (self.config.rebuild_on_corrupt_cache and self.config.onnx_path.exists()):
                    raise
                self.logger.warning("Cached engine %s is unusable; rebuilding from %s", cache_path, self.config.onnx_path)
            else:
                self.source = "cache"
                return handle

        self._transition(LoaderState.COMPILING)
        blob = self._compile()
        save_artifact(blob, cache_path)
        self.logger.info("Saved engine (%d bytes) to %s", len(blob), cache_path)
        self._transition(LoaderState.LOADING)
        handle = self._load(blob)
        self.source = "compiled"
        return handle

    def _compile(self) -> bytes:
        onnx_path = self.config.onnx_path
        if not onnx_path.exists():
            raise MissingArtifactError(f"ONNX file is not found: {onnx_path}")

        self.fp16_enabled = False
        if self.config.use_fp16:
            if self.backend.supports_fp16():
                self.fp16_enabled = True
                self.logger.info("Using FP16")
            else:
                self.logger.warning("FP16 requested but %s reports no fast FP16; using FP32", self.backend.name)
        else:
            self.logger.info("Using FP32")

        self.logger.info("Compiling %s with %s (profile max %s)", onnx_path, self.backend.name, self.profile.max)
        return self.backend.compile(onnx_path, self.profile, self.fp16_enabled, self.config.workspace_mb)

    def _load(self, blob: bytes) -> EngineHandle:
        handle = self.backend.deserialize(blob, self.profile)
        declared = handle.input_channels
        if declared is not None and declared != self.config.max_shape.channels:
            handle.close()
            raise ConfigError(
                f"max_shape has {self.config.max_shape.channels} channels but the network expects {declared}"
            )
        return handle


def obtain_engine(config: SegmenterConfig, backend: EngineBackend) -> EngineHandle:
    return EngineLoader(config, backend).obtain()
