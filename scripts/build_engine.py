#!/usr/bin/env python3
"""
Compile (or load from cache) the configured segmentation engine.
Run once after exporting a new ONNX model so the first real run starts hot.
"""
from __future__ import annotations

import argparse
import sys

from segengine.runtime.backends.base import create_backend
from segengine.runtime.engine_cache import EngineLoader
from segengine.utils.config import SegmenterConfig, get, load_yaml
from segengine.utils.errors import SegEngineError
from segengine.utils.logger import setup_logger


def main():
    parser = argparse.ArgumentParser(description="Build or verify the cached segmentation engine")
    parser.add_argument("--config", default="configs/segmentation.yaml", help="Path to YAML config")
    parser.add_argument("--onnx", default=None, help="Override model.onnx_path")
    parser.add_argument("--backend", default=None, choices=["tensorrt", "onnxruntime"], help="Override engine.backend")
    parser.add_argument("--force", action="store_true", help="Delete the cached engine and recompile")
    args = parser.parse_args()

    cfg = load_yaml(args.config)
    if args.onnx:
        cfg.setdefault("model", {})["onnx_path"] = args.onnx
    if args.backend:
        cfg.setdefault("engine", {})["backend"] = args.backend
    logger = setup_logger(log_dir=None, level=get(cfg, "runtime.log_level", "INFO"))

    try:
        config = SegmenterConfig.from_dict(cfg)
        if args.force and config.cache_path.exists():
            config.cache_path.unlink()
            logger.info("Removed cached engine %s", config.cache_path)
        backend = create_backend(config.backend, config.device_id)
    except SegEngineError as e:
        logger.error("%s", e)
        sys.exit(1)

    try:
        loader = EngineLoader(config, backend)
        handle = loader.obtain()
        handle.close()
    except SegEngineError as e:
        logger.error("%s", e)
        sys.exit(1)
    finally:
        backend.close()

    print(f"Engine {config.cache_path} ready ({loader.source}); states: {' -> '.join(s.value for s in loader.history)}")


if __name__ == "__main__":
    main()
