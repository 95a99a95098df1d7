#!/usr/bin/env python3
"""
Latency of the full segmentation pipeline (preprocess, forward, postprocess)
on a synthetic image.
"""
from __future__ import annotations

import argparse

import numpy as np

from segengine.perception.segmentation.engine_segmenter import EngineSegmenter
from segengine.utils.config import SegmenterConfig, load_yaml
from segengine.utils.logger import setup_logger
from segengine.utils.timing import LatencyStats


def main():
    parser = argparse.ArgumentParser(description="Benchmark the segmentation pipeline")
    parser.add_argument("--config", default="configs/segmentation.yaml", help="Path to YAML config")
    parser.add_argument("--height", type=int, default=720)
    parser.add_argument("--width", type=int, default=1280)
    parser.add_argument("-n", "--iterations", type=int, default=50)
    parser.add_argument("--warmup", type=int, default=5)
    args = parser.parse_args()

    setup_logger(log_dir=None, level="WARNING")
    config = SegmenterConfig.from_dict(load_yaml(args.config))
    image = np.random.default_rng(0).integers(0, 256, (args.height, args.width, 3), dtype=np.uint8)

    stages = {}
    stats = LatencyStats()
    with EngineSegmenter(config) as segmenter:
        for _ in range(args.warmup):
            segmenter.infer(image)
        for _ in range(args.iterations):
            out = segmenter.infer(image)
            stats.add(out["latency_ms"])
            for name, ms in out["stages_ms"].items():
                stages.setdefault(name, LatencyStats()).add(ms)

    summary = stats.summary()
    print(f"\n=== segengine benchmark ({config.backend}, postprocess={config.postprocess}) ===")
    print(f"input {args.width}x{args.height} -> engine {config.max_shape}")
    print(f"total: mean {summary['mean_ms']:.2f} ms | p50 {summary['p50_ms']:.2f} ms | p95 {summary['p95_ms']:.2f} ms")
    for name, s in stages.items():
        print(f"  {name:<12} mean {s.summary()['mean_ms']:.2f} ms")


if __name__ == "__main__":
    main()
