from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator


@dataclass
class StageTimer:
    """Lightweight per-stage timing for a single image."""

    stages_ms: Dict[str, float] = field(default_factory=dict)

    def mark(self, stage_name: str, stage_start_ts: float) -> None:
        self.stages_ms[stage_name] = (time.perf_counter() - stage_start_ts) * 1000.0

    @contextmanager
    def stage(self, stage_name: str) -> Iterator[None]:
        t0 = time.perf_counter()
        try:
            yield
        finally:
            self.mark(stage_name, t0)


@dataclass
class LatencyStats:
    """Running latency summary used by the CLI and benchmark script."""

    samples_ms: list = field(default_factory=list)

    def add(self, value_ms: float) -> None:
        self.samples_ms.append(float(value_ms))

    def percentile(self, q: float) -> float:
        if not self.samples_ms:
            return 0.0
        ordered = sorted(self.samples_ms)
        idx = min(len(ordered) - 1, max(0, int(round(q / 100.0 * (len(ordered) - 1)))))
        return ordered[idx]

    def summary(self) -> Dict[str, float]:
        n = len(self.samples_ms)
        return {
            "count": n,
            "mean_ms": sum(self.samples_ms) / n if n else 0.0,
            "p50_ms": self.percentile(50),
            "p95_ms": self.percentile(95),
        }
