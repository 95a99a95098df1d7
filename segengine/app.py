from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List

import cv2
from rich.console import Console
from tqdm import tqdm

from segengine.perception.segmentation.engine_segmenter import EngineSegmenter
from segengine.perception.segmentation.postprocess import restore_mask
from segengine.utils.config import SegmenterConfig, get, load_yaml
from segengine.utils.errors import SegEngineError
from segengine.utils.logger import setup_logger
from segengine.utils.timing import LatencyStats
from segengine.visualization.overlay import build_palette, draw_hud, draw_segmentation

IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png", ".bmp", ".tif", ".tiff", ".webp"}


def make_run_dir(base_dir: str | Path) -> Path:
    ts = datetime.now().strftime("%Y%m%d_%H%M%S")
    run_dir = Path(base_dir) / f"run_{ts}"
    run_dir.mkdir(parents=True, exist_ok=True)
    return run_dir


def collect_images(path: str | Path) -> List[Path]:
    path = Path(path)
    if path.is_dir():
        return sorted(p for p in path.iterdir() if p.suffix.lower() in IMAGE_SUFFIXES)
    if not path.exists():
        raise FileNotFoundError(f"Input not found: {path}")
    return [path]


def main(argv: List[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="segengine - semantic segmentation on a cached accelerator engine")
    parser.add_argument("--config", default="configs/segmentation.yaml", help="Path to YAML config")
    parser.add_argument("--input", required=True, help="Image file or directory of images")
    parser.add_argument("--output", default=None, help="Output directory (defaults to runtime.output_dir)")
    parser.add_argument("--backend", default=None, choices=["tensorrt", "onnxruntime"], help="Override engine.backend")
    args = parser.parse_args(argv)

    cfg: Dict[str, Any] = load_yaml(args.config)
    if args.backend:
        cfg.setdefault("engine", {})["backend"] = args.backend

    run_dir = make_run_dir(args.output or get(cfg, "runtime.output_dir", "results"))
    logger = setup_logger(log_dir=run_dir, level=get(cfg, "runtime.log_level", "INFO"))
    save_overlay = bool(get(cfg, "runtime.save_overlay", True))
    save_metrics = bool(get(cfg, "runtime.save_metrics", True))

    console = Console()
    console.print(f"[bold]segengine[/bold] run dir: {run_dir}")

    try:
        images = collect_images(args.input)
        config = SegmenterConfig.from_dict(cfg)
        segmenter = EngineSegmenter(config)
    except (SegEngineError, FileNotFoundError) as e:
        logger.error("%s", e)
        console.print(f"[bold red]fatal:[/bold red] {e}")
        return 1

    palette = build_palette(config.num_classes)
    stats = LatencyStats()
    metrics: Dict[str, Any] = {
        "project": cfg.get("project", {}),
        "engine": {"backend": config.backend, "source": segmenter.loader.source, "fp16": segmenter.loader.fp16_enabled},
        "images": [],
    }

    with segmenter:
        for image_path in tqdm(images, desc="Segmenting"):
            image = cv2.imread(str(image_path), cv2.IMREAD_COLOR)
            if image is None:
                logger.warning("Could not decode %s; skipping", image_path)
                continue
            try:
                out = segmenter.infer(image)
            except SegEngineError as e:
                logger.error("Inference failed on %s: %s", image_path, e)
                console.print(f"[bold red]fatal:[/bold red] {e}")
                return 1

            mask = out["mask"]
            stats.add(out["latency_ms"])
            cv2.imwrite(str(run_dir / f"{image_path.stem}_label.png"), mask)
            if save_overlay and mask.size:
                full = restore_mask(mask, out["meta"])
                render = draw_segmentation(image, full, palette)
                render = draw_hud(render, out["latency_ms"], out["stages_ms"])
                cv2.imwrite(str(run_dir / f"{image_path.stem}_overlay.png"), render)

            logger.info(
                "%s: %dx%d labels, %.2f ms (%s)",
                image_path.name,
                mask.shape[1] if mask.ndim == 2 else 0,
                mask.shape[0],
                out["latency_ms"],
                ", ".join(f"{k}={v:.2f}" for k, v in out["stages_ms"].items()),
            )
            metrics["images"].append(
                {
                    "image": str(image_path),
                    "shape": str(segmenter.output_shape),
                    "latency_ms": out["latency_ms"],
                    "stages_ms": out["stages_ms"],
                    "confidence": out["confidence"],
                }
            )

    metrics["latency"] = stats.summary()
    if save_metrics:
        metrics_path = run_dir / "metrics.json"
        metrics_path.write_text(json.dumps(metrics, indent=2), encoding="utf-8")
        logger.info("Saved metrics: %s", metrics_path)

    logger.info("Done. %d image(s), mean %.2f ms", stats.summary()["count"], stats.summary()["mean_ms"])
    return 0


if __name__ == "__main__":
    sys.exit(main())
