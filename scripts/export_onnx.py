#!/usr/bin/env python3
"""
Export a torchvision segmentation network to ONNX with dynamic height/width,
ready for scripts/build_engine.py.
"""
from __future__ import annotations

import argparse
from pathlib import Path

import torch
import torchvision


class _LogitsOnly(torch.nn.Module):
    """torchvision segmentation models return a dict; engines want one tensor."""

    def __init__(self, model: torch.nn.Module):
        super().__init__()
        self.model = model

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.model(x)["out"]


def export(out_path: Path, size: int, opset: int) -> None:
    model = torchvision.models.segmentation.deeplabv3_mobilenet_v3_large(weights="DEFAULT")
    model.eval()
    wrapped = _LogitsOnly(model).eval()

    out_path.parent.mkdir(parents=True, exist_ok=True)
    dummy = torch.randn(1, 3, size, size)

    torch.onnx.export(
        wrapped,
        dummy,
        str(out_path),
        opset_version=opset,
        input_names=["input"],
        output_names=["logits"],
        dynamic_axes={"input": {2: "height", 3: "width"}, "logits": {2: "height", 3: "width"}},
    )

    print(f"Segmentation model exported to {out_path}")


def main():
    parser = argparse.ArgumentParser(description="Export a segmentation network to ONNX")
    parser.add_argument("--out", default="models/deeplabv3_mobilenet.onnx", help="Output ONNX path")
    parser.add_argument("--size", type=int, default=640, help="Spatial size of the tracing input")
    parser.add_argument("--opset", type=int, default=13, help="ONNX opset version")
    args = parser.parse_args()

    export(Path(args.out), args.size, args.opset)


if __name__ == "__main__":
    main()
