"""Convert a photo or scan of a geometric diagram into compilable TikZ."""
from __future__ import annotations

import argparse
import asyncio
import dataclasses
import sys
from pathlib import Path
from typing import Callable, Optional

from capabilities import CapabilityProvider, CodeCorrector, CodeGenerator, GeometryExtractor
from compiler import build_compiler
from config import REASONING_EFFORTS, Settings, configure_logging, load_settings
from geotikz.outcomes import Found
from pipeline import DiagramPipeline, PipelineResult, PipelineStep


def build_pipeline(
    settings: Settings,
    on_progress: Optional[Callable[[PipelineStep], None]] = None,
    provider: Optional[CapabilityProvider] = None,
) -> DiagramPipeline:
    provider = provider or CapabilityProvider.from_settings(settings)
    return DiagramPipeline(
        GeometryExtractor(provider),
        CodeGenerator(provider),
        CodeCorrector(provider),
        build_compiler(settings),
        confidence_threshold=settings.confidence_threshold,
        on_progress=on_progress,
    )


def print_step(step: PipelineStep) -> None:
    if step.is_running or step is PipelineStep.DONE:
        print(f"[{step.value}] {step.label}", file=sys.stderr)


def write_outputs(result: PipelineResult, args: argparse.Namespace) -> None:
    if args.output:
        Path(args.output).write_text(result.artifact.source_code, encoding="utf-8")
        print(f"Wrote {args.output}", file=sys.stderr)
    else:
        sys.stdout.write(result.artifact.source_code)

    if args.crop_out and result.cropped_image is not None:
        Path(args.crop_out).write_bytes(result.cropped_image.data)
    if args.figure_json and isinstance(result.outcome, Found):
        Path(args.figure_json).write_text(
            result.outcome.figure.model_dump_json(indent=2, by_alias=True), encoding="utf-8"
        )


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("image", type=Path, help="PNG/JPEG photo or scan of the diagram")
    parser.add_argument("-o", "--output", type=Path, help="Write the TikZ document here instead of stdout")
    parser.add_argument("--compiler", choices=("remote", "local"), help="Verification backend")
    parser.add_argument("--perception-model", help="Model used to analyse the image")
    parser.add_argument("--generation-model", help="Model used to write and fix the code")
    parser.add_argument("--effort", choices=REASONING_EFFORTS, help="Reasoning effort for the image analysis")
    parser.add_argument("--crop-out", type=Path, help="Save the isolated figure (PNG)")
    parser.add_argument("--figure-json", type=Path, help="Save the extracted geometry (JSON)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    settings = load_settings()
    overrides = {
        "compiler": args.compiler,
        "perception_model": args.perception_model,
        "generation_model": args.generation_model,
        "perception_effort": args.effort,
    }
    settings = dataclasses.replace(settings, **{k: v for k, v in overrides.items() if v})
    configure_logging("DEBUG" if args.verbose else settings.log_level)

    if not args.image.exists():
        print(f"Image not found: {args.image}", file=sys.stderr)
        return 2

    pipeline = build_pipeline(settings, on_progress=print_step)
    pipeline.select_image(args.image.read_bytes())
    result = asyncio.run(pipeline.run())

    if result.low_confidence:
        print(f"Warning: low analysis confidence ({result.confidence:.0%}); check the drawing.", file=sys.stderr)
    if not result.succeeded:
        print(result.error, file=sys.stderr)
        return 1

    write_outputs(result, args)
    return 0


if __name__ == "__main__":
    sys.exit(main())
