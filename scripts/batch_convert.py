"""Convert a directory (or CSV list) of diagram images to TikZ, one session per image."""

import argparse
import asyncio
import json
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional

import pandas as pd
from tqdm import tqdm

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from capabilities import CapabilityProvider
from cli import build_pipeline
from config import Settings, configure_logging, load_settings
from geotikz.outcomes import Found

RESULTS_ROOT = Path("results/geotikz")
IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".webp", ".bmp", ".gif", ".tif", ".tiff"}


@dataclass
class ImageSample:
    diagram_id: str
    image_path: Path


def load_samples(source: Path) -> List[ImageSample]:
    """Images from a directory, or from the ``image_path`` column of a CSV."""
    samples: List[ImageSample] = []
    if source.is_dir():
        for path in sorted(source.iterdir()):
            if path.suffix.lower() in IMAGE_SUFFIXES:
                samples.append(ImageSample(diagram_id=path.stem, image_path=path))
        return samples

    df = pd.read_csv(source)
    if "image_path" not in df.columns:
        raise ValueError("CSV must contain an 'image_path' column")
    for idx, row in df.iterrows():
        value = row.get("image_path")
        if not isinstance(value, str) or not value:
            continue
        image_path = Path(value)
        if not image_path.exists():
            continue
        diagram_id = row.get("diagram_id")
        diagram_id = str(diagram_id) if not pd.isna(diagram_id) else str(idx)
        samples.append(ImageSample(diagram_id=diagram_id, image_path=image_path))
    return samples


async def convert_all(
    samples: Iterable[ImageSample],
    *,
    settings: Settings,
    concurrency: int = 4,
    results_root: Path = RESULTS_ROOT,
    provider: Optional[CapabilityProvider] = None,
) -> List[dict]:
    samples = list(samples)
    if not samples:
        print("No images to convert.")
        return []

    sem = asyncio.Semaphore(concurrency)
    provider = provider or CapabilityProvider.from_settings(settings)
    results_root.mkdir(parents=True, exist_ok=True)

    async def convert_one(sample: ImageSample) -> dict:
        cache_path = results_root / f"diagram_{sample.diagram_id}.json"
        if cache_path.exists():
            return json.loads(cache_path.read_text(encoding="utf-8"))

        async with sem:
            pipeline = build_pipeline(settings, provider=provider)
            pipeline.select_image(sample.image_path.read_bytes())
            start = time.perf_counter()
            result = await pipeline.run()
            elapsed_ms = (time.perf_counter() - start) * 1000.0

        record = {
            "diagram_id": sample.diagram_id,
            "image_path": str(sample.image_path),
            "status": result.step.value,
            "error": result.error,
            "confidence": result.confidence,
            "low_confidence": result.low_confidence,
            "generation_attempts": len(result.attempts),
            "elapsed_ms": elapsed_ms,
            "figure": result.outcome.figure.model_dump(by_alias=True) if isinstance(result.outcome, Found) else None,
            "tikz_code": result.artifact.source_code if result.artifact else None,
        }
        # failed runs are not cached so that they are retried next time
        if result.succeeded:
            (results_root / f"diagram_{sample.diagram_id}.tex").write_text(
                result.artifact.source_code, encoding="utf-8"
            )
            cache_path.write_text(json.dumps(record, indent=2), encoding="utf-8")
        return record

    tasks = [asyncio.create_task(convert_one(sample)) for sample in samples]
    records = []
    for fut in tqdm(asyncio.as_completed(tasks), total=len(tasks), desc="Converting diagrams"):
        records.append(await fut)
    return records


def write_summary(records: List[dict], path: Path) -> pd.DataFrame:
    columns = ["diagram_id", "image_path", "status", "confidence", "low_confidence",
               "generation_attempts", "elapsed_ms", "error"]
    df = pd.DataFrame.from_records(records, columns=columns).sort_values("diagram_id")
    df.to_csv(path, index=False)
    return df


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("source", type=Path, help="Directory of images or CSV with an image_path column")
    parser.add_argument("--out", type=Path, default=RESULTS_ROOT, help="Directory for per-diagram results")
    parser.add_argument("--concurrency", type=int, default=4)
    args = parser.parse_args(argv)

    settings = load_settings()
    configure_logging("WARNING")

    samples = load_samples(args.source)
    records = asyncio.run(convert_all(samples, settings=settings, concurrency=args.concurrency, results_root=args.out))
    if not records:
        return
    df = write_summary(records, args.out / "summary.csv")
    done = int((df["status"] == "done").sum())
    print(f"{done}/{len(df)} diagrams converted; summary in {args.out / 'summary.csv'}")


if __name__ == "__main__":
    main()
