"""Image normalization, bounding-box validation and cropping.

The normalizer turns a photo or scan of a diagram into what the perception
service expects: frame removed, geometry white on black, one channel.
Everything here is pure and synchronous; the pipeline runs it in a worker
thread.
"""
from __future__ import annotations

import io
from dataclasses import dataclass

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from errors import DecodeError, DegenerateBoxError
from geotikz.figure_schema import BoundingBox

# a pixel is "dark" below this fraction of the image's mean brightness
DARK_RATIO = 0.6
# a row/column belongs to a frame when this share of it is dark
FRAME_COVERAGE = 0.95
# gaps in a dashed frame up to this many pixels are bridged
MAX_FRAME_GAP = 8
# background margin added around the detected content
CONTENT_MARGIN = 4


@dataclass(frozen=True)
class NormalizedImage:
    data: bytes
    width: int
    height: int
    mime_type: str = "image/png"

    def to_pil(self) -> Image.Image:
        return Image.open(io.BytesIO(self.data))


def _decode(raw: bytes) -> Image.Image:
    if not raw:
        raise DecodeError("empty file")
    try:
        image = Image.open(io.BytesIO(raw))
        image.load()
    except (UnidentifiedImageError, OSError, EOFError, ValueError) as exc:
        raise DecodeError(str(exc)) from exc
    # phone photos carry their rotation in EXIF
    return ImageOps.exif_transpose(image)


def _to_gray(image: Image.Image) -> Image.Image:
    if image.mode in ("RGBA", "LA", "P"):
        # transparent areas become paper, not ink
        image = image.convert("RGBA")
        background = Image.new("RGBA", image.size, (255, 255, 255, 255))
        image = Image.alpha_composite(background, image)
    return image.convert("L")


def dark_threshold(gray: np.ndarray) -> float:
    return float(gray.mean()) * DARK_RATIO


def _frame_coverage(mask: np.ndarray, max_gap: int = MAX_FRAME_GAP) -> float:
    """Share of a 1-D dark mask covered by dark pixels once short gaps are bridged."""
    idx = np.flatnonzero(mask)
    if idx.size == 0:
        return 0.0
    gaps = np.diff(idx) - 1
    bridged = int(gaps[(gaps > 0) & (gaps <= max_gap)].sum())
    return (idx.size + bridged) / mask.size


def _border_runs(lines: np.ndarray) -> tuple[int, int]:
    """Number of frame lines running in from the start and from the end of ``lines``.

    ``lines`` is a 2-D dark mask, one line per row. A run stops at the first
    line that is not frame and never crosses the middle.
    """
    half = lines.shape[0] // 2

    def is_frame(i: int) -> bool:
        return _frame_coverage(lines[i]) >= FRAME_COVERAGE

    lead = 0
    while lead < half and is_frame(lead):
        lead += 1
    trail = 0
    while trail < half and is_frame(lines.shape[0] - 1 - trail):
        trail += 1
    return lead, trail


def content_box(gray: np.ndarray) -> tuple[int, int, int, int]:
    """Return (left, top, right, bottom), exclusive, of the ink that is not part of a frame.

    Only dark lines touching the image border count as frame; a long line
    inside the drawing is geometry. Falls back to the full image when there
    is no ink.
    """
    height, width = gray.shape
    dark = gray < dark_threshold(gray)

    top, bottom_run = _border_runs(dark)
    left, right_run = _border_runs(dark.T)
    inner = dark[top:height - bottom_run, left:width - right_run]

    rows = np.flatnonzero(inner.any(axis=1))
    cols = np.flatnonzero(inner.any(axis=0))
    if rows.size == 0 or cols.size == 0:
        return 0, 0, width, height
    return (
        left + int(cols[0]),
        top + int(rows[0]),
        left + int(cols[-1]) + 1,
        top + int(rows[-1]) + 1,
    )


def normalize_image(raw: bytes) -> NormalizedImage:
    """Crop away frames and empty borders, then binarize and invert.

    Raises DecodeError when ``raw`` is not an image.
    """
    gray_image = _to_gray(_decode(raw))
    gray = np.asarray(gray_image, dtype=np.uint8)
    threshold = dark_threshold(gray)

    left, top, right, bottom = content_box(gray)
    cropped = gray_image.crop((left, top, right, bottom))
    padded = ImageOps.expand(cropped, border=CONTENT_MARGIN, fill=255)

    pixels = np.asarray(padded, dtype=np.uint8)
    inverted = np.where(pixels < threshold, 255, 0).astype(np.uint8)
    result = Image.fromarray(inverted)

    buffer = io.BytesIO()
    result.save(buffer, format="PNG")
    return NormalizedImage(data=buffer.getvalue(), width=result.width, height=result.height)


def validate_bounding_box(box: BoundingBox, image_width: int, image_height: int) -> BoundingBox:
    """Clip ``box`` to the image; raise DegenerateBoxError if nothing is left."""
    left = max(box.x, 0)
    top = max(box.y, 0)
    right = min(box.x + box.width, image_width)
    bottom = min(box.y + box.height, image_height)

    width = right - left
    height = bottom - top
    if width <= 0 or height <= 0:
        raise DegenerateBoxError(box, image_width, image_height)

    return BoundingBox(x=left, y=top, width=width, height=height)


def crop_image(image: NormalizedImage, box: BoundingBox) -> NormalizedImage:
    # box must come from validate_bounding_box()
    with image.to_pil() as pil:
        region = pil.crop((box.x, box.y, box.x + box.width, box.y + box.height))
        buffer = io.BytesIO()
        region.save(buffer, format="PNG")
    return NormalizedImage(data=buffer.getvalue(), width=box.width, height=box.height)
