"""Shared fakes and synthetic images for the test suite."""
from __future__ import annotations

import io
import json
from types import SimpleNamespace
from typing import Any, List, Optional

from PIL import Image, ImageDraw

from geotikz.figure_schema import BoundingBox, Edge, GeometricFigure, Vertex
from geotikz.outcomes import CodeArtifact, Found
from models import BaseLLM, ModelInfo

VALID_TIKZ = "\n".join([
    r"\documentclass[tikz,border=5pt]{standalone}",
    r"\usepackage{tikz}",
    r"\begin{document}",
    r"\begin{tikzpicture}",
    r"\draw (0,0) -- (4,0) -- (2,3) -- cycle;",
    r"\end{tikzpicture}",
    r"\end{document}",
]) + "\n"


def png_bytes(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def blank_image(width: int = 200, height: int = 200, color=255) -> bytes:
    return png_bytes(Image.new("L", (width, height), color))


def triangle_image(width: int = 200, height: int = 200) -> bytes:
    image = Image.new("RGB", (width, height), (255, 255, 255))
    draw = ImageDraw.Draw(image)
    draw.line([(60, 140), (140, 140), (100, 60), (60, 140)], fill=(0, 0, 0), width=3)
    return png_bytes(image)


def framed_triangle_image(size: int = 200, border: int = 10, dash: Optional[int] = None) -> bytes:
    """Triangle inside a black frame; with ``dash`` the frame is dashed (dash on, 4px off)."""
    image = Image.new("L", (size, size), 255)
    draw = ImageDraw.Draw(image)
    if dash is None:
        draw.rectangle([0, 0, size - 1, size - 1], outline=0, width=border)
    else:
        for start in range(0, size, dash + 4):
            end = min(start + dash, size) - 1
            draw.rectangle([start, 0, end, border - 1], fill=0)
            draw.rectangle([start, size - border, end, size - 1], fill=0)
            draw.rectangle([0, start, border - 1, end], fill=0)
            draw.rectangle([size - border, start, size - 1, end], fill=0)
    draw.line([(70, 130), (130, 130), (100, 80), (70, 130)], fill=0, width=3)
    return png_bytes(image)


def triangle_figure() -> GeometricFigure:
    return GeometricFigure(
        vertices=(Vertex(label="A", x=60, y=140), Vertex(label="B", x=140, y=140), Vertex(label="C", x=100, y=60)),
        edges=(Edge(**{"from": "A", "to": "B"}), Edge(**{"from": "B", "to": "C"}), Edge(**{"from": "C", "to": "A"})),
    )


def found(box=None, confidence: float = 0.92) -> Found:
    box = box or BoundingBox(x=10, y=10, width=100, height=100)
    return Found(bounding_box=box, figure=triangle_figure(), confidence=confidence)


def extraction_payload(**overrides) -> str:
    payload = {
        "figureFound": True,
        "boundingBox": {"x": 10, "y": 10, "width": 100, "height": 100},
        "geometry": {
            "vertices": [
                {"label": "A", "x": 60, "y": 140},
                {"label": "B", "x": 140, "y": 140},
                {"label": "C", "x": 100, "y": 60},
            ],
            "edges": [
                {"from": "A", "to": "B", "style": "solid"},
                {"from": "B", "to": "C", "style": "solid"},
                {"from": "C", "to": "A", "style": "dashed"},
            ],
            "annotations": [
                {"label": "60°", "kind": "angle", "locationHint": "at vertex C, inside the triangle"},
            ],
        },
        "confidence": 0.93,
    }
    payload.update(overrides)
    return json.dumps(payload)


class FakeLLM(BaseLLM):
    """Answers each request with the next canned text and records what it was asked."""

    def __init__(self, responses: List[str], name: str = "gpt-4.1"):
        super().__init__(ModelInfo(name=name, provider="openai", supports_reasoning=False), lambda: None)
        self.responses = list(responses)
        self.calls: List[dict] = []

    async def complete_async(self, **kwargs) -> Any:
        self.calls.append(kwargs)
        text = self.responses.pop(0)
        return SimpleNamespace(
            output_text=text,
            usage={"input_tokens": 100, "output_tokens": 50, "total_tokens": 150},
        )


class StubExtractor:
    def __init__(self, outcome):
        self.outcome = outcome
        self.calls = 0

    async def extract(self, image):
        self.calls += 1
        return self.outcome


class StubGenerator:
    def __init__(self, source: str = VALID_TIKZ):
        self.source = source
        self.calls = 0

    async def generate(self, figure):
        self.calls += 1
        return CodeArtifact(source_code=self.source, attempt=1)


class StubCorrector:
    def __init__(self):
        self.calls: List[tuple] = []

    async def correct(self, artifact, diagnostic_log):
        self.calls.append((artifact, diagnostic_log))
        fixed = artifact.source_code + f"% fix {artifact.attempt + 1}\n"
        return CodeArtifact(source_code=fixed, attempt=artifact.attempt + 1)


class ScriptedVerifier:
    """Returns the scripted verdicts in order (exceptions are raised)."""

    def __init__(self, verdicts):
        self.verdicts = list(verdicts)
        self.seen: List[CodeArtifact] = []

    async def verify(self, artifact):
        self.seen.append(artifact)
        verdict = self.verdicts.pop(0)
        if isinstance(verdict, BaseException):
            raise verdict
        return verdict

