"""Values handed from one pipeline stage to the next.

All of them are frozen: a stage produces a new value instead of patching the
previous one, so every attempt can be logged and inspected on its own.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from geotikz.figure_schema import BoundingBox, GeometricFigure


@dataclass(frozen=True)
class Found:
    bounding_box: BoundingBox
    figure: GeometricFigure
    confidence: float


@dataclass(frozen=True)
class NotFound:
    pass


AnalysisOutcome = Union[Found, NotFound]


@dataclass(frozen=True)
class CodeArtifact:
    source_code: str
    attempt: int = 1  # 1 = initial generation, 2.. = corrections


@dataclass(frozen=True)
class Compiled:
    pass


@dataclass(frozen=True)
class Failed:
    diagnostic_log: str


VerificationVerdict = Union[Compiled, Failed]
