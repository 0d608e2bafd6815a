"""Pydantic models for the structured outputs of the perception and generation services."""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, ConfigDict

from geotikz.figure_schema import BoundingBox, GeometricFigure


class ExtractionResponse(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)
    figure_found: bool = Field(alias="figureFound")
    bounding_box: Optional[BoundingBox] = Field(default=None, alias="boundingBox")
    geometry: Optional[GeometricFigure] = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class SourceCodeResponse(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)
    source_code: str = Field(min_length=1, alias="sourceCode")


class CompilerResponse(BaseModel):
    # shape returned by the remote compile endpoint
    model_config = ConfigDict(extra="ignore")
    status: str
    log: Optional[str] = None


def _response_format(name: str, model: type[BaseModel]) -> dict:
    return {
        "type": "json_schema",
        "json_schema": {
            "name": name,
            "schema": model.model_json_schema(by_alias=True),
            "strict": False,
        },
    }


EXTRACTION_RESPONSE_FORMAT = _response_format("GeometryAnalysis", ExtractionResponse)
SOURCE_CODE_RESPONSE_FORMAT = _response_format("TikzDocument", SourceCodeResponse)
