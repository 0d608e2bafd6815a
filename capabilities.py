"""Perception and generation calls against the inference service.

Responses are treated as untrusted: whatever comes back is validated against
the pydantic wire models before anything downstream sees it.
"""
from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Optional, Type

import openai
import together
from pydantic import BaseModel, ValidationError

from config import Settings
from errors import (
    CapabilityFormatError,
    CapabilityTransportError,
    CorrectionFormatError,
    ExtractionFormatError,
    GenerationFormatError,
    friendly_message,
)
from geotikz.outcomes import AnalysisOutcome, CodeArtifact, Found, NotFound
from geotikz.figure_schema import GeometricFigure
from geotikz.prompts import build_prompt
from geotikz.response_schema import (
    EXTRACTION_RESPONSE_FORMAT,
    SOURCE_CODE_RESPONSE_FORMAT,
    ExtractionResponse,
    SourceCodeResponse,
)
from image_processing import NormalizedImage
from models import BaseLLM, ModelFactory

logger = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r"^```[a-zA-Z]*\s*\n(.*?)\n?```$", flags=re.DOTALL)
_RAW_TEXT_LOG_LIMIT = 500


@dataclass
class CapabilityProvider:
    """The two inference models plus the knobs every call uses.

    Built once at process start and handed to each component.
    """
    perception: BaseLLM
    generation: BaseLLM
    temperature: float = 0.0
    perception_effort: Optional[str] = "medium"
    generation_effort: Optional[str] = "low"
    timeout: float = 180.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "CapabilityProvider":
        factory = ModelFactory(
            openai_api_key=settings.openai_api_key,
            together_api_key=settings.together_api_key,
            timeout=settings.capability_timeout,
        )
        return cls(
            perception=factory.make(settings.perception_model),
            generation=factory.make(settings.generation_model),
            temperature=settings.temperature,
            perception_effort=settings.perception_effort,
            generation_effort=settings.generation_effort,
            timeout=settings.capability_timeout,
        )


def clean_response_text(text: str) -> str:
    """Strip reasoning blocks and a surrounding markdown fence."""
    cleaned = BaseLLM.strip_reasoning(text or "")
    match = _CODE_FENCE.match(cleaned)
    if match:
        cleaned = match.group(1).strip()
    return cleaned


async def call_capability(
    llm: BaseLLM,
    *,
    stage: str,
    prompt: str,
    response_format: dict,
    temperature: float,
    reasoning_effort: Optional[str],
    timeout: float,
    image_bytes: Optional[bytes] = None,
    image_media_type: str = "image/png",
) -> str:
    """One bounded request; returns the cleaned response text."""
    start = time.perf_counter()
    try:
        resp = await asyncio.wait_for(
            llm.complete_async(
                prompt=prompt,
                temperature=temperature,
                reasoning_effort=reasoning_effort,
                image_bytes=image_bytes,
                image_media_type=image_media_type,
                response_format=response_format,
            ),
            timeout=timeout,
        )
    except asyncio.TimeoutError as exc:
        raise CapabilityTransportError(
            f"The AI service did not answer the {stage} request within {timeout:.0f} seconds. Please try again."
        ) from exc
    except (openai.APIError, together.TogetherError) as exc:
        raise CapabilityTransportError(friendly_message(exc)) from exc

    elapsed_ms = (time.perf_counter() - start) * 1000.0
    usage = llm.get_token_usage(resp)
    logger.debug(
        "%s via %s took %.0f ms, tokens=%s, reasoning_tokens=%d",
        stage, llm.info.name, elapsed_ms, usage, llm.count_reasoning_tokens(resp),
    )
    return clean_response_text(llm.get_response_text(resp))


def parse_response(text: str, model: Type[BaseModel], error_cls: Type[CapabilityFormatError]) -> Any:
    if not text:
        raise error_cls("the response was empty", raw_text=text)
    try:
        return model.model_validate_json(text)
    except ValidationError as exc:
        logger.debug("Rejected %s payload: %s", model.__name__, text[:_RAW_TEXT_LOG_LIMIT])
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        detail = f"{location}: {first.get('msg', exc)}" if location else str(first.get("msg", exc))
        raise error_cls(detail, raw_text=text) from exc


class GeometryExtractor:
    """Image -> Found(box, figure, confidence) | NotFound."""

    def __init__(self, provider: CapabilityProvider):
        self.provider = provider

    async def extract(self, image: NormalizedImage) -> AnalysisOutcome:
        text = await call_capability(
            self.provider.perception,
            stage="geometry analysis",
            prompt=build_prompt("extract"),
            response_format=EXTRACTION_RESPONSE_FORMAT,
            temperature=self.provider.temperature,
            reasoning_effort=self.provider.perception_effort,
            timeout=self.provider.timeout,
            image_bytes=image.data,
            image_media_type=image.mime_type,
        )
        parsed: ExtractionResponse = parse_response(text, ExtractionResponse, ExtractionFormatError)
        return to_outcome(parsed, raw_text=text)


def to_outcome(parsed: ExtractionResponse, raw_text: Optional[str] = None) -> AnalysisOutcome:
    if not parsed.figure_found:
        return NotFound()

    missing = [
        name for name, value in (
            ("boundingBox", parsed.bounding_box),
            ("geometry", parsed.geometry),
            ("confidence", parsed.confidence),
        )
        if value is None
    ]
    if missing:
        raise ExtractionFormatError(
            f"figureFound is true but {', '.join(missing)} is missing", raw_text=raw_text
        )
    if not parsed.geometry.vertices:
        # a "figure" without a single point is nothing we can draw
        return NotFound()

    return Found(
        bounding_box=parsed.bounding_box,
        figure=parsed.geometry,
        confidence=parsed.confidence,
    )


class CodeGenerator:
    """Figure -> complete TikZ document."""

    def __init__(self, provider: CapabilityProvider):
        self.provider = provider

    async def generate(self, figure: GeometricFigure) -> CodeArtifact:
        prompt = build_prompt(
            "generate",
            figure_json=figure.model_dump_json(indent=2, by_alias=True),
        )
        text = await call_capability(
            self.provider.generation,
            stage="code generation",
            prompt=prompt,
            response_format=SOURCE_CODE_RESPONSE_FORMAT,
            temperature=self.provider.temperature,
            reasoning_effort=self.provider.generation_effort,
            timeout=self.provider.timeout,
        )
        parsed: SourceCodeResponse = parse_response(text, SourceCodeResponse, GenerationFormatError)
        return CodeArtifact(source_code=parsed.source_code.strip() + "\n", attempt=1)


class CodeCorrector:
    """(broken document, compiler log) -> complete replacement document."""

    def __init__(self, provider: CapabilityProvider):
        self.provider = provider

    async def correct(self, artifact: CodeArtifact, diagnostic_log: str) -> CodeArtifact:
        prompt = build_prompt(
            "correct",
            source_code=artifact.source_code,
            diagnostic_log=diagnostic_log or "Unknown compilation error.",
        )
        text = await call_capability(
            self.provider.generation,
            stage="code correction",
            prompt=prompt,
            response_format=SOURCE_CODE_RESPONSE_FORMAT,
            temperature=self.provider.temperature,
            reasoning_effort=self.provider.generation_effort,
            timeout=self.provider.timeout,
        )
        parsed: SourceCodeResponse = parse_response(text, SourceCodeResponse, CorrectionFormatError)
        return CodeArtifact(source_code=parsed.source_code.strip() + "\n", attempt=artifact.attempt + 1)
