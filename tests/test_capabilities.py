"""Parsing and prompting behaviour of the extractor, generator and corrector."""

from __future__ import annotations

import asyncio
import json

import httpx
import openai
import pytest
import together

from capabilities import (
    CapabilityProvider,
    CodeCorrector,
    CodeGenerator,
    GeometryExtractor,
    clean_response_text,
)
from conftest import VALID_TIKZ, FakeLLM, blank_image, extraction_payload, triangle_figure
from errors import (
    CapabilityTransportError,
    CorrectionFormatError,
    ExtractionFormatError,
    GenerationFormatError,
)
from geotikz.figure_schema import BoundingBox
from geotikz.outcomes import CodeArtifact, Found, NotFound
from image_processing import normalize_image


def provider_for(perception=None, generation=None, **kwargs) -> CapabilityProvider:
    return CapabilityProvider(
        perception=perception or FakeLLM([]),
        generation=generation or FakeLLM([]),
        **kwargs,
    )


def extract(text: str):
    perception = FakeLLM([text])
    extractor = GeometryExtractor(provider_for(perception))
    outcome = asyncio.run(extractor.extract(normalize_image(blank_image())))
    return outcome, perception


def source_code_json(source: str) -> str:
    return json.dumps({"sourceCode": source})


# --- extraction -----------------------------------------------------------

def test_extract_parses_found_figure():
    outcome, perception = extract(extraction_payload())

    assert isinstance(outcome, Found)
    assert outcome.bounding_box == BoundingBox(x=10, y=10, width=100, height=100)
    assert [v.label for v in outcome.figure.vertices] == ["A", "B", "C"]
    assert outcome.figure.edges[2].style == "dashed"
    assert outcome.figure.annotations[0].kind == "angle"
    assert outcome.confidence == pytest.approx(0.93)

    call = perception.calls[0]
    assert call["image_bytes"].startswith(b"\x89PNG")
    assert call["image_media_type"] == "image/png"
    assert call["reasoning_effort"] == "medium"
    assert call["response_format"]["json_schema"]["name"] == "GeometryAnalysis"


def test_extract_not_found():
    outcome, _ = extract('{"figureFound": false}')
    assert isinstance(outcome, NotFound)


def test_figure_without_vertices_counts_as_not_found():
    outcome, _ = extract(extraction_payload(geometry={"vertices": [], "edges": [], "annotations": []}))
    assert isinstance(outcome, NotFound)


@pytest.mark.parametrize("wrapped", [
    "```json\n{payload}\n```",
    "<think>the lines meet at C</think>\n{payload}",
    "  {payload}  ",
])
def test_extract_tolerates_fences_and_reasoning(wrapped):
    outcome, _ = extract(wrapped.replace("{payload}", extraction_payload()))
    assert isinstance(outcome, Found)


@pytest.mark.parametrize("text, detail", [
    ("", "empty"),
    ("I see a triangle with three vertices.", ""),
    (extraction_payload(boundingBox=None), "boundingBox"),
    (extraction_payload(confidence=1.7), "confidence"),
    (extraction_payload(confidence=None), "confidence"),
    (json.dumps({"figureFound": True, "geometry": {"vertices": [{"label": "A", "x": 1, "y": 2}],
                                                   "edges": [{"from": "A", "to": "Z"}]},
                 "boundingBox": {"x": 0, "y": 0, "width": 5, "height": 5}, "confidence": 0.9}),
     "unknown vertex 'Z'"),
    (extraction_payload(extra_field=1), "extra_field"),
])
def test_extract_rejects_malformed_payloads(text, detail):
    with pytest.raises(ExtractionFormatError) as excinfo:
        extract(text)
    message = str(excinfo.value)
    assert "geometry analysis returned an unexpected data format" in message
    assert detail in message
    assert excinfo.value.raw_text == text


# --- generation and correction -------------------------------------------

def test_generate_sends_figure_and_returns_first_attempt():
    generation = FakeLLM([source_code_json(VALID_TIKZ)])
    generator = CodeGenerator(provider_for(generation=generation))

    artifact = asyncio.run(generator.generate(triangle_figure()))

    assert artifact == CodeArtifact(source_code=VALID_TIKZ, attempt=1)
    call = generation.calls[0]
    assert '"from": "A"' in call["prompt"]
    assert "{figure_json}" not in call["prompt"]
    assert call["image_bytes"] is None
    assert call["reasoning_effort"] == "low"


def test_generate_rejects_missing_source_code():
    generator = CodeGenerator(provider_for(generation=FakeLLM(['{"sourceCode": ""}'])))
    with pytest.raises(GenerationFormatError):
        asyncio.run(generator.generate(triangle_figure()))


def test_correct_sends_code_and_log_and_bumps_attempt():
    fixed = VALID_TIKZ.replace("\\draw", "\\draw[thick]")
    generation = FakeLLM([source_code_json(fixed)])
    corrector = CodeCorrector(provider_for(generation=generation))
    broken = CodeArtifact(source_code="\\documentclass{article}\n\\begin{document}\n\\drawx\n\\end{document}\n",
                          attempt=2)

    artifact = asyncio.run(corrector.correct(broken, "! Undefined control sequence \\drawx"))

    assert artifact.attempt == 3
    assert artifact.source_code == fixed
    prompt = generation.calls[0]["prompt"]
    assert "\\drawx\n\\end{document}" in prompt
    assert "! Undefined control sequence" in prompt


def test_correct_rejects_non_json():
    corrector = CodeCorrector(provider_for(generation=FakeLLM(["\\documentclass{article}"])))
    with pytest.raises(CorrectionFormatError) as excinfo:
        asyncio.run(corrector.correct(CodeArtifact(source_code=VALID_TIKZ), "log"))
    assert "code correction" in str(excinfo.value)


# --- transport ------------------------------------------------------------

class SlowLLM(FakeLLM):
    async def complete_async(self, **kwargs):
        await asyncio.sleep(5)


class UnreachableLLM(FakeLLM):
    async def complete_async(self, **kwargs):
        raise openai.APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1/responses"))


class UnreachableTogetherLLM(FakeLLM):
    async def complete_async(self, **kwargs):
        raise together.APIConnectionError(request=httpx.Request("POST", "https://api.together.xyz/v1/chat/completions"))


class RateLimitedTogetherLLM(FakeLLM):
    async def complete_async(self, **kwargs):
        request = httpx.Request("POST", "https://api.together.xyz/v1/chat/completions")
        raise together.RateLimitError("slow down", response=httpx.Response(429, request=request), body=None)


def test_slow_service_times_out_as_transport_error():
    generator = CodeGenerator(provider_for(generation=SlowLLM([]), timeout=0.05))
    with pytest.raises(CapabilityTransportError) as excinfo:
        asyncio.run(generator.generate(triangle_figure()))
    assert "code generation" in str(excinfo.value)


def test_sdk_errors_become_friendly_transport_errors():
    extractor = GeometryExtractor(provider_for(perception=UnreachableLLM([])))
    with pytest.raises(CapabilityTransportError) as excinfo:
        asyncio.run(extractor.extract(normalize_image(blank_image())))
    assert str(excinfo.value) == "Failed to connect to the AI service. Please check your internet connection."


def test_together_errors_become_friendly_transport_errors():
    extractor = GeometryExtractor(provider_for(perception=UnreachableTogetherLLM([])))
    with pytest.raises(CapabilityTransportError) as excinfo:
        asyncio.run(extractor.extract(normalize_image(blank_image())))
    assert str(excinfo.value) == "Failed to connect to the AI service. Please check your internet connection."

    generator = CodeGenerator(provider_for(generation=RateLimitedTogetherLLM([])))
    with pytest.raises(CapabilityTransportError) as excinfo:
        asyncio.run(generator.generate(triangle_figure()))
    assert "request limit has been reached" in str(excinfo.value)


def test_clean_response_text():
    assert clean_response_text("```\n{}\n```") == "{}"
    assert clean_response_text("<think>x</think>{}") == "{}"
    assert clean_response_text(None) == ""
