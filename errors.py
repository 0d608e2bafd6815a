"""Failure taxonomy of a conversion run and the messages shown to the user."""
from __future__ import annotations

from typing import Optional

import openai
import together


class PipelineError(Exception):
    """A condition that ends a run in ``Errored``; ``str(exc)`` is shown to the user."""


class DecodeError(PipelineError):
    def __init__(self, detail: str = ""):
        message = "The uploaded file could not be read as an image. Please upload a PNG or JPEG picture."
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class CapabilityFormatError(PipelineError):
    stage = "AI service"

    def __init__(self, detail: str = "", raw_text: Optional[str] = None):
        message = (
            f"The {self.stage} returned an unexpected data format. "
            "This can happen with very complex images. Please try again."
        )
        if detail:
            message = f"{message}\nDetails: {detail}"
        super().__init__(message)
        self.raw_text = raw_text


class ExtractionFormatError(CapabilityFormatError):
    stage = "geometry analysis"


class GenerationFormatError(CapabilityFormatError):
    stage = "code generation"


class CorrectionFormatError(CapabilityFormatError):
    stage = "code correction"


class FigureNotFoundError(PipelineError):
    def __init__(self):
        super().__init__(
            "The analysis found no geometric figure in the image. "
            "Please try a different or clearer image."
        )


class DegenerateBoxError(PipelineError):
    def __init__(self, box, image_width: int, image_height: int):
        super().__init__(
            "The geometry analysis located the figure outside the image "
            f"(box x={box.x}, y={box.y}, width={box.width}, height={box.height} "
            f"on a {image_width}x{image_height} image). Please try again."
        )
        self.box = box


class CapabilityTransportError(PipelineError):
    pass


class VerificationTransportError(PipelineError):
    pass


class CorrectionsExhaustedError(PipelineError):
    def __init__(self, attempts: int, last_log: str):
        message = f"The AI failed to produce compilable LaTeX code after {attempts} attempts."
        if last_log:
            message = f"{message}\n\n--- Final Compilation Log ---\n{last_log}"
        super().__init__(message)
        self.attempts = attempts
        self.last_log = last_log


class PipelineBusyError(RuntimeError):
    pass


class IllegalTransitionError(RuntimeError):
    pass


class RunSupersededError(RuntimeError):
    pass


def friendly_message(error: BaseException) -> str:
    """Turn any exception into a message suitable for the ``Errored`` state."""
    if isinstance(error, PipelineError):
        return str(error)

    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError,
                          together.AuthenticationError, together.PermissionDeniedError)):
        return "Authentication failed. Please ensure the API key is valid and has the necessary permissions."
    if isinstance(error, (openai.RateLimitError, together.RateLimitError)):
        return "The request limit has been reached. Please wait a while before trying again."
    if isinstance(error, (openai.APIConnectionError, together.APIConnectionError, ConnectionError)):
        return "Failed to connect to the AI service. Please check your internet connection."

    text = str(error).lower()
    if "api key not valid" in text or "permission denied" in text:
        return "Authentication failed. Please ensure the API key is valid and has the necessary permissions."
    if "quota" in text or "rate limit" in text:
        return "The request limit has been reached. Please wait a while before trying again."

    if str(error):
        return f"An unexpected error occurred: {error}"
    return f"An unexpected error occurred: {type(error).__name__}"
