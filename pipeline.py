"""Run state machine: image -> normalized image -> figure -> TikZ -> compiled TikZ.

One ``DiagramPipeline`` is one session. It runs at most one conversion at a
time and owns the bounded verify/correct loop:

    Idle -> Ready -> Preprocessing -> Analyzing -> Generating -> Verifying
    Verifying -> Correcting -> Verifying   (at most MAX_CORRECTION_ATTEMPTS times)
    Verifying -> Done | Errored

Every transition is reported through ``on_progress``. A run that has been
cancelled or superseded can no longer write to the session.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Protocol, Tuple

from errors import (
    CorrectionsExhaustedError,
    FigureNotFoundError,
    IllegalTransitionError,
    PipelineBusyError,
    PipelineError,
    RunSupersededError,
    friendly_message,
)
from geotikz.figure_schema import BoundingBox, GeometricFigure
from geotikz.outcomes import AnalysisOutcome, CodeArtifact, Compiled, Found, VerificationVerdict
from image_processing import NormalizedImage, crop_image, normalize_image, validate_bounding_box

logger = logging.getLogger(__name__)

MAX_CORRECTION_ATTEMPTS = 2
CONFIDENCE_THRESHOLD = 0.7


class PipelineStep(str, Enum):
    IDLE = "idle"
    READY = "ready"
    PREPROCESSING = "preprocessing"
    ANALYZING = "analyzing"
    GENERATING = "generating"
    VERIFYING = "verifying"
    CORRECTING = "correcting"
    DONE = "done"
    ERRORED = "errored"

    @property
    def label(self) -> str:
        return _STEP_LABELS[self]

    @property
    def is_running(self) -> bool:
        return self in _RUNNING_STEPS


_STEP_LABELS = {
    PipelineStep.IDLE: "Waiting for an image",
    PipelineStep.READY: "Ready",
    PipelineStep.PREPROCESSING: "Preprocessing Image",
    PipelineStep.ANALYZING: "Analyzing Geometry",
    PipelineStep.GENERATING: "Generating Code",
    PipelineStep.VERIFYING: "Verifying Code",
    PipelineStep.CORRECTING: "Self-Correcting",
    PipelineStep.DONE: "Completed",
    PipelineStep.ERRORED: "An Error Occurred",
}

_RUNNING_STEPS = frozenset({
    PipelineStep.PREPROCESSING,
    PipelineStep.ANALYZING,
    PipelineStep.GENERATING,
    PipelineStep.VERIFYING,
    PipelineStep.CORRECTING,
})

# running steps may additionally fall back to READY on cancellation
_TRANSITIONS = {
    PipelineStep.IDLE: {PipelineStep.READY},
    PipelineStep.READY: {PipelineStep.READY, PipelineStep.PREPROCESSING},
    PipelineStep.PREPROCESSING: {PipelineStep.ANALYZING, PipelineStep.ERRORED},
    PipelineStep.ANALYZING: {PipelineStep.GENERATING, PipelineStep.ERRORED},
    PipelineStep.GENERATING: {PipelineStep.VERIFYING, PipelineStep.ERRORED},
    PipelineStep.VERIFYING: {PipelineStep.DONE, PipelineStep.CORRECTING, PipelineStep.ERRORED},
    PipelineStep.CORRECTING: {PipelineStep.VERIFYING, PipelineStep.ERRORED},
    PipelineStep.DONE: {PipelineStep.READY, PipelineStep.PREPROCESSING},
    PipelineStep.ERRORED: {PipelineStep.READY, PipelineStep.PREPROCESSING},
}


class Extractor(Protocol):
    async def extract(self, image: NormalizedImage) -> AnalysisOutcome: ...


class Generator(Protocol):
    async def generate(self, figure: GeometricFigure) -> CodeArtifact: ...


class Corrector(Protocol):
    async def correct(self, artifact: CodeArtifact, diagnostic_log: str) -> CodeArtifact: ...


class Verifier(Protocol):
    async def verify(self, artifact: CodeArtifact) -> VerificationVerdict: ...


@dataclass(frozen=True)
class PipelineResult:
    step: PipelineStep
    outcome: Optional[AnalysisOutcome] = None
    bounding_box: Optional[BoundingBox] = None
    cropped_image: Optional[NormalizedImage] = None
    artifact: Optional[CodeArtifact] = None
    attempts: Tuple[CodeArtifact, ...] = ()
    error: Optional[str] = None
    confidence_threshold: float = CONFIDENCE_THRESHOLD

    @property
    def succeeded(self) -> bool:
        return self.step is PipelineStep.DONE

    @property
    def confidence(self) -> Optional[float]:
        return self.outcome.confidence if isinstance(self.outcome, Found) else None

    @property
    def low_confidence(self) -> bool:
        return self.confidence is not None and self.confidence < self.confidence_threshold


@dataclass
class _Run:
    """Everything one run produces; never shared with another run."""
    run_id: int
    image_bytes: bytes
    outcome: Optional[AnalysisOutcome] = None
    box: Optional[BoundingBox] = None
    artifacts: list = field(default_factory=list)
    crop_task: Optional[asyncio.Task] = None


class DiagramPipeline:
    def __init__(
        self,
        extractor: Extractor,
        generator: Generator,
        corrector: Corrector,
        verifier: Verifier,
        *,
        max_correction_attempts: int = MAX_CORRECTION_ATTEMPTS,
        confidence_threshold: float = CONFIDENCE_THRESHOLD,
        on_progress: Optional[Callable[[PipelineStep], None]] = None,
    ):
        if max_correction_attempts < 0:
            raise ValueError("max_correction_attempts must be >= 0")
        self.extractor = extractor
        self.generator = generator
        self.corrector = corrector
        self.verifier = verifier
        self.max_correction_attempts = max_correction_attempts
        self.confidence_threshold = confidence_threshold
        self.on_progress = on_progress

        self._run_ids = itertools.count(1)
        self._active_run: Optional[int] = None
        self._task: Optional[asyncio.Task] = None
        self._state = PipelineStep.IDLE
        self._image: Optional[bytes] = None
        self._failure_cause: Optional[str] = None
        self._result: Optional[PipelineResult] = None

    @property
    def state(self) -> PipelineStep:
        return self._state

    @property
    def failure_cause(self) -> Optional[str]:
        return self._failure_cause if self._state is PipelineStep.ERRORED else None

    @property
    def result(self) -> Optional[PipelineResult]:
        return self._result

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    def select_image(self, image_bytes: bytes) -> None:
        """Load a new image; any in-flight run is cancelled and prior results dropped."""
        if self.busy:
            self.cancel()
        self._image = image_bytes
        self._reset_results()
        self._transition(PipelineStep.READY)

    def cancel(self) -> bool:
        """Cancel the in-flight run, if any. The session returns to Ready."""
        if not self.busy:
            return False
        logger.info("Cancelling run %s", self._active_run)
        self._active_run = None
        self._task.cancel()
        self._task = None
        self._reset_results()
        self._state = PipelineStep.READY
        self._notify(PipelineStep.READY)
        return True

    async def run(self, *, supersede: bool = False) -> PipelineResult:
        """Convert the selected image. Raises PipelineBusyError if a run is in flight
        (unless ``supersede``), RuntimeError if no image was selected."""
        if self._image is None:
            raise RuntimeError("No image selected")
        if self.busy:
            if not supersede:
                raise PipelineBusyError("A conversion is already running")
            self.cancel()

        run = _Run(run_id=next(self._run_ids), image_bytes=self._image)
        self._active_run = run.run_id
        self._task = asyncio.current_task()
        self._reset_results()
        try:
            return await self._execute(run)
        finally:
            if self._active_run == run.run_id:
                self._task = None
            if run.crop_task is not None and not run.crop_task.done():
                run.crop_task.cancel()

    async def _execute(self, run: _Run) -> PipelineResult:
        try:
            self._advance(run, PipelineStep.PREPROCESSING)
            normalized = await asyncio.to_thread(normalize_image, run.image_bytes)

            self._advance(run, PipelineStep.ANALYZING)
            run.outcome = await self.extractor.extract(normalized)
            self._check_active(run)
            if not isinstance(run.outcome, Found):
                raise FigureNotFoundError()
            if run.outcome.confidence < self.confidence_threshold:
                logger.warning(
                    "Low confidence score: %.2f (threshold %.2f). Results may be inaccurate.",
                    run.outcome.confidence, self.confidence_threshold,
                )
            run.box = validate_bounding_box(run.outcome.bounding_box, normalized.width, normalized.height)
            # display crop only; nothing downstream waits for it until Done
            run.crop_task = asyncio.create_task(asyncio.to_thread(crop_image, normalized, run.box))

            self._advance(run, PipelineStep.GENERATING)
            artifact = await self.generator.generate(run.outcome.figure)
            run.artifacts.append(artifact)

            artifact = await self._verify_and_correct(run, artifact)

            cropped = await run.crop_task
            self._check_active(run)
            result = self._result_for(run, PipelineStep.DONE, artifact=artifact, cropped=cropped)
            self._finish(run, result)
            return result

        except (asyncio.CancelledError, RunSupersededError, IllegalTransitionError):
            raise
        except PipelineError as exc:
            logger.info("Run %d failed: %s", run.run_id, type(exc).__name__)
            return self._fail(run, exc)
        except Exception as exc:
            logger.exception("Unexpected error in run %d", run.run_id)
            return self._fail(run, exc)

    async def _verify_and_correct(self, run: _Run, artifact: CodeArtifact) -> CodeArtifact:
        verdict: Optional[VerificationVerdict] = None
        for attempt in range(self.max_correction_attempts + 1):
            self._advance(run, PipelineStep.VERIFYING)
            verdict = await self.verifier.verify(artifact)
            self._check_active(run)
            if isinstance(verdict, Compiled):
                return artifact

            if attempt == self.max_correction_attempts:
                break

            self._advance(run, PipelineStep.CORRECTING)
            artifact = await self.corrector.correct(artifact, verdict.diagnostic_log)
            self._check_active(run)
            run.artifacts.append(artifact)

        raise CorrectionsExhaustedError(len(run.artifacts), verdict.diagnostic_log)

    def _result_for(self, run: _Run, step: PipelineStep, *, artifact=None, cropped=None, error=None) -> PipelineResult:
        return PipelineResult(
            step=step,
            outcome=run.outcome,
            bounding_box=run.box,
            cropped_image=cropped,
            artifact=artifact,
            attempts=tuple(run.artifacts),
            error=error,
            confidence_threshold=self.confidence_threshold,
        )

    def _fail(self, run: _Run, exc: BaseException) -> PipelineResult:
        if run.crop_task is not None:
            if not run.crop_task.done():
                run.crop_task.cancel()
            elif not run.crop_task.cancelled() and run.crop_task.exception() is not None:
                logger.debug("Display crop of run %d failed: %r", run.run_id, run.crop_task.exception())
        self._check_active(run)
        message = friendly_message(exc)
        result = self._result_for(run, PipelineStep.ERRORED, error=message)
        self._failure_cause = message
        self._finish(run, result)
        return result

    def _finish(self, run: _Run, result: PipelineResult) -> None:
        self._check_active(run)
        self._result = result
        self._advance(run, result.step)

    def _check_active(self, run: _Run) -> None:
        if self._active_run != run.run_id:
            raise RunSupersededError(f"Run {run.run_id} was superseded")

    def _advance(self, run: _Run, step: PipelineStep) -> None:
        self._check_active(run)
        logger.info("Run %d: %s -> %s", run.run_id, self._state.value, step.value)
        self._transition(step)

    def _transition(self, step: PipelineStep) -> None:
        if step not in _TRANSITIONS[self._state]:
            raise IllegalTransitionError(f"{self._state.value} -> {step.value}")
        self._state = step
        self._notify(step)

    def _notify(self, step: PipelineStep) -> None:
        if self.on_progress is not None:
            self.on_progress(step)

    def _reset_results(self) -> None:
        self._failure_cause = None
        self._result = None
