"""Compile generated TikZ documents and report a verdict.

Two backends: a remote compile endpoint (JSON over HTTP) and a local LaTeX
engine. Both return ``Compiled`` or ``Failed(log)`` and raise
``VerificationTransportError`` when no usable verdict could be obtained.
"""
from __future__ import annotations

import asyncio
import json
import logging
import pathlib
import re
import subprocess
import tempfile
import uuid
from abc import ABC, abstractmethod
from typing import Optional

import httpx
from pydantic import ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from config import Settings
from errors import VerificationTransportError
from geotikz.outcomes import CodeArtifact, Compiled, Failed, VerificationVerdict
from geotikz.response_schema import CompilerResponse

logger = logging.getLogger(__name__)

ARTIFACT_PREFIX = "artifact_"
LOG_EXCERPT_LINES = 40

# "\\" line breaks go first so that "\\{" keeps its group brace
_LINE_BREAK = re.compile(r"\\\\")
_COMMENT = re.compile(r"(?<!\\)%.*$", flags=re.MULTILINE)
_ESCAPED_BRACE = re.compile(r"\\[{}]")


def preflight_latex(source: str) -> Optional[str]:
    """Cheap structural checks; returns a problem description or None."""
    body = _ESCAPED_BRACE.sub("", _COMMENT.sub("", _LINE_BREAK.sub("", source)))
    problems = []
    if "\\documentclass" not in body:
        problems.append("missing \\documentclass (the document must be complete)")
    pairs = [
        ("\\begin{document}", "\\end{document}"),
        ("\\begin{tikzpicture}", "\\end{tikzpicture}"),
    ]
    for begin, end in pairs:
        if body.count(begin) != body.count(end):
            problems.append(f"environment not balanced: {begin} x{body.count(begin)} vs {end} x{body.count(end)}")
    if "\\begin{document}" not in body:
        problems.append("missing \\begin{document}")
    opened, closed = body.count("{"), body.count("}")
    if opened != closed:
        problems.append(f"curly braces not balanced: {opened} '{{' vs {closed} '}}'")
    if not problems:
        return None
    return "Preflight check failed:\n" + "\n".join(f"- {p}" for p in problems)


def log_excerpt(log_text: str, max_lines: int = LOG_EXCERPT_LINES) -> str:
    """The part of a TeX log worth showing: from the first '!' error, else the tail."""
    lines = log_text.splitlines()
    for i, line in enumerate(lines):
        if line.startswith("!"):
            return "\n".join(lines[i:i + max_lines]).strip()
    return "\n".join(lines[-max_lines:]).strip()


class Compiler(ABC):
    async def verify(self, artifact: CodeArtifact) -> VerificationVerdict:
        problem = preflight_latex(artifact.source_code)
        if problem:
            logger.warning("Attempt %d rejected before compiling: %s", artifact.attempt, problem.splitlines()[1])
            return Failed(diagnostic_log=problem)
        verdict = await self._compile(artifact)
        if isinstance(verdict, Compiled):
            logger.info("Attempt %d compiled", artifact.attempt)
        else:
            first = verdict.diagnostic_log.splitlines()[0] if verdict.diagnostic_log else ""
            logger.warning("Attempt %d failed to compile: %s", artifact.attempt, first)
        return verdict

    @abstractmethod
    async def _compile(self, artifact: CodeArtifact) -> VerificationVerdict:
        ...


class RemoteLatexCompiler(Compiler):
    """Posts ``{code, compiler}`` to a compile endpoint answering ``{status, log}``."""

    def __init__(
        self,
        url: str,
        *,
        compiler_name: str = "pdflatex",
        timeout: float = 60.0,
        max_attempts: int = 3,
        wait=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.compiler_name = compiler_name
        self.timeout = timeout
        self.max_attempts = max_attempts
        self._wait = wait if wait is not None else wait_random_exponential(min=1, max=10)
        self._transport = transport

    async def _compile(self, artifact: CodeArtifact) -> VerificationVerdict:
        # transport failures are retried here and never cost a correction attempt
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(VerificationTransportError),
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait,
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning("Retrying compile request (transport attempt %d)", attempt.retry_state.attempt_number)
                return await self._submit(artifact.source_code)

    async def _submit(self, source_code: str) -> VerificationVerdict:
        payload = {"code": source_code, "compiler": self.compiler_name}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, json=payload)
        except httpx.TimeoutException as exc:
            raise VerificationTransportError(
                f"The LaTeX compilation service did not answer within {self.timeout:.0f} seconds."
            ) from exc
        except httpx.HTTPError as exc:
            raise VerificationTransportError(f"Failed to connect to the LaTeX compilation service: {exc}") from exc

        if response.status_code >= 400:
            raise VerificationTransportError(
                f"The compilation service returned an error: {response.status_code} {response.reason_phrase}"
            )
        return parse_compiler_response(response.text)


def parse_compiler_response(text: str) -> VerificationVerdict:
    stripped = text.strip()
    if stripped.lower().startswith(("<!doctype html", "<html")):
        logger.error("Compiler answered with an HTML page: %s", stripped[:200])
        raise VerificationTransportError(
            "The LaTeX verification service is currently unavailable or blocked by a security check."
        )
    try:
        result = CompilerResponse.model_validate(json.loads(stripped))
    except (json.JSONDecodeError, ValidationError) as exc:
        raise VerificationTransportError(
            "The LaTeX verification service returned an unreadable response."
        ) from exc

    status = result.status.lower()
    if status == "success":
        return Compiled()
    if status == "error":
        return Failed(diagnostic_log=(result.log or "").strip() or "Unknown compilation error.")
    raise VerificationTransportError(f"The LaTeX verification service returned an unknown status '{result.status}'.")


class LocalLatexCompiler(Compiler):
    """Runs a local LaTeX engine (lualatex by default) on the artifact."""

    def __init__(self, engine: str = "lualatex", *, timeout: float = 60.0,
                 work_dir: Optional[pathlib.Path] = None):
        self.engine = engine
        self.timeout = timeout
        self.work_dir = work_dir

    async def _compile(self, artifact: CodeArtifact) -> VerificationVerdict:
        return await asyncio.to_thread(self._compile_sync, artifact)

    def _compile_sync(self, artifact: CodeArtifact) -> VerificationVerdict:
        if self.work_dir is not None:
            self.work_dir.mkdir(parents=True, exist_ok=True)
            return self._run_engine(artifact, self.work_dir)
        with tempfile.TemporaryDirectory(prefix="geotikz_") as tmp:
            return self._run_engine(artifact, pathlib.Path(tmp))

    def _run_engine(self, artifact: CodeArtifact, out_dir: pathlib.Path) -> VerificationVerdict:
        tex_path = out_dir / f"{ARTIFACT_PREFIX}{artifact.attempt}_{uuid.uuid4().hex[:8]}.tex"
        tex_path.write_text(artifact.source_code, encoding="utf-8")
        try:
            proc = subprocess.run(
                [self.engine, "-interaction=nonstopmode", "-halt-on-error",
                 "-output-directory", str(out_dir), str(tex_path)],
                stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                timeout=self.timeout, check=False,
            )
        except FileNotFoundError as exc:
            raise VerificationTransportError(f"LaTeX engine '{self.engine}' is not installed.") from exc
        except subprocess.TimeoutExpired as exc:
            raise VerificationTransportError(
                f"LaTeX engine '{self.engine}' did not finish within {self.timeout:.0f} seconds."
            ) from exc

        if proc.returncode == 0 and tex_path.with_suffix(".pdf").exists():
            return Compiled()

        log_path = tex_path.with_suffix(".log")
        if log_path.exists():
            log_text = log_path.read_text(encoding="utf-8", errors="replace")
        else:
            log_text = proc.stdout.decode("utf-8", errors="replace")
        return Failed(diagnostic_log=log_excerpt(log_text) or "Unknown compilation error.")


def build_compiler(settings: Settings) -> Compiler:
    if settings.compiler == "local":
        work_dir = pathlib.Path(settings.latex_work_dir) if settings.latex_work_dir else None
        return LocalLatexCompiler(settings.latex_engine, timeout=settings.compile_timeout, work_dir=work_dir)
    return RemoteLatexCompiler(
        settings.compiler_url,
        compiler_name=settings.compiler_name,
        timeout=settings.compile_timeout,
        max_attempts=settings.compile_retries,
    )
