"""Process-wide settings, read once from the environment (and ``.env``)."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

DEFAULT_COMPILER_URL = "https://rtex.probablya.dev/api/v2/compile"
REASONING_EFFORTS = ("low", "medium", "high")
COMPILER_BACKENDS = ("remote", "local")
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass(frozen=True)
class Settings:
    openai_api_key: Optional[str] = None
    together_api_key: Optional[str] = None
    perception_model: str = "gpt-5"
    generation_model: str = "gpt-5"
    perception_effort: str = "medium"
    generation_effort: str = "low"
    temperature: float = 0.0
    capability_timeout: float = 180.0
    compiler: str = "remote"
    compiler_url: str = DEFAULT_COMPILER_URL
    compiler_name: str = "pdflatex"
    compile_timeout: float = 60.0
    compile_retries: int = 3
    latex_engine: str = "lualatex"
    latex_work_dir: Optional[str] = None
    confidence_threshold: float = 0.7
    log_level: str = "INFO"


def _number(env: Mapping[str, str], name: str, default, cast):
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = cast(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if value < 0:
        raise ValueError(f"{name} must not be negative, got {raw!r}")
    return value


def _choice(env: Mapping[str, str], name: str, default: str, choices: tuple[str, ...]) -> str:
    value = (env.get(name) or default).strip().lower()
    if value not in choices:
        raise ValueError(f"{name} must be one of {', '.join(choices)}, got {value!r}")
    return value


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build :class:`Settings` from ``env`` (default: ``os.environ`` after loading ``.env``)."""
    if env is None:
        load_dotenv()
        env = os.environ

    defaults = Settings()
    return Settings(
        openai_api_key=env.get("OPENAI_API_KEY") or None,
        together_api_key=env.get("TOGETHER_API_KEY") or None,
        perception_model=env.get("GEOTIKZ_PERCEPTION_MODEL") or defaults.perception_model,
        generation_model=env.get("GEOTIKZ_GENERATION_MODEL") or defaults.generation_model,
        perception_effort=_choice(env, "GEOTIKZ_PERCEPTION_EFFORT", defaults.perception_effort, REASONING_EFFORTS),
        generation_effort=_choice(env, "GEOTIKZ_GENERATION_EFFORT", defaults.generation_effort, REASONING_EFFORTS),
        temperature=_number(env, "GEOTIKZ_TEMPERATURE", defaults.temperature, float),
        capability_timeout=_number(env, "GEOTIKZ_CAPABILITY_TIMEOUT", defaults.capability_timeout, float),
        compiler=_choice(env, "GEOTIKZ_COMPILER", defaults.compiler, COMPILER_BACKENDS),
        compiler_url=env.get("GEOTIKZ_COMPILER_URL") or defaults.compiler_url,
        compiler_name=env.get("GEOTIKZ_COMPILER_NAME") or defaults.compiler_name,
        compile_timeout=_number(env, "GEOTIKZ_COMPILE_TIMEOUT", defaults.compile_timeout, float),
        compile_retries=max(1, _number(env, "GEOTIKZ_COMPILE_RETRIES", defaults.compile_retries, int)),
        latex_engine=env.get("LATEX_ENGINE") or defaults.latex_engine,
        latex_work_dir=env.get("GEOTIKZ_LATEX_WORKDIR") or None,
        confidence_threshold=_number(env, "GEOTIKZ_CONFIDENCE_THRESHOLD", defaults.confidence_threshold, float),
        log_level=(env.get("GEOTIKZ_LOG_LEVEL") or defaults.log_level).upper(),
    )


def configure_logging(level: str = "INFO") -> None:
    """Install one stream handler on the root logger; safe to call more than once."""
    root = logging.getLogger()
    root.setLevel(level)
    if not any(getattr(h, "_geotikz", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._geotikz = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    # the SDK clients log every request at INFO
    for noisy in ("httpx", "openai"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
