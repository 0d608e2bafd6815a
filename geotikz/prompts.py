"""Prompt loader for the perception and generation services."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

PromptMode = Literal["extract", "generate", "correct"]
_PROMPT_ROOT = Path(__file__).resolve().parent

_PROMPT_FILES = {
    "extract": _PROMPT_ROOT / "prompt_extract.md",
    "generate": _PROMPT_ROOT / "prompt_generate.md",
    "correct": _PROMPT_ROOT / "prompt_correct.md",
}

# templates contain LaTeX braces, so placeholders are substituted with str.replace
_PLACEHOLDERS = ("{figure_json}", "{source_code}", "{diagnostic_log}")


@lru_cache(maxsize=None)
def load_prompt(mode: PromptMode) -> str:
    file_path = _PROMPT_FILES.get(mode)
    if file_path is None:
        raise ValueError(f"Unsupported prompt mode: {mode}")
    try:
        return file_path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise FileNotFoundError(f"Prompt file not found for mode '{mode}': {file_path}") from exc


def available_modes() -> tuple[PromptMode, ...]:
    return ("extract", "generate", "correct")


def build_prompt(
    mode: PromptMode,
    *,
    figure_json: Optional[str] = None,
    source_code: Optional[str] = None,
    diagnostic_log: Optional[str] = None,
) -> str:
    """Return the template for ``mode`` with its placeholders filled in."""

    prompt = load_prompt(mode).rstrip()
    values = {
        "{figure_json}": figure_json,
        "{source_code}": source_code,
        "{diagnostic_log}": diagnostic_log,
    }
    for placeholder in _PLACEHOLDERS:
        if placeholder not in prompt:
            continue
        value = values[placeholder]
        if value is None:
            raise ValueError(f"Prompt mode '{mode}' requires a value for {placeholder}")
        prompt = prompt.replace(placeholder, value.strip())

    return prompt + "\n"
