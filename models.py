from __future__ import annotations

import asyncio
import base64
import logging
import re
import tiktoken
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional, Callable, List, Dict

import openai
from openai import OpenAI
import together
from together import Together

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_random_exponential

logger = logging.getLogger(__name__)

OPENAI_REASONING_MODELS = {"o3", "o4-mini", "gpt-5", "gpt-5-mini", "gpt-5-nano"}
TOGETHER_REASONING_MODELS = {"deepseek-ai/DeepSeek-R1", "Qwen/Qwen3-235B-A22B-Thinking-2507", "Qwen/QwQ-32B"}

TOGETHER_MODEL_ALIASES = {
    "llama-4-maverick": "meta-llama/Llama-4-Maverick-17B-128E-Instruct-FP8",
    "llama-4-scout": "meta-llama/Llama-4-Scout-17B-16E-Instruct",
    "qwen2.5-vl-72b": "Qwen/Qwen2.5-VL-72B-Instruct",
    "deepseek-r1": "deepseek-ai/DeepSeek-R1",
}

_TRANSIENT_OPENAI_ERRORS = (
    openai.APIConnectionError,  # includes APITimeoutError
    openai.RateLimitError,
    openai.InternalServerError,
)

_TRANSIENT_TOGETHER_ERRORS = (
    together.APIConnectionError,
    together.RateLimitError,
    together.InternalServerError,
)

_THINK_BLOCK = re.compile(r"<think>.*?</think>", flags=re.DOTALL | re.IGNORECASE)


@dataclass(frozen=True)
class ModelInfo:
    name: str
    provider: str                 # "openai" or "together"
    supports_reasoning: bool      # whether the model takes a reasoning effort


class BaseLLM(ABC):
    def __init__(self, info: ModelInfo,
                 get_client_sync: Callable[[], Any]):
        self.info = info
        self._get_client_sync = get_client_sync

    @staticmethod
    def _get(obj, attr, default=None):
        if obj is None:
            return default
        if isinstance(obj, dict):
            return obj.get(attr, default)
        return getattr(obj, attr, default)

    @abstractmethod
    async def complete_async(
        self,
        *,
        prompt: str,
        temperature: float = 0.0,
        reasoning_effort: Optional[str] = None,
        max_tokens: int = 32000,
        image_bytes: Optional[bytes] = None,
        image_media_type: str = "image/png",
        response_format: Optional[dict] = None,
    ) -> Any:
        """
        Return the raw SDK response object (OpenAI Responses or Together chat.completions).
        """

    @staticmethod
    def _assemble_user_content(
        prompt: str,
        image_bytes: Optional[bytes] = None,
        image_media_type: str = "image/png",
    ) -> List[Dict[str, Any]]:
        if not prompt:
            raise ValueError("Prompt text must be provided")

        content: List[Dict[str, str]] = [
            {"type": "input_text", "text": prompt}
        ]

        if image_bytes:
            b64_image = base64.b64encode(image_bytes).decode("utf-8")
            data_uri = f"data:{image_media_type};base64,{b64_image}"
            content.append({
                "type": "input_image",
                "image_url": data_uri,
            })

        return content

    def get_response_text(self, response: Any) -> str:
        """
        Extract message text from either:
          - OpenAI Responses API object, or
          - Together OpenAI-compatible chat.completions object.
        """
        txt = getattr(response, "output_text", None)
        if isinstance(txt, str) and txt:
            return txt

        output = getattr(response, "output", None) or []
        for item in output:
            if getattr(item, "type", None) == "message":
                parts = getattr(item, "content", None) or []
                texts = []
                for p in parts:
                    t = getattr(p, "text", None)
                    if t:
                        texts.append(t)
                if texts:
                    return "".join(texts)

        # Fallback for Together (OpenAI-compatible)
        choices = getattr(response, "choices", None)
        if choices and len(choices) > 0:
            msg = getattr(choices[0], "message", None)
            if msg:
                content = getattr(msg, "content", None)
                if isinstance(content, str):
                    return content

        return ""

    @staticmethod
    def strip_reasoning(text: str) -> str:
        """Drop <think>...</think> blocks that some Together reasoning models emit inline."""
        return _THINK_BLOCK.sub("", text).strip()

    def count_reasoning_tokens(self, response: Any) -> int:
        """
        - OpenAI reasoning models: response.usage.output_tokens_details.reasoning_tokens
        - Together reasoning models: count tokens inside <think>...</think>
        Returns 0 for models that do not reason.
        """
        if not self.info.supports_reasoning:
            return 0

        if self.info.provider == "openai":
            details = self._get(self._get(response, "usage"), "output_tokens_details")
            return int(self._get(details, "reasoning_tokens", 0) or 0)

        text = self.get_response_text(response)
        matches = re.findall(r"<think>(.*?)</think>", text, flags=re.DOTALL | re.IGNORECASE)
        reasoning_text = "\n".join(matches).strip()
        if not reasoning_text:
            return 0
        try:
            enc = tiktoken.encoding_for_model("gpt-4o")  # reasonable default
        except KeyError:
            enc = tiktoken.get_encoding("cl100k_base")
        return len(enc.encode(reasoning_text))

    def get_token_usage(self, response) -> dict:
        """
        Returns a normalized dict:
        {
          "input_tokens": int|None,
          "cached_tokens": int|None,  # only for OpenAI (Responses) when present
          "output_tokens": int|None,
          "total_tokens": int|None
        }
        """
        u = self._get(response, "usage")

        if self.info.provider == "openai":
            it = self._get(u, "input_tokens")
            ot = self._get(u, "output_tokens")
            itd = self._get(u, "input_tokens_details")
            cached = self._get(itd, "cached_tokens") if itd else None
            total = self._get(u, "total_tokens")
            if total is None and (it is not None and ot is not None):
                total = it + ot
            return {
                "input_tokens": it,
                "cached_tokens": cached,
                "output_tokens": ot,
                "total_tokens": total,
            }

        # Together (chat.completions) usage fields
        pt = self._get(u, "prompt_tokens")
        ct = self._get(u, "completion_tokens")
        total = self._get(u, "total_tokens")
        return {
            "input_tokens": pt,
            "cached_tokens": None,    # Together doesn't expose cached token count
            "output_tokens": ct,
            "total_tokens": total,
        }


def _convert_response_format_for_openai(rfmt: Optional[dict]) -> Optional[dict]:
    if not rfmt:
        return None
    if rfmt.get("type") != "json_schema":
        return rfmt

    json_schema_cfg = dict(rfmt.get("json_schema") or {})
    fmt: dict[str, Any] = {
        "type": "json_schema",
        "name": json_schema_cfg.get("name", "Schema"),
        "schema": json_schema_cfg.get("schema", {}),
    }
    if "strict" in json_schema_cfg:
        fmt["strict"] = json_schema_cfg.get("strict")
    if json_schema_cfg.get("description"):
        fmt["description"] = json_schema_cfg.get("description")
    return fmt


class OpenAIModel(BaseLLM):
    """
    Wrapper for OpenAI models using the Responses API.
    Works for vision models like 'gpt-4.1' and reasoning models like 'gpt-5'.
    """

    @retry(
        retry=retry_if_exception_type(_TRANSIENT_OPENAI_ERRORS),
        stop=stop_after_attempt(5),
        wait=wait_random_exponential(min=1, max=20),
        reraise=True,
    )
    async def complete_async(
        self,
        *,
        prompt: str,
        temperature: float = 0.0,
        reasoning_effort: Optional[str] = None,
        max_tokens: int = 32000,
        image_bytes: Optional[bytes] = None,
        image_media_type: str = "image/png",
        response_format: Optional[dict] = None,
    ) -> Any:
        content = self._assemble_user_content(
            prompt=prompt,
            image_bytes=image_bytes,
            image_media_type=image_media_type,
        )

        def _call_openai_sync() -> Any:
            client = self._get_client_sync()
            kwargs = dict(
                model=self.info.name,
                input=[{"role": "user", "content": content}],
                max_output_tokens=max_tokens,
            )
            if response_format:
                fmt = _convert_response_format_for_openai(response_format)
                if fmt:
                    kwargs["text"] = {"format": fmt}
            if not self.info.supports_reasoning:
                kwargs["temperature"] = temperature
            elif reasoning_effort:
                kwargs["reasoning"] = {"effort": reasoning_effort}
            return client.responses.create(**kwargs)

        return await asyncio.to_thread(_call_openai_sync)


class TogetherAIModel(BaseLLM):
    """
    Wrapper for Together models using their OpenAI-compatible chat.completions API.
    Example model: 'Qwen/Qwen2.5-VL-72B-Instruct'
    """

    @retry(
        retry=retry_if_exception_type(_TRANSIENT_TOGETHER_ERRORS),
        stop=stop_after_attempt(5),
        wait=wait_random_exponential(min=1, max=20),
        reraise=True,
    )
    async def complete_async(
        self,
        *,
        prompt: str,
        temperature: float = 0.0,
        reasoning_effort: Optional[str] = None,  # not used by Together
        max_tokens: int = 16000,
        image_bytes: Optional[bytes] = None,
        image_media_type: str = "image/png",
        response_format: Optional[dict] = None,
    ) -> Any:
        content = self._assemble_user_content(
            prompt=prompt,
            image_bytes=image_bytes,
            image_media_type=image_media_type,
        )

        def _call_together_sync() -> Any:
            client = self._get_client_sync()

            # Convert Responses-style content into chat.completions content pieces.
            chat_parts: List[Dict[str, Any]] = []
            for item in content:
                if item.get("type") == "input_text":
                    chat_parts.append({"type": "text", "text": item.get("text", "")})
                elif item.get("type") == "input_image":
                    chat_parts.append({"type": "image_url", "image_url": {"url": item.get("image_url")}})

            if len(chat_parts) == 1 and chat_parts[0].get("type") == "text":
                message_content: Any = chat_parts[0]["text"]
            else:
                message_content = chat_parts

            kwargs = {
                "model": self.info.name,
                "messages": [{"role": "user", "content": message_content}],
                "max_tokens": max_tokens,
            }
            if temperature is not None:
                kwargs["temperature"] = temperature
            if response_format:
                kwargs["response_format"] = response_format

            return client.chat.completions.create(**kwargs)

        return await asyncio.to_thread(_call_together_sync)


def is_openai_model(model_name: str) -> bool:
    name = model_name.strip().lower()
    return "/" not in name and (name.startswith("gpt") or re.match(r"^o\d", name) is not None)


class ModelFactory:
    """
    Construct the right wrapper from a model name.
    Clients are built lazily, once, from the credentials handed in.
    """

    def __init__(self, openai_api_key: Optional[str] = None,
                 together_api_key: Optional[str] = None,
                 timeout: Optional[float] = None):
        self._openai_api_key = openai_api_key
        self._together_api_key = together_api_key
        self._timeout = timeout
        self._openai_client: Optional[OpenAI] = None
        self._together_client: Optional[Together] = None

    def _openai(self) -> OpenAI:
        if self._openai_client is None:
            kwargs: Dict[str, Any] = {"api_key": self._openai_api_key}
            if self._timeout:
                kwargs["timeout"] = self._timeout
            self._openai_client = OpenAI(**kwargs)
        return self._openai_client

    def _together(self) -> Together:
        if self._together_client is None:
            self._together_client = Together(api_key=self._together_api_key)
        return self._together_client

    def make(self, model_name: str) -> BaseLLM:
        canonical = TOGETHER_MODEL_ALIASES.get(model_name.lower(), model_name)

        if is_openai_model(canonical):
            info = ModelInfo(
                name=canonical,
                provider="openai",
                supports_reasoning=(canonical in OPENAI_REASONING_MODELS),
            )
            return OpenAIModel(info, self._openai)

        # Default to Together for everything else passed here
        info = ModelInfo(
            name=canonical,
            provider="together",
            supports_reasoning=(canonical in TOGETHER_REASONING_MODELS),
        )
        return TogetherAIModel(info, self._together)
