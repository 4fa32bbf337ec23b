"""
llm_client.py - Model provider boundary.

The agent needs two kinds of call: one multimodal (instruction + image) for
extraction and one text-only for decision synthesis. Both return the raw
model text; parsing happens in the caller.

Two implementations:
- OpenAIModelClient: chat completions over the async OpenAI SDK, image sent
  as a base64 data URL. Retries are disabled; a failed call is reported once.
- ScriptedModelClient: replays canned responses in order. Used by the CLI
  when no API key is configured and by the tests.
"""

from __future__ import annotations

import base64
import time
from collections import deque
from typing import Iterable, Optional, Protocol, Union

import openai

from config import DEFAULT_MODEL, DEFAULT_TEMPERATURE, Settings
from logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 60.0
DEFAULT_MAX_TOKENS = 800


class ModelCallError(RuntimeError):
    """Transport or provider failure while calling the model."""


class ModelClient(Protocol):
    async def complete_vision(self, prompt: str, image_bytes: bytes, mime_type: str) -> str:
        ...

    async def complete_text(self, prompt: str) -> str:
        ...


def image_data_url(image_bytes: bytes, mime_type: str) -> str:
    encoded = base64.b64encode(image_bytes).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


class OpenAIModelClient:
    """Chat-completions client for vision extraction and decision synthesis.

    Usage:
        client = OpenAIModelClient.from_settings(load_settings())
        text = await client.complete_text("Return JSON ...")
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        vision_model: str = DEFAULT_MODEL,
        decision_model: str = DEFAULT_MODEL,
        temperature: float = DEFAULT_TEMPERATURE,
        timeout: float = DEFAULT_TIMEOUT,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        client: Optional[openai.AsyncOpenAI] = None,
    ):
        self._vision_model = vision_model
        self._decision_model = decision_model
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._client = client or openai.AsyncOpenAI(
            api_key=api_key,
            timeout=timeout,
            max_retries=0,
        )
        logger.info(
            "llm_client_init | provider=openai | vision_model=%s | decision_model=%s | temperature=%.2f",
            vision_model,
            decision_model,
            temperature,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "OpenAIModelClient":
        return cls(
            api_key=settings.openai_api_key,
            vision_model=settings.vision_model,
            decision_model=settings.decision_model,
            temperature=settings.temperature,
        )

    async def complete_vision(self, prompt: str, image_bytes: bytes, mime_type: str) -> str:
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {"type": "image_url", "image_url": {"url": image_data_url(image_bytes, mime_type)}},
                ],
            }
        ]
        return await self._complete(self._vision_model, messages, kind="vision")

    async def complete_text(self, prompt: str) -> str:
        messages = [{"role": "user", "content": prompt}]
        return await self._complete(self._decision_model, messages, kind="text")

    async def _complete(self, model: str, messages: list[dict], kind: str) -> str:
        start = time.perf_counter()
        try:
            response = await self._client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=self._temperature,
                max_tokens=self._max_tokens,
            )
        except openai.OpenAIError as exc:
            logger.error(
                "llm_call_failed | kind=%s | model=%s | error_type=%s | error=%s",
                kind,
                model,
                type(exc).__name__,
                exc,
                exc_info=True,
            )
            raise ModelCallError(f"{kind} call to {model} failed: {exc}") from exc

        content = response.choices[0].message.content if response.choices else None
        logger.debug(
            "llm_call_complete | kind=%s | model=%s | chars=%d | latency_ms=%.0f",
            kind,
            model,
            len(content or ""),
            (time.perf_counter() - start) * 1000.0,
        )
        return content or ""


ScriptedReply = Union[str, Exception]


class ScriptedModelClient:
    """Replays canned replies: vision replies for extraction, text replies for synthesis.

    A reply that is an Exception instance is raised instead of returned,
    which is how tests simulate provider failures. An exhausted script raises
    ModelCallError.
    """

    def __init__(
        self,
        vision_replies: Iterable[ScriptedReply] = (),
        text_replies: Iterable[ScriptedReply] = (),
    ):
        self._vision = deque(vision_replies)
        self._text = deque(text_replies)
        self.vision_prompts: list[str] = []
        self.text_prompts: list[str] = []

    def queue_vision(self, reply: ScriptedReply) -> None:
        self._vision.append(reply)

    def queue_text(self, reply: ScriptedReply) -> None:
        self._text.append(reply)

    async def complete_vision(self, prompt: str, image_bytes: bytes, mime_type: str) -> str:
        self.vision_prompts.append(prompt)
        return self._next(self._vision, "vision")

    async def complete_text(self, prompt: str) -> str:
        self.text_prompts.append(prompt)
        return self._next(self._text, "text")

    @staticmethod
    def _next(queue: deque, kind: str) -> str:
        if not queue:
            raise ModelCallError(f"no scripted {kind} reply left")
        reply = queue.popleft()
        if isinstance(reply, Exception):
            raise reply
        return reply
