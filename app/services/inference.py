# app/services/inference.py
from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import openai
from loguru import logger
from openai import AsyncOpenAI

from app.core.config import Settings
from app.core.errors import ConfigError, InferenceTimeout, ProviderError

DETECTION_PROMPT = (
    "List all visible objects in this image. Return ONLY a JSON array of objects "
    "with labels and confidence scores. "
    'Example format: [{"label": "car", "confidence": 0.95}]. '
    "No other text or markdown formatting."
)
DEFAULT_QUESTION = "What is in this image?"


class InferenceClient:
    """
    OpenAI 相容的 vision chat completions 呼叫。
    - 只打一次（max_retries=0），逾時以 timeout_sec 為上限
    - 錯誤在這裡就分類成 ConfigError / InferenceTimeout / ProviderError
    """

    def __init__(self, api_key: Optional[str], model: str = "gpt-4o-mini",
                 base_url: Optional[str] = None, timeout_sec: float = 30.0,
                 max_tokens: Optional[int] = None, client: Any = None):
        self.api_key = api_key
        self.model = model
        self.timeout_sec = timeout_sec
        self.max_tokens = max_tokens

        self._client = client
        if self._client is None and api_key:
            self._client = AsyncOpenAI(
                api_key=api_key,
                base_url=base_url,
                timeout=timeout_sec,
                max_retries=0,
            )

    @classmethod
    def from_settings(cls, settings: Settings) -> "InferenceClient":
        return cls(
            api_key=settings.OPENAI_API_KEY,
            model=settings.VISION_MODEL,
            base_url=settings.OPENAI_BASE_URL,
            timeout_sec=settings.INFERENCE_TIMEOUT_SEC,
            max_tokens=settings.VISION_MAX_TOKENS,
        )

    @staticmethod
    def build_messages(image_b64: str, prompt: str) -> List[Dict[str, Any]]:
        return [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {
                        "type": "image_url",
                        "image_url": {"url": f"data:image/jpeg;base64,{image_b64}"},
                    },
                ],
            }
        ]

    async def infer(self, image_b64: str, prompt: str) -> str:
        if not self.api_key or self._client is None:
            raise ConfigError("Inference API key is not configured")

        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": self.build_messages(image_b64, prompt),
        }
        if self.max_tokens:
            kwargs["max_tokens"] = self.max_tokens

        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(**kwargs),
                timeout=self.timeout_sec,
            )
        except (asyncio.TimeoutError, openai.APITimeoutError) as e:
            logger.warning("Inference timed out after {}s (model={})", self.timeout_sec, self.model)
            raise InferenceTimeout(self.timeout_sec) from e
        except openai.APIStatusError as e:
            message = getattr(e, "message", None) or str(e)
            logger.warning("Inference provider returned {}: {}", e.status_code, message)
            raise ProviderError(e.status_code, message) from e
        except openai.APIConnectionError as e:
            # 沒有 HTTP 狀態碼可轉，視為 bad gateway
            logger.warning("Inference provider unreachable: {}", e)
            raise ProviderError(502, "Could not reach inference provider") from e

        choices = getattr(response, "choices", None) or []
        content = choices[0].message.content if choices else None
        logger.debug("Raw model response: {}", content)
        return content or ""

    async def aclose(self) -> None:
        close = getattr(self._client, "close", None)
        if close is not None:
            await close()
