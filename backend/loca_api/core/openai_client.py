"""OpenAI SDK wrapper shared by keyword, reasoning and image-vibe calls"""

import json
import logging
from typing import Any, Dict, Optional, Union

from openai import AsyncOpenAI

from loca_api.core.config import settings
from loca_api.models.errors import ApplicationError, ErrorCode

logger = logging.getLogger(__name__)


class OpenAIClient:
    """
    Wrapper for the async OpenAI API client.

    Every caller in the pipeline treats failures from here as non-fatal, so
    all SDK and parsing errors surface as a single ApplicationError type.
    """

    def __init__(self, api_key: Optional[str] = None, client: Optional[AsyncOpenAI] = None):
        api_key = api_key if api_key is not None else settings.openai_api_key
        if client is None and not api_key:
            logger.warning("OPENAI_API_KEY not set in .env file")
        self.client = client or (AsyncOpenAI(api_key=api_key) if api_key else None)

    def _require_client(self) -> AsyncOpenAI:
        if self.client is None:
            raise ApplicationError(
                code=ErrorCode.CONFIGURATION_ERROR,
                message="OpenAI API key not configured. Please set OPENAI_API_KEY in .env file."
            )
        return self.client

    async def call_agent(
        self,
        system_prompt: str,
        user_message: Union[str, Dict[str, Any]],
        model: Optional[str] = None,
        temperature: float = 0.4,
        json_mode: bool = True,
        max_tokens: Optional[int] = None,
    ) -> Union[Dict[str, Any], str]:
        """
        Send one system + user exchange.

        Returns the parsed JSON object when json_mode is set, otherwise the
        raw text.
        """
        client = self._require_client()
        model = model or settings.openai_reasoning_model

        if isinstance(user_message, dict):
            user_message = json.dumps(user_message, indent=2)

        kwargs: Dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
            "temperature": temperature,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        if max_tokens:
            kwargs["max_tokens"] = max_tokens

        try:
            logger.debug(f"[OpenAI] Calling {model}")
            response = await client.chat.completions.create(**kwargs)
            result_text = response.choices[0].message.content or ""
            if json_mode:
                return json.loads(result_text)
            return result_text.strip()
        except Exception as e:
            raise ApplicationError(
                code=ErrorCode.PIPELINE_INTERNAL_ERROR,
                message=f"OpenAI API call failed: {str(e)}",
                retryable=True
            ) from e

    async def describe_image(
        self,
        prompt: str,
        image_url: str,
        model: Optional[str] = None,
        max_tokens: int = 60,
    ) -> str:
        """Short free-text description of one image"""
        client = self._require_client()
        model = model or settings.openai_vision_model
        try:
            response = await client.chat.completions.create(
                model=model,
                messages=[{
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": image_url, "detail": "low"}},
                    ],
                }],
                max_tokens=max_tokens,
            )
            return (response.choices[0].message.content or "").strip()
        except Exception as e:
            raise ApplicationError(
                code=ErrorCode.PIPELINE_INTERNAL_ERROR,
                message=f"OpenAI image analysis failed: {str(e)}",
                retryable=True
            ) from e

    async def close(self):
        if self.client is not None:
            await self.client.close()
