from __future__ import annotations

import asyncio
import logging
import os
from typing import Optional

import httpx
from google import genai
from google.genai import types
from google.genai.errors import APIError, ClientError, ServerError

from src.app.domain.errors import InvalidPayloadError, ModelError, TransientError
from src.app.infra.llm.base import ROLE_ASSISTANT, TextCompletionClient

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.5-flash"


class GeminiConfigurationError(InvalidPayloadError):
    pass


class GeminiCompletionClient(TextCompletionClient):
    def __init__(self, api_key: Optional[str] = None, model_name: Optional[str] = None) -> None:
        self.api_key = api_key or os.getenv("GEMINI_API_KEY")
        self.model_name = model_name or os.getenv("GEMINI_MODEL", DEFAULT_MODEL)
        if not self.api_key:
            raise GeminiConfigurationError("Missing Google API key.")
        self._client = genai.Client(api_key=self.api_key)

    @staticmethod
    def _to_contents(messages: list[dict[str, str]]) -> list[types.Content]:
        return [
            types.Content(
                role="model" if message.get("role") == ROLE_ASSISTANT else "user",
                parts=[types.Part(text=message.get("content", ""))],
            )
            for message in messages
        ]

    async def complete(
        self,
        system_prompt: str,
        messages: list[dict[str, str]],
        max_tokens: int = 4096,
        deadline_seconds: Optional[float] = None,
    ) -> str:
        config = types.GenerateContentConfig(
            system_instruction=system_prompt,
            max_output_tokens=max_tokens,
            temperature=0.2,
        )
        request = self._client.aio.models.generate_content(
            model=self.model_name,
            contents=self._to_contents(messages),
            config=config,
        )

        try:
            if deadline_seconds is None:
                response = await request
            else:
                response = await asyncio.wait_for(request, timeout=deadline_seconds)
        except asyncio.TimeoutError as err:
            raise TransientError(f"Gemini call exceeded {deadline_seconds}s") from err
        except ClientError as err:
            status_code = getattr(err, "code", None) or getattr(err, "status_code", None)
            message = str(err)
            if status_code == 429 or "RESOURCE_EXHAUSTED" in message:
                logger.warning("gemini.rate_limited model=%s", self.model_name)
                raise TransientError("Gemini rate limit reached", code="RATE_LIMITED") from err
            if status_code == 408:
                raise TransientError(f"Gemini request timed out: {message}") from err
            logger.error("gemini.request_rejected model=%s status=%s error=%s", self.model_name, status_code, message)
            raise ModelError(f"Gemini rejected the request: {message}") from err
        except ServerError as err:
            raise TransientError(f"Gemini server error: {err}") from err
        except APIError as err:
            raise ModelError(f"Gemini call failed: {err}") from err
        except httpx.HTTPError as err:
            raise TransientError(f"Gemini transport error: {err}") from err

        text = response.text
        if not text:
            raise ModelError("Model response did not include text content.", code="EMPTY_RESPONSE")
        return text
