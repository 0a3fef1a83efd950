# src/app/infra/llm/base.py
"""
Abstract interface for the text-generation collaborator.
Extraction and repair only need "system prompt + messages in, text out".
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"


class TextCompletionClient(ABC):
    """
    Implementations:
    - GeminiCompletionClient: Google Gemini via google-genai
    """

    @abstractmethod
    async def complete(
        self,
        system_prompt: str,
        messages: list[dict[str, str]],
        max_tokens: int = 4096,
        deadline_seconds: Optional[float] = None,
    ) -> str:
        """
        Generate a reply to a conversation.

        Args:
            system_prompt: Instructions for the model
            messages: Ordered {"role": "user"|"assistant", "content": str} turns
            max_tokens: Upper bound on generated tokens
            deadline_seconds: Abort the call after this many seconds

        Returns:
            The generated text

        Raises:
            TransientError: rate limits, timeouts, server-side and transport failures
            ModelError: requests the provider rejects for good
        """
        pass
