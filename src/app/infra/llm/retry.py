from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from src.app.domain.errors import TransientError
from src.app.infra.llm.base import TextCompletionClient

logger = logging.getLogger(__name__)


class RetryingCompletionClient(TextCompletionClient):
    """
    Retries retryable ``TransientError``s from another client with exponential
    backoff. ``deadline_seconds`` bounds all attempts together, sleeps included.
    """

    def __init__(
        self,
        client: TextCompletionClient,
        max_attempts: int = 3,
        backoff_base_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._client = client
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self._sleep = sleep

    async def complete(
        self,
        system_prompt: str,
        messages: list[dict[str, str]],
        max_tokens: int = 4096,
        deadline_seconds: Optional[float] = None,
    ) -> str:
        loop = asyncio.get_running_loop()
        deadline = None if deadline_seconds is None else loop.time() + deadline_seconds

        attempt = 0
        while True:
            attempt += 1
            remaining = None if deadline is None else deadline - loop.time()
            try:
                return await self._client.complete(
                    system_prompt,
                    messages,
                    max_tokens=max_tokens,
                    deadline_seconds=remaining,
                )
            except TransientError as error:
                if not error.retryable or attempt >= self.max_attempts:
                    raise
                delay = self.backoff_base_seconds * (2 ** (attempt - 1))
                if deadline is not None and loop.time() + delay >= deadline:
                    raise
                logger.warning(
                    "llm.retry attempt=%d/%d delay=%.1fs code=%s error=%s",
                    attempt, self.max_attempts, delay, error.code, error,
                )
                await self._sleep(delay)
