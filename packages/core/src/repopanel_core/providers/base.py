"""Base provider implementing the Template Method pattern.

All providers share the same completion algorithm:
    complete() → _call_with_retry() → _call_api()   ← only this differs per provider

Subclasses implement two things only:
  - __init__: build and store the SDK client
  - _call_api: make one raw API call and return (text, tokens_used)

Retry and backoff live here so they are defined once and inherited
consistently by every provider. Authentication failures are never retried:
a rejected key will not start working on the next attempt.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod

from repopanel_core.errors import AuthenticationFailure, classify_error

logger = logging.getLogger(__name__)

# Shared defaults; subclasses may override as class attributes if needed.
_MAX_RETRIES = 2
_MAX_TOKENS = 4096


class BaseProvider(ABC):
    MAX_RETRIES: int = _MAX_RETRIES
    MAX_TOKENS: int = _MAX_TOKENS
    TEMPERATURE: float = 0.2

    def __init__(self, api_key: str, model: str, max_retries: int | None = None):
        self.model = model
        self.max_retries = self.MAX_RETRIES if max_retries is None else max_retries

    # ------------------------------------------------------------------ #
    # Public interface                                                     #
    # ------------------------------------------------------------------ #

    async def complete(self, prompt: str, system_prompt: str | None = None) -> tuple[str, int | None]:
        """Return the model's text for one prompt plus the token count, if reported."""
        return await self._call_with_retry(system_prompt, prompt)

    # ------------------------------------------------------------------ #
    # Abstract: implement in each provider                               #
    # ------------------------------------------------------------------ #

    @abstractmethod
    async def _call_api(self, system_prompt: str | None, user_prompt: str) -> tuple[str, int | None]:
        """Make a single API call and return the raw text response and token usage.

        It should raise on failure; _call_with_retry handles retries and logging.
        """

    # ------------------------------------------------------------------ #
    # Shared implementations                                               #
    # ------------------------------------------------------------------ #

    async def _call_with_retry(self, system_prompt: str | None, user_prompt: str) -> tuple[str, int | None]:
        """Retry _call_api up to max_retries extra times with exponential backoff.

        Raises the classified failure once attempts are exhausted, or at once
        for authentication failures.
        """
        attempts = self.max_retries + 1
        for attempt in range(attempts):
            try:
                return await self._call_api(system_prompt, user_prompt)
            except Exception as e:
                failure = classify_error(e, self.model)
                if isinstance(failure, AuthenticationFailure):
                    logger.error("%s rejected credentials: %s", self.__class__.__name__, e)
                    raise failure from e
                if attempt == attempts - 1:
                    logger.error(
                        "%s API failed after %d attempts: %s",
                        self.__class__.__name__,
                        attempts,
                        e,
                    )
                    raise failure from e
                delay = 2**attempt
                logger.warning(
                    "%s API error (attempt %d/%d): %s. Retrying in %ds...",
                    self.__class__.__name__,
                    attempt + 1,
                    attempts,
                    e,
                    delay,
                )
                await asyncio.sleep(delay)
        raise AssertionError("unreachable")
