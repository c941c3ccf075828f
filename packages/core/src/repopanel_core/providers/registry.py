"""Provider registry: the concrete ModelInvoker used outside tests.

Handles are dispatched on ``spec.provider``. Provider clients are built
lazily and cached per (provider, model, key) so a run that routes several
roles to the same model shares one SDK client.
"""

from __future__ import annotations

import logging
import time

from repopanel_core.errors import ProviderError
from repopanel_core.invocation import Invocation, ModelInvoker
from repopanel_core.providers.anthropic import AnthropicProvider
from repopanel_core.providers.base import BaseProvider
from repopanel_core.providers.openai import BASE_URLS, OpenAICompatibleProvider
from repopanel_core.router import ModelHandle

logger = logging.getLogger(__name__)


def build_provider(handle: ModelHandle, max_retries: int | None = None) -> BaseProvider:
    spec = handle.spec
    if spec.provider == "anthropic":
        return AnthropicProvider(api_key=handle.api_key, model=spec.model, max_retries=max_retries)
    if spec.provider in BASE_URLS:
        return OpenAICompatibleProvider(
            api_key=handle.api_key, model=spec.model, provider=spec.provider, max_retries=max_retries
        )
    raise ProviderError(f"Unsupported provider {spec.provider!r} for model {spec.id}", spec.id)


class ProviderInvoker(ModelInvoker):
    def __init__(self, max_retries: int | None = None):
        self.max_retries = max_retries
        self._providers: dict[tuple[str, str, str], BaseProvider] = {}

    @classmethod
    def from_config(cls, config: dict) -> ProviderInvoker:
        return cls(max_retries=config.get("max_retries"))

    def provider_for(self, handle: ModelHandle) -> BaseProvider:
        key = (handle.spec.provider, handle.spec.model, handle.api_key)
        if key not in self._providers:
            logger.debug("Creating %s client for %s", handle.spec.provider, handle.spec.model)
            self._providers[key] = build_provider(handle, max_retries=self.max_retries)
        return self._providers[key]

    async def invoke(self, handle: ModelHandle, prompt: str, system_prompt: str | None = None) -> Invocation:
        provider = self.provider_for(handle)
        started = time.monotonic()
        text, tokens = await provider.complete(prompt, system_prompt)
        latency_ms = int((time.monotonic() - started) * 1000)
        logger.debug("%s answered in %dms (%s tokens)", handle.model_id, latency_ms, tokens)
        return Invocation(text=text, model_id=handle.model_id, tokens_used=tokens, latency_ms=latency_ms)
