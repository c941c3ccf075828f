from __future__ import annotations

from anthropic import AsyncAnthropic
from anthropic.types import TextBlock

from repopanel_core.providers.base import BaseProvider


class AnthropicProvider(BaseProvider):
    # temperature=0.3 allows slightly more natural phrasing while keeping
    # the JSON structure stable.
    TEMPERATURE = 0.3

    def __init__(self, api_key: str, model: str, max_retries: int | None = None):
        super().__init__(api_key, model, max_retries=max_retries)
        self.client = AsyncAnthropic(api_key=api_key, max_retries=0)

    async def _call_api(self, system_prompt: str | None, user_prompt: str) -> tuple[str, int | None]:
        kwargs = {}
        if system_prompt:
            kwargs["system"] = system_prompt
        response = await self.client.messages.create(
            model=self.model,
            messages=[{"role": "user", "content": user_prompt}],
            temperature=self.TEMPERATURE,
            max_tokens=self.MAX_TOKENS,
            **kwargs,
        )
        text_blocks = [block.text for block in response.content if isinstance(block, TextBlock)]
        usage = getattr(response, "usage", None)
        tokens = None
        if usage is not None:
            tokens = (getattr(usage, "input_tokens", 0) or 0) + (getattr(usage, "output_tokens", 0) or 0)
        return "".join(text_blocks).strip(), tokens
