from __future__ import annotations

from openai import AsyncOpenAI

from repopanel_core.providers.base import BaseProvider

# Providers that speak the OpenAI chat-completions protocol. None = SDK default.
BASE_URLS: dict[str, str | None] = {
    "openai": None,
    "deepseek": "https://api.deepseek.com",
    "gemini": "https://generativelanguage.googleapis.com/v1beta/openai/",
    "perplexity": "https://api.perplexity.ai",
    "moonshot": "https://api.moonshot.ai/v1",
}


class OpenAICompatibleProvider(BaseProvider):
    # temperature=0.2 leans toward deterministic, structured JSON output.
    TEMPERATURE = 0.2

    def __init__(self, api_key: str, model: str, provider: str = "openai", max_retries: int | None = None):
        super().__init__(api_key, model, max_retries=max_retries)
        if provider not in BASE_URLS:
            raise ValueError(f"Provider {provider!r} is not OpenAI-compatible")
        self.provider = provider
        # SDK-level retries are disabled; BaseProvider owns the retry policy.
        self.client = AsyncOpenAI(api_key=api_key, base_url=BASE_URLS[provider], max_retries=0)

    async def _call_api(self, system_prompt: str | None, user_prompt: str) -> tuple[str, int | None]:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_prompt})

        response = await self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=self.TEMPERATURE,
            max_tokens=self.MAX_TOKENS,
        )
        text = response.choices[0].message.content or ""
        usage = getattr(response, "usage", None)
        return text, getattr(usage, "total_tokens", None)
