"""LLM and image provider proxy for rented agents.

Every agent slug maps to one upstream provider. Providers are treated as
opaque request/response endpoints; errors surface as ProviderError.
"""

import time
from typing import Optional
import httpx
import structlog

from .config import Settings, get_settings
from .exceptions import ProviderError, UnsupportedAgentError

logger = structlog.get_logger()

OPENAI_URL = "https://api.openai.com/v1/chat/completions"
GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/{model}:generateContent"
ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
GROK_URL = "https://api.x.ai/v1/chat/completions"
DEEPSEEK_URL = "https://api.deepseek.com/v1/chat/completions"
STABILITY_URL = "https://api.stability.ai/v2beta/stable-image/generate/core"

# Specialist agents run on Gemini with a fixed persona
SPECIALIST_PROMPTS = {
    "tokenomics-analys-agent": (
        "You are a tokenomics analysis expert. Evaluate supply, emissions, "
        "vesting and incentive design, and call out sustainability risks."
    ),
    "audit-analys-agent": (
        "You are a security auditor for smart contracts. Identify "
        "vulnerabilities, rate their severity and suggest fixes."
    ),
    "article-writer-agent": (
        "You are a professional writer. Produce well-structured, engaging "
        "long-form articles in markdown."
    ),
}


class ProviderProxy:
    """Routes agent prompts to their upstream providers."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self._client = client

    async def _post(self, provider: str, url: str, **kwargs) -> httpx.Response:
        start_time = time.time()
        timeout = self.settings.provider_timeout_seconds
        try:
            if self._client is not None:
                response = await self._client.post(url, timeout=timeout, **kwargs)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(url, timeout=timeout, **kwargs)
        except httpx.HTTPError as e:
            logger.error("provider_request_failed", provider=provider, error=str(e))
            raise ProviderError(provider, str(e)) from e

        latency_ms = (time.time() - start_time) * 1000
        if response.status_code >= 400:
            logger.error(
                "provider_error",
                provider=provider,
                status=response.status_code,
                body=response.text[:200],
            )
            raise ProviderError(provider, f"HTTP {response.status_code}", response.status_code)

        logger.info("provider_call", provider=provider, latency_ms=round(latency_ms, 1))
        return response

    @staticmethod
    def _json(provider: str, response: httpx.Response) -> dict:
        try:
            data = response.json()
        except ValueError:
            logger.error("provider_invalid_json", provider=provider, body=response.text[:200])
            raise ProviderError(provider, "invalid JSON", 502)
        if not isinstance(data, dict):
            raise ProviderError(provider, "unexpected response shape", 502)
        return data

    # ============================================================
    # Routing
    # ============================================================

    async def query_llm(self, slug: str, prompt: str, system_prompt: Optional[str] = None) -> str:
        """Send ``prompt`` to the provider behind agent ``slug``."""
        if not prompt:
            raise ValueError("No prompt provided")

        if slug.startswith("gpt-"):
            return await self.call_openai(prompt, system_prompt)
        if slug.startswith("gemini-") or slug == "app-creators":
            return await self.call_gemini(prompt, system_prompt)
        if slug.startswith("claude-"):
            return await self.call_claude(prompt, system_prompt)
        if slug == "grok-2":
            return await self.call_grok(prompt, system_prompt)
        if slug == "deepseek-v3-fw":
            return await self.call_deepseek(prompt, system_prompt)
        if slug in SPECIALIST_PROMPTS:
            return await self.call_gemini(prompt, SPECIALIST_PROMPTS[slug])
        raise UnsupportedAgentError(f"Unsupported agent slug: {slug}")

    # ============================================================
    # Providers
    # ============================================================

    @staticmethod
    def _chat_messages(prompt: str, system_prompt: Optional[str]) -> list[dict]:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return messages

    async def _chat_completion(
        self,
        provider: str,
        url: str,
        api_key: str,
        model: str,
        prompt: str,
        system_prompt: Optional[str],
    ) -> str:
        """OpenAI-compatible chat completion (OpenAI, x.ai, DeepSeek)."""
        response = await self._post(
            provider,
            url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            json={
                "model": model,
                "messages": self._chat_messages(prompt, system_prompt),
                "stream": False,
            },
        )
        data = self._json(provider, response)
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = None
        if not content:
            raise ProviderError(provider, "returned no content", 502)
        return content

    async def call_openai(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        s = self.settings
        return await self._chat_completion("openai", OPENAI_URL, s.openai_api_key, s.openai_model, prompt, system_prompt)

    async def call_grok(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        s = self.settings
        system_prompt = system_prompt or "You are Grok-2, a helpful assistant."
        return await self._chat_completion("grok2", GROK_URL, s.grok2_api_key, s.grok2_model, prompt, system_prompt)

    async def call_deepseek(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        s = self.settings
        system_prompt = system_prompt or "You are a helpful assistant."
        return await self._chat_completion("deepseek", DEEPSEEK_URL, s.deepseek_api_key, s.deepseek_model, prompt, system_prompt)

    async def call_gemini(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        parts = []
        if system_prompt:
            parts.append({"text": f"[SYSTEM]: {system_prompt}"})
        parts.append({"text": prompt})

        response = await self._post(
            "gemini",
            GEMINI_URL.format(model=self.settings.gemini_model),
            params={"key": self.settings.gemini_api_key},
            json={"contents": [{"parts": parts}]},
        )
        data = self._json("gemini", response)
        try:
            return data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            raise ProviderError("gemini", "returned no content", 502)

    async def call_claude(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        payload = {
            "model": self.settings.anthropic_model,
            "max_tokens": 4096,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            payload["system"] = system_prompt

        response = await self._post(
            "anthropic",
            ANTHROPIC_URL,
            headers={
                "x-api-key": self.settings.anthropic_api_key,
                "anthropic-version": "2023-06-01",
                "Content-Type": "application/json",
            },
            json=payload,
        )
        data = self._json("anthropic", response)
        blocks = [
            b.get("text", "") for b in data.get("content") or []
            if isinstance(b, dict) and b.get("type") == "text"
        ]
        if not blocks:
            raise ProviderError("anthropic", "returned no content", 502)
        return "".join(blocks)

    async def generate_image(self, prompt: str) -> bytes:
        """Stability core image generation. Returns PNG bytes."""
        if not prompt:
            raise ValueError("No prompt provided")

        response = await self._post(
            "stability",
            STABILITY_URL,
            headers={
                "Authorization": f"Bearer {self.settings.stability_api_key}",
                "Accept": "image/*",
            },
            data={"prompt": prompt, "output_format": "png"},
            files={"none": ("", b"")},
        )
        return response.content
