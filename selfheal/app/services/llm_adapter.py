"""
Vendor-neutral LLM adapter.

The reasoning provider talks to a model through this layer so the hosted
(Gemini) and on-prem (vLLM, Ollama, TGI) paths look the same to it.
"""
import hashlib
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

import httpx
from pydantic import BaseModel

from selfheal.app.core.config import Settings
from selfheal.app.core.errors import ConfigurationError
from selfheal.app.core.logging import get_logger

logger = get_logger(__name__)


class LLMResponse(BaseModel):
    """Standardised response from any LLM adapter."""
    text: str
    model_version: str
    prompt_hash: str
    timestamp: datetime
    provider: str  # "gemini", "on-prem"


class LLMAdapterConfig(BaseModel):
    provider: str
    model_name: str
    api_key: Optional[str] = None
    endpoint_url: Optional[str] = None
    max_tokens: int = 4096
    temperature: float = 0.2


class LLMAdapter(ABC):
    def __init__(self, config: LLMAdapterConfig):
        self.config = config

    @abstractmethod
    async def generate(self, prompt: str, system_prompt: Optional[str] = None) -> LLMResponse:
        """Send a prompt to the model and return a standardised response."""
        ...

    def compute_prompt_hash(self, prompt: str) -> str:
        """Short SHA-256 of the prompt, logged instead of the prompt itself."""
        return hashlib.sha256(prompt.encode()).hexdigest()[:16]

    @property
    def model_version(self) -> str:
        return f"{self.config.provider}/{self.config.model_name}"

    def _response(self, text: str, prompt: str) -> LLMResponse:
        return LLMResponse(
            text=text or "",
            model_version=self.model_version,
            prompt_hash=self.compute_prompt_hash(prompt),
            timestamp=datetime.now(timezone.utc),
            provider=self.config.provider,
        )


class GeminiAdapter(LLMAdapter):
    """Google Gemini implementation."""

    async def generate(self, prompt: str, system_prompt: Optional[str] = None) -> LLMResponse:
        from google import genai
        from google.genai import types

        client = genai.Client(api_key=self.config.api_key)
        response = await client.aio.models.generate_content(
            model=self.config.model_name,
            contents=prompt,
            config=types.GenerateContentConfig(
                system_instruction=system_prompt,
                temperature=self.config.temperature,
                max_output_tokens=self.config.max_tokens,
            ),
        )
        return self._response(response.text, prompt)


class OnPremAdapter(LLMAdapter):
    """OpenAI-compatible completions endpoint hosted on-premises."""

    def __init__(self, config: LLMAdapterConfig, transport: Optional[httpx.AsyncBaseTransport] = None,
                 timeout: float = 60.0):
        super().__init__(config)
        self._transport = transport
        self._timeout = timeout

    async def generate(self, prompt: str, system_prompt: Optional[str] = None) -> LLMResponse:
        full_prompt = f"{system_prompt}\n\n{prompt}" if system_prompt else prompt
        async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
            resp = await client.post(
                f"{self.config.endpoint_url}/v1/completions",
                json={
                    "model": self.config.model_name,
                    "prompt": full_prompt,
                    "max_tokens": self.config.max_tokens,
                    "temperature": self.config.temperature,
                },
            )
            resp.raise_for_status()
            data = resp.json()
        return self._response((data.get("choices") or [{}])[0].get("text", ""), full_prompt)


def get_adapter(settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> LLMAdapter:
    """Build the adapter named by `settings.reasoning_provider`."""
    provider = settings.reasoning_provider

    if provider == "gemini":
        if not settings.gemini_api_key:
            raise ConfigurationError("gemini_api_key is required for the gemini reasoning provider")
        return GeminiAdapter(LLMAdapterConfig(
            provider="gemini",
            model_name=settings.gemini_model,
            api_key=settings.gemini_api_key,
        ))
    elif provider == "on-prem":
        return OnPremAdapter(
            LLMAdapterConfig(
                provider="on-prem",
                model_name=settings.onprem_llm_model,
                endpoint_url=settings.onprem_llm_url,
            ),
            transport=transport,
            timeout=settings.reasoning_timeout_seconds,
        )
    else:
        raise ConfigurationError(f"Unknown reasoning provider: {provider}")
