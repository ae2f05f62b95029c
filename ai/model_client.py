"""
Model client abstraction for decision backends (OpenRouter/OpenAI-compatible, Anthropic, mock).

Clients only transport text: they send a system prompt plus user content and
return the raw completion. Parsing and validation live in ai.schemas.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Union

from anthropic import Anthropic
from openai import OpenAI

log = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_TEMPERATURE = 0.3
DEFAULT_MAX_TOKENS = 500


class ModelClient(ABC):
    """Abstract base class for decision backends."""

    name: str = "model"

    @abstractmethod
    def complete(self, system_prompt: str, user_content: str, timeout: float) -> str:
        """
        Request one completion.

        Args:
            system_prompt: Fixed policy prompt
            user_content: Serialized decision context
            timeout: Max time in seconds

        Returns:
            Raw response text

        Raises:
            Exception: On transport or API errors
        """


class OpenAICompatibleClient(ModelClient):
    """Chat-completions client for OpenRouter or any OpenAI-compatible endpoint."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: Optional[str] = OPENROUTER_BASE_URL,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        default_headers: Optional[Dict[str, str]] = None,
    ):
        self.model = model
        self.name = model
        self.base_url = base_url
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.client = OpenAI(api_key=api_key, base_url=base_url, default_headers=default_headers, max_retries=0)

    def complete(self, system_prompt: str, user_content: str, timeout: float) -> str:
        start = time.perf_counter()
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_content},
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                timeout=timeout,
            )
        except Exception as e:
            elapsed = time.perf_counter() - start
            log.error(f"{self.model} call failed after {elapsed*1000:.1f}ms: {e}")
            raise

        elapsed = time.perf_counter() - start
        log.info(f"{self.model} call completed in {elapsed*1000:.1f}ms")
        if not response.choices:
            raise ValueError(f"{self.model} returned no choices")
        return response.choices[0].message.content or ""


class AnthropicClient(ModelClient):
    """Anthropic Claude client implementation."""

    def __init__(
        self,
        api_key: str,
        model: str = "claude-3-5-haiku-latest",
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ):
        self.model = model
        self.name = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.client = Anthropic(api_key=api_key, max_retries=0)

    def complete(self, system_prompt: str, user_content: str, timeout: float) -> str:
        start = time.perf_counter()
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                system=system_prompt,
                messages=[{"role": "user", "content": user_content}],
                timeout=timeout,
            )
        except Exception as e:
            elapsed = time.perf_counter() - start
            log.error(f"Anthropic call failed after {elapsed*1000:.1f}ms: {e}")
            raise

        elapsed = time.perf_counter() - start
        log.info(f"Anthropic call completed in {elapsed*1000:.1f}ms")
        return "".join(block.text for block in response.content if getattr(block, "type", "") == "text")


class MockClient(ModelClient):
    """Mock client for testing and dry runs - returns fixed text or raises a scripted error."""

    def __init__(self, response: Union[str, Exception, None] = None, name: str = "mock"):
        self.response = response
        self.name = name
        self.calls: List[Dict[str, Any]] = []

    def complete(self, system_prompt: str, user_content: str, timeout: float) -> str:
        self.calls.append({"system_prompt": system_prompt, "user_content": user_content, "timeout": timeout})
        if isinstance(self.response, Exception):
            raise self.response
        if self.response is None:
            return '{"action": "WAIT", "reasoning": "Mock backend", "confidence": 0.5}'
        return self.response


def create_model_client(
    provider: str,
    api_key: Optional[str] = None,
    model: Optional[str] = None,
    **kwargs
) -> ModelClient:
    """
    Factory function to create appropriate model client.

    Args:
        provider: "openrouter", "openai", "anthropic", or "mock"
        api_key: API key for the provider
        model: Model name (provider-specific)
        **kwargs: Additional provider-specific args (base_url, temperature, max_tokens, response)

    Returns:
        ModelClient instance

    Raises:
        ValueError: If provider is unknown or a key is missing
    """
    provider = provider.lower()

    if provider in ("openrouter", "openai"):
        if not api_key:
            raise ValueError(f"{provider} backend requires api_key")
        if not model:
            raise ValueError(f"{provider} backend requires a model name")
        default_base = OPENROUTER_BASE_URL if provider == "openrouter" else None
        return OpenAICompatibleClient(
            api_key=api_key,
            model=model,
            base_url=kwargs.get("base_url") or default_base,
            temperature=kwargs.get("temperature", DEFAULT_TEMPERATURE),
            max_tokens=kwargs.get("max_tokens", DEFAULT_MAX_TOKENS),
            default_headers=kwargs.get("default_headers"),
        )

    elif provider == "anthropic":
        if not api_key:
            raise ValueError("Anthropic requires api_key")
        return AnthropicClient(
            api_key=api_key,
            model=model or "claude-3-5-haiku-latest",
            temperature=kwargs.get("temperature", DEFAULT_TEMPERATURE),
            max_tokens=kwargs.get("max_tokens", DEFAULT_MAX_TOKENS),
        )

    elif provider == "mock":
        return MockClient(response=kwargs.get("response"), name=model or "mock")

    else:
        raise ValueError(f"Unknown provider: {provider}. Use 'openrouter', 'openai', 'anthropic', or 'mock'")
