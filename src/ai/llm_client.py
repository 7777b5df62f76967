"""
InfraScope LLM Client
=====================

Abstract client for generative models.
Supports Claude (Anthropic) with OpenAI as fallback.

The model is used for:
1. Citation-bearing answer synthesis
2. Document summaries
3. Living context, connections, evolution, predictions and alignment
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional
from enum import Enum

from src.rag.retry import RetryPolicy

logger = logging.getLogger(__name__)


class LLMProvider(Enum):
    """Supported LLM providers."""
    ANTHROPIC = "anthropic"
    OPENAI = "openai"


class LLMError(Exception):
    """Raised when the model call fails after retries."""

    def __init__(self, message: str, provider: Optional[str] = None):
        self.message = message
        self.provider = provider
        super().__init__(self.message)


@dataclass
class LLMResponse:
    """Model response with usage accounting."""
    content: str
    model: str
    provider: LLMProvider
    tokens_input: int
    tokens_output: int
    cost_usd: float

    @property
    def total_tokens(self) -> int:
        return self.tokens_input + self.tokens_output


class LLMClient(ABC):
    """Abstract LLM client: free text in, free text out."""

    PRICING = {}
    DEFAULT_PRICING = {"input": 3.0, "output": 15.0}

    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        timeout: float = 45.0,
        retry_policy: Optional[RetryPolicy] = None,
        client=None,
    ):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self._client = client
        self._total_cost = 0.0

    def _calculate_cost(self, input_tokens: int, output_tokens: int) -> float:
        """Cost in USD."""
        pricing = self.PRICING.get(self.model, self.DEFAULT_PRICING)
        cost = (input_tokens * pricing["input"] + output_tokens * pricing["output"]) / 1_000_000
        return round(cost, 6)

    @property
    def total_cost(self) -> float:
        return self._total_cost

    @abstractmethod
    async def _complete(
        self,
        prompt: str,
        system: Optional[str],
        max_tokens: int,
        temperature: float,
    ) -> LLMResponse:
        """Single provider call."""

    async def generate(
        self,
        prompt: str,
        system: Optional[str] = None,
        max_tokens: int = 1024,
        temperature: float = 0.7,
    ) -> LLMResponse:
        """
        Generate a response, retrying transient failures.

        Raises:
            LLMError: once retries are exhausted
        """
        if not self.api_key and self._client is None:
            raise LLMError(f"{self.provider_name} API key required", self.provider_name)

        try:
            response = await self.retry_policy.run(
                self._complete, prompt, system, max_tokens, temperature,
                label=f"{self.provider_name} completion",
            )
        except Exception as e:
            raise LLMError(f"{self.provider_name} completion failed: {e}", self.provider_name) from e

        self._total_cost += response.cost_usd
        logger.debug(
            f"{self.model}: {response.tokens_input} in / {response.tokens_output} out "
            f"(${response.cost_usd:.4f})"
        )
        return response

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider identifier."""


class AnthropicClient(LLMClient):
    """
    Client for Claude (Anthropic).

    Available models:
    - claude-sonnet-4-20250514 (default, reasoning passes)
    - claude-3-haiku-20240307 (fast, summaries)
    """

    # Pricing per 1M tokens (USD)
    PRICING = {
        "claude-3-5-sonnet-20241022": {"input": 3.0, "output": 15.0},
        "claude-sonnet-4-20250514": {"input": 3.0, "output": 15.0},
        "claude-3-haiku-20240307": {"input": 0.25, "output": 1.25},
    }
    DEFAULT_MODEL = "claude-sonnet-4-20250514"

    @property
    def provider_name(self) -> str:
        return LLMProvider.ANTHROPIC.value

    def _get_client(self):
        """Lazy init of the Anthropic client."""
        if self._client is None:
            import anthropic
            self._client = anthropic.AsyncAnthropic(api_key=self.api_key, timeout=self.timeout)
        return self._client

    async def _complete(self, prompt, system, max_tokens, temperature) -> LLMResponse:
        client = self._get_client()

        kwargs = {
            "model": self.model,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": temperature,
        }
        if system:
            kwargs["system"] = system

        response = await client.messages.create(**kwargs)

        content = "".join(
            getattr(block, "text", "") for block in response.content
        )
        input_tokens = response.usage.input_tokens
        output_tokens = response.usage.output_tokens

        return LLMResponse(
            content=content,
            model=self.model,
            provider=LLMProvider.ANTHROPIC,
            tokens_input=input_tokens,
            tokens_output=output_tokens,
            cost_usd=self._calculate_cost(input_tokens, output_tokens),
        )


class OpenAIClient(LLMClient):
    """
    Client for OpenAI GPT.
    Used as fallback when Anthropic is not configured.
    """

    PRICING = {
        "gpt-4o": {"input": 2.5, "output": 10.0},
        "gpt-4o-mini": {"input": 0.15, "output": 0.6},
    }
    DEFAULT_PRICING = {"input": 2.5, "output": 10.0}
    DEFAULT_MODEL = "gpt-4o-mini"

    @property
    def provider_name(self) -> str:
        return LLMProvider.OPENAI.value

    def _get_client(self):
        if self._client is None:
            import openai
            self._client = openai.AsyncOpenAI(api_key=self.api_key, timeout=self.timeout)
        return self._client

    async def _complete(self, prompt, system, max_tokens, temperature) -> LLMResponse:
        client = self._get_client()

        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        response = await client.chat.completions.create(
            model=self.model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
        )

        content = response.choices[0].message.content or ""
        input_tokens = response.usage.prompt_tokens
        output_tokens = response.usage.completion_tokens

        return LLMResponse(
            content=content,
            model=self.model,
            provider=LLMProvider.OPENAI,
            tokens_input=input_tokens,
            tokens_output=output_tokens,
            cost_usd=self._calculate_cost(input_tokens, output_tokens),
        )


def get_llm_client(llm_config, retry_policy: Optional[RetryPolicy] = None) -> LLMClient:
    """
    Factory for an LLM client.

    Priority:
    1. Explicit provider
    2. ANTHROPIC_API_KEY present -> Claude
    3. OPENAI_API_KEY present -> GPT
    4. Error

    Args:
        llm_config: LLMConfig section from settings
    """
    provider = llm_config.provider
    anthropic_key = llm_config.anthropic_api_key
    openai_key = llm_config.openai_api_key

    if provider == "openai" or (not provider and openai_key and not anthropic_key):
        return OpenAIClient(
            api_key=openai_key,
            model=llm_config.model or OpenAIClient.DEFAULT_MODEL,
            timeout=llm_config.request_timeout,
            retry_policy=retry_policy,
        )

    if provider == "anthropic" or anthropic_key:
        return AnthropicClient(
            api_key=anthropic_key,
            model=llm_config.model or AnthropicClient.DEFAULT_MODEL,
            timeout=llm_config.request_timeout,
            retry_policy=retry_policy,
        )

    raise LLMError("No LLM API key found. Set ANTHROPIC_API_KEY or OPENAI_API_KEY")
