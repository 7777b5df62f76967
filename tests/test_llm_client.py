"""
Tests for the LLM clients and provider selection.

SDK clients are replaced by mocks; no network calls are made.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.ai.llm_client import AnthropicClient, LLMError, OpenAIClient, get_llm_client
from src.rag.retry import NO_RETRY


class TestLLMClient:
    """Tests for provider selection and error mapping."""

    def make_config(self, **overrides):
        values = dict(
            provider=None,
            anthropic_api_key=None,
            openai_api_key=None,
            model=None,
            request_timeout=30.0,
        )
        values.update(overrides)
        return SimpleNamespace(**values)

    def test_prefers_anthropic(self):
        client = get_llm_client(self.make_config(anthropic_api_key="a", openai_api_key="o"))
        assert isinstance(client, AnthropicClient)

    def test_openai_when_only_key(self):
        client = get_llm_client(self.make_config(openai_api_key="o"))
        assert isinstance(client, OpenAIClient)
        assert client.model == "gpt-4o-mini"

    def test_explicit_provider_wins(self):
        client = get_llm_client(self.make_config(provider="openai", anthropic_api_key="a", openai_api_key="o"))
        assert isinstance(client, OpenAIClient)

    def test_no_keys(self):
        with pytest.raises(LLMError, match="No LLM API key"):
            get_llm_client(self.make_config())

    def test_provider_error_wrapped(self):
        sdk = MagicMock()
        sdk.messages.create = AsyncMock(side_effect=RuntimeError("overloaded"))
        client = AnthropicClient(api_key="a", model="claude-3-haiku-20240307", retry_policy=NO_RETRY, client=sdk)

        with pytest.raises(LLMError) as exc_info:
            asyncio.run(client.generate("hello"))
        assert exc_info.value.provider == "anthropic"

    def test_cost_tracked(self):
        sdk = MagicMock()
        sdk.messages.create = AsyncMock(return_value=SimpleNamespace(
            content=[SimpleNamespace(text="Hi")],
            usage=SimpleNamespace(input_tokens=1_000_000, output_tokens=0),
        ))
        client = AnthropicClient(api_key="a", model="claude-3-haiku-20240307", retry_policy=NO_RETRY, client=sdk)

        response = asyncio.run(client.generate("hello"))

        assert response.content == "Hi"
        assert client.total_cost == 0.25
