from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from core.config import ClassifierConfig
from core.errors import ClassifierTransportError
from services.classifier import SYSTEM_PROMPT, OpenAIClassifierClient

REQUEST = httpx.Request("POST", "https://llm.example.com/v1/chat/completions")


def _client(create: AsyncMock) -> OpenAIClassifierClient:
    sdk = MagicMock()
    sdk.chat.completions.create = create
    sdk.close = AsyncMock()
    return OpenAIClassifierClient(ClassifierConfig(api_key="test", timeout_seconds=5), client=sdk)


def _completion(content: str | None) -> SimpleNamespace:
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


@pytest.mark.asyncio
async def test_classify_sends_system_prompt_and_returns_content() -> None:
    create = AsyncMock(return_value=_completion('{"category": "BILLING"}'))
    client = _client(create)

    raw = await client.classify("Customer: A\nSubject: B\nComplaint: C")

    assert raw == '{"category": "BILLING"}'
    kwargs = create.await_args.kwargs
    assert kwargs["model"] == "gpt-4o-mini"
    assert kwargs["temperature"] == 0.3
    assert kwargs["max_tokens"] == 1024
    assert kwargs["messages"][0] == {"role": "system", "content": SYSTEM_PROMPT}
    assert kwargs["messages"][1]["content"].startswith("Customer: A")


@pytest.mark.asyncio
async def test_empty_choice_returns_empty_text() -> None:
    client = _client(AsyncMock(return_value=_completion(None)))
    assert await client.classify("prompt") == ""


@pytest.mark.asyncio
async def test_timeout_becomes_transport_error() -> None:
    client = _client(AsyncMock(side_effect=openai.APITimeoutError(request=REQUEST)))

    with pytest.raises(ClassifierTransportError) as info:
        await client.classify("prompt")

    assert info.value.retryable is True
    assert "timed out" in str(info.value)


@pytest.mark.asyncio
async def test_http_error_becomes_transport_error() -> None:
    response = httpx.Response(503, request=REQUEST)
    error = openai.APIStatusError("Service Unavailable", response=response, body=None)
    client = _client(AsyncMock(side_effect=error))

    with pytest.raises(ClassifierTransportError, match="HTTP 503"):
        await client.classify("prompt")


@pytest.mark.asyncio
async def test_close_closes_sdk_client() -> None:
    client = _client(AsyncMock())
    await client.close()
    client._client.close.assert_awaited_once()
