import pytest
import httpx
from unittest.mock import AsyncMock, MagicMock, patch

from policyglass.services.llm import LLMError, generate


def ollama_response(payload):
    response = MagicMock()
    response.json.return_value = payload
    response.raise_for_status = MagicMock()
    return response


@pytest.mark.asyncio
@patch("httpx.AsyncClient.post", new_callable=AsyncMock)
async def test_generate_returns_model_text(mock_post):
    mock_post.return_value = ollama_response({"model": "llama3", "response": "{\"a\": 1}", "done": True})

    result = await generate("Say hi", base_url="http://ollama:11434", model="llama3", json_format=True)

    assert result == "{\"a\": 1}"
    args, kwargs = mock_post.call_args
    assert args[0] == "http://ollama:11434/api/generate"
    payload = kwargs["json"]
    assert payload["model"] == "llama3"
    assert payload["prompt"] == "Say hi"
    assert payload["stream"] is False
    assert payload["format"] == "json"


@pytest.mark.asyncio
@patch("httpx.AsyncClient.post", new_callable=AsyncMock)
async def test_generate_plain_text_has_no_format(mock_post):
    mock_post.return_value = ollama_response({"response": "hello"})

    await generate("Say hi", base_url="http://ollama:11434", model="llama3")

    assert "format" not in mock_post.call_args.kwargs["json"]


@pytest.mark.asyncio
@patch("httpx.AsyncClient.post", new_callable=AsyncMock)
async def test_generate_request_error(mock_post):
    mock_post.side_effect = httpx.RequestError("Connection failed")

    with pytest.raises(LLMError):
        await generate("x", base_url="http://ollama:11434", model="llama3")


@pytest.mark.asyncio
@patch("httpx.AsyncClient.post", new_callable=AsyncMock)
async def test_generate_http_status_error(mock_post):
    response = MagicMock()
    response.status_code = 500
    response.text = "Internal Server Error"
    response.raise_for_status.side_effect = httpx.HTTPStatusError(
        "Server error", request=MagicMock(), response=response,
    )
    mock_post.return_value = response

    with pytest.raises(LLMError, match="HTTP 500"):
        await generate("x", base_url="http://ollama:11434", model="llama3")


@pytest.mark.asyncio
@patch("httpx.AsyncClient.post", new_callable=AsyncMock)
async def test_generate_empty_response(mock_post):
    mock_post.return_value = ollama_response({"response": "   "})

    with pytest.raises(LLMError):
        await generate("x", base_url="http://ollama:11434", model="llama3")
