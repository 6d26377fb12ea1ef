"""Abstraction layer around the Ollama REST API."""

import logging

import httpx

logger = logging.getLogger(__name__)


class LLMError(RuntimeError):
    """The model server was unreachable or answered with something unusable."""


async def generate(
    prompt: str,
    *,
    base_url: str,
    model: str,
    json_format: bool = False,
    timeout: float = 120.0,
) -> str:
    """POST ``prompt`` to ``{base_url}/api/generate`` and return the model text.

    With ``json_format`` the model is asked for JSON; the returned string still
    has to be parsed by the caller.
    """
    payload = {"model": model, "prompt": prompt, "stream": False}
    if json_format:
        payload["format"] = "json"

    async with httpx.AsyncClient(timeout=timeout) as client:
        try:
            response = await client.post(f"{base_url}/api/generate", json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error("Ollama returned HTTP %s: %s", e.response.status_code, e.response.text[:200])
            raise LLMError(f"Model server returned HTTP {e.response.status_code}") from e
        except httpx.RequestError as e:
            logger.error("Request to Ollama failed: %s", e)
            raise LLMError(f"Model server request failed: {e}") from e

    text = response.json().get("response")
    if not isinstance(text, str) or not text.strip():
        raise LLMError("Model server returned an empty response")
    return text
