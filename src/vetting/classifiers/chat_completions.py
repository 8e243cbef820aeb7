"""JSON chat completions over the OpenAI-compatible API (OpenAI and Groq)."""

import logging
from typing import Optional

import openai
from openai import AsyncOpenAI

from src.vetting.classifiers.base import (
    ClassifierError,
    ClassifierRateLimitError,
    ModelUnavailableError,
    is_model_unavailable_message,
)

logger = logging.getLogger(__name__)

UNAVAILABLE_CODES = ("model_decommissioned", "model_not_found")


def _retry_after(error: openai.APIStatusError) -> Optional[float]:
    value = error.response.headers.get("retry-after") if error.response is not None else None
    if not value:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _is_model_unavailable(error: openai.APIStatusError) -> bool:
    if getattr(error, "code", None) in UNAVAILABLE_CODES:
        return True
    return is_model_unavailable_message(str(error))


async def complete_json(
    client: AsyncOpenAI,
    *,
    backend: str,
    model: str,
    prompt: str,
    system_prompt: str = "",
    temperature: float = 0.3,
    timeout: float = 30.0,
) -> str:
    """
    Request a JSON object completion and return its raw text.

    Raises:
        ClassifierRateLimitError: On 429, with the Retry-After hint if sent.
        ModelUnavailableError: When the model is decommissioned or unknown.
        ClassifierError: When the response has no content.
    """
    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": prompt})

    try:
        response = await client.chat.completions.create(
            model=model,
            messages=messages,
            response_format={"type": "json_object"},
            temperature=temperature,
            timeout=timeout,
        )
    except openai.RateLimitError as e:
        raise ClassifierRateLimitError(
            f"{backend}: rate limited on {model}", retry_after=_retry_after(e)
        ) from e
    except (openai.BadRequestError, openai.NotFoundError) as e:
        if _is_model_unavailable(e):
            raise ModelUnavailableError(model, str(e)) from e
        raise

    content = response.choices[0].message.content if response.choices else None
    if not content:
        raise ClassifierError(f"{backend}: empty response from {model}")
    return content
