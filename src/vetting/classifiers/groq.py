"""Groq classifier backend.

Groq serves an OpenAI-compatible API, so the OpenAI SDK is pointed at the
Groq base URL. Groq retires model identifiers often; decommissioned models
fall through to the next entry in ``fallback_models``.
"""

import logging
from typing import List, Optional

from openai import AsyncOpenAI

from src.config import settings
from src.vetting.classifiers.base import (
    note_model_switch,
    ordered_models,
    parse_classification,
    retry_on_rate_limit,
    run_with_model_fallback,
)
from src.vetting.classifiers.chat_completions import complete_json
from src.vetting.prompts import IngredientPromptContext
from src.vetting.types import ClassifierOpinion, ResearchResult, ScoreLookupResult

logger = logging.getLogger(__name__)


class GroqClassifier:
    """Classifies ingredients with Llama/Mixtral models hosted on Groq."""

    name = "groq"
    fallback_models = (
        "llama-3.3-70b-versatile",
        "llama-3.1-8b-instant",
        "mixtral-8x7b-32768",
    )

    def __init__(
        self,
        api_key: str = "",
        model: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
        max_attempts: Optional[int] = None,
        default_retry_delay: Optional[float] = None,
    ):
        if client is None:
            if not api_key:
                raise ValueError("Groq API key not configured")
            client = AsyncOpenAI(api_key=api_key, base_url=settings.groq_base_url, max_retries=0)
        self._client = client
        self.model = model or settings.groq_model
        self.max_attempts = max_attempts or settings.llm_max_attempts
        self.default_retry_delay = (
            default_retry_delay
            if default_retry_delay is not None
            else settings.llm_default_retry_delay_seconds
        )

    async def analyze(
        self,
        ingredient_name: str,
        lookup: ScoreLookupResult,
        research: List[ResearchResult],
    ) -> ClassifierOpinion:
        prompt = IngredientPromptContext.from_evidence(
            ingredient_name, lookup, research, settings.llm_max_research_snippets
        ).to_detailed_prompt()

        async def attempt(model: str) -> str:
            return await retry_on_rate_limit(
                lambda: complete_json(
                    self._client,
                    backend=self.name,
                    model=model,
                    prompt=prompt,
                    temperature=settings.llm_temperature,
                    timeout=settings.llm_timeout_seconds,
                ),
                backend=self.name,
                max_attempts=self.max_attempts,
                default_delay=self.default_retry_delay,
            )

        model, text = await run_with_model_fallback(
            ordered_models(self.model, self.fallback_models), attempt, backend=self.name
        )
        if model != self.model:
            note_model_switch(self.name, self.model, model)
            self.model = model

        return parse_classification(text, ingredient_name)

    async def close(self):
        await self._client.close()
