"""Gemini classifier backend (google-generativeai)."""

import logging
import re
from typing import Any, Callable, Dict, List, Optional

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from src.config import settings
from src.vetting.classifiers.base import (
    ClassifierError,
    ClassifierRateLimitError,
    ModelUnavailableError,
    is_model_unavailable_message,
    note_model_switch,
    ordered_models,
    parse_classification,
    retry_on_rate_limit,
    run_with_model_fallback,
)
from src.vetting.prompts import IngredientPromptContext
from src.vetting.types import ClassifierOpinion, ResearchResult, ScoreLookupResult

logger = logging.getLogger(__name__)

RETRY_DELAY_PATTERNS = (
    re.compile(r"retry_delay\s*\{\s*seconds:\s*(\d+)", re.IGNORECASE),
    re.compile(r'"?retryDelay"?\s*:\s*"(\d+(?:\.\d+)?)s"', re.IGNORECASE),
    re.compile(r"retry in (\d+(?:\.\d+)?)\s*s", re.IGNORECASE),
)


def extract_retry_delay(error: Exception) -> Optional[float]:
    """Seconds from a google.rpc.RetryInfo detail, if the error carries one."""
    for detail in getattr(error, "details", None) or []:
        retry_delay = getattr(detail, "retry_delay", None)
        seconds = getattr(retry_delay, "seconds", None)
        if seconds:
            return float(seconds) + getattr(retry_delay, "nanos", 0) / 1e9

    message = str(error)
    for pattern in RETRY_DELAY_PATTERNS:
        match = pattern.search(message)
        if match:
            return float(match.group(1))
    return None


class GeminiClassifier:
    """Classifies ingredients with Google Gemini in JSON response mode."""

    name = "gemini"
    fallback_models = ("gemini-1.5-flash", "gemini-1.5-flash-8b", "gemini-pro")

    def __init__(
        self,
        api_key: str = "",
        model: Optional[str] = None,
        model_factory: Optional[Callable[[str], Any]] = None,
        max_attempts: Optional[int] = None,
        default_retry_delay: Optional[float] = None,
    ):
        if model_factory is None:
            if not api_key:
                raise ValueError("Gemini API key not configured")
            genai.configure(api_key=api_key)
            model_factory = genai.GenerativeModel
        self._model_factory = model_factory
        self._models: Dict[str, Any] = {}
        self.model = model or settings.gemini_model
        self.max_attempts = max_attempts or settings.llm_max_attempts
        self.default_retry_delay = (
            default_retry_delay
            if default_retry_delay is not None
            else settings.llm_default_retry_delay_seconds
        )

    def _get_model(self, model_name: str):
        model = self._models.get(model_name)
        if model is None:
            model = self._model_factory(model_name)
            self._models[model_name] = model
        return model

    async def _generate(self, model_name: str, prompt: str) -> str:
        try:
            response = await self._get_model(model_name).generate_content_async(
                prompt,
                generation_config={
                    "temperature": settings.llm_temperature,
                    "response_mime_type": "application/json",
                },
                request_options={"timeout": settings.llm_timeout_seconds},
            )
        except google_exceptions.ResourceExhausted as e:
            raise ClassifierRateLimitError(
                f"gemini: rate limited on {model_name}", retry_after=extract_retry_delay(e)
            ) from e
        except google_exceptions.NotFound as e:
            raise ModelUnavailableError(model_name, str(e)) from e
        except google_exceptions.InvalidArgument as e:
            if is_model_unavailable_message(str(e)):
                raise ModelUnavailableError(model_name, str(e)) from e
            raise

        try:
            text = response.text
        except ValueError as e:
            # Raised when the candidate was blocked or empty
            raise ClassifierError(f"gemini: no text in response from {model_name}: {e}") from e
        if not text:
            raise ClassifierError(f"gemini: empty response from {model_name}")
        return text

    async def analyze(
        self,
        ingredient_name: str,
        lookup: ScoreLookupResult,
        research: List[ResearchResult],
    ) -> ClassifierOpinion:
        prompt = IngredientPromptContext.from_evidence(
            ingredient_name, lookup, research, settings.llm_max_research_snippets
        ).to_compact_prompt()

        async def attempt(model: str) -> str:
            return await retry_on_rate_limit(
                lambda: self._generate(model, prompt),
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
