"""Classifier backends and selection by configuration."""

import logging
from typing import Optional

from src.config import settings
from src.vetting.classifiers.base import (
    ClassifierError,
    ClassifierRateLimitError,
    IngredientClassifier,
    ModelUnavailableError,
    parse_classification,
)
from src.vetting.classifiers.gemini import GeminiClassifier
from src.vetting.classifiers.groq import GroqClassifier
from src.vetting.classifiers.keyword import KeywordClassifier
from src.vetting.classifiers.openai_backend import OpenAIClassifier

logger = logging.getLogger(__name__)

DISABLED_PROVIDERS = ("", "none", "disabled")


def build_classifier(provider: Optional[str] = None) -> Optional[IngredientClassifier]:
    """
    Create the configured classifier backend.

    Returns None when classification is disabled or the selected provider
    has no credential; the pipeline then runs without a classifier opinion.

    Raises:
        ValueError: If the provider name is unknown.
    """
    provider = (provider if provider is not None else settings.vetting_provider).strip().lower()

    if provider in DISABLED_PROVIDERS:
        logger.info("Ingredient classifier disabled")
        return None

    if provider == "keyword":
        return KeywordClassifier()

    credentials = {
        "gemini": settings.gemini_api_key,
        "openai": settings.openai_api_key,
        "groq": settings.groq_api_key,
    }
    if provider not in credentials:
        raise ValueError(
            f"Unknown vetting provider '{provider}'. "
            f"Available: gemini, openai, groq, keyword, none"
        )

    api_key = credentials[provider]
    if not api_key:
        logger.warning(f"No API key configured for {provider}; classifier disabled")
        return None

    if provider == "gemini":
        return GeminiClassifier(api_key=api_key)
    if provider == "openai":
        return OpenAIClassifier(api_key=api_key)
    return GroqClassifier(api_key=api_key)


__all__ = [
    "ClassifierError",
    "ClassifierRateLimitError",
    "GeminiClassifier",
    "GroqClassifier",
    "IngredientClassifier",
    "KeywordClassifier",
    "ModelUnavailableError",
    "OpenAIClassifier",
    "build_classifier",
    "parse_classification",
]
