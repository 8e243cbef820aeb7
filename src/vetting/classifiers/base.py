"""Classifier interface, response parsing and shared retry/fallback policies."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence, Tuple, TypeVar

from src import metrics
from src.vetting.types import (
    NONE_KNOWN,
    ClassifierOpinion,
    ResearchResult,
    SafetyStatus,
    ScoreLookupResult,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

FENCE_PATTERN = re.compile(r"```(?:json)?", re.IGNORECASE)
MIN_RATIONALE_LENGTH = 20
DEFAULT_CONFIDENCE = 0.7
UNPARSED_CONFIDENCE = 0.3
MODEL_UNAVAILABLE_MARKERS = (
    "decommissioned",
    "no longer supported",
    "not supported",
    "does not exist",
    "model_not_found",
    "is not found",
)


class ClassifierError(RuntimeError):
    """Raised when a classifier backend cannot produce an opinion."""


class ClassifierRateLimitError(ClassifierError):
    """Raised by a backend call that was rate limited."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ModelUnavailableError(ClassifierError):
    """Raised when a model identifier is decommissioned or unknown to the provider."""

    def __init__(self, model: str, message: str = ""):
        super().__init__(message or f"Model {model} is unavailable")
        self.model = model


class IngredientClassifier(Protocol):
    """Common interface of all classifier backends."""

    name: str

    async def analyze(
        self,
        ingredient_name: str,
        lookup: ScoreLookupResult,
        research: List[ResearchResult],
    ) -> ClassifierOpinion:
        ...


def is_model_unavailable_message(message: str) -> bool:
    message = message.lower()
    return any(marker in message for marker in MODEL_UNAVAILABLE_MARKERS)


def default_description(ingredient_name: str) -> str:
    return (
        f"{ingredient_name} is a cosmetic ingredient. "
        "Its safety assessment indicates caution status. "
        "Further research may be needed before use in finished products."
    )


def unparsed_opinion(ingredient_name: str) -> ClassifierOpinion:
    """Fail-safe opinion used when a response cannot be interpreted."""
    return ClassifierOpinion(
        status=SafetyStatus.CAUTION,
        rationale=(
            f"{ingredient_name} could not be classified automatically. "
            "Manual review is recommended before publishing."
        ),
        description=default_description(ingredient_name),
        edge_cases=NONE_KNOWN,
        confidence=UNPARSED_CONFIDENCE,
        parsed=False,
    )


def extract_json_object(text: str) -> Optional[str]:
    """Return the first balanced ``{...}`` block, ignoring braces inside strings."""
    cleaned = FENCE_PATTERN.sub("", text).strip()
    start = cleaned.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(cleaned)):
        char = cleaned[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return cleaned[start:index + 1]
    return None


def _text_field(value) -> str:
    if isinstance(value, list):
        return " ".join(str(v).strip() for v in value if str(v).strip())
    if value is None:
        return ""
    return str(value).strip()


def _confidence(value) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return DEFAULT_CONFIDENCE
    return max(0.0, min(1.0, float(value)))


def parse_classification(text: Optional[str], ingredient_name: str) -> ClassifierOpinion:
    """
    Parse a backend response into a ClassifierOpinion.

    Never raises. Unparseable output or an invalid status yields a
    ``caution`` opinion with templated text.
    """
    if not text:
        return unparsed_opinion(ingredient_name)

    block = extract_json_object(text)
    if block is None:
        logger.warning(f"No JSON object in classifier response for {ingredient_name}")
        return unparsed_opinion(ingredient_name)

    try:
        parsed = json.loads(block)
    except json.JSONDecodeError as e:
        logger.warning(f"Failed to parse classifier JSON for {ingredient_name}: {e}")
        logger.debug(f"Raw response: {text[:500]}")
        return unparsed_opinion(ingredient_name)

    if not isinstance(parsed, dict):
        return unparsed_opinion(ingredient_name)

    status = SafetyStatus.parse(parsed.get("status"))
    if status is None:
        logger.warning(
            f"Invalid status {parsed.get('status')!r} from classifier for {ingredient_name}"
        )
        return unparsed_opinion(ingredient_name)

    rationale = _text_field(
        parsed.get("rationale") or parsed.get("analysis") or parsed.get("explanation")
    )
    if len(rationale) < MIN_RATIONALE_LENGTH:
        rationale = (
            f"{ingredient_name} requires further research. "
            f"{rationale or 'Manual review recommended.'}"
        )

    description = _text_field(parsed.get("description")) or default_description(ingredient_name)
    edge_cases = _text_field(
        parsed.get("edgeCases") or parsed.get("edge_cases")
    ) or NONE_KNOWN

    return ClassifierOpinion(
        status=status,
        rationale=rationale,
        description=description,
        edge_cases=edge_cases,
        confidence=_confidence(parsed.get("confidence")),
    )


def ordered_models(primary: str, fallbacks: Sequence[str]) -> List[str]:
    """Primary model first, then the fallbacks in order without duplicates."""
    return [primary] + [m for m in fallbacks if m != primary]


async def retry_on_rate_limit(
    call: Callable[[], Awaitable[T]],
    *,
    backend: str,
    max_attempts: int = 3,
    default_delay: float = 10.0,
) -> T:
    """
    Await ``call``, retrying on ClassifierRateLimitError.

    Waits for the provider's retry hint when given, else ``default_delay``.

    Raises:
        ClassifierError: When still rate limited after ``max_attempts``.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            return await call()
        except ClassifierRateLimitError as e:
            if attempt >= max_attempts:
                raise ClassifierError(
                    f"{backend}: rate limited after {max_attempts} attempts"
                ) from e
            delay = e.retry_after if e.retry_after is not None else default_delay
            logger.warning(
                f"{backend}: Rate limited, retrying in {delay:.1f}s "
                f"(attempt {attempt}/{max_attempts})"
            )
            metrics.classifier_retries_total.labels(backend).inc()
            await asyncio.sleep(delay)

    raise ClassifierError(f"{backend}: no attempts made")


async def run_with_model_fallback(
    models: Sequence[str],
    call: Callable[[str], Awaitable[T]],
    *,
    backend: str,
) -> Tuple[str, T]:
    """
    Try ``call`` with each model in order, moving on only when a model is
    reported unavailable.

    Returns:
        The model that answered and its result.
    """
    last_error: Optional[ModelUnavailableError] = None
    for model in models:
        try:
            return model, await call(model)
        except ModelUnavailableError as e:
            logger.warning(f"{backend}: model {model} is unavailable, trying next model...")
            last_error = e

    raise ClassifierError(
        f"{backend}: no available model among {', '.join(models)}"
    ) from last_error


def note_model_switch(backend: str, previous: str, current: str) -> None:
    logger.info(f"{backend}: switched to model {current} ({previous} was unavailable)")
    metrics.classifier_model_fallbacks_total.labels(backend, current).inc()
