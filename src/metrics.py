"""Prometheus metrics for the ingredient vetting service."""

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("ingredient_vetting", "Ingredient vetting service info")
app_info.info({"version": "0.1.0", "name": "ingredient-vetting"})

# Vetting outcomes
ingredients_vetted_total = Counter(
    "ingredients_vetted_total",
    "Total number of ingredients vetted",
    ["status", "decided_by"],  # decided_by: score_lookup, classifier, citations, fallback, cache
)

vetting_batches_total = Counter(
    "vetting_batches_total",
    "Total number of vetting batch requests",
    ["overall_status"],
)

# Analysis cache
analysis_cache_lookups_total = Counter(
    "analysis_cache_lookups_total",
    "Analysis cache lookups",
    ["result"],  # hit, miss, stale, error
)

analysis_cache_write_errors_total = Counter(
    "analysis_cache_write_errors_total",
    "Failed analysis cache upserts",
)

# External calls
external_calls_total = Counter(
    "vetting_external_calls_total",
    "Calls made to external vetting sources",
    ["component", "outcome"],
)

classifier_retries_total = Counter(
    "classifier_retries_total",
    "Classifier retries after rate limiting",
    ["backend"],
)

classifier_model_fallbacks_total = Counter(
    "classifier_model_fallbacks_total",
    "Classifier switches to an alternate model",
    ["backend", "model"],
)

research_breaker_consecutive_errors = Gauge(
    "research_breaker_consecutive_errors",
    "Consecutive quota/server errors seen by citation search",
)

vetting_stage_duration_seconds = Histogram(
    "vetting_stage_duration_seconds",
    "Time spent in each vetting pipeline stage",
    ["stage"],
    buckets=[0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
)
