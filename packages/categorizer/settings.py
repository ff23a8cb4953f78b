"""Environment-driven configuration for the categorization engine.

Values are read when :func:`load_settings` is called, never at import time.
Entry points load ``.env`` (without overriding the environment) before calling
it; library code receives the resulting :class:`EngineSettings` through the
execution context.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from .errors import ValidationError

AUTO_APPLY_THRESHOLD: float = 0.85
GUARDRAIL_MIN_CONFIDENCE: float = 0.60

_ENV_PREFIX = "CATEGORIZER_"
_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True, slots=True)
class EngineSettings:
    auto_apply_threshold: float = AUTO_APPLY_THRESHOLD
    model: str = "gpt-4o-mini"
    max_output_tokens: int = 200
    temperature: float = 0.2
    timeout_sec: float = 5.0
    # Retries after the first attempt; the model call is retried at most once.
    max_retries: int = 1
    llm_enabled: bool = True
    guardrails_enabled: bool = True
    guardrail_min_confidence: float = GUARDRAIL_MIN_CONFIDENCE
    # Per-category absolute amount (minor units) at or above which an
    # automatic decision is held for review.
    amount_ceilings: Mapping[str, int] = field(default_factory=dict)


def _get(env: Mapping[str, str], key: str) -> str | None:
    raw = env.get(_ENV_PREFIX + key)
    if raw is None or not raw.strip():
        return None
    return raw.strip()


def _as_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = _get(env, key)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValidationError(f"{_ENV_PREFIX}{key} must be a number, got {raw!r}") from e


def _as_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = _get(env, key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValidationError(f"{_ENV_PREFIX}{key} must be an integer, got {raw!r}") from e


def _as_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = _get(env, key)
    if raw is None:
        return default
    lowered = raw.lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ValidationError(f"{_ENV_PREFIX}{key} must be a boolean, got {raw!r}")


def _as_ceilings(env: Mapping[str, str], key: str) -> dict[str, int]:
    """Parse ``cat_meals=50000,cat_fees=10000`` into a category -> cents map."""

    raw = _get(env, key)
    if raw is None:
        return {}
    ceilings: dict[str, int] = {}
    for item in raw.split(","):
        category_id, sep, cents = item.partition("=")
        category_id = category_id.strip()
        try:
            value = int(cents.strip())
        except ValueError:
            value = 0
        if not sep or not category_id or value < 1:
            raise ValidationError(
                f"{_ENV_PREFIX}{key} entries must look like category_id=cents, got {item!r}"
            )
        ceilings[category_id] = value
    return ceilings


def load_settings(env: Mapping[str, str] | None = None) -> EngineSettings:
    """Build :class:`EngineSettings` from ``CATEGORIZER_*`` variables.

    Raises :class:`~categorizer.errors.ValidationError` for malformed values or
    a threshold outside ``[0, 1]``.
    """

    source = os.environ if env is None else env
    defaults = EngineSettings()

    threshold = _as_float(source, "AUTO_APPLY_THRESHOLD", defaults.auto_apply_threshold)
    if not 0.0 <= threshold <= 1.0:
        raise ValidationError(f"auto-apply threshold must be within [0,1], got {threshold}")

    max_tokens = _as_int(source, "MAX_OUTPUT_TOKENS", defaults.max_output_tokens)
    if max_tokens < 1:
        raise ValidationError("max output tokens must be >= 1")

    timeout = _as_float(source, "TIMEOUT_SEC", defaults.timeout_sec)
    if timeout <= 0:
        raise ValidationError("model timeout must be > 0 seconds")

    min_confidence = _as_float(
        source, "GUARDRAIL_MIN_CONFIDENCE", defaults.guardrail_min_confidence
    )
    if not 0.0 <= min_confidence <= 1.0:
        raise ValidationError(
            f"guardrail minimum confidence must be within [0,1], got {min_confidence}"
        )

    retries = _as_int(source, "MAX_RETRIES", defaults.max_retries)
    return EngineSettings(
        auto_apply_threshold=threshold,
        model=_get(source, "MODEL") or defaults.model,
        max_output_tokens=max_tokens,
        temperature=_as_float(source, "TEMPERATURE", defaults.temperature),
        timeout_sec=timeout,
        max_retries=max(0, min(retries, 1)),
        llm_enabled=_as_bool(source, "LLM_ENABLED", defaults.llm_enabled),
        guardrails_enabled=_as_bool(source, "GUARDRAILS_ENABLED", defaults.guardrails_enabled),
        guardrail_min_confidence=min_confidence,
        amount_ceilings=_as_ceilings(source, "AMOUNT_CEILINGS"),
    )


__all__ = ["AUTO_APPLY_THRESHOLD", "GUARDRAIL_MIN_CONFIDENCE", "EngineSettings", "load_settings"]
