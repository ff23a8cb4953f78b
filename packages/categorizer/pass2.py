"""Pass2: generative-model fallback scorer.

Public API:
    - :class:`ModelProvider` (protocol) and :class:`OpenAIProvider`
    - :class:`Pass2Scorer`

The provider call is the only slow, failure-prone step in categorization. It
runs with a per-call timeout and at most one retry (for timeouts, connection
errors, HTTP 429 and 5xx) with jittered backoff; after that the scorer raises
:class:`~categorizer.errors.ExternalServiceError`. Unparseable output is not
an error: it fails closed to ``category_id=None, confidence=0``.
"""

from __future__ import annotations

import random
import time
from collections.abc import Sequence
from typing import Any, Protocol

from openai import APIConnectionError, OpenAI

from .errors import ExternalServiceError
from .logging_setup import get_logger
from .models import CategorizationResult, CategoryRef, NormalizedTransaction
from .parsing import ReplyParseFailure, parse_model_reply
from .prompting import build_prompt
from .settings import EngineSettings

# ---- Tunables (private) ------------------------------------------------------

_BACKOFF_SCHEDULE_SEC: tuple[float, ...] = (0.5, 2.0)
_JITTER_PCT: float = 0.20


_logger = get_logger("categorizer.pass2")


class ModelProvider(Protocol):
    """Anything that turns a prompt into text. No structure is guaranteed."""

    def generate(
        self, prompt: str, *, max_tokens: int, temperature: float, timeout: float
    ) -> str: ...


# ---- OpenAI provider ---------------------------------------------------------


def _create_client() -> OpenAI:
    return OpenAI()


def _extract_response_text(resp: Any) -> str:
    """Return the text of a Responses API result.

    Prefers ``resp.output_text``; falls back to ``resp.output[0].content[0].text``.
    """

    text: str | None = getattr(resp, "output_text", None)
    if not text:
        output = getattr(resp, "output", None)
        first = output[0] if output else None
        content = getattr(first, "content", None)
        if content:
            txt_obj = getattr(content[0], "text", None)
            if isinstance(txt_obj, str):
                text = txt_obj
            else:
                maybe_val = getattr(txt_obj, "value", None)
                if isinstance(maybe_val, str):
                    text = maybe_val
    return text or ""


class OpenAIProvider:
    """:class:`ModelProvider` backed by the OpenAI Responses API.

    The SDK's own retries are disabled; :class:`Pass2Scorer` owns the retry
    budget so the total number of attempts stays bounded.
    """

    def __init__(self, model: str, *, client: OpenAI | None = None) -> None:
        self._model = model
        self._client = client

    def generate(self, prompt: str, *, max_tokens: int, temperature: float, timeout: float) -> str:
        if self._client is None:
            self._client = _create_client()
        resp = self._client.with_options(timeout=timeout, max_retries=0).responses.create(
            model=self._model,
            input=prompt,
            max_output_tokens=max_tokens,
            temperature=temperature,
        )
        return _extract_response_text(resp)


# ---- Retry helpers -----------------------------------------------------------


def _is_retryable(exc: BaseException) -> bool:
    """Timeouts, connection failures, HTTP 429 and 5xx are retryable."""

    if isinstance(exc, (TimeoutError, APIConnectionError)):
        return True
    sc = getattr(exc, "status_code", None)
    return isinstance(sc, int) and (sc == 429 or 500 <= sc < 600)


def _sleep_backoff(attempt_no: int) -> None:
    if attempt_no - 1 < len(_BACKOFF_SCHEDULE_SEC):
        base = _BACKOFF_SCHEDULE_SEC[attempt_no - 1]
    else:
        base = _BACKOFF_SCHEDULE_SEC[-1]
    jitter = base * _JITTER_PCT
    time.sleep(max(0.0, base + random.uniform(-jitter, jitter)))


# ---- Scorer ------------------------------------------------------------------


class Pass2Scorer:
    def __init__(
        self,
        provider: ModelProvider | None = None,
        *,
        settings: EngineSettings | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.provider: ModelProvider = provider or OpenAIProvider(self.settings.model)

    def _generate(self, tx_id: str, prompt: str) -> str:
        max_attempts = 1 + max(0, min(self.settings.max_retries, 1))
        attempt = 1
        while True:
            t0 = time.perf_counter()
            _logger.info("pass2:call tx_id=%s attempt=%d", tx_id, attempt)
            try:
                return self.provider.generate(
                    prompt,
                    max_tokens=self.settings.max_output_tokens,
                    temperature=self.settings.temperature,
                    timeout=self.settings.timeout_sec,
                )
            except Exception as e:  # noqa: BLE001 - provider errors are classified below
                dt_ms = (time.perf_counter() - t0) * 1000.0
                if attempt >= max_attempts or not _is_retryable(e):
                    _logger.error(
                        "pass2:failed_terminal tx_id=%s attempts=%d latency_ms=%.2f error=%s",
                        tx_id,
                        attempt,
                        dt_ms,
                        e.__class__.__name__,
                    )
                    raise ExternalServiceError(
                        f"Model call failed for transaction {tx_id!r} after {attempt} "
                        f"attempt(s): {e.__class__.__name__}: {e}",
                        attempts=attempt,
                    ) from e
                _logger.warning(
                    "pass2:retry tx_id=%s attempt=%d latency_ms=%.2f error=%s",
                    tx_id,
                    attempt,
                    dt_ms,
                    e.__class__.__name__,
                )
                _sleep_backoff(attempt)
                attempt += 1

    def score(
        self,
        tx: NormalizedTransaction,
        *,
        pass1: CategorizationResult | None,
        categories: Sequence[CategoryRef],
    ) -> CategorizationResult:
        """Score ``tx`` with the model; Pass1's rationale is passed as hints.

        Raises :class:`ExternalServiceError` when the provider keeps failing.
        """

        prompt = build_prompt(tx, pass1=pass1, categories=categories)
        text = self._generate(tx.id, prompt)
        parsed = parse_model_reply(text, [c.id for c in categories])
        if isinstance(parsed, ReplyParseFailure):
            _logger.warning(
                "pass2:parse_failed tx_id=%s reason=%r excerpt=%r",
                tx.id,
                parsed.reason,
                parsed.excerpt,
            )
            return CategorizationResult.no_match(
                f"Model output could not be parsed: {parsed.reason}"
            )
        _logger.info(
            "pass2:scored tx_id=%s category_id=%s confidence=%.3f",
            tx.id,
            parsed.category_id,
            parsed.confidence,
        )
        return CategorizationResult(
            category_id=parsed.category_id,
            confidence=parsed.confidence,
            rationale=parsed.rationale,
            attributes=parsed.attributes,
        )


__all__ = ["ModelProvider", "OpenAIProvider", "Pass2Scorer"]
