"""Data models and type aliases for ``categorizer``.

Domain records are frozen dataclasses; request-shaped inputs that need
validation (the review filter) are pydantic models. ORM rows never leave the
store modules: they are converted into these records at the boundary.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from sqlalchemy.orm import Session

from .errors import ValidationError
from .settings import EngineSettings

# ---------------------------------------------------------------------------
# Aliases
# ---------------------------------------------------------------------------

type DecisionSource = Literal["pass1", "llm", "manual"]
"""Which pass (or a human) produced a categorization result."""

type Rationale = tuple[str, ...]
"""Ordered, human-readable reasons supporting a categorization."""


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class NormalizedTransaction:
    """Canonical transaction record consumed read-only by the engine.

    ``amount_cents`` is a signed integer in minor units. Upstream ingestion
    owns creation; the engine only reads these fields.
    """

    id: str
    org_id: str
    date: date
    amount_cents: int
    currency: str = "USD"
    description: str = ""
    merchant_name: str | None = None
    mcc: str | None = None
    source: str = "unknown"
    raw: Mapping[str, Any] | None = None

    def __post_init__(self) -> None:
        if isinstance(self.amount_cents, bool) or not isinstance(self.amount_cents, int):
            raise ValidationError("amount_cents must be an integer number of minor units")


@dataclass(frozen=True, slots=True)
class CategoryRef:
    id: str
    name: str
    tier: str | None = None
    org_id: str | None = None
    parent_id: str | None = None

    @property
    def is_global(self) -> bool:
        return self.org_id is None


@dataclass(frozen=True, slots=True)
class ExecutionContext:
    """Explicit per-request scope: one organization, one DB session.

    Every engine operation receives this instead of reading tenant identity
    from ambient state.
    """

    org_id: str
    session: Session
    settings: EngineSettings = field(default_factory=EngineSettings)
    decided_by: str = "system"


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CategorizationResult:
    """Output shared by Pass1, Pass2 and manual corrections.

    ``attributes`` carries optional structured facts extracted by the model
    (e.g. a recognized subscription period); Pass1 leaves it empty.
    """

    category_id: str | None
    confidence: float
    rationale: Rationale = ()
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not 0.0 <= float(self.confidence) <= 1.0:
            raise ValidationError(f"confidence must be within [0,1], got {self.confidence}")
        if not isinstance(self.rationale, tuple):
            object.__setattr__(self, "rationale", tuple(self.rationale))

    @classmethod
    def no_match(cls, *reasons: str) -> CategorizationResult:
        return cls(category_id=None, confidence=0.0, rationale=tuple(reasons))


@dataclass(frozen=True, slots=True)
class AppliedDecision:
    tx_id: str
    needs_review: bool
    audit_written: bool


@dataclass(frozen=True, slots=True)
class BatchFailure:
    index: int
    tx_id: str
    error: str


@dataclass(frozen=True, slots=True)
class BatchOutcome:
    """Per-item outcome of a batch operation; one failure never aborts the rest."""

    successful_count: int
    failed: tuple[BatchFailure, ...] = ()

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    @property
    def total(self) -> int:
        return self.successful_count + self.failed_count


@dataclass(frozen=True, slots=True)
class RuleUpsertResult:
    rule_id: int
    is_new: bool
    message: str


@dataclass(frozen=True, slots=True)
class CategorizationOutcome:
    """What the hybrid orchestrator decided for one transaction."""

    tx_id: str
    result: CategorizationResult
    engine: DecisionSource
    llm_attempted: bool
    needs_review: bool
    audit_written: bool
    pass1_ms: float
    pass2_ms: float | None
    total_ms: float
    # Kinds of guardrail violations that held an automatic decision for review.
    guardrails: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class BatchCategorizeSummary:
    total: int
    pass1_only: int
    llm_used: int
    needs_review: int
    failed: int
    avg_confidence: float
    failures: tuple[BatchFailure, ...] = ()
    outcomes: tuple[CategorizationOutcome, ...] = ()


@dataclass(frozen=True, slots=True)
class CorrectionResult:
    tx_id: str
    old_category_id: str | None
    new_category_id: str
    rule: RuleUpsertResult | None = None


# ---------------------------------------------------------------------------
# Review queue
# ---------------------------------------------------------------------------


class ReviewFilter(BaseModel):
    """Validated review-queue filter.

    Flags and bounds are strict: ``"0.5"`` or ``"no"`` is rejected rather than
    coerced. Dates still accept ISO strings.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True)

    needs_review_only: bool = Field(default=True, strict=True)
    min_confidence: float = Field(default=0.0, strict=True)
    max_confidence: float = Field(default=1.0, strict=True)
    date_from: date | None = None
    date_to: date | None = None
    search: str | None = None

    @field_validator("min_confidence", "max_confidence")
    @classmethod
    def _in_unit_interval(cls, v: float) -> float:
        if 0.0 <= v <= 1.0:
            return v
        raise ValueError("confidence bounds must be within [0,1]")

    @field_validator("search")
    @classmethod
    def _blank_search_is_none(cls, v: str | None) -> str | None:
        return v or None

    @model_validator(mode="after")
    def _ordered_bounds(self) -> ReviewFilter:
        if self.min_confidence > self.max_confidence:
            raise ValueError("min_confidence must not exceed max_confidence")
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must not be after date_to")
        return self


@dataclass(frozen=True, slots=True)
class ReviewCursor:
    date: date
    confidence: float | None
    tx_id: str | None = None


@dataclass(frozen=True, slots=True)
class ReviewQueueItem:
    id: str
    date: date
    amount_cents: int
    currency: str
    description: str
    merchant_name: str | None
    mcc: str | None
    category_id: str | None
    category_name: str | None
    confidence: float | None
    needs_review: bool
    reviewed: bool
    decision_source: str | None
    decision_created_at: datetime | None
    decided_by: str | None
    why: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class ReviewPage:
    items: tuple[ReviewQueueItem, ...]
    next_cursor: str | None
    has_more: bool


__all__ = [
    "AppliedDecision",
    "BatchCategorizeSummary",
    "BatchFailure",
    "BatchOutcome",
    "CategorizationOutcome",
    "CategorizationResult",
    "CategoryRef",
    "CorrectionResult",
    "DecisionSource",
    "ExecutionContext",
    "NormalizedTransaction",
    "Rationale",
    "ReviewCursor",
    "ReviewFilter",
    "ReviewPage",
    "ReviewQueueItem",
    "RuleUpsertResult",
]
