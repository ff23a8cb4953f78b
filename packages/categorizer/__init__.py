"""Public interface for the ``categorizer`` package.

Hybrid transaction categorization: deterministic rules (Pass1), a generative
model fallback (Pass2), a confidence-driven decision policy with an audit
trail, rule learning from corrections, and a paginated review queue.

This module only re-exports the stable import surface; there is no runtime
logic here.
"""

from .categorize import batch_categorize, categorize_transaction, categorize_transaction_by_id
from .categories import list_visible_categories, resolve_category, seed_categories
from .corrections import bulk_correct, correct_transaction
from .decisions import batch_decide_and_apply, decide_and_apply
from .errors import (
    AuditWriteError,
    AuthorizationError,
    CategorizerError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)
from .guardrails import GuardrailViolation, check_guardrails
from .models import (
    BatchOutcome,
    CategorizationOutcome,
    CategorizationResult,
    CategoryRef,
    ExecutionContext,
    NormalizedTransaction,
    ReviewFilter,
    ReviewPage,
    ReviewQueueItem,
    RuleUpsertResult,
)
from .pass1 import run_pass1
from .pass2 import ModelProvider, OpenAIProvider, Pass2Scorer
from .review_queue import decode_cursor, encode_cursor, normalize_rationale, read_review_queue
from .rules import learn_rule, upsert_mcc_rule
from .settings import AUTO_APPLY_THRESHOLD, EngineSettings, load_settings
from .vendors import normalize_vendor

__all__ = [
    # Engine
    "batch_categorize",
    "categorize_transaction",
    "categorize_transaction_by_id",
    "run_pass1",
    "Pass2Scorer",
    "ModelProvider",
    "OpenAIProvider",
    "decide_and_apply",
    "batch_decide_and_apply",
    "check_guardrails",
    "GuardrailViolation",
    "learn_rule",
    "upsert_mcc_rule",
    "correct_transaction",
    "bulk_correct",
    "read_review_queue",
    "encode_cursor",
    "decode_cursor",
    "normalize_rationale",
    "normalize_vendor",
    # Category directory
    "resolve_category",
    "list_visible_categories",
    "seed_categories",
    # Config
    "AUTO_APPLY_THRESHOLD",
    "EngineSettings",
    "load_settings",
    # Models / types
    "BatchOutcome",
    "CategorizationOutcome",
    "CategorizationResult",
    "CategoryRef",
    "ExecutionContext",
    "NormalizedTransaction",
    "ReviewFilter",
    "ReviewPage",
    "ReviewQueueItem",
    "RuleUpsertResult",
    # Errors
    "CategorizerError",
    "ValidationError",
    "NotFoundError",
    "AuthorizationError",
    "ExternalServiceError",
    "AuditWriteError",
]
