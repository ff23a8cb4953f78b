"""Shared SQLAlchemy models registry for the categorization database."""

from .ledger import (
    Base,
    CategoryCorrection,
    CategoryDecision,
    CategoryRule,
    LedgerCategory,
    LedgerTransaction,
)

__all__ = [
    "Base",
    "CategoryCorrection",
    "CategoryDecision",
    "CategoryRule",
    "LedgerCategory",
    "LedgerTransaction",
]
