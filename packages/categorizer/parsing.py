"""Strict parsing of free-form model output into a categorization reply.

The model gives no structured-output guarantee, so its text is treated as an
untyped blob. :func:`parse_model_reply` returns either a fully validated
:class:`ModelReply` or a :class:`ReplyParseFailure`; it never clamps, defaults,
or keeps fields from a reply that failed validation.
"""

from __future__ import annotations

import json
import re
from collections.abc import Collection, Mapping
from dataclasses import dataclass, field
from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict, ValidationInfo, field_validator

_FENCE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)
_EXCERPT_CHARS = 120


@dataclass(frozen=True, slots=True)
class ModelReply:
    category_id: str
    confidence: float
    rationale: tuple[str, ...]
    attributes: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ReplyParseFailure:
    reason: str
    excerpt: str = ""


type ParsedReply = ModelReply | ReplyParseFailure


class _ReplyBody(BaseModel):
    """Shape of the JSON object the prompt asks for.

    ``category_id`` must be in the allow-list passed via validation context
    (``{"allowed": set[str]}``).
    """

    model_config = ConfigDict(strict=True, extra="ignore", str_strip_whitespace=True)

    category_id: str
    confidence: float
    rationale: str | list[str]
    attributes: dict[str, Any] | None = None

    @field_validator("category_id")
    @classmethod
    def _category_allowed(cls, v: str, info: ValidationInfo) -> str:
        if not v:
            raise ValueError("category_id must be non-empty")
        allowed = info.context.get("allowed") if info.context else None
        if allowed is not None and v not in allowed:
            raise ValueError(f"category_id not in allow-list: {v!r}")
        return v

    @field_validator("confidence")
    @classmethod
    def _confidence_in_unit_interval(cls, v: float) -> float:
        if 0.0 <= v <= 1.0:
            return float(v)
        raise ValueError("confidence must be within [0,1]")

    @field_validator("rationale")
    @classmethod
    def _rationale_non_empty(cls, v: str | list[str]) -> list[str]:
        items = [v] if isinstance(v, str) else v
        cleaned = [s.strip() for s in items if s.strip()]
        if not cleaned:
            raise ValueError("rationale must contain at least one non-empty string")
        return cleaned


def _excerpt(text: str) -> str:
    s = " ".join(text.split())
    return s[:_EXCERPT_CHARS]


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Return the first JSON object embedded in ``text``.

    A fenced ``json`` block wins; otherwise the first ``{`` that starts a
    decodable object is used. Surrounding prose is ignored.
    """

    m = _FENCE.search(text)
    if m:
        try:
            obj = json.loads(m.group(1))
        except json.JSONDecodeError:
            obj = None
        if isinstance(obj, dict):
            return obj

    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            obj, _end = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(obj, dict):
            return obj
        start = text.find("{", start + 1)
    return None


def parse_model_reply(text: str | None, allowed_category_ids: Collection[str]) -> ParsedReply:
    if not text or not text.strip():
        return ReplyParseFailure(reason="empty model output")

    obj = extract_json_object(text)
    if obj is None:
        return ReplyParseFailure(reason="no JSON object in model output", excerpt=_excerpt(text))

    try:
        body = _ReplyBody.model_validate(obj, context={"allowed": set(allowed_category_ids)})
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ())) or "reply"
        return ReplyParseFailure(reason=f"{loc}: {first.get('msg')}", excerpt=_excerpt(text))

    rationale = body.rationale if isinstance(body.rationale, list) else [body.rationale]
    return ModelReply(
        category_id=body.category_id,
        confidence=body.confidence,
        rationale=tuple(rationale),
        attributes=dict(body.attributes or {}),
    )


__all__ = [
    "ModelReply",
    "ParsedReply",
    "ReplyParseFailure",
    "extract_json_object",
    "parse_model_reply",
]
