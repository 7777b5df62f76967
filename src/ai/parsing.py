"""
Structured Output Parsing
=========================

Model output is free text. Structured consumers go through
`parse_structured(raw, builder, fallback)`:

1. JSON-only parse, with a fenced-block (```json ... ```) fallback and a
   last-resort outermost-brace scan
2. `builder(data)` validates, clamps numeric fields and filters
   enumerated categories, returning a ParseResult
3. On any Err the named fallback constructor supplies the value

Parse failures never raise past the component boundary.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Generic, Iterable, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
U = TypeVar("U")

FENCE_PATTERN = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)


@dataclass(frozen=True)
class ParseResult(Generic[T]):
    """Ok(value) or Err(reason)."""
    value: Optional[T] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, value: T) -> "ParseResult[T]":
        return cls(value=value)

    @classmethod
    def err(cls, reason: str) -> "ParseResult[T]":
        return cls(error=reason)

    @property
    def is_ok(self) -> bool:
        return self.error is None

    def bind(self, func: Callable[[T], "ParseResult[U]"]) -> "ParseResult[U]":
        if not self.is_ok:
            return ParseResult.err(self.error)
        try:
            return func(self.value)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            return ParseResult.err(f"{type(e).__name__}: {e}")

    def unwrap_or_else(self, fallback: Callable[[str], T]) -> T:
        return self.value if self.is_ok else fallback(self.error)


def extract_json(raw: Optional[str]) -> ParseResult[Any]:
    """
    Decode model output as JSON.

    Tries the whole string, then each fenced block, then the outermost
    {...} or [...] span.
    """
    if raw is None or not raw.strip():
        return ParseResult.err("empty response")

    text = raw.strip()
    candidates = [text]
    candidates.extend(m.group(1).strip() for m in FENCE_PATTERN.finditer(text))

    for open_char, close_char in (("{", "}"), ("[", "]")):
        start = text.find(open_char)
        end = text.rfind(close_char)
        if start != -1 and end > start:
            candidates.append(text[start:end + 1])

    for candidate in candidates:
        try:
            return ParseResult.ok(json.loads(candidate))
        except json.JSONDecodeError:
            continue

    return ParseResult.err("no JSON object found")


def parse_structured(
    raw: Optional[str],
    builder: Callable[[Any], ParseResult[T]],
    fallback: Callable[[str], T],
    label: str = "structured output",
) -> T:
    """
    Parse model output into a typed value, or fall back.

    Args:
        raw: Model response text
        builder: Validates decoded JSON into the target type
        fallback: Named fallback constructor, receives the error reason
        label: Name used in the warning log

    Returns:
        Parsed value or the fallback value
    """
    result = extract_json(raw).bind(builder)
    if not result.is_ok:
        logger.warning(f"Falling back for {label}: {result.error}")
    return result.unwrap_or_else(fallback)


# =============================================================================
# FIELD HELPERS
# =============================================================================

def clamp(value: Any, low: float, high: float, default: Optional[float] = None) -> float:
    """Coerce to float and clamp into [low, high]."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return low if default is None else default
    if number != number:  # NaN
        return low if default is None else default
    return max(low, min(high, number))


def as_text(value: Any, default: str = "") -> str:
    if value is None:
        return default
    return str(value).strip() or default


def as_text_list(value: Any, limit: Optional[int] = None) -> List[str]:
    if not isinstance(value, list):
        return []
    items = [str(v).strip() for v in value if v is not None and str(v).strip()]
    return items[:limit] if limit is not None else items


def in_taxonomy(value: Any, allowed: Iterable[str]) -> bool:
    return isinstance(value, str) and value in set(allowed)


def as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def as_dict_list(value: Any) -> List[dict]:
    return [v for v in as_list(value) if isinstance(v, dict)]
