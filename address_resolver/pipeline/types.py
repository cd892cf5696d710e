from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from address_resolver.core.errors import ValidationError

_POSTAL_PART_RE = re.compile(r"^[A-Z0-9]{1,4}$")
_NON_DIGIT_RE = re.compile(r"\D")

PARTNER_CONFIDENCE = 1.0
REGISTRY_CONFIDENCE = 0.9


class MatchStrategy(str, Enum):
    POSTCODE_YEAR_PRICE = "postcode-year-price"
    POSTCODE_YEAR = "postcode-year"
    OUTCODE_YEAR_PRICE = "outcode-year-price"
    OUTCODE_YEAR = "outcode-year"
    DATE_RANGE = "date-range"


class SourceTag(str, Enum):
    PARTNER = "partner"
    REGISTRY = "registry"
    ERROR = "error"


def normalize_identifier(raw: str | int | None) -> str:
    """Reduce a listing identifier to its digit string."""
    if raw is None:
        raise ValidationError("identifier is required", field="identifier")
    text = str(raw).strip()
    if not text:
        raise ValidationError("identifier must be a non-empty string", field="identifier")
    digits = _NON_DIGIT_RE.sub("", text)
    if not digits:
        raise ValidationError("identifier must contain at least one digit", field="identifier")
    return digits


@dataclass(frozen=True, slots=True)
class PostalHint:
    outward: str
    inward: str | None = None

    @classmethod
    def from_parts(cls, outward: str | None, inward: str | None = None) -> PostalHint | None:
        """Build a hint from loose parts; an inward part alone carries no information."""
        outward_part = _clean_postal_part(outward, field_name="outward")
        if outward_part is None:
            return None
        return cls(outward=outward_part, inward=_clean_postal_part(inward, field_name="inward"))

    @property
    def full_postcode(self) -> str | None:
        if not self.inward:
            return None
        return f"{self.outward} {self.inward}"


def _clean_postal_part(value: str | None, *, field_name: str) -> str | None:
    if value is None:
        return None
    cleaned = value.strip().upper()
    if not cleaned:
        return None
    if not _POSTAL_PART_RE.match(cleaned):
        raise ValidationError(f"invalid postal {field_name} part: {value!r}", field=field_name)
    return cleaned


@dataclass(frozen=True, slots=True)
class SaleRecord:
    year: int
    raw_price: int
    display_price: str = ""

    def __post_init__(self) -> None:
        if not self.display_price:
            object.__setattr__(self, "display_price", f"£{self.raw_price:,}")


def normalize_sales(sales: list[SaleRecord]) -> list[SaleRecord]:
    """Deduplicate by (year, price) and order newest first."""
    seen: set[tuple[int, int]] = set()
    unique: list[SaleRecord] = []
    for sale in sales:
        key = (sale.year, sale.raw_price)
        if key in seen:
            continue
        seen.add(key)
        unique.append(sale)
    # stable sort keeps extraction order for sales within the same year
    return sorted(unique, key=lambda sale: sale.year, reverse=True)


@dataclass(frozen=True, slots=True)
class ResolutionJob:
    identifier: str
    postal_hint: PostalHint | None = None


@dataclass(slots=True)
class StepResult:
    success: bool
    address: str | None = None
    error: str | None = None
    strategy: MatchStrategy | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failed(cls, error: str, **metadata: Any) -> StepResult:
        return cls(success=False, error=error, metadata=metadata)


@dataclass(slots=True)
class ResolutionResult:
    success: bool
    confidence: float
    source_tag: SourceTag
    response_time_ms: int
    address: str | None = None
    strategy: MatchStrategy | None = None
    errors: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def error(self) -> str | None:
        if not self.errors:
            return None
        return "; ".join(self.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "address": self.address,
            "confidence": self.confidence,
            "source_tag": self.source_tag.value,
            "strategy": self.strategy.value if self.strategy else None,
            "response_time_ms": self.response_time_ms,
            "errors": list(self.errors),
            "error": self.error,
            "metadata": self.metadata,
        }
