"""Stock resolution data types."""

import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional


class ResolutionError(Exception):
    """Stock state could not be determined."""


class UnsupportedRetailer(ResolutionError):
    """No adapter matches the locator."""

    def __init__(self, locator: str):
        self.locator = locator
        super().__init__(f"No retailer adapter matches {locator}")


class ResolutionExhausted(ResolutionError):
    """Every structured source and the HTML fallback failed."""

    def __init__(self, locator: str, errors: list[str]):
        self.locator = locator
        self.errors = errors
        super().__init__(
            f"All sources exhausted for {locator}: " + "; ".join(errors[:5])
        )


class SourceError(Exception):
    """A single upstream source failed (transient, never surfaced alone)."""

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"{source}: {reason}")


@dataclass
class SourceReading:
    """
    What one source said about a product.

    ``available`` is None when the source carried no unambiguous
    fulfillment signal.
    """

    source: str
    available: Optional[bool] = None
    price: Optional[Decimal] = None
    display_name: Optional[str] = None
    image: Optional[str] = None
    raw_status: str = ""

    @property
    def richness(self) -> int:
        return sum(v is not None for v in (self.price, self.display_name, self.image))

    @property
    def is_complete(self) -> bool:
        return self.richness == 3


@dataclass
class StructuredSource:
    """One ranked JSON endpoint and the parser for its payload."""

    name: str
    url: str
    parse: Callable[[Any], Optional[SourceReading]]
    params: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class StockSnapshot:
    """Result of one resolution."""

    in_stock: bool
    price: Optional[Decimal]
    display_name: str
    image: Optional[str]
    raw_status: str
    layer: str  # which layer decided availability

    def to_dict(self) -> dict[str, Any]:
        return {
            "in_stock": self.in_stock,
            "price": float(self.price) if self.price is not None else None,
            "display_name": self.display_name,
            "image": self.image,
            "raw_status": self.raw_status,
        }


# Layers in strict preference order
LAYER_STRUCTURED = "structured-fulfillment"
LAYER_INFERRED = "structured-price-inferred"
LAYER_EMBEDDED = "embedded-state"
LAYER_METADATA = "metadata"
LAYER_TEXT = "text-heuristic"


def parse_price(value: Any) -> Optional[Decimal]:
    """Coerce a number or a formatted price string ("$1,299.99") to Decimal."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        price = Decimal(str(value))
    else:
        match = re.search(r"(\d+(?:\.\d{1,2})?)", str(value).replace(",", ""))
        if not match:
            return None
        try:
            price = Decimal(match.group(1))
        except InvalidOperation:
            return None
    return price if price > 0 else None


def dig(obj: Any, *path: Any) -> Any:
    """Walk nested dicts/lists, returning None at the first missing hop."""
    for key in path:
        if isinstance(obj, dict):
            obj = obj.get(key)
        elif isinstance(obj, list) and isinstance(key, int):
            obj = obj[key] if -len(obj) <= key < len(obj) else None
        else:
            return None
        if obj is None:
            return None
    return obj
