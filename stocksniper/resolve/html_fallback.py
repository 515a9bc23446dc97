"""Extract stock state from a product page when every JSON source failed.

Three layers, tried in order by the resolver: embedded page-state blobs,
structured metadata (JSON-LD / Open Graph), then literal text heuristics.
"""

import json
import logging
import re
from typing import Any, Optional

from selectolax.parser import HTMLParser

from stocksniper.resolve.base import SourceReading, parse_price
from stocksniper.retailers.base import RetailerAdapter

logger = logging.getLogger(__name__)

OUT_OF_STOCK_PATTERN = re.compile(
    r"out of stock|sold out|temporarily unavailable|currently unavailable",
    re.IGNORECASE,
)

STATE_ASSIGNMENT_PATTERN = re.compile(
    r"(?:__INITIAL_STATE__|__PRELOADED_STATE__)\s*=\s*(\{.+?\});",
    re.DOTALL,
)

IN_STOCK_VALUES = {"instock", "in_stock", "limitedavailability", "preorder", "onlineonly", "available"}
OUT_OF_STOCK_VALUES = {"outofstock", "out_of_stock", "soldout", "discontinued", "unavailable"}


def _availability_from_value(value: Any) -> Optional[bool]:
    """Map schema.org URLs, enum strings and booleans to in/out of stock."""
    if isinstance(value, bool):
        return value
    if not isinstance(value, str) or not value:
        return None
    token = value.rsplit("/", 1)[-1].replace(" ", "").lower()
    if token in IN_STOCK_VALUES:
        return True
    if token in OUT_OF_STOCK_VALUES:
        return False
    return None


def _find_product_state(obj: Any, depth: int = 0) -> Optional[dict]:
    """Depth-first search for a dict that looks like a product with availability."""
    if depth > 12:
        return None
    if isinstance(obj, dict):
        keys = set(obj)
        if keys & {"availability", "availabilityStatus", "inStock", "in_stock", "isInStock"}:
            if keys & {"name", "title", "price", "currentPrice", "productName"}:
                return obj
        for value in obj.values():
            if isinstance(value, (dict, list)):
                found = _find_product_state(value, depth + 1)
                if found is not None:
                    return found
    elif isinstance(obj, list):
        for item in obj:
            if isinstance(item, (dict, list)):
                found = _find_product_state(item, depth + 1)
                if found is not None:
                    return found
    return None


def _reading_from_state(state: dict, source: str) -> SourceReading:
    available = None
    for key in ("availability", "availabilityStatus", "inStock", "in_stock", "isInStock"):
        if key in state:
            available = _availability_from_value(state[key])
            if available is not None:
                break

    price = state.get("price")
    if isinstance(price, dict):
        price = price.get("current") or price.get("value") or price.get("amount")

    return SourceReading(
        source=source,
        available=available,
        price=parse_price(price if price is not None else state.get("currentPrice")),
        display_name=state.get("name") or state.get("title") or state.get("productName"),
        image=state.get("image") if isinstance(state.get("image"), str) else None,
        raw_status=f"{source}: {state.get('availability') or state.get('availabilityStatus') or 'Unknown'}",
    )


def extract_embedded_state(
    html: str,
    adapter: Optional[RetailerAdapter] = None,
    product_id: str = "",
) -> Optional[SourceReading]:
    """Embedded page-state layer: retailer blob first, then generic framework blobs."""
    if adapter is not None:
        reading = adapter.parse_embedded_state(html, product_id)
        if reading is not None:
            return reading

    tree = HTMLParser(html)

    node = tree.css_first("script#__NEXT_DATA__")
    if node is not None:
        try:
            state = _find_product_state(json.loads(node.text()))
            if state is not None:
                return _reading_from_state(state, "__NEXT_DATA__")
        except json.JSONDecodeError as e:
            logger.debug(f"Failed to parse __NEXT_DATA__: {e}")

    for script in tree.css("script"):
        text = script.text() or ""
        if "__INITIAL_STATE__" not in text and "__PRELOADED_STATE__" not in text:
            continue
        match = STATE_ASSIGNMENT_PATTERN.search(text)
        if not match:
            continue
        try:
            state = _find_product_state(json.loads(match.group(1)))
        except json.JSONDecodeError as e:
            logger.debug(f"Failed to parse initial state: {e}")
            continue
        if state is not None:
            return _reading_from_state(state, "__INITIAL_STATE__")

    return None


def _json_ld_products(tree: HTMLParser) -> list[dict]:
    products = []
    for script in tree.css('script[type="application/ld+json"]'):
        try:
            data = json.loads(script.text())
        except json.JSONDecodeError:
            continue
        if isinstance(data, list):
            candidates = data
        elif isinstance(data, dict):
            candidates = data.get("@graph", [data])
        else:
            candidates = []
        for obj in candidates:
            if not isinstance(obj, dict):
                continue
            obj_type = obj.get("@type", "")
            if isinstance(obj_type, list):
                obj_type = obj_type[0] if obj_type else ""
            if obj_type == "Product":
                products.append(obj)
    return products


def _meta(tree: HTMLParser, *names: str) -> Optional[str]:
    for name in names:
        node = tree.css_first(f'meta[property="{name}"]') or tree.css_first(f'meta[name="{name}"]')
        if node is not None:
            content = node.attributes.get("content")
            if content:
                return content
    return None


def extract_metadata(html: str) -> Optional[SourceReading]:
    """Structured metadata layer: JSON-LD Product offers, then Open Graph product tags."""
    tree = HTMLParser(html)

    for product in _json_ld_products(tree):
        offers = product.get("offers")
        if isinstance(offers, list):
            offers = offers[0] if offers else {}
        offers = offers or {}
        availability = offers.get("availability")
        image = product.get("image")
        if isinstance(image, list):
            image = image[0] if image else None
        return SourceReading(
            source="json-ld",
            available=_availability_from_value(availability),
            price=parse_price(offers.get("price") or offers.get("lowPrice")),
            display_name=product.get("name"),
            image=image if isinstance(image, str) else None,
            raw_status=f"LD: {availability or 'Unknown'}",
        )

    availability = _meta(tree, "product:availability", "og:availability")
    price = _meta(tree, "product:price:amount", "og:price:amount")
    if availability or price:
        return SourceReading(
            source="og-meta",
            available=_availability_from_value(availability),
            price=parse_price(price),
            display_name=_meta(tree, "og:title"),
            image=_meta(tree, "og:image"),
            raw_status=f"Meta: {availability or 'Unknown'}",
        )

    return None


def extract_text_heuristics(html: str) -> Optional[SourceReading]:
    """
    Last-resort layer: literal out-of-stock phrases in the visible text.

    Only reports when the page is recognizably a product page (a title or a
    price is present); a bare error page yields None.
    """
    tree = HTMLParser(html)
    for node in tree.css("script, style, noscript"):
        node.decompose()

    title_node = tree.css_first("title")
    title = title_node.text(strip=True) if title_node is not None else ""
    title = re.sub(r"\s*:\s*Target$", "", title).strip() or None

    price_node = tree.css_first('[data-test="product-price"]')
    price = parse_price(price_node.text(strip=True)) if price_node is not None else None

    if title is None and price is None:
        return None

    body = tree.body
    text = body.text(separator=" ") if body is not None else ""
    oos_match = OUT_OF_STOCK_PATTERN.search(text)
    if oos_match:
        raw_status = f"HTML: Out of Stock ({oos_match.group(0).lower()})"
    else:
        raw_status = "HTML: Possibly Available"

    return SourceReading(
        source="text",
        available=oos_match is None,
        price=price,
        display_name=title,
        image=None,
        raw_status=raw_status,
    )

