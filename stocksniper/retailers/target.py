"""Target adapter backed by the Redsky aggregation endpoints."""

import json
import logging
import re
from typing import Any, Optional

from stocksniper.config import settings
from stocksniper.resolve.base import SourceReading, StructuredSource, dig, parse_price
from stocksniper.retailers.base import RetailerAdapter

logger = logging.getLogger(__name__)

REDSKY_BASE = "https://redsky.target.com/redsky_aggregations/v1/web"

AVAILABLE_STATUSES = {
    "IN_STOCK",
    "LIMITED_STOCK",
    "AVAILABLE",
    "PRE_ORDER",
    "READY_WITHIN_2HRS",
    "ONLINE_AVAILABLE",
}

TGT_DATA_PATTERNS = [
    re.compile(r"window\.__TGT_DATA__\s*=\s*(\{[\s\S]*?\});?\s*</script>"),
    re.compile(r"__TGT_DATA__\s*=\s*(\{[\s\S]*?\});?\s*</script>"),
]


def is_available(status: Optional[str]) -> bool:
    return bool(status) and str(status).upper() in AVAILABLE_STATUSES


def _format_status(parts: list[tuple[str, Any]]) -> str:
    return " | ".join(f"{label}: {value}" for label, value in parts if value is not None)


def parse_product_node(product: dict, source: str) -> Optional[SourceReading]:
    """
    Read a Redsky ``product`` node (pdp_client, pdp_fulfillment and the
    page-state blob all share this shape).

    Availability is only reported when at least one fulfillment field is
    present; a bare price leaves it None so the resolver can infer.
    """
    if not isinstance(product, dict):
        return None

    price = (
        parse_price(dig(product, "price", "current_retail"))
        or parse_price(dig(product, "price", "reg_retail"))
        or parse_price(dig(product, "price", "current_retail_min"))
        or parse_price(dig(product, "price", "formatted_current_price"))
    )

    fulfillment = product.get("fulfillment") or {}
    ship = dig(fulfillment, "shipping_options", "availability_status")
    pickups = [
        dig(option, "order_pickup", "availability_status")
        for option in (fulfillment.get("store_options") or [])
    ]
    pickups = [p for p in pickups if p]
    delivery = dig(fulfillment, "scheduled_delivery", "availability_status")
    oos_everywhere = fulfillment.get("is_out_of_stock_in_all_store_and_online")
    product_status = product.get("availability_status")
    is_buyable = dig(product, "item", "is_buyable")
    if is_buyable is None:
        is_buyable = product.get("is_buyable")

    signals = [ship, delivery, product_status, *pickups]
    has_signal = any(signals) or isinstance(oos_everywhere, bool) or isinstance(is_buyable, bool)

    available: Optional[bool] = None
    if has_signal:
        if oos_everywhere is True:
            available = False
        else:
            available = any(is_available(s) for s in signals) or is_buyable is True

    return SourceReading(
        source=source,
        available=available,
        price=price,
        display_name=dig(product, "item", "product_description", "title"),
        image=dig(product, "item", "enrichment", "images", "primary_image_url"),
        raw_status=_format_status([
            ("Ship", ship),
            ("Pickup", pickups[0] if pickups else None),
            ("Delivery", delivery),
            ("Product", product_status),
            ("OOS-All", oos_everywhere),
            ("Buyable", is_buyable),
        ]),
    )


def parse_pdp_client(payload: Any) -> Optional[SourceReading]:
    return parse_product_node(dig(payload, "data", "product"), "pdp_client_v1")


def parse_fulfillment(payload: Any) -> Optional[SourceReading]:
    return parse_product_node(dig(payload, "data", "product"), "pdp_fulfillment_v1")


def parse_summary(payload: Any) -> Optional[SourceReading]:
    summaries = dig(payload, "data", "product_summaries")
    if not isinstance(summaries, list) or not summaries:
        # Some deployments answer with the pdp shape
        return parse_product_node(dig(payload, "data", "product"), "product_summary_with_fulfillment_v1")

    reading = parse_product_node(summaries[0], "product_summary_with_fulfillment_v1")
    if reading and reading.price is None:
        reading.price = parse_price(
            dig(summaries[0], "price", "formatted_current_price_default_message")
        )
    return reading


class TargetAdapter(RetailerAdapter):
    """target.com"""

    name = "target"
    display_name = "Target"
    url_patterns = [
        re.compile(r"^https?://(www\.)?target\.com/p/"),
        re.compile(r"^https?://(www\.)?target\.com/.*/A-\d+"),
        re.compile(r"^https?://(www\.)?target\.com/.*[?&]preselect=\d+"),
    ]
    login_url = "https://www.target.com/account"
    cart_url = "https://www.target.com/cart"

    confirmation_url_patterns = ["/order-confirmation", "/co-thankyou", "/checkout/confirmation"]
    confirmation_text_patterns = [
        "thanks for your order",
        "thank you for your order",
        "order confirmed",
        "order number",
    ]
    login_url_markers = ["/login", "/account/login", "/signin"]
    verification_text_patterns = [
        "verification code",
        "enter the code",
        "we sent a code",
        "verify it's you",
        "two-step verification",
    ]

    add_to_cart_selectors = [
        'button[data-test="shipItButton"]',
        'button[data-test="addToCartButton"]',
        '[data-test="orderPickupButton"]',
        'button:has-text("Ship it")',
        'button:has-text("Add to cart")',
    ]
    checkout_selectors = [
        'button[data-test="checkout-button"]',
        'a[data-test="checkout-button"]',
        'button:has-text("Check out")',
        'button:has-text("Checkout")',
    ]
    advance_selectors = [
        'button[data-test="placeOrderButton"]',
        'button[data-test="save-and-continue-button"]',
        'button:has-text("Place your order")',
        'button:has-text("Save and continue")',
        'button:has-text("Continue")',
    ]
    cvv_selectors = [
        'input[aria-label="Enter CVV"]',
        'input[name="cvv"]',
        'input[placeholder*="CVV"]',
    ]
    cvv_confirm_selectors = ['button:has-text("Confirm")']
    overlay_selectors = [
        'button:has-text("No thanks")',
        'button:has-text("No, thanks")',
        'button[aria-label="close"]',
        'button:has-text("Continue shopping")',
    ]
    username_selectors = [
        'input[type="email"]',
        'input[name="username"]',
        'input[id*="email"]',
        "#username",
    ]
    password_selectors = ['input[type="password"]']
    submit_selectors = [
        'button[type="submit"]',
        'button:has-text("Sign in")',
        'button:has-text("Continue")',
    ]

    def extract_id(self, url: str) -> Optional[str]:
        match = re.search(r"A-(\d+)", url)
        if match:
            return match.group(1)
        match = re.search(r"preselect=(\d+)", url)
        if match:
            return match.group(1)
        return None

    def page_url(self, product_id: str) -> str:
        return f"https://www.target.com/p/-/A-{product_id}"

    def _location_params(self) -> dict[str, str]:
        return {
            "store_id": settings.target_store_id,
            "pricing_store_id": settings.target_store_id,
            "has_pricing_store_id": "true",
            "zip": settings.target_zip,
            "state": settings.target_state,
            "channel": "WEB",
        }

    def structured_sources(self, product_id: str) -> list[StructuredSource]:
        keys = settings.target_api_keys
        page = f"/p/A-{product_id}"
        sources: list[StructuredSource] = []

        for i, key in enumerate(keys):
            sources.append(StructuredSource(
                name=f"pdp_client_v1#{i + 1}",
                url=f"{REDSKY_BASE}/pdp_client_v1",
                params={"key": key, "tcin": product_id, "page": page, **self._location_params()},
                parse=parse_pdp_client,
            ))

        if keys:
            sources.append(StructuredSource(
                name="product_summary_with_fulfillment_v1",
                url=f"{REDSKY_BASE}/product_summary_with_fulfillment_v1",
                params={
                    "key": keys[0],
                    "tcins": product_id,
                    "has_required_store_id": "true",
                    "page": page,
                    **self._location_params(),
                },
                parse=parse_summary,
            ))

        for i, key in enumerate(keys):
            sources.append(StructuredSource(
                name=f"pdp_fulfillment_v1#{i + 1}",
                url=f"{REDSKY_BASE}/pdp_fulfillment_v1",
                params={
                    "key": key,
                    "tcin": product_id,
                    "store_positions_store_id": settings.target_store_id,
                    "has_store_positions_store_id": "true",
                    "is_bot": "false",
                    **self._location_params(),
                },
                parse=parse_fulfillment,
            ))

        return sources

    def parse_embedded_state(self, html: str, product_id: str) -> Optional[SourceReading]:
        for pattern in TGT_DATA_PATTERNS:
            match = pattern.search(html)
            if not match:
                continue
            try:
                data = json.loads(match.group(1))
            except json.JSONDecodeError as e:
                logger.debug(f"__TGT_DATA__ for {product_id} is not valid JSON: {e}")
                continue

            queries = dig(data, "__PRELOADED_QUERIES__", "queries") or []
            for query in queries:
                product = dig(query, 1, "data", "product") or dig(query, 1, "product")
                if product:
                    reading = parse_product_node(product, "__TGT_DATA__")
                    if reading:
                        reading.raw_status = f"TGT_DATA: {reading.raw_status}" if reading.raw_status else "TGT_DATA"
                        return reading
        return None

    def stock_prompt(self, page_text: str) -> str:
        return (
            "You are looking at a Target.com product page.\n"
            "Return a JSON object with:\n"
            '- "in_stock": boolean, true if the item can be bought now (shipping or pickup)\n'
            '- "price": number or null, current price in USD\n'
            '- "add_to_cart_visible": boolean, an active "Add to cart" or "Ship it" button is shown\n'
            '- "blocked": boolean, a CAPTCHA or bot check is shown\n'
            '- "notes": short string with any stock message ("Sold out", "Only 3 left")\n'
            '"Temporarily out of stock" and "Notify me when it\'s back" mean NOT in stock.\n'
            "Return ONLY valid JSON.\n\n"
            f"PAGE TEXT:\n{page_text[:6000]}"
        )

    def checkout_steps(self) -> list[str]:
        return ["cart", "checkout", "shipping", "payment", "review", "confirmation"]

    def standard_playbook(self) -> list[dict[str, Any]]:
        return [
            {"action": "navigate", "url": "{product_url}"},
            {"action": "wait", "ms": 1500, "jitter_ms": 500},
            {
                "action": "assert_text",
                "pattern": "out of stock|sold out|temporarily unavailable|currently unavailable",
                "fail_if": True,
                "message": "Product is out of stock",
            },
            {
                "action": "assert_price",
                "stage": "product",
                "limit": "{ceiling}",
                "selector": '[data-test="product-price"]',
            },
            {
                "action": "click",
                "selector": self.add_to_cart_selectors[1],
                "fallback_selectors": [s for i, s in enumerate(self.add_to_cart_selectors) if i != 1],
                "timeout_ms": 5000,
            },
            {"action": "wait", "ms": 2500, "jitter_ms": 500},
            {"action": "dismiss_overlay", "selectors": self.overlay_selectors},
            {"action": "navigate", "url": self.cart_url},
            {"action": "wait", "ms": 2000, "jitter_ms": 500},
            {
                "action": "click",
                "selector": self.checkout_selectors[0],
                "fallback_selectors": self.checkout_selectors[1:],
                "timeout_ms": 5000,
            },
            {"action": "wait", "ms": 3000, "jitter_ms": 500},
            {
                "action": "assert_url",
                "contains": "/checkout",
                "fail_if": False,
                "message": "Not on checkout page",
            },
            {
                "action": "click",
                "selector": 'button:has-text("Save and continue")',
                "fallback_selectors": ['button:has-text("Save & continue")'],
                "optional": True,
                "timeout_ms": 8000,
            },
            {"action": "wait", "ms": 2000, "jitter_ms": 500},
            {
                "action": "assert_price",
                "stage": "checkout",
                "limit": "{ceiling}",
                "quantity": "{quantity}",
            },
            {
                "action": "click",
                "selector": 'button:has-text("Place your order")',
                "fallback_selectors": ['button[data-test="placeOrderButton"]'],
                "timeout_ms": 8000,
                "commits_order": True,
            },
            {"action": "wait", "ms": 3000, "jitter_ms": 500},
            {
                "action": "fill",
                "selector": self.cvv_selectors[0],
                "fallback_selectors": self.cvv_selectors[1:],
                "value": "{cvv}",
                "optional": True,
            },
            {
                "action": "click",
                "selector": self.cvv_confirm_selectors[0],
                "optional": True,
                "timeout_ms": 3000,
            },
            {"action": "wait", "ms": 5000, "jitter_ms": 1000},
        ]
