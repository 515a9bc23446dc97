"""Retailer adapter interface."""

import re
from abc import ABC, abstractmethod
from typing import Any, Optional

from stocksniper.resolve.base import SourceReading, StructuredSource


class RetailerAdapter(ABC):
    """
    Everything retailer-specific the core needs: URL recognition, ranked
    structured stock sources, page-state parsing, and the selectors and
    prompts the purchase path drives the storefront with.
    """

    name: str = ""
    display_name: str = ""
    url_patterns: list[re.Pattern] = []
    login_url: str = ""
    cart_url: str = ""

    # Order confirmation detection
    confirmation_url_patterns: list[str] = []
    confirmation_text_patterns: list[str] = []

    # Stop-condition hints for the agent
    login_url_markers: list[str] = ["/login"]
    verification_text_patterns: list[str] = []

    # Selector lists for the agent path
    add_to_cart_selectors: list[str] = []
    checkout_selectors: list[str] = []
    advance_selectors: list[str] = []
    cvv_selectors: list[str] = []
    cvv_confirm_selectors: list[str] = []
    overlay_selectors: list[str] = []
    username_selectors: list[str] = []
    password_selectors: list[str] = []
    submit_selectors: list[str] = []

    def matches(self, url: str) -> bool:
        return any(pattern.search(url) for pattern in self.url_patterns)

    @abstractmethod
    def extract_id(self, url: str) -> Optional[str]:
        """Return the retailer product id embedded in a URL."""
        pass

    @abstractmethod
    def page_url(self, product_id: str) -> str:
        """Canonical product page URL."""
        pass

    @abstractmethod
    def structured_sources(self, product_id: str) -> list[StructuredSource]:
        """JSON endpoints in rank order."""
        pass

    def parse_embedded_state(self, html: str, product_id: str) -> Optional[SourceReading]:
        """Retailer-specific page-state blob parsing; None when absent."""
        return None

    def default_display_name(self, product_id: str) -> str:
        return f"{self.display_name} Product {product_id}"

    @abstractmethod
    def stock_prompt(self, page_text: str) -> str:
        """Vision/text prompt asking for in_stock, price and button state."""
        pass

    @abstractmethod
    def checkout_steps(self) -> list[str]:
        """Names of the checkout stages, in order."""
        pass

    @abstractmethod
    def standard_playbook(self) -> list[dict[str, Any]]:
        """Step template recorded after a successful agent purchase."""
        pass
