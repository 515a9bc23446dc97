"""Retailer adapter registry (static, first match wins)."""

from __future__ import annotations

from typing import Optional

from stocksniper.retailers.base import RetailerAdapter
from stocksniper.retailers.target import TargetAdapter


_ADAPTERS: list[RetailerAdapter] = [
    TargetAdapter(),
]


def get_adapter_for_url(url: str) -> Optional[RetailerAdapter]:
    """Return the first adapter whose URL patterns match, or None."""
    if not url:
        return None
    for adapter in _ADAPTERS:
        if adapter.matches(url):
            return adapter
    return None


def get_adapter(retailer: str) -> Optional[RetailerAdapter]:
    """Return the adapter registered under a retailer name."""
    if not retailer:
        return None
    for adapter in _ADAPTERS:
        if adapter.name == retailer.lower():
            return adapter
    return None


def supported_retailers() -> list[str]:
    return [adapter.name for adapter in _ADAPTERS]


__all__ = [
    "RetailerAdapter",
    "get_adapter",
    "get_adapter_for_url",
    "supported_retailers",
]
