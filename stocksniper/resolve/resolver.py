"""Resolve a product locator to a stock snapshot.

Ranked structured sources first, then the product page itself. A single
source failing is never an error; only exhausting everything is.
"""

import asyncio
import logging
import time
from typing import Optional

import httpx

from stocksniper import metrics
from stocksniper.config import settings
from stocksniper.resolve.base import (
    LAYER_EMBEDDED,
    LAYER_INFERRED,
    LAYER_METADATA,
    LAYER_STRUCTURED,
    LAYER_TEXT,
    ResolutionError,
    ResolutionExhausted,
    SourceError,
    SourceReading,
    StockSnapshot,
    StructuredSource,
    UnsupportedRetailer,
)
from stocksniper.resolve.html_fallback import (
    extract_embedded_state,
    extract_metadata,
    extract_text_heuristics,
)
from stocksniper.retailers import RetailerAdapter, get_adapter_for_url

logger = logging.getLogger(__name__)

INFERRED_STATUS = "Inferred: product has active price, no out-of-stock signal"


def _merge_display_fields(readings: list[SourceReading]) -> tuple:
    """
    Price/name/image from the richest reading (earliest wins ties), with any
    field it lacks filled from the other readings in rank order.
    """
    if not readings:
        return None, None, None

    richest = max(readings, key=lambda r: r.richness)  # max() keeps the first on ties
    ordered = [richest] + [r for r in readings if r is not richest]

    def first(attr: str):
        for reading in ordered:
            value = getattr(reading, attr)
            if value is not None:
                return value
        return None

    return first("price"), first("display_name"), first("image")


class Resolver:
    """
    Stock resolver over retailer adapters.

    The HTTP client is injected so one pooled client serves a whole process;
    when omitted a client is created lazily and closed by ``close()``.
    """

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        self._client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={
                    "User-Agent": settings.resolver_user_agent,
                    "Accept-Language": "en-US,en;q=0.9",
                },
                follow_redirects=True,
            )
        return self._client

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def product_key(self, locator: str) -> str:
        """Key shared by every locator pointing at the same product."""
        adapter = get_adapter_for_url(locator)
        if adapter is not None:
            product_id = adapter.extract_id(locator)
            if product_id:
                return f"{adapter.name}:{product_id}"
        return locator

    async def _fetch_json(self, source: StructuredSource) -> SourceReading:
        client = await self._get_client()
        try:
            response = await asyncio.wait_for(
                client.get(
                    source.url,
                    params=source.params,
                    headers={"Accept": "application/json"},
                ),
                timeout=settings.resolver_source_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise SourceError(source.name, "timeout")
        except httpx.HTTPError as e:
            raise SourceError(source.name, f"{type(e).__name__}: {e}")

        if response.status_code >= 400:
            raise SourceError(source.name, f"HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError:
            raise SourceError(source.name, "non-JSON body")

        reading = source.parse(payload)
        if reading is None:
            raise SourceError(source.name, "unrecognized payload")
        return reading

    async def _fetch_html(self, url: str) -> str:
        client = await self._get_client()
        try:
            response = await asyncio.wait_for(
                client.get(url, headers={"Accept": "text/html,application/xhtml+xml"}),
                timeout=settings.resolver_html_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise SourceError("html", "timeout")
        except httpx.HTTPError as e:
            raise SourceError("html", f"{type(e).__name__}: {e}")

        if response.status_code >= 400:
            raise SourceError("html", f"HTTP {response.status_code}")
        return response.text

    async def _query_structured(
        self,
        adapter: RetailerAdapter,
        product_id: str,
        errors: list[str],
    ) -> tuple[list[SourceReading], Optional[SourceReading]]:
        """Walk sources in rank order; stop once availability and a full payload are held."""
        readings: list[SourceReading] = []
        availability: Optional[SourceReading] = None

        for source in adapter.structured_sources(product_id):
            try:
                reading = await self._fetch_json(source)
            except SourceError as e:
                logger.debug(f"{adapter.name} {product_id}: source failed ({e})")
                metrics.record_source_request(adapter.name, source.name.split("#")[0], "error")
                errors.append(str(e))
                continue

            metrics.record_source_request(adapter.name, source.name.split("#")[0], "success")
            readings.append(reading)
            if availability is None and reading.available is not None:
                availability = reading

            if availability is not None and any(r.is_complete for r in readings):
                break

        return readings, availability

    async def resolve(self, locator: str) -> StockSnapshot:
        """
        Resolve current stock state for a product URL.

        Raises:
            UnsupportedRetailer: no adapter recognizes the locator
            ResolutionExhausted: every source including the page failed
        """
        adapter = get_adapter_for_url(locator)
        if adapter is None:
            raise UnsupportedRetailer(locator)
        product_id = adapter.extract_id(locator)
        if not product_id:
            raise ResolutionError(f"Could not extract a {adapter.display_name} product id from {locator}")

        start = time.monotonic()
        errors: list[str] = []

        readings, availability = await self._query_structured(adapter, product_id, errors)
        price, name, image = _merge_display_fields(readings)

        snapshot: Optional[StockSnapshot] = None
        if availability is not None:
            snapshot = StockSnapshot(
                in_stock=bool(availability.available),
                price=price,
                display_name=name or adapter.default_display_name(product_id),
                image=image,
                raw_status=availability.raw_status or availability.source,
                layer=LAYER_STRUCTURED,
            )
        elif price is not None:
            snapshot = StockSnapshot(
                in_stock=True,
                price=price,
                display_name=name or adapter.default_display_name(product_id),
                image=image,
                raw_status=INFERRED_STATUS,
                layer=LAYER_INFERRED,
            )
        else:
            snapshot = await self._resolve_from_page(adapter, product_id, locator, readings, errors)

        if snapshot is None:
            logger.warning(f"{adapter.name} {product_id}: all sources exhausted")
            raise ResolutionExhausted(locator, errors)

        metrics.record_resolution(adapter.name, snapshot.layer, time.monotonic() - start)
        logger.info(
            f"{adapter.name} {product_id}: in_stock={snapshot.in_stock} "
            f"price={snapshot.price} via {snapshot.layer} ({snapshot.raw_status})"
        )
        return snapshot

    async def _resolve_from_page(
        self,
        adapter: RetailerAdapter,
        product_id: str,
        locator: str,
        readings: list[SourceReading],
        errors: list[str],
    ) -> Optional[StockSnapshot]:
        page_url = locator if locator.startswith("http") else adapter.page_url(product_id)
        logger.info(f"{adapter.name} {product_id}: structured sources gave nothing, trying page")
        try:
            html = await self._fetch_html(page_url)
        except SourceError as e:
            metrics.record_source_request(adapter.name, "html", "error")
            errors.append(str(e))
            return None
        metrics.record_source_request(adapter.name, "html", "success")

        layers = [
            (LAYER_EMBEDDED, lambda: extract_embedded_state(html, adapter, product_id)),
            (LAYER_METADATA, lambda: extract_metadata(html)),
            (LAYER_TEXT, lambda: extract_text_heuristics(html)),
        ]

        page_readings: list[SourceReading] = []
        for layer, extract in layers:
            reading = extract()
            if reading is None:
                continue
            page_readings.append(reading)
            if reading.available is None:
                continue

            price, name, image = _merge_display_fields(readings + page_readings)
            return StockSnapshot(
                in_stock=reading.available,
                price=price,
                display_name=name or adapter.default_display_name(product_id),
                image=image,
                raw_status=reading.raw_status,
                layer=layer,
            )

        errors.append("html: no stock signal in page")
        return None


class CycleSnapshotCache:
    """
    Per-cycle memo of resolutions keyed by product.

    Repeated lookups return the same snapshot object; a failed resolution is
    remembered too and re-raised instead of hitting the upstream again.
    """

    def __init__(self, resolver: Resolver):
        self.resolver = resolver
        self._results: dict[str, StockSnapshot | ResolutionError] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self.hits = 0

    async def resolve(self, locator: str) -> StockSnapshot:
        key = self.resolver.product_key(locator)
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            if key in self._results:
                self.hits += 1
                result = self._results[key]
            else:
                try:
                    result = await self.resolver.resolve(locator)
                except ResolutionError as e:
                    result = e
                self._results[key] = result

        if isinstance(result, ResolutionError):
            raise result
        return result

    def __len__(self) -> int:
        return len(self._results)
