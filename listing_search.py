"""
Listing search execution.

ListingSearchService issues exactly one GET to the public listing search
endpoint per uncached invocation and returns distance-annotated results
in server order.  Rules:

- No anchor, no request: an anchor-less query returns empty immediately.
- 401 is a soft failure on this deliberately public endpoint: logged,
  reported as status "unauthorized", never surfaced as an auth problem.
- Any other non-2xx raises SearchBackendError at the transport layer;
  fetch() reports it as status "unavailable" so callers can tell a
  broken backend from zero results.  search() flattens both to [].
- Successful outcomes are cached per full parameter tuple for the
  staleness window (5 minutes by default).

SearchGenerations hands out monotonically increasing tokens so a slow,
older response can be recognised and dropped instead of overwriting the
results of a newer search.
"""

import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from ns_trace import get_trace
from search_config import SEARCH_CONFIG, ListingSearchConfig
from search_types import (
    STATUS_NO_ANCHOR,
    STATUS_OK,
    STATUS_UNAUTHORIZED,
    STATUS_UNAVAILABLE,
    SearchOutcome,
    SearchQuery,
    SearchResultItem,
    format_number,
)

logger = logging.getLogger(__name__)


class SearchBackendError(Exception):
    """Non-success response (other than 401) or unusable body from the search endpoint."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class SearchRejectedError(Exception):
    """The public search endpoint answered 401."""

    pass


def _record_health(success: bool, elapsed_ms: int, error: Optional[str] = None) -> None:
    try:
        from health_monitor import record_call
        record_call("listings", success, elapsed_ms, error)
    except Exception:
        pass


def build_search_params(query: SearchQuery) -> Dict[str, str]:
    """Request parameters for a query.  Requires an anchor.

    Optional filters are omitted when empty; lat/lng are always present.
    """
    if query.anchor is None:
        raise ValueError("Cannot build search parameters without an anchor")
    params = {
        "lat": format_number(query.anchor.point.lat),
        "lng": format_number(query.anchor.point.lng),
        "radius": format_number(query.radius_km),
    }
    if query.free_text:
        params["query"] = query.free_text
    if query.category:
        params["category"] = query.category
    if query.min_price is not None:
        params["minPrice"] = format_number(query.min_price)
    if query.max_price is not None:
        params["maxPrice"] = format_number(query.max_price)
    params["sortBy"] = query.sort_by
    params["order"] = query.sort_order
    return params


def parse_results(data: Any) -> Tuple[SearchResultItem, ...]:
    """Listing objects to result items, keeping server order.

    Raises SearchBackendError if the body is not a JSON array.
    """
    if not isinstance(data, list):
        raise SearchBackendError("Search response is not a list")
    items = []
    for raw in data:
        if not isinstance(raw, dict):
            continue
        try:
            items.append(SearchResultItem.from_api(raw))
        except ValueError:
            logger.warning("Skipping malformed listing in search response: %r", raw.get("title"))
    return tuple(items)


class SearchGenerations:
    """Monotonic request sequence; only the newest generation is current."""

    def __init__(self):
        self._lock = threading.Lock()
        self._latest = 0

    def issue(self) -> int:
        with self._lock:
            self._latest += 1
            return self._latest

    def is_current(self, token: int) -> bool:
        with self._lock:
            return token == self._latest

    @property
    def latest(self) -> int:
        return self._latest


class ListingSearchService:
    """Client for the listing search endpoint, with a short-lived result cache."""

    def __init__(
        self,
        config: Optional[ListingSearchConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or SEARCH_CONFIG.listings
        self.url = f"{self.config.api_base}{self.config.path}"
        self.session = requests.Session()
        self.session.trust_env = False
        self._clock = clock
        self._lock = threading.Lock()
        self._cache: "OrderedDict[Tuple, Tuple[float, SearchOutcome]]" = OrderedDict()

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    @staticmethod
    def cache_key(params: Dict[str, str]) -> Tuple:
        return tuple(sorted(params.items()))

    def _cache_get(self, key: Tuple) -> Optional[SearchOutcome]:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            stored_at, outcome = entry
            if self._clock() - stored_at > self.config.cache_ttl_seconds:
                del self._cache[key]
                return None
            self._cache.move_to_end(key)
            return outcome

    def _cache_put(self, key: Tuple, outcome: SearchOutcome) -> None:
        with self._lock:
            self._cache[key] = (self._clock(), outcome)
            self._cache.move_to_end(key)
            while len(self._cache) > self.config.cache_max_entries:
                self._cache.popitem(last=False)

    def invalidate(self) -> None:
        """Drop every cached result."""
        with self._lock:
            self._cache.clear()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(self, params: Dict[str, str]) -> Tuple[SearchResultItem, ...]:
        """One GET to the search endpoint.

        Raises:
            SearchRejectedError: on HTTP 401.
            SearchBackendError: on any other non-2xx status or a bad body.
            requests.exceptions.RequestException: on transport failure.
        """
        trace = get_trace()
        t0 = time.monotonic()
        try:
            resp = self.session.get(self.url, params=params, timeout=self.config.timeout_seconds)
        except requests.exceptions.RequestException as e:
            elapsed_ms = int((time.monotonic() - t0) * 1000)
            if trace:
                trace.record_api_call(
                    service="listings", endpoint="listings_search", elapsed_ms=elapsed_ms,
                    status_code=0,
                    provider_status="timeout" if isinstance(e, requests.exceptions.Timeout) else "exception",
                )
            _record_health(False, elapsed_ms, str(e))
            raise

        elapsed_ms = int((time.monotonic() - t0) * 1000)
        if trace:
            trace.record_api_call(
                service="listings", endpoint="listings_search", elapsed_ms=elapsed_ms,
                status_code=resp.status_code,
                provider_status="OK" if resp.ok else "ERROR",
            )

        if resp.status_code == 401:
            # The endpoint is public; a 401 says nothing about the user's session.
            _record_health(True, elapsed_ms)
            raise SearchRejectedError("Search endpoint returned 401")
        if not resp.ok:
            _record_health(False, elapsed_ms, f"HTTP {resp.status_code}")
            raise SearchBackendError(
                f"Failed to search listings: {resp.status_code}", resp.status_code
            )

        try:
            data = resp.json()
        except ValueError:
            _record_health(False, elapsed_ms, "parse_error")
            raise SearchBackendError("Search endpoint returned non-JSON response", resp.status_code)

        _record_health(True, elapsed_ms)
        return parse_results(data)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def fetch(self, query: SearchQuery) -> SearchOutcome:
        """Run a search and report how it went."""
        if query.anchor is None:
            return SearchOutcome(status=STATUS_NO_ANCHOR)

        params = build_search_params(query)
        key = self.cache_key(params)
        cached = self._cache_get(key)
        if cached is not None:
            trace = get_trace()
            if trace:
                trace.record_api_call(
                    service="listings", endpoint="listings_search", elapsed_ms=0,
                    status_code=200, provider_status="cache_hit",
                )
            return cached

        try:
            items = self._request(params)
        except SearchRejectedError:
            logger.warning("Unauthorized access to search endpoint; showing no results")
            return SearchOutcome(status=STATUS_UNAUTHORIZED)
        except SearchBackendError as e:
            logger.error("Error searching listings: %s", e)
            return SearchOutcome(status=STATUS_UNAVAILABLE)
        except requests.exceptions.RequestException as e:
            logger.error("Error searching listings: %s", e)
            return SearchOutcome(status=STATUS_UNAVAILABLE)

        outcome = SearchOutcome(status=STATUS_OK, items=items)
        self._cache_put(key, outcome)
        logger.info(
            "Search near (%s, %s) within %skm returned %d listings",
            params["lat"], params["lng"], params["radius"], len(items),
        )
        return outcome

    def search(self, query: SearchQuery) -> List[SearchResultItem]:
        """Ordered results for a query; every failure reads as empty."""
        return self.fetch(query).as_list()
