"""
Location resolution via OpenStreetMap Nominatim.

NominatimClient wraps forward search (autocomplete suggestions, single
best match) and reverse lookup.  Lookups are supporting calls: every
failure degrades (empty suggestions, coordinate-only location) and is
logged, never raised to the caller.

All requests go through _traced_get, which provides:
- SQLite cache check before HTTP (30-day TTL via models.py)
- Process-local spacing: Nominatim's policy allows 1 request/second
- An explicit per-request timeout
- ns_trace and health_monitor recording

SuggestionFeed sits between keystrokes and the client: it debounces
input, fires fetches on an executor, and applies a response only if it
carries the most recently issued sequence token.
"""

import json
import logging
import threading
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional

import requests

from models import geocode_cache_key, get_geocode_cache, set_geocode_cache
from ns_trace import get_trace
from search_config import SEARCH_CONFIG, GeocodingConfig
from search_types import GeoPoint, ResolvedLocation, Suggestion, parse_point

logger = logging.getLogger(__name__)


class GeocodingError(Exception):
    """Raised inside the client when Nominatim cannot answer a lookup."""

    pass


@dataclass
class GeocodeDetails:
    """Best single match for a place string, with its address parts."""
    latitude: float
    longitude: float
    display_name: str
    city: Optional[str] = None
    region: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = None


def _record_health(success: bool, elapsed_ms: int, error: Optional[str] = None) -> None:
    try:
        from health_monitor import record_call
        record_call("nominatim", success, elapsed_ms, error)
    except Exception:
        pass


def _parse_candidates(data: Any) -> List[Suggestion]:
    """Suggestions from a Nominatim /search array; bad rows are skipped.

    Duplicate display names are collapsed, keeping the first occurrence.
    """
    if not isinstance(data, list):
        return []
    seen = set()
    suggestions = []
    for candidate in data:
        if not isinstance(candidate, dict):
            continue
        point = parse_point(candidate.get("lat"), candidate.get("lon"))
        name = (candidate.get("display_name") or "").strip()
        if point is None or not name or name in seen:
            continue
        seen.add(name)
        suggestions.append(Suggestion(
            display_name=name,
            point=point,
            raw_components=candidate.get("address") or {},
        ))
    return suggestions


class NominatimClient:
    """Client for Nominatim forward and reverse geocoding."""

    def __init__(self, config: Optional[GeocodingConfig] = None):
        self.config = config or SEARCH_CONFIG.geocoding
        self.base_url = self.config.base_url
        self.min_spacing = self.config.min_spacing_seconds
        self.session = requests.Session()
        self.session.trust_env = False
        self.session.headers["User-Agent"] = self.config.user_agent
        self._lock = threading.Lock()
        self._last_request_time = 0.0

    def _wait_for_slot(self) -> None:
        """Enforce minimum spacing between outbound requests."""
        with self._lock:
            elapsed = time.monotonic() - self._last_request_time
            if elapsed < self.min_spacing:
                time.sleep(self.min_spacing - elapsed)
            self._last_request_time = time.monotonic()

    def _traced_get(self, endpoint: str, params: Dict[str, Any]) -> Any:
        """Cache-first GET against a Nominatim endpoint.

        Raises:
            GeocodingError: on timeout, transport error, HTTP error status,
                or a non-JSON body.
        """
        cache_key = geocode_cache_key(endpoint, params)
        cached = get_geocode_cache(cache_key, ttl_days=self.config.cache_ttl_days)
        trace = get_trace()
        if cached is not None:
            try:
                data = json.loads(cached)
                if trace:
                    trace.record_api_call(
                        service="nominatim",
                        endpoint=endpoint,
                        elapsed_ms=0,
                        status_code=200,
                        provider_status="cache_hit",
                    )
                return data
            except (json.JSONDecodeError, TypeError):
                logger.warning("Corrupted geocode cache entry %s, refetching", cache_key)

        self._wait_for_slot()
        url = f"{self.base_url}/{endpoint}"
        t0 = time.monotonic()
        try:
            resp = self.session.get(url, params=params, timeout=self.config.timeout_seconds)
        except requests.exceptions.Timeout:
            elapsed_ms = int((time.monotonic() - t0) * 1000)
            if trace:
                trace.record_api_call(
                    service="nominatim", endpoint=endpoint, elapsed_ms=elapsed_ms,
                    status_code=0, provider_status="timeout",
                )
            _record_health(False, elapsed_ms, "timeout")
            raise GeocodingError(f"Nominatim {endpoint} timed out")
        except requests.exceptions.RequestException as e:
            elapsed_ms = int((time.monotonic() - t0) * 1000)
            if trace:
                trace.record_api_call(
                    service="nominatim", endpoint=endpoint, elapsed_ms=elapsed_ms,
                    status_code=0, provider_status="exception",
                )
            _record_health(False, elapsed_ms, str(e))
            raise GeocodingError(f"Nominatim {endpoint} request failed: {e}") from e

        elapsed_ms = int((time.monotonic() - t0) * 1000)
        if resp.status_code >= 400:
            if trace:
                trace.record_api_call(
                    service="nominatim", endpoint=endpoint, elapsed_ms=elapsed_ms,
                    status_code=resp.status_code, provider_status="http_error",
                )
            _record_health(False, elapsed_ms, f"HTTP {resp.status_code}")
            raise GeocodingError(f"Nominatim {endpoint} HTTP {resp.status_code}")

        try:
            data = resp.json()
        except ValueError:
            _record_health(False, elapsed_ms, "parse_error")
            raise GeocodingError(f"Nominatim {endpoint} returned non-JSON response")

        if trace:
            trace.record_api_call(
                service="nominatim", endpoint=endpoint, elapsed_ms=elapsed_ms,
                status_code=resp.status_code,
            )
        _record_health(True, elapsed_ms)

        # Only cache answers worth repeating
        if data and not (isinstance(data, dict) and data.get("error")):
            set_geocode_cache(cache_key, endpoint, json.dumps(data))
        return data

    def _search(self, text: str, limit: int) -> List[Suggestion]:
        params = {
            "format": "json",
            "q": text.strip(),
            "countrycodes": self.config.country_codes,
            "limit": limit,
            "addressdetails": 1,
        }
        return _parse_candidates(self._traced_get("search", params))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def suggest(self, text: str) -> Iterator[Suggestion]:
        """Lazily yield autocomplete suggestions for partial input.

        Nothing is requested until iteration starts, and nothing at all
        for input shorter than min_query_chars.  Failures yield nothing.
        """
        if len((text or "").strip()) < self.config.min_query_chars:
            return
        try:
            suggestions = self._search(text, self.config.suggestion_limit)
        except GeocodingError as e:
            logger.warning("Suggestion lookup failed for %r: %s", text, e)
            return
        yield from suggestions

    def geocode(self, text: str) -> Optional[ResolvedLocation]:
        """Best single match for submitted text, or None."""
        if not (text or "").strip():
            return None
        try:
            matches = self._search(text, 1)
        except GeocodingError as e:
            logger.warning("Geocoding failed for %r: %s", text, e)
            return None
        if not matches:
            logger.info("No geocoding results for: %s", text.strip())
            return None
        return matches[0].to_location()

    def geocode_details(self, text: str) -> Optional[GeocodeDetails]:
        """Best match with city/region/country/postcode broken out."""
        if not (text or "").strip():
            return None
        try:
            matches = self._search(text, 1)
        except GeocodingError as e:
            logger.warning("Geocoding failed for %r: %s", text, e)
            return None
        if not matches:
            return None
        best = matches[0]
        address = best.raw_components
        return GeocodeDetails(
            latitude=best.point.lat,
            longitude=best.point.lng,
            display_name=best.display_name,
            city=(address.get("city") or address.get("town")
                  or address.get("village") or address.get("municipality")),
            region=address.get("state") or address.get("province") or address.get("region"),
            country=address.get("country"),
            postal_code=address.get("postcode"),
        )

    def reverse_resolve(self, point: GeoPoint) -> ResolvedLocation:
        """Label a coordinate pair.  Falls back to a generic label on failure."""
        params = {"format": "json", "lat": point.lat, "lon": point.lng}
        try:
            data = self._traced_get("reverse", params)
        except GeocodingError as e:
            logger.warning("Reverse geocoding failed for (%.4f, %.4f): %s", point.lat, point.lng, e)
            return ResolvedLocation(point=point, display_address=self.config.fallback_label)

        name = data.get("display_name") if isinstance(data, dict) else None
        if not name:
            logger.info("Reverse geocoding found no address for (%.4f, %.4f)", point.lat, point.lng)
            return ResolvedLocation(point=point, display_address=self.config.fallback_label)
        return ResolvedLocation(point=point, display_address=name)


# =============================================================================
# Debounced, ordered suggestions
# =============================================================================

class SuggestionFeed:
    """Autocomplete state for one location input.

    Keystrokes arrive through on_input(); the render loop calls tick().
    A fetch fires once input has been quiet for the debounce window.
    Fetches run on an executor, so several can be in flight; each carries
    a sequence token and only the latest token's response is applied.
    """

    def __init__(
        self,
        client: NominatimClient,
        executor: Optional[Executor] = None,
        clock: Callable[[], float] = time.monotonic,
        on_change: Optional[Callable[[List[Suggestion]], None]] = None,
    ):
        self._client = client
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=2, thread_name_prefix="suggest"
        )
        self._clock = clock
        self._on_change = on_change
        self._debounce = client.config.debounce_seconds
        self._min_chars = client.config.min_query_chars
        self._lock = threading.Lock()
        self._suggestions: List[Suggestion] = []
        self._pending_text: Optional[str] = None
        self._deadline: Optional[float] = None
        self._issued = 0
        self.text = ""
        self.searching = False

    @property
    def suggestions(self) -> List[Suggestion]:
        with self._lock:
            return list(self._suggestions)

    @property
    def latest_token(self) -> int:
        return self._issued

    def on_input(self, text: str, now: Optional[float] = None) -> None:
        """Record a keystroke; restarts the debounce window."""
        now = self._clock() if now is None else now
        with self._lock:
            self.text = text
            if len(text.strip()) < self._min_chars:
                # Too short: drop visible suggestions and anything in flight
                self._pending_text = None
                self._deadline = None
                self._issued += 1
                self._suggestions = []
                self.searching = False
                cleared = True
            else:
                self._pending_text = text
                self._deadline = now + self._debounce
                cleared = False
        if cleared:
            self._notify([])

    def tick(self, now: Optional[float] = None) -> Optional[int]:
        """Fire the pending lookup if the debounce window has elapsed.

        Returns the issued sequence token, or None if nothing fired.
        """
        now = self._clock() if now is None else now
        with self._lock:
            if self._pending_text is None or now < self._deadline:
                return None
            text = self._pending_text
            self._pending_text = None
            self._deadline = None
            self._issued += 1
            token = self._issued
            self.searching = True
        logger.debug("Issuing suggestion lookup #%d for %r", token, text)
        self._executor.submit(self._fetch, token, text)
        return token

    def _fetch(self, token: int, text: str) -> None:
        try:
            results = list(self._client.suggest(text))
        except Exception:
            logger.exception("Unexpected error fetching suggestions for %r", text)
            results = []
        self.deliver(token, results)

    def deliver(self, token: int, suggestions: List[Suggestion]) -> bool:
        """Apply a lookup response if it is still the latest. Returns applied."""
        with self._lock:
            if token != self._issued:
                logger.debug(
                    "Discarding stale suggestions #%d (latest #%d)", token, self._issued
                )
                return False
            self._suggestions = list(suggestions)
            self.searching = False
        self._notify(list(suggestions))
        return True

    def select(self, index: int) -> ResolvedLocation:
        """Pick a visible suggestion as the anchor; the list is discarded."""
        with self._lock:
            chosen = self._suggestions[index]
            self._suggestions = []
            self._pending_text = None
            self._issued += 1
            self.searching = False
            self.text = chosen.display_name
        self._notify([])
        return chosen.to_location()

    def blur(self) -> None:
        """Input lost focus: discard suggestions and ignore late responses."""
        with self._lock:
            self._suggestions = []
            self._pending_text = None
            self._issued += 1
            self.searching = False
        self._notify([])

    def close(self) -> None:
        """Shut down the executor this feed created.  An injected one is left alone."""
        if self._owns_executor:
            self._executor.shutdown(wait=False)

    def _notify(self, suggestions: List[Suggestion]) -> None:
        if self._on_change:
            self._on_change(suggestions)
