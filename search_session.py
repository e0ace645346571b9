#!/usr/bin/env python3
"""
Search session: one user's location search page, headless.

Wires the pieces into the loop the page runs:

    keystrokes -> SuggestionFeed -> chosen anchor -> SearchStateStore
    map drag / presets ------------------------------^        |
    filter edits + apply() --------------------------^        v
                      SearchResultsView <- ListingSearchService

Every network call (suggestions, reverse lookup, listing search) runs on
an executor so the caller's loop never blocks.  Listing responses carry
a generation token; a response that is not from the latest search is
dropped.

Usage:
    python search_session.py "San Francisco, CA" --radius 40 --query bike
    python search_session.py --lat 37.77 --lng -122.42 --sort price --order desc
"""

import argparse
import base64
import json
import logging
import sys
import threading
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from dotenv import load_dotenv

from geocoding import NominatimClient, SuggestionFeed
from listing_search import ListingSearchService, SearchGenerations
from models import init_db
from radius_map import RadiusMapController
from results_view import SearchResultsView
from search_state import SearchStateStore
from search_types import (
    STATUS_NO_ANCHOR,
    STATUS_UNAVAILABLE,
    GeoPoint,
    ResolvedLocation,
    SearchOutcome,
    SearchQuery,
    SearchResultItem,
)

logger = logging.getLogger(__name__)

MANUAL_ENTRY_PROMPT = "Unable to get your location. Please enter a location manually."
UNSUPPORTED_PROMPT = "Geolocation is not supported here. Please enter a location manually."
NOT_FOUND_PROMPT = "We couldn't find that location. Try a city, address, or postal code."


class GeolocationDenied(Exception):
    """The user refused the one-shot position request."""

    pass


class GeolocationUnavailable(Exception):
    """No position source is available (unsupported, or it failed)."""

    pass


PositionProvider = Callable[[], GeoPoint]


class ImmediateExecutor(Executor):
    """Runs submitted work inline.  For scripts and the CLI."""

    def submit(self, fn, *args, **kwargs):
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


class SearchSession:
    """State and event handlers for one search page."""

    def __init__(
        self,
        geocoder: Optional[NominatimClient] = None,
        service: Optional[ListingSearchService] = None,
        store: Optional[SearchStateStore] = None,
        executor: Optional[Executor] = None,
        clock: Callable[[], float] = time.monotonic,
        collapse_failures: bool = False,
    ):
        self.store = store or SearchStateStore()
        self.geocoder = geocoder or NominatimClient()
        self.service = service or ListingSearchService()
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="search")
        self.suggestions = SuggestionFeed(self.geocoder, executor=self.executor, clock=clock)
        self.map = RadiusMapController(self.store, clock=clock)
        self.view = SearchResultsView(self.map, collapse_failures=collapse_failures)
        self.generations = SearchGenerations()
        self._lock = threading.Lock()
        self.items: Tuple[SearchResultItem, ...] = ()
        self.status = STATUS_NO_ANCHOR
        self.loading = False
        self.prompt: Optional[str] = None
        self.store.subscribe(self._on_store_change)

    def close(self) -> None:
        """Release the worker threads of a default executor.

        An executor passed in by the caller belongs to the caller and is
        not shut down.
        """
        if self._owns_executor:
            self.executor.shutdown(wait=False)

    def start(self, query_string: str = "") -> Optional[int]:
        """Seed from the page URL and run the first search if anchored."""
        self.store.load_from_url(query_string)
        return self.refresh()

    # ------------------------------------------------------------------
    # Search lifecycle
    # ------------------------------------------------------------------

    def _on_store_change(self, snapshot: SearchQuery, reason: str) -> None:
        # The snapshot may already be stale (a listener or another thread
        # wrote since); _run_search reads the store itself.
        logger.debug("Search state changed (%s)", reason)
        self._run_search()

    def refresh(self) -> Optional[int]:
        return self._run_search()

    def _run_search(self) -> Optional[int]:
        # Token and parameters are taken together, so the newest token
        # always carries the newest committed state.
        with self._lock:
            token = self.generations.issue()
            query = self.store.current()
            if query.anchor is None:
                self.items = ()
                self.status = STATUS_NO_ANCHOR
                self.loading = False
                return None
            self.loading = True
        self.executor.submit(self._execute, token, query)
        return token

    def _execute(self, token: int, query: SearchQuery) -> None:
        try:
            outcome = self.service.fetch(query)
        except Exception:
            logger.exception("Unexpected error running search")
            outcome = SearchOutcome(status=STATUS_UNAVAILABLE)
        self.deliver(token, outcome)

    def deliver(self, token: int, outcome: SearchOutcome) -> bool:
        """Install a search outcome unless a newer search has been issued."""
        with self._lock:
            if not self.generations.is_current(token):
                logger.info(
                    "Dropping stale search response #%d (latest #%d)",
                    token, self.generations.latest,
                )
                return False
            self.items = outcome.items
            self.status = outcome.status
            self.loading = False
        return True

    # ------------------------------------------------------------------
    # Location input
    # ------------------------------------------------------------------

    def type_location(self, text: str, now: Optional[float] = None) -> None:
        self.suggestions.on_input(text, now)

    def tick(self, now: Optional[float] = None) -> Optional[int]:
        """Render-loop heartbeat; fires a debounced suggestion lookup when due."""
        return self.suggestions.tick(now)

    def choose_suggestion(self, index: int) -> ResolvedLocation:
        location = self.suggestions.select(index)
        self.prompt = None
        self.store.set_anchor(location)
        return location

    def submit_location_text(self, text: str) -> bool:
        """Enter pressed without picking a suggestion: resolve the text itself."""
        self.suggestions.blur()
        location = self.geocoder.geocode(text)
        if location is None:
            self.prompt = NOT_FOUND_PROMPT
            return False
        self.prompt = None
        self.store.set_anchor(location)
        return True

    def use_current_location(self, position_provider: Optional[PositionProvider]) -> bool:
        """One-shot device position, then a reverse lookup for its label.

        A denied or missing position source leaves a manual-entry prompt.
        """
        if position_provider is None:
            self.prompt = UNSUPPORTED_PROMPT
            return False
        try:
            point = position_provider()
        except GeolocationDenied:
            logger.info("Geolocation permission denied")
            self.prompt = MANUAL_ENTRY_PROMPT
            return False
        except GeolocationUnavailable as e:
            logger.info("Geolocation unavailable: %s", e)
            self.prompt = MANUAL_ENTRY_PROMPT
            return False
        self.prompt = None
        self.executor.submit(self._resolve_position, point)
        return True

    def _resolve_position(self, point: GeoPoint) -> None:
        self.store.set_anchor(self.geocoder.reverse_resolve(point))

    def clear_location(self) -> None:
        self.store.clear_anchor()

    # ------------------------------------------------------------------
    # Presentation
    # ------------------------------------------------------------------

    def set_view_mode(self, mode: str) -> None:
        """List/map toggle.  Re-renders the current results; never refetches."""
        self.view.set_mode(mode)

    def render(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        with self._lock:
            items = self.items
            status = self.status
            loading = self.loading
        query = self.store.current()
        if query.anchor is None:
            status = STATUS_NO_ANCHOR
        view = self.view.render(items, status, radius_km=self.map.radius_km, now=now)
        view["loading"] = loading
        view["location"] = query.anchor.to_dict() if query.anchor else None
        view["prompt"] = self.prompt
        view["suggestions"] = [s.to_dict() for s in self.suggestions.suggestions]
        view["url"] = self.store.serialize_to_url()
        return view


# =============================================================================
# Command line
# =============================================================================

def main(argv=None) -> int:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Search listings near a place")
    parser.add_argument("location", nargs="?", help="City, address, or postal code")
    parser.add_argument("--lat", type=float, help="Use this position instead of a place name")
    parser.add_argument("--lng", type=float)
    parser.add_argument("--radius", help="Search radius in km")
    parser.add_argument("--query", default="", help="Free-text filter")
    parser.add_argument("--category", default="")
    parser.add_argument("--min-price")
    parser.add_argument("--max-price")
    parser.add_argument("--sort", default="distance", choices=["distance", "price", "date"])
    parser.add_argument("--order", default="asc", choices=["asc", "desc"])
    parser.add_argument("--map", metavar="PNG", help="Also write a radius map to this file")
    parser.add_argument("--json", action="store_true", help="Print the view model as JSON")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
    init_db()

    session = SearchSession(executor=ImmediateExecutor())
    store = session.store
    if args.radius is not None and not store.set_radius_input(args.radius):
        print(f"Ignoring invalid radius: {args.radius}", file=sys.stderr)
    store.set_free_text(args.query)
    store.set_category(args.category)
    store.set_min_price(args.min_price)
    store.set_max_price(args.max_price)
    store.set_sort_by(args.sort)
    store.set_sort_order(args.order)
    store.apply()

    if args.lat is not None and args.lng is not None:
        session.use_current_location(lambda: GeoPoint(args.lat, args.lng))
    elif args.location:
        session.submit_location_text(args.location)
    else:
        parser.error("give a location or --lat/--lng")

    if session.prompt:
        print(session.prompt, file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(session.render(), indent=2, default=str))
    else:
        anchor = store.current().anchor
        print(f"Searching near: {anchor.display_address}")
        print(session.view.render_text(session.items, session.status, store.current().radius_km))

    if args.map:
        png = session.map.render_png_b64(session.items)
        if png is None:
            print("Map rendering failed", file=sys.stderr)
        else:
            with open(args.map, "wb") as fh:
                fh.write(base64.b64decode(png))
    return 0


if __name__ == "__main__":
    sys.exit(main())
