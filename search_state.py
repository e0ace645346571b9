"""
Canonical search parameters with URL persistence.

SearchStateStore holds one committed SearchQuery and a staged draft of
the typed filter fields.  There are two write paths:

  - Staged: free text, category, price bounds and sort are edited on the
    draft and only take effect on apply(), which also writes the URL.
  - Immediate: anchor and radius (map drag, presets, radius selector)
    replace the committed value at once and notify listeners, so a drag
    gives continuous feedback.  These do not touch the URL until the
    next apply().

Listeners are called with (snapshot, reason) where reason is one of
"anchor", "radius", "apply".

Writes may come from executor threads (a reverse lookup finishing sets
the anchor), so reads and writes of the query go through one lock.
Listeners run outside it.
"""

import logging
import math
import threading
from dataclasses import replace
from typing import Callable, List, Mapping, Optional, Union
from urllib.parse import parse_qs, quote, urlencode

from radius_geometry import clamp_radius
from search_config import SEARCH_CONFIG, SearchConfig
from search_types import (
    SORT_FIELDS,
    SORT_ORDERS,
    ResolvedLocation,
    SearchQuery,
    format_number,
    parse_coordinate,
    parse_point,
)

logger = logging.getLogger(__name__)

Listener = Callable[[SearchQuery, str], None]

REASON_ANCHOR = "anchor"
REASON_RADIUS = "radius"
REASON_APPLY = "apply"


def _parse_price(raw: Optional[str]) -> Optional[float]:
    number = parse_coordinate(raw)
    if number is None or number < 0:
        return None
    return number


class SearchStateStore:
    """Mutable search state shared by the location input, filters and map."""

    def __init__(
        self,
        config: Optional[SearchConfig] = None,
        url_writer: Optional[Callable[[str], None]] = None,
    ):
        self.config = config or SEARCH_CONFIG
        self._lock = threading.RLock()
        self._query = self._default_query()
        self._draft = replace(self._query)
        self._listeners: List[Listener] = []
        self.history: List[str] = []
        self._url_writer = url_writer or self.history.append

    def _default_query(self) -> SearchQuery:
        return SearchQuery(radius_km=self.config.radius.default_km)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def current(self) -> SearchQuery:
        """Snapshot of the committed query."""
        with self._lock:
            return replace(self._query)

    def draft(self) -> SearchQuery:
        """Snapshot of the staged filter edits."""
        with self._lock:
            return replace(self._draft)

    @property
    def has_pending_edits(self) -> bool:
        return any(
            getattr(self._draft, name) != getattr(self._query, name)
            for name in ("free_text", "category", "min_price", "max_price", "sort_by", "sort_order")
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, reason: str) -> None:
        snapshot = self.current()
        for listener in list(self._listeners):
            listener(snapshot, reason)

    # ------------------------------------------------------------------
    # URL sync
    # ------------------------------------------------------------------

    def load_from_url(self, query_string: Union[str, Mapping[str, str]]) -> SearchQuery:
        """Seed state from URL parameters.  Never raises on bad input.

        Missing or malformed parameters fall back to their defaults.  Does
        not notify listeners; the caller decides whether to search.
        """
        if isinstance(query_string, str):
            parsed = parse_qs(query_string.lstrip("?"), keep_blank_values=False)
            params = {k: v[0] for k, v in parsed.items() if v}
        else:
            params = {k: v for k, v in query_string.items() if v not in (None, "")}

        query = self._default_query()

        point = parse_point(params.get("lat"), params.get("lng"))
        if point is not None:
            address = (params.get("address") or "").strip() or self.config.default_address_label
            query.anchor = ResolvedLocation(point=point, display_address=address)
        elif "lat" in params or "lng" in params:
            logger.info("Ignoring unusable anchor in URL: lat=%r lng=%r",
                        params.get("lat"), params.get("lng"))

        radius = parse_coordinate(params.get("radius"))
        if radius is not None and radius > 0:
            query.radius_km = clamp_radius(radius)

        query.free_text = (params.get("query") or "").strip()
        query.category = (params.get("category") or "").strip()
        query.min_price = _parse_price(params.get("minPrice"))
        query.max_price = _parse_price(params.get("maxPrice"))

        if params.get("sortBy") in SORT_FIELDS:
            query.sort_by = params["sortBy"]
        if params.get("order") in SORT_ORDERS:
            query.sort_order = params["order"]

        with self._lock:
            self._query = query
            self._draft = replace(query)
        return self.current()

    def serialize_to_url(self) -> str:
        """Query string (with leading "?") for the committed state."""
        q = self.current()
        params = []
        if q.anchor is not None:
            params.append(("lat", format_number(q.anchor.point.lat)))
            params.append(("lng", format_number(q.anchor.point.lng)))
            params.append(("address", q.anchor.display_address))
        params.append(("radius", format_number(q.radius_km)))
        if q.free_text:
            params.append(("query", q.free_text))
        if q.category:
            params.append(("category", q.category))
        if q.min_price is not None:
            params.append(("minPrice", format_number(q.min_price)))
        if q.max_price is not None:
            params.append(("maxPrice", format_number(q.max_price)))
        params.append(("sortBy", q.sort_by))
        params.append(("order", q.sort_order))
        return "?" + urlencode(params, quote_via=quote)

    # ------------------------------------------------------------------
    # Staged write path (typed filters)
    # ------------------------------------------------------------------

    def set_free_text(self, text: str) -> None:
        self._draft.free_text = (text or "").strip()

    def set_category(self, category: str) -> None:
        self._draft.category = (category or "").strip()

    def set_min_price(self, value: Union[str, float, None]) -> bool:
        return self._set_price("min_price", value)

    def set_max_price(self, value: Union[str, float, None]) -> bool:
        return self._set_price("max_price", value)

    def _set_price(self, field_name: str, value: Union[str, float, None]) -> bool:
        if value is None or (isinstance(value, str) and value.strip() == ""):
            setattr(self._draft, field_name, None)
            return True
        price = _parse_price(value)
        if price is None:
            return False
        setattr(self._draft, field_name, price)
        return True

    def set_sort_by(self, sort_by: str) -> bool:
        if sort_by not in SORT_FIELDS:
            return False
        self._draft.sort_by = sort_by
        return True

    def set_sort_order(self, order: str) -> bool:
        if order not in SORT_ORDERS:
            return False
        self._draft.sort_order = order
        return True

    def reset_filters(self) -> None:
        """Restore staged filters to defaults (takes effect on apply)."""
        self._draft.category = ""
        self._draft.min_price = None
        self._draft.max_price = None
        self._draft.sort_by = "distance"
        self._draft.sort_order = "asc"

    def apply(self) -> str:
        """Commit staged edits, persist to the URL and trigger a search.

        Returns the written query string.
        """
        with self._lock:
            for name in ("free_text", "category", "min_price", "max_price", "sort_by", "sort_order"):
                setattr(self._query, name, getattr(self._draft, name))
            url = self.serialize_to_url()
        self._url_writer(url)
        self._notify(REASON_APPLY)
        return url

    # ------------------------------------------------------------------
    # Immediate write path (anchor and radius)
    # ------------------------------------------------------------------

    def set_anchor(self, location: ResolvedLocation) -> None:
        with self._lock:
            self._query.anchor = location
            self._draft.anchor = location
        self._notify(REASON_ANCHOR)

    def clear_anchor(self) -> None:
        with self._lock:
            self._query.anchor = None
            self._draft.anchor = None
        self._notify(REASON_ANCHOR)

    def set_radius(self, radius_km: float) -> float:
        """Commit a radius from any source; clamped to the configured band.

        Listeners are only notified when the committed value changes.
        """
        radius = clamp_radius(radius_km)
        with self._lock:
            changed = radius != self._query.radius_km
            if changed:
                self._query.radius_km = radius
                self._draft.radius_km = radius
        if changed:
            self._notify(REASON_RADIUS)
        return radius

    def set_radius_input(self, raw: Union[str, float, None]) -> bool:
        """Typed radius.  Non-numeric or non-positive input is ignored."""
        radius = parse_coordinate(raw)
        if radius is None or radius <= 0 or not math.isfinite(radius):
            logger.debug("Ignoring invalid radius input %r", raw)
            return False
        self.set_radius(radius)
        return True
