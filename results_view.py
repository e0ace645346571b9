"""
Result presentation: list cards, map view model, empty and failure states.

Everything here is a pure function of (items, outcome status, now).
Switching between list and map mode re-renders the same sequence and
never triggers a fetch.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from radius_geometry import km_to_miles
from radius_map import RadiusMapController
from search_types import (
    STATUS_NO_ANCHOR,
    STATUS_UNAVAILABLE,
    SearchResultItem,
)

logger = logging.getLogger(__name__)

MODE_LIST = "list"
MODE_MAP = "map"
VIEW_MODES = (MODE_LIST, MODE_MAP)

DISTANCE_UNITS = ("km", "mi")

EMPTY_TITLE = "No listings found"
EMPTY_HINT = "Try adjusting your search filters or expanding your search radius"
UNAVAILABLE_TITLE = "Search is temporarily unavailable"
UNAVAILABLE_HINT = "We couldn't reach listings right now. Please try again in a moment."
NO_ANCHOR_TITLE = "Find items near you"
NO_ANCHOR_HINT = "Enter a location or use your current location to start searching"


# =============================================================================
# Formatting helpers
# =============================================================================

def format_relative_time(created_at: Optional[datetime], now: Optional[datetime] = None) -> str:
    """"Nm ago" under an hour, "Nh ago" under a day, otherwise "Nd ago".

    There is no week or month bucket; day counts keep growing.  A
    timestamp in the future (clock skew) reads as "0m ago".
    """
    if created_at is None:
        return ""
    now = now or datetime.now(timezone.utc)
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    minutes = max(0, int((now - created_at).total_seconds() // 60))
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    return f"{hours // 24}d ago"


def format_distance(distance_km: float, units: str = "km") -> str:
    if units == "mi":
        return f"{km_to_miles(distance_km):.1f}mi"
    if distance_km < 1:
        return f"{distance_km * 1000:.0f}m"
    return f"{distance_km:.1f}km"


def format_price(price: float) -> str:
    if float(price).is_integer():
        return f"${price:,.0f}"
    return f"${price:,.2f}"


def results_summary(count: int, radius_km: float) -> str:
    noun = "listing" if count == 1 else "listings"
    return f"Found {count} {noun} within {km_to_miles(radius_km):.0f} miles"


# =============================================================================
# View
# =============================================================================

class SearchResultsView:
    """Renders one ordered result sequence as list cards or a map."""

    def __init__(
        self,
        map_controller: Optional[RadiusMapController] = None,
        units: str = "km",
        collapse_failures: bool = False,
    ):
        if units not in DISTANCE_UNITS:
            raise ValueError(f"Unknown distance units: {units}")
        self.map_controller = map_controller
        self.units = units
        self.collapse_failures = collapse_failures
        self.mode = MODE_LIST

    def set_mode(self, mode: str) -> None:
        if mode not in VIEW_MODES:
            raise ValueError(f"Unknown view mode: {mode}")
        self.mode = mode

    def card(self, item: SearchResultItem, now: Optional[datetime] = None) -> Dict[str, Any]:
        return {
            "id": item.id,
            "title": item.title,
            "price": format_price(item.price),
            "distance": format_distance(item.distance_km, self.units),
            "posted": format_relative_time(item.created_at, now),
            "category": item.category,
            "description": item.description,
            "image": item.images[0] if item.images else None,
            "url": f"/listing/{item.id}",
        }

    def _state_message(self, status: str) -> Optional[Dict[str, str]]:
        if status == STATUS_NO_ANCHOR:
            return {"kind": "no_anchor", "title": NO_ANCHOR_TITLE, "hint": NO_ANCHOR_HINT}
        if status == STATUS_UNAVAILABLE and not self.collapse_failures:
            return {"kind": "unavailable", "title": UNAVAILABLE_TITLE, "hint": UNAVAILABLE_HINT}
        return None

    def render(
        self,
        items: Sequence[SearchResultItem],
        status: str = "ok",
        radius_km: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """View model for the current mode.

        "unauthorized" always renders as the ordinary empty state;
        "unavailable" gets its own message unless collapse_failures is set.
        """
        view: Dict[str, Any] = {"mode": self.mode, "status": status, "count": len(items)}

        message = self._state_message(status)
        if message is not None:
            view["message"] = message
            view["cards"] = []
            return view

        if radius_km is not None:
            view["summary"] = results_summary(len(items), radius_km)

        if self.mode == MODE_MAP and self.map_controller is not None:
            scene = self.map_controller.scene(items)
            view["map"] = scene.to_dict() if scene else None
            on_map = len(scene.listings) if scene else 0
            view["map_caption"] = f"{on_map} {'listing' if on_map == 1 else 'listings'} on map"
            view["popups"] = {
                item.id: self.card(item, now) for item in items if item.has_coordinates
            }
            if not items:
                view["message"] = {"kind": "empty", "title": EMPTY_TITLE, "hint": EMPTY_HINT}
            return view

        if not items:
            view["message"] = {"kind": "empty", "title": EMPTY_TITLE, "hint": EMPTY_HINT}
            view["cards"] = []
            return view

        view["cards"] = [self.card(item, now) for item in items]
        return view

    def render_text(
        self,
        items: Sequence[SearchResultItem],
        status: str = "ok",
        radius_km: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> str:
        """Plain-text list rendering for the command line."""
        view = self.render(items, status, radius_km, now)
        lines: List[str] = []
        if "summary" in view:
            lines.append(view["summary"])
        if "message" in view:
            lines.append(view["message"]["title"])
            lines.append(view["message"]["hint"])
            return "\n".join(lines)
        for card in view.get("cards", []):
            lines.append(
                f"  {card['title']:<40} {card['price']:>10}  {card['distance']:>8}  {card['posted']}"
            )
        return "\n".join(lines)
