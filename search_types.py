"""
Shared data types for location search.

GeoPoint / ResolvedLocation / Suggestion are immutable value objects.
SearchQuery is the single mutable aggregate the store hands out copies of.
SearchResultItem is a read-only projection of a backend listing; parsing
is lenient because the listing API has shipped both snake_case and
camelCase field names, and numeric fields sometimes arrive as strings.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

SORT_FIELDS = ("distance", "price", "date")
SORT_ORDERS = ("asc", "desc")


# =============================================================================
# Geography
# =============================================================================

@dataclass(frozen=True)
class GeoPoint:
    """WGS84 coordinate pair."""
    lat: float
    lng: float

    def is_valid(self) -> bool:
        return (
            math.isfinite(self.lat)
            and math.isfinite(self.lng)
            and -90.0 <= self.lat <= 90.0
            and -180.0 <= self.lng <= 180.0
        )

    def as_tuple(self) -> Tuple[float, float]:
        return (self.lat, self.lng)


@dataclass(frozen=True)
class ResolvedLocation:
    """The search anchor. Replaced wholesale, never partially mutated."""
    point: GeoPoint
    display_address: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lat": self.point.lat,
            "lng": self.point.lng,
            "address": self.display_address,
        }


@dataclass(frozen=True)
class Suggestion:
    """One autocomplete candidate from forward geocoding."""
    display_name: str
    point: GeoPoint
    raw_components: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    @property
    def primary_label(self) -> str:
        """First comma-separated part, e.g. "San Francisco"."""
        return self.display_name.split(",")[0].strip()

    def to_location(self) -> ResolvedLocation:
        return ResolvedLocation(point=self.point, display_address=self.display_name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "display_name": self.display_name,
            "primary_label": self.primary_label,
            "lat": self.point.lat,
            "lng": self.point.lng,
        }


def parse_coordinate(value: Any) -> Optional[float]:
    """Float from a number or numeric string; None if missing or non-finite."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def parse_point(lat: Any, lng: Any) -> Optional[GeoPoint]:
    """GeoPoint from raw lat/lng values, or None if either is unusable."""
    lat_f = parse_coordinate(lat)
    lng_f = parse_coordinate(lng)
    if lat_f is None or lng_f is None:
        return None
    point = GeoPoint(lat_f, lng_f)
    return point if point.is_valid() else None


def format_number(value: float) -> str:
    """Compact URL form: 25.0 -> "25", 37.77 -> "37.77"."""
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


# =============================================================================
# Search query
# =============================================================================

@dataclass
class SearchQuery:
    """All searchable state. Search is a no-op while anchor is None."""
    anchor: Optional[ResolvedLocation] = None
    radius_km: float = 25.0
    free_text: str = ""
    category: str = ""
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    sort_by: str = "distance"
    sort_order: str = "asc"


# =============================================================================
# Results
# =============================================================================

def _first(raw: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return None


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        # Epoch milliseconds, as emitted by JSON.stringify(Date.now())
        try:
            parsed = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            return None
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class SearchResultItem:
    """Read-only projection of one listing returned by the search endpoint.

    distance_km is computed server-side relative to the anchor at fetch
    time; the client never recomputes it.
    """
    id: str
    title: str
    price: float
    distance_km: float
    coordinates: Optional[GeoPoint] = None
    created_at: Optional[datetime] = None
    description: str = ""
    category: str = ""
    images: Tuple[str, ...] = ()

    @property
    def has_coordinates(self) -> bool:
        return self.coordinates is not None

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "SearchResultItem":
        """Build from one listing object in the search response.

        Raises ValueError when the record has no id.
        """
        listing_id = raw.get("id")
        if listing_id is None or str(listing_id) == "":
            raise ValueError("Listing record has no id")

        price = parse_coordinate(raw.get("price"))
        distance = parse_coordinate(raw.get("distance"))

        images = raw.get("images") or []
        if isinstance(images, str):
            images = [images]
        image_url = raw.get("imageUrl") or raw.get("image_url")
        if image_url and not images:
            images = [image_url]

        return cls(
            id=str(listing_id),
            title=str(raw.get("title") or ""),
            price=price if price is not None else 0.0,
            distance_km=distance if distance is not None else 0.0,
            coordinates=parse_point(
                _first(raw, "location_latitude", "locationLatitude", "lat"),
                _first(raw, "location_longitude", "locationLongitude", "lng"),
            ),
            created_at=_parse_datetime(_first(raw, "created_at", "createdAt")),
            description=str(raw.get("description") or ""),
            category=str(raw.get("category") or ""),
            images=tuple(str(i) for i in images if i),
        )


# Outcome statuses for a search invocation
STATUS_OK = "ok"
STATUS_NO_ANCHOR = "no_anchor"
STATUS_UNAUTHORIZED = "unauthorized"
STATUS_UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class SearchOutcome:
    """Result of one search invocation with its failure state kept distinct.

    The presentation layer decides whether "unavailable" is shown as its
    own state or collapsed into the empty-results view.
    """
    status: str
    items: Tuple[SearchResultItem, ...] = ()

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    @property
    def failed(self) -> bool:
        return self.status in (STATUS_UNAUTHORIZED, STATUS_UNAVAILABLE)

    def as_list(self) -> List[SearchResultItem]:
        return list(self.items)
