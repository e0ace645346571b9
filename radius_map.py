"""
Interactive radius map: anchor, radius circle, drag handle, result pins.

RadiusMapController is a two-state machine (idle / dragging) driven by
pointer events in map coordinates.  While dragging, the radius follows
the pointer immediately as a local optimistic value; commits to the
SearchStateStore (each of which triggers a search) are throttled, and
the final value is committed on release.

scene() produces a renderer-neutral description of what to draw, and
render_png_b64() draws it server-side with staticmap + OSM tiles.
Marker icons are passed in per controller and attached to each marker;
nothing here mutates shared default state.
"""

import base64
import io
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from staticmap import CircleMarker, Line, StaticMap

from radius_geometry import (
    circle_outline,
    clamp_radius,
    great_circle_distance_km,
    km_per_pixel,
    km_to_miles,
    point_at_bearing_distance,
    zoom_for_radius,
)
from search_config import SEARCH_CONFIG, MapConfig, RadiusPreset
from search_state import SearchStateStore
from search_types import GeoPoint, SearchResultItem

logger = logging.getLogger(__name__)

USER_AGENT = "NearbySearch/1.0 (listing discovery map)"

STATE_IDLE = "idle"
STATE_DRAGGING = "dragging"

# Dragged radii snap to this many decimal places (0.1 km).
DRAG_PRECISION = 1


# =============================================================================
# Scene description
# =============================================================================

@dataclass(frozen=True)
class MarkerIcon:
    """How one marker is drawn: a filled dot with an optional ring."""
    color: str
    size: int
    ring_color: Optional[str] = None


@dataclass(frozen=True)
class MapIcons:
    anchor: MarkerIcon = MarkerIcon("#2563eb", 14, ring_color="white")
    handle: MarkerIcon = MarkerIcon("#ffffff", 14, ring_color="#3b82f6")
    listing: MarkerIcon = MarkerIcon("#dc2626", 9)
    circle_color: str = "#3b82f6"


@dataclass(frozen=True)
class Marker:
    kind: str                    # "anchor" | "handle" | "listing"
    point: GeoPoint
    icon: MarkerIcon
    label: str = ""
    listing_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "kind": self.kind,
            "lat": self.point.lat,
            "lng": self.point.lng,
            "icon": {"color": self.icon.color, "size": self.icon.size,
                     "ring_color": self.icon.ring_color},
            "label": self.label,
        }
        if self.listing_id is not None:
            d["listing_id"] = self.listing_id
        return d


@dataclass
class MapScene:
    center: GeoPoint
    zoom: int
    radius_km: float
    circle: List[GeoPoint]
    anchor: Marker
    handle: Marker
    listings: List[Marker] = field(default_factory=list)
    presets: Sequence[RadiusPreset] = ()
    dragging: bool = False
    circle_color: str = "#3b82f6"
    dashed: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "center": {"lat": self.center.lat, "lng": self.center.lng},
            "zoom": self.zoom,
            "radius_km": self.radius_km,
            "radius_miles": round(km_to_miles(self.radius_km), 1),
            "circle": {
                "color": self.circle_color,
                "dashed": self.dashed,
                "points": [[p.lat, p.lng] for p in self.circle],
            },
            "anchor": self.anchor.to_dict(),
            "handle": self.handle.to_dict(),
            "listings": [m.to_dict() for m in self.listings],
            "presets": [{"km": p.km, "label": p.label} for p in self.presets],
            "dragging": self.dragging,
        }


# =============================================================================
# Controller
# =============================================================================

class RadiusMapController:
    """Direct-manipulation radius control bound to a SearchStateStore."""

    def __init__(
        self,
        store: SearchStateStore,
        icons: Optional[MapIcons] = None,
        config: Optional[MapConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.icons = icons or MapIcons()
        self.config = config or SEARCH_CONFIG.map
        self._clock = clock
        self.state = STATE_IDLE
        self._optimistic_km: Optional[float] = None
        self._last_commit_at = 0.0

    @property
    def anchor(self) -> Optional[GeoPoint]:
        location = self.store.current().anchor
        return location.point if location else None

    @property
    def radius_km(self) -> float:
        """What the map shows: the optimistic value mid-drag, else committed."""
        if self.state == STATE_DRAGGING and self._optimistic_km is not None:
            return self._optimistic_km
        return self.store.current().radius_km

    @property
    def zoom(self) -> int:
        return zoom_for_radius(self.radius_km)

    def handle_position(self) -> Optional[GeoPoint]:
        anchor = self.anchor
        if anchor is None:
            return None
        return point_at_bearing_distance(anchor, self.config.handle_bearing_deg, self.radius_km)

    def hit_test(self, point: GeoPoint) -> bool:
        """True if a pointer position lands on the radius handle."""
        handle = self.handle_position()
        if handle is None:
            return False
        tolerance_km = self.config.handle_hit_tolerance_px * km_per_pixel(handle.lat, self.zoom)
        return great_circle_distance_km(handle, point) <= tolerance_km

    # ------------------------------------------------------------------
    # Pointer events
    # ------------------------------------------------------------------

    def pointer_down(self, point: GeoPoint, now: Optional[float] = None) -> bool:
        """Start dragging if the pointer went down on the handle."""
        if self.state == STATE_DRAGGING or not self.hit_test(point):
            return False
        self.begin_drag(now)
        return True

    def begin_drag(self, now: Optional[float] = None) -> None:
        if self.anchor is None:
            return
        self.state = STATE_DRAGGING
        self._optimistic_km = self.store.current().radius_km
        self._last_commit_at = self._clock() if now is None else now

    def pointer_move(self, point: GeoPoint, now: Optional[float] = None) -> Optional[float]:
        """Track the pointer.  Returns the optimistic radius, or None when idle."""
        if self.state != STATE_DRAGGING:
            return None
        anchor = self.anchor
        if anchor is None:
            self._reset()
            return None
        now = self._clock() if now is None else now
        self._optimistic_km = round(
            clamp_radius(great_circle_distance_km(anchor, point)), DRAG_PRECISION
        )
        if now - self._last_commit_at >= self.config.commit_throttle_seconds:
            self._commit(now)
        return self._optimistic_km

    def pointer_up(self, now: Optional[float] = None) -> Optional[float]:
        """End the drag and commit the final radius.  Returns it."""
        if self.state != STATE_DRAGGING:
            return None
        final = self._optimistic_km
        self._commit(self._clock() if now is None else now)
        self._reset()
        return final

    def pointer_leave(self, now: Optional[float] = None) -> Optional[float]:
        return self.pointer_up(now)

    def _commit(self, now: float) -> None:
        if self._optimistic_km is None:
            return
        self._last_commit_at = now
        if self._optimistic_km != self.store.current().radius_km:
            logger.debug("Committing dragged radius %.1fkm", self._optimistic_km)
            self.store.set_radius(self._optimistic_km)

    def _reset(self) -> None:
        self.state = STATE_IDLE
        self._optimistic_km = None

    def select_preset(self, radius_km: float) -> float:
        """Quick-select button: snaps the committed radius, no drag involved."""
        if self.state == STATE_DRAGGING:
            self._reset()
        return self.store.set_radius(radius_km)

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def scene(self, items: Sequence[SearchResultItem] = ()) -> Optional[MapScene]:
        """Everything the map draws, or None when there is no anchor yet.

        Listings without coordinates are left off the map entirely.
        """
        anchor_location = self.store.current().anchor
        if anchor_location is None:
            return None
        anchor = anchor_location.point
        radius = self.radius_km
        listings = [
            Marker(
                kind="listing",
                point=item.coordinates,
                icon=self.icons.listing,
                label=item.title,
                listing_id=item.id,
            )
            for item in items
            if item.coordinates is not None
        ]
        return MapScene(
            center=anchor,
            zoom=zoom_for_radius(radius),
            radius_km=radius,
            circle=circle_outline(anchor, radius, self.config.circle_segments),
            anchor=Marker("anchor", anchor, self.icons.anchor, anchor_location.display_address),
            handle=Marker("handle", self.handle_position(), self.icons.handle),
            listings=listings,
            presets=SEARCH_CONFIG.radius.presets,
            dragging=self.state == STATE_DRAGGING,
            circle_color=self.icons.circle_color,
        )

    def render_png_b64(self, items: Sequence[SearchResultItem] = ()) -> Optional[str]:
        """Static map of the current scene as a base64 PNG (no data URI prefix).

        Returns None when there is no anchor or rendering fails.
        """
        scene = self.scene(items)
        if scene is None:
            return None
        try:
            m = StaticMap(
                self.config.width,
                self.config.height,
                url_template=self.config.tile_url,
                tile_request_timeout=10,
                headers={"User-Agent": USER_AGENT},
            )
            # Dashed ring: draw every other segment (staticmap uses lng, lat order)
            ring = scene.circle
            for i in range(0, len(ring) - 1, 2):
                m.add_line(Line(
                    [(ring[i].lng, ring[i].lat), (ring[i + 1].lng, ring[i + 1].lat)],
                    scene.circle_color,
                    2,
                ))
            for marker in scene.listings + [scene.anchor, scene.handle]:
                _add_marker(m, marker)

            image = m.render(zoom=scene.zoom, center=[scene.center.lng, scene.center.lat])
            buffer = io.BytesIO()
            image.save(buffer, format="PNG", optimize=True)
            buffer.seek(0)
            return base64.b64encode(buffer.read()).decode("utf-8")
        except Exception:
            logger.exception("Failed to render radius map")
            return None


def _add_marker(m: StaticMap, marker: Marker) -> None:
    coord = (marker.point.lng, marker.point.lat)
    if marker.icon.ring_color:
        m.add_marker(CircleMarker(coord, marker.icon.ring_color, marker.icon.size + 4))
    m.add_marker(CircleMarker(coord, marker.icon.color, marker.icon.size))
