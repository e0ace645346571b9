import base64
import os
import logging
import uuid

from flask import Flask, request, jsonify, g, Response, abort
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv

load_dotenv()

from ns_trace import TraceContext, get_trace, set_trace, clear_trace
from models import init_db, purge_geocode_cache
from geocoding import GeocodingError, NominatimClient
from listing_search import ListingSearchService, SearchBackendError
from radius_map import RadiusMapController
from results_view import DISTANCE_UNITS, MODE_LIST, VIEW_MODES, SearchResultsView
from search_config import SEARCH_CONFIG
from search_state import SearchStateStore
from search_types import parse_point

# ---------------------------------------------------------------------------
# Sentry error tracking, gated on SENTRY_DSN, silent when unset (local dev)
# ---------------------------------------------------------------------------
_sentry_dsn = os.environ.get("SENTRY_DSN")
if _sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    import requests.exceptions

    def _sentry_before_send(event, hint):
        """Demote expected upstream failures to breadcrumbs."""
        exc_info = hint.get("exc_info")
        if exc_info:
            exc_type, exc_value, _ = exc_info
            msg = str(exc_value) if exc_value else ""
            if exc_type is not None and issubclass(exc_type, GeocodingError):
                sentry_sdk.add_breadcrumb(category="geocoding", message=msg, level="warning")
                return None
            if exc_type is not None and issubclass(exc_type, SearchBackendError):
                sentry_sdk.add_breadcrumb(category="listings", message=msg, level="warning")
                return None
            if exc_type is not None and issubclass(exc_type, requests.exceptions.RequestException):
                sentry_sdk.add_breadcrumb(category="http", message=msg, level="warning")
                return None
        return event

    sentry_sdk.init(
        dsn=_sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.0,
        release=os.environ.get("RAILWAY_GIT_COMMIT_SHA"),
        environment=os.environ.get("RAILWAY_ENVIRONMENT", "production"),
        before_send=_sentry_before_send,
    )

app = Flask(__name__)

# Behind a reverse proxy: make request.remote_addr the real client IP so
# Flask-Limiter keys on the caller, not the proxy.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limiting: suggestion lookups hit Nominatim, which has a strict
# usage policy.  In-memory storage is per-process.
# ---------------------------------------------------------------------------
RATE_LIMIT_DEFAULT = os.environ.get("RATE_LIMIT_DEFAULT", "60/minute")
RATE_LIMIT_SUGGEST = os.environ.get("RATE_LIMIT_SUGGEST", "120/minute")

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[RATE_LIMIT_DEFAULT],
    storage_uri="memory://",
)
logging.getLogger("flask-limiter").setLevel(logging.WARNING)

# Shared per process: both hold a requests.Session, and the search
# service owns the short-lived result cache.
geocoder = NominatimClient()
search_service = ListingSearchService()


# ---------------------------------------------------------------------------
# Request ID + trace middleware
# ---------------------------------------------------------------------------
def _generate_request_id():
    return uuid.uuid4().hex[:10]


@app.before_request
def _set_request_context():
    g.request_id = request.headers.get("X-Request-ID") or _generate_request_id()
    set_trace(TraceContext(trace_id=g.request_id))


@app.after_request
def _after_request(response):
    response.headers["X-Request-ID"] = getattr(g, "request_id", "")
    return response


@app.teardown_request
def _teardown_trace(exc):
    trace = get_trace()
    if trace is not None and trace.api_calls:
        trace.log_summary()
    clear_trace()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _store_from_request() -> SearchStateStore:
    """Search state seeded from the request's query parameters."""
    store = SearchStateStore()
    store.load_from_url(request.args.to_dict())
    return store


# ---------------------------------------------------------------------------
# Location endpoints
# ---------------------------------------------------------------------------

@app.route("/api/location/suggest")
@limiter.limit(RATE_LIMIT_SUGGEST)
def location_suggest():
    """Autocomplete candidates for partial input.

    Input shorter than the minimum returns an empty list without any
    upstream request.  Upstream failures also read as an empty list.
    """
    text = request.args.get("q", "")
    trace = get_trace()
    with trace.stage("suggest"):
        suggestions = [s.to_dict() for s in geocoder.suggest(text)]
    return jsonify({"query": text, "suggestions": suggestions})


@app.route("/api/location/geocode")
def location_geocode():
    """Best single match for submitted text."""
    text = request.args.get("q", "").strip()
    if not text:
        return jsonify({"error": "q is required"}), 400
    with get_trace().stage("geocode"):
        location = geocoder.geocode(text)
    if location is None:
        return jsonify({"error": "Location not found", "query": text}), 404
    return jsonify(location.to_dict())


@app.route("/api/location/reverse")
def location_reverse():
    """Label for a device position.  Always answers when lat/lng are valid."""
    point = parse_point(request.args.get("lat"), request.args.get("lng"))
    if point is None:
        return jsonify({"error": "lat and lng must be valid coordinates"}), 400
    with get_trace().stage("reverse"):
        location = geocoder.reverse_resolve(point)
    return jsonify(location.to_dict())


# ---------------------------------------------------------------------------
# Search endpoints
# ---------------------------------------------------------------------------

@app.route("/api/search")
def api_search():
    """Run a listing search from URL-style parameters and render it.

    Accepts the same parameters the page URL carries (lat, lng, address,
    radius, query, category, minPrice, maxPrice, sortBy, order) plus
    view=list|map.
    """
    mode = request.args.get("view", MODE_LIST)
    if mode not in VIEW_MODES:
        return jsonify({"error": f"view must be one of {', '.join(VIEW_MODES)}"}), 400
    units = request.args.get("units", "km")
    if units not in DISTANCE_UNITS:
        return jsonify({"error": f"units must be one of {', '.join(DISTANCE_UNITS)}"}), 400

    store = _store_from_request()
    query = store.current()
    with get_trace().stage("search"):
        outcome = search_service.fetch(query)

    view = SearchResultsView(RadiusMapController(store), units=units)
    view.set_mode(mode)
    with get_trace().stage("render"):
        body = view.render(outcome.items, outcome.status, radius_km=query.radius_km)
    body["location"] = query.anchor.to_dict() if query.anchor else None
    body["url"] = store.serialize_to_url()
    return jsonify(body)


@app.route("/api/search/map.png")
def api_search_map():
    """Static PNG of the radius map with result pins."""
    store = _store_from_request()
    query = store.current()
    if query.anchor is None:
        abort(404)

    with get_trace().stage("search"):
        outcome = search_service.fetch(query)
    with get_trace().stage("map"):
        png_b64 = RadiusMapController(store).render_png_b64(outcome.items)
    if png_b64 is None:
        return jsonify({"error": "Map rendering failed"}), 502

    return Response(
        base64.b64decode(png_b64),
        mimetype="image/png",
        headers={"Cache-Control": "public, max-age=300"},
    )


@app.route("/api/search/presets")
def api_search_presets():
    radius = SEARCH_CONFIG.radius
    return jsonify({
        "min_km": radius.min_km,
        "max_km": radius.max_km,
        "default_km": radius.default_km,
        "presets": [{"km": p.km, "label": p.label} for p in radius.presets],
    })


@app.route("/healthz")
@limiter.exempt
def healthz():
    """Lightweight health-check endpoint for monitoring."""
    from health_monitor import get_status
    services = get_status()
    degraded = [name for name, s in services.items() if s.get("status") == "down"]
    return jsonify({
        "status": "degraded" if degraded else "ok",
        "services": services,
    }), 503 if degraded else 200


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.errorhandler(429)
def rate_limit_exceeded(e):
    return jsonify({
        "error": "Too many requests. Please wait and try again.",
    }), 429


@app.errorhandler(404)
def not_found(e):
    return jsonify({"error": "Not found"}), 404


@app.errorhandler(500)
def internal_error(e):
    logger.error("Unhandled error on %s (request %s)", request.path, getattr(g, "request_id", "-"))
    return jsonify({"error": "Internal server error"}), 500


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------

# Initialize database on import (safe to call repeatedly)
init_db()
try:
    purged = purge_geocode_cache()
    if purged:
        logger.info("Purged %d expired geocode cache rows", purged)
except Exception:
    logger.exception("Geocode cache purge failed")

if __name__ == "__main__":
    # Development: gunicorn starts the monitor in post_fork instead
    from health_monitor import start_monitor
    start_monitor()
    port = int(os.environ.get("PORT", 5001))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug)
