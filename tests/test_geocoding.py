"""
Tests for geocoding: Nominatim client and the debounced suggestion feed.

HTTP is mocked at the client's requests.Session; the SQLite cache is the
real one (pointed at a temp DB by conftest).
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from geocoding import NominatimClient, SuggestionFeed, _parse_candidates
from search_types import GeoPoint, Suggestion


def _mock_response(status_code=200, json_data=None, json_error=False):
    resp = MagicMock(spec=requests.Response)
    resp.status_code = status_code
    resp.ok = status_code < 400
    if json_error:
        resp.json.side_effect = ValueError("No JSON")
    else:
        resp.json.return_value = json_data
    return resp


SPRINGFIELD = [
    {"display_name": "Springfield, Sangamon County, Illinois, United States",
     "lat": "39.7990", "lon": "-89.6440", "address": {"city": "Springfield", "state": "Illinois"}},
    {"display_name": "Springfield, Hampden County, Massachusetts, United States",
     "lat": "42.1015", "lon": "-72.5898"},
    {"display_name": "Springfield, Greene County, Missouri, United States",
     "lat": "37.2090", "lon": "-93.2923"},
]


@pytest.fixture
def geo_client():
    client = NominatimClient()
    client.min_spacing = 0
    return client


def _suggestion(name, lat=1.0, lng=2.0):
    return Suggestion(display_name=name, point=GeoPoint(lat, lng))


# =========================================================================
# Response parsing
# =========================================================================

class TestParseCandidates:
    def test_parses_rows(self):
        out = _parse_candidates(SPRINGFIELD)
        assert [s.primary_label for s in out] == ["Springfield"] * 3
        assert out[0].point == GeoPoint(39.799, -89.644)
        assert out[0].raw_components["state"] == "Illinois"

    def test_skips_bad_rows_and_duplicates(self):
        data = [
            {"display_name": "A", "lat": "1", "lon": "2"},
            {"display_name": "A", "lat": "3", "lon": "4"},
            {"display_name": "B", "lat": "not-a-number", "lon": "2"},
            {"display_name": "", "lat": "1", "lon": "2"},
            "garbage",
            {"display_name": "C", "lat": "95", "lon": "2"},
        ]
        assert [s.display_name for s in _parse_candidates(data)] == ["A"]

    def test_non_list_is_empty(self):
        assert _parse_candidates({"error": "Unable to geocode"}) == []


# =========================================================================
# NominatimClient
# =========================================================================

class TestSuggest:
    def test_short_input_makes_no_request(self, geo_client):
        with patch.object(geo_client.session, "get") as mock_get:
            assert list(geo_client.suggest("Sp")) == []
            assert list(geo_client.suggest("  ab  ")) == []
        mock_get.assert_not_called()

    def test_request_shape(self, geo_client):
        with patch.object(geo_client.session, "get",
                          return_value=_mock_response(json_data=SPRINGFIELD)) as mock_get:
            results = list(geo_client.suggest("Springfield"))

        assert len(results) == 3
        args, kwargs = mock_get.call_args
        assert args[0] == "https://nominatim.openstreetmap.org/search"
        assert kwargs["params"]["q"] == "Springfield"
        assert kwargs["params"]["countrycodes"] == "us"
        assert kwargs["params"]["limit"] == 5
        assert kwargs["params"]["addressdetails"] == 1
        assert kwargs["timeout"] == 10

    def test_suggest_is_lazy(self, geo_client):
        with patch.object(geo_client.session, "get") as mock_get:
            geo_client.suggest("Springfield")
        mock_get.assert_not_called()

    def test_timeout_yields_empty(self, geo_client):
        """Upstream timeout: no suggestions, no exception."""
        with patch.object(geo_client.session, "get",
                          side_effect=requests.exceptions.Timeout("slow")):
            assert list(geo_client.suggest("Springfield")) == []

    def test_http_error_yields_empty(self, geo_client):
        with patch.object(geo_client.session, "get",
                          return_value=_mock_response(status_code=503)):
            assert list(geo_client.suggest("Springfield")) == []

    def test_non_json_yields_empty(self, geo_client):
        with patch.object(geo_client.session, "get",
                          return_value=_mock_response(json_error=True)):
            assert list(geo_client.suggest("Springfield")) == []

    def test_second_lookup_served_from_cache(self, geo_client):
        with patch.object(geo_client.session, "get",
                          return_value=_mock_response(json_data=SPRINGFIELD)) as mock_get:
            first = list(geo_client.suggest("Springfield"))
            second = list(geo_client.suggest("Springfield"))
        assert mock_get.call_count == 1
        assert first == second

    def test_empty_answer_not_cached(self, geo_client):
        with patch.object(geo_client.session, "get",
                          return_value=_mock_response(json_data=[])) as mock_get:
            list(geo_client.suggest("Nowhereville"))
            list(geo_client.suggest("Nowhereville"))
        assert mock_get.call_count == 2


class TestGeocode:
    def test_best_match(self, geo_client):
        with patch.object(geo_client.session, "get",
                          return_value=_mock_response(json_data=SPRINGFIELD[:1])) as mock_get:
            location = geo_client.geocode("Springfield, IL")
        assert location.display_address.startswith("Springfield, Sangamon")
        assert location.point == GeoPoint(39.799, -89.644)
        assert mock_get.call_args[1]["params"]["limit"] == 1

    def test_no_match_is_none(self, geo_client):
        with patch.object(geo_client.session, "get",
                          return_value=_mock_response(json_data=[])):
            assert geo_client.geocode("qwxzv") is None

    def test_blank_is_none(self, geo_client):
        with patch.object(geo_client.session, "get") as mock_get:
            assert geo_client.geocode("   ") is None
        mock_get.assert_not_called()

    def test_details(self, geo_client):
        with patch.object(geo_client.session, "get",
                          return_value=_mock_response(json_data=SPRINGFIELD[:1])):
            details = geo_client.geocode_details("Springfield, IL")
        assert details.city == "Springfield"
        assert details.region == "Illinois"
        assert details.postal_code is None


class TestReverseResolve:
    def test_labels_point(self, geo_client):
        body = {"display_name": "Market Street, San Francisco, California"}
        with patch.object(geo_client.session, "get",
                          return_value=_mock_response(json_data=body)) as mock_get:
            location = geo_client.reverse_resolve(GeoPoint(37.7749, -122.4194))
        assert location.display_address == "Market Street, San Francisco, California"
        assert location.point == GeoPoint(37.7749, -122.4194)
        assert mock_get.call_args[0][0].endswith("/reverse")

    def test_failure_falls_back_to_generic_label(self, geo_client):
        with patch.object(geo_client.session, "get",
                          side_effect=requests.exceptions.ConnectionError("down")):
            location = geo_client.reverse_resolve(GeoPoint(37.7749, -122.4194))
        assert location.display_address == "Current Location"
        assert location.point == GeoPoint(37.7749, -122.4194)

    def test_error_body_falls_back(self, geo_client):
        with patch.object(geo_client.session, "get",
                          return_value=_mock_response(json_data={"error": "Unable to geocode"})):
            location = geo_client.reverse_resolve(GeoPoint(0.0, 0.0))
        assert location.display_address == "Current Location"


# =========================================================================
# SuggestionFeed: debounce and ordering
# =========================================================================

@pytest.fixture
def feed_parts(geo_client, executor, clock):
    feed = SuggestionFeed(geo_client, executor=executor, clock=clock)
    return feed, geo_client, executor, clock


class TestDebounce:
    def test_fires_after_quiet_window(self, feed_parts):
        feed, _, executor, clock = feed_parts
        feed.on_input("Spr")
        clock.advance(0.2)
        assert feed.tick() is None
        clock.advance(0.11)
        token = feed.tick()
        assert token == 1
        assert len(executor.pending) == 1
        assert feed.searching is True

    def test_typing_restarts_window(self, feed_parts):
        feed, _, executor, clock = feed_parts
        feed.on_input("Spr")
        clock.advance(0.25)
        feed.on_input("Spri")
        clock.advance(0.25)
        assert feed.tick() is None
        clock.advance(0.06)
        assert feed.tick() is not None
        assert len(executor.pending) == 1

    def test_fires_once_per_pause(self, feed_parts):
        feed, _, executor, clock = feed_parts
        feed.on_input("Springfield")
        clock.advance(1)
        assert feed.tick() is not None
        assert feed.tick() is None
        assert len(executor.pending) == 1

    def test_short_input_clears_without_request(self, feed_parts):
        feed, geo_client, executor, clock = feed_parts
        feed.deliver(feed.latest_token, [_suggestion("Old")])
        feed.on_input("Sp")
        clock.advance(1)
        assert feed.tick() is None
        assert feed.suggestions == []
        assert executor.pending == []

    def test_fetch_uses_client(self, feed_parts):
        feed, geo_client, executor, clock = feed_parts
        with patch.object(geo_client, "suggest", return_value=iter([_suggestion("Springfield, IL")])):
            feed.on_input("Springfield")
            clock.advance(0.31)
            feed.tick()
            executor.run_all()
        assert [s.display_name for s in feed.suggestions] == ["Springfield, IL"]
        assert feed.searching is False


class TestOrdering:
    def test_stale_response_never_overwrites_newer(self, feed_parts):
        """Two lookups in flight; the older one resolves last and is dropped."""
        feed, geo_client, executor, clock = feed_parts
        answers = {
            "Spri": [_suggestion("Spring Valley")],
            "Springf": [_suggestion("Springfield, IL"), _suggestion("Springfield, MA")],
        }
        with patch.object(geo_client, "suggest", side_effect=lambda text: iter(answers[text])):
            feed.on_input("Spri")
            clock.advance(0.31)
            first = feed.tick()
            feed.on_input("Springf")
            clock.advance(0.31)
            second = feed.tick()
            assert second > first

            executor.run(1)   # newer lookup resolves first
            executor.run(0)   # older lookup arrives late

        assert [s.display_name for s in feed.suggestions] == ["Springfield, IL", "Springfield, MA"]

    def test_deliver_reports_applied(self, feed_parts):
        feed, _, _, clock = feed_parts
        feed.on_input("Springfield")
        clock.advance(0.31)
        token = feed.tick()
        assert feed.deliver(token - 1, [_suggestion("stale")]) is False
        assert feed.deliver(token, [_suggestion("fresh")]) is True
        assert feed.suggestions[0].display_name == "fresh"

    def test_select_discards_list_and_late_responses(self, feed_parts):
        feed, _, _, clock = feed_parts
        feed.on_input("Springfield")
        clock.advance(0.31)
        token = feed.tick()
        feed.deliver(token, [_suggestion("Springfield, IL", 39.8, -89.6)])

        location = feed.select(0)
        assert location.display_address == "Springfield, IL"
        assert location.point == GeoPoint(39.8, -89.6)
        assert feed.suggestions == []
        assert feed.deliver(token, [_suggestion("late")]) is False

    def test_blur_discards(self, feed_parts):
        feed, _, _, clock = feed_parts
        feed.on_input("Springfield")
        clock.advance(0.31)
        token = feed.tick()
        feed.deliver(token, [_suggestion("Springfield, IL")])
        feed.blur()
        assert feed.suggestions == []
        assert feed.searching is False

    def test_on_change_callback(self, geo_client, executor, clock):
        seen = []
        feed = SuggestionFeed(geo_client, executor=executor, clock=clock, on_change=seen.append)
        feed.on_input("Springfield")
        clock.advance(0.31)
        feed.deliver(feed.tick(), [_suggestion("Springfield, IL")])
        assert [s.display_name for s in seen[-1]] == ["Springfield, IL"]


class TestFeedClose:
    def test_shuts_down_default_executor(self, geo_client):
        feed = SuggestionFeed(geo_client)
        feed.close()
        with pytest.raises(RuntimeError):
            feed._executor.submit(lambda: None)

    def test_injected_executor_untouched(self, geo_client, executor):
        feed = SuggestionFeed(geo_client, executor=executor)
        feed.close()
        feed.on_input("Springfield", now=0)
        assert feed.tick(now=1) is not None
        assert len(executor.pending) == 1
