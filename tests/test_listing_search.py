"""
Tests for listing_search: request shape, failure handling, caching,
and generation tokens.

HTTP is mocked at the service's requests.Session.
"""

import logging
from unittest.mock import MagicMock, patch

import pytest
import requests

from listing_search import (
    ListingSearchService,
    SearchBackendError,
    SearchGenerations,
    build_search_params,
    parse_results,
)
from search_types import GeoPoint, ResolvedLocation, SearchQuery

SF = ResolvedLocation(GeoPoint(37.7749, -122.4194), "San Francisco, CA")

LISTINGS = [
    {"id": "a1", "title": "Road bike", "price": 250, "distance": 2.4,
     "location_latitude": 37.78, "location_longitude": -122.41,
     "created_at": "2024-05-01T12:00:00Z", "category": "sports", "images": ["a.jpg"]},
    {"id": "b2", "title": "Bike rack", "price": "40", "distance": "12.5",
     "locationLatitude": 37.7, "locationLongitude": -122.3, "createdAt": 1714564800000},
    {"id": "c3", "title": "Kids bike", "price": 60, "distance": 31.0},
]


def _mock_response(status_code=200, json_data=None, json_error=False):
    resp = MagicMock(spec=requests.Response)
    resp.status_code = status_code
    resp.ok = 200 <= status_code < 400
    if json_error:
        resp.json.side_effect = ValueError("No JSON")
    else:
        resp.json.return_value = json_data
    return resp


@pytest.fixture
def service(clock):
    return ListingSearchService(clock=clock)


def _query(**kwargs):
    kwargs.setdefault("anchor", SF)
    return SearchQuery(**kwargs)


# =========================================================================
# Request parameters
# =========================================================================

class TestBuildParams:
    def test_anchor_radius_and_text(self):
        params = build_search_params(_query(radius_km=40, free_text="bike"))
        assert params == {
            "lat": "37.7749", "lng": "-122.4194", "radius": "40",
            "query": "bike", "sortBy": "distance", "order": "asc",
        }

    def test_all_filters(self):
        params = build_search_params(_query(
            category="sports", min_price=10, max_price=99.5, sort_by="price", sort_order="desc",
        ))
        assert params["category"] == "sports"
        assert params["minPrice"] == "10"
        assert params["maxPrice"] == "99.5"
        assert params["sortBy"] == "price"
        assert params["order"] == "desc"

    def test_zero_min_price_kept(self):
        assert build_search_params(_query(min_price=0))["minPrice"] == "0"

    def test_requires_anchor(self):
        with pytest.raises(ValueError):
            build_search_params(SearchQuery())


class TestParseResults:
    def test_keeps_server_order_and_both_key_styles(self):
        items = parse_results(LISTINGS)
        assert [i.id for i in items] == ["a1", "b2", "c3"]
        assert items[0].coordinates == GeoPoint(37.78, -122.41)
        assert items[1].coordinates == GeoPoint(37.7, -122.3)
        assert items[1].price == 40.0
        assert items[1].distance_km == 12.5
        assert items[2].coordinates is None
        assert items[0].created_at.year == 2024
        assert items[1].created_at.year == 2024

    def test_skips_rows_without_id(self):
        items = parse_results([{"title": "no id"}, "junk", LISTINGS[0]])
        assert [i.id for i in items] == ["a1"]

    def test_non_list_rejected(self):
        with pytest.raises(SearchBackendError):
            parse_results({"listings": []})

    def test_out_of_range_timestamp_keeps_listing(self):
        items = parse_results([
            LISTINGS[0],
            {"id": "far", "title": "Far future", "price": 5, "distance": 1.0,
             "createdAt": 1700000000000000},
        ])
        assert [i.id for i in items] == ["a1", "far"]
        assert items[1].created_at is None


# =========================================================================
# fetch / search
# =========================================================================

class TestFetch:
    def test_no_anchor_makes_no_request(self, service):
        with patch.object(service.session, "get") as mock_get:
            outcome = service.fetch(SearchQuery())
            assert service.search(SearchQuery()) == []
        assert outcome.status == "no_anchor"
        mock_get.assert_not_called()

    def test_single_request_with_expected_params(self, service):
        with patch.object(service.session, "get",
                          return_value=_mock_response(json_data=LISTINGS)) as mock_get:
            results = service.search(_query(radius_km=40, free_text="bike"))

        assert mock_get.call_count == 1
        args, kwargs = mock_get.call_args
        assert args[0] == "http://localhost:5000/api/listings/search"
        assert kwargs["params"] == {
            "lat": "37.7749", "lng": "-122.4194", "radius": "40",
            "query": "bike", "sortBy": "distance", "order": "asc",
        }
        assert kwargs["timeout"] == 10
        assert [r.id for r in results] == ["a1", "b2", "c3"]

    def test_401_reads_as_empty(self, service, caplog):
        with patch.object(service.session, "get", return_value=_mock_response(status_code=401)):
            with caplog.at_level(logging.WARNING, logger="listing_search"):
                outcome = service.fetch(_query())
        assert outcome.status == "unauthorized"
        assert outcome.items == ()
        assert any("Unauthorized" in r.message for r in caplog.records)

    def test_401_search_returns_empty_list(self, service):
        with patch.object(service.session, "get", return_value=_mock_response(status_code=401)):
            assert service.search(_query()) == []

    def test_server_error_is_unavailable(self, service, caplog):
        with patch.object(service.session, "get", return_value=_mock_response(status_code=500)):
            with caplog.at_level(logging.ERROR, logger="listing_search"):
                outcome = service.fetch(_query())
        assert outcome.status == "unavailable"
        assert outcome.failed
        assert any(r.levelno == logging.ERROR for r in caplog.records)

    def test_timeout_is_unavailable(self, service):
        with patch.object(service.session, "get",
                          side_effect=requests.exceptions.Timeout("slow")):
            assert service.fetch(_query()).status == "unavailable"

    def test_non_json_is_unavailable(self, service):
        with patch.object(service.session, "get", return_value=_mock_response(json_error=True)):
            assert service.fetch(_query()).status == "unavailable"

    def test_overflowing_timestamp_is_not_an_error(self, service):
        body = [{"id": "x", "title": "Lamp", "price": 15, "distance": 0.8, "createdAt": 1e300}]
        with patch.object(service.session, "get", return_value=_mock_response(json_data=body)):
            outcome = service.fetch(_query())
        assert outcome.ok
        assert outcome.items[0].created_at is None

    def test_empty_result_is_ok(self, service):
        with patch.object(service.session, "get", return_value=_mock_response(json_data=[])):
            outcome = service.fetch(_query())
        assert outcome.ok
        assert outcome.items == ()


class TestCache:
    def test_repeat_within_window_is_cached(self, service, clock):
        with patch.object(service.session, "get",
                          return_value=_mock_response(json_data=LISTINGS)) as mock_get:
            service.fetch(_query())
            clock.advance(299)
            service.fetch(_query())
        assert mock_get.call_count == 1

    def test_expires_after_window(self, service, clock):
        with patch.object(service.session, "get",
                          return_value=_mock_response(json_data=LISTINGS)) as mock_get:
            service.fetch(_query())
            clock.advance(301)
            service.fetch(_query())
        assert mock_get.call_count == 2

    def test_different_params_not_shared(self, service):
        with patch.object(service.session, "get",
                          return_value=_mock_response(json_data=LISTINGS)) as mock_get:
            service.fetch(_query(radius_km=10))
            service.fetch(_query(radius_km=40))
        assert mock_get.call_count == 2

    def test_failures_not_cached(self, service):
        with patch.object(service.session, "get", return_value=_mock_response(status_code=500)) as mock_get:
            service.fetch(_query())
            service.fetch(_query())
        assert mock_get.call_count == 2

    def test_invalidate(self, service):
        with patch.object(service.session, "get",
                          return_value=_mock_response(json_data=LISTINGS)) as mock_get:
            service.fetch(_query())
            service.invalidate()
            service.fetch(_query())
        assert mock_get.call_count == 2


class TestGenerations:
    def test_only_latest_is_current(self):
        gens = SearchGenerations()
        first = gens.issue()
        second = gens.issue()
        assert second > first
        assert gens.is_current(second)
        assert not gens.is_current(first)
        assert gens.latest == second
