import pytest
import requests
from datetime import datetime
from decimal import Decimal
from unittest.mock import Mock, patch
import pytz

from cli.client import AuctionClient, BidRejected, BidOutcomeUnknown


@pytest.fixture
def client():
    with patch("cli.client.get_token", return_value="test-token"), patch("cli.client.get_timezone", return_value="UTC"):
        yield AuctionClient()


def _response(status_code, body):
    response = Mock()
    response.status_code = status_code
    response.ok = status_code < 400
    response.reason = "Error"
    response.json.return_value = body
    response.text = str(body)
    return response


def test_place_bid_success(client):
    body = {"bid_id": 1, "vehicle_id": 5, "amount": "1100.00", "current_bid": "1100.00", "bid_count": 2}
    with patch("cli.client.requests.post", return_value=_response(200, body)) as mock_post:
        result = client.place_bid(5, Decimal("1100"))

    assert result["bid_count"] == 2
    assert mock_post.call_args.kwargs["json"] == {"amount": "1100"}
    assert mock_post.call_args.kwargs["headers"] == {"Authorization": "Bearer test-token"}


def test_place_bid_rejected_carries_code_and_minimum(client):
    detail = {"code": "bid_too_low", "message": "Minimum bid is $1,100.00", "minimum_required": "1100"}
    with patch("cli.client.requests.post", return_value=_response(400, {"detail": detail})):
        with pytest.raises(BidRejected) as exc_info:
            client.place_bid(5, Decimal("1050"))

    assert exc_info.value.code == "bid_too_low"
    assert exc_info.value.minimum_required == Decimal("1100")


def test_place_bid_timeout_rereads_listing(client):
    """A timed-out bid is never retried; the listing is re-read instead."""
    listing = {"id": 5, "current_bid": "1100.00", "bid_count": 3}
    with patch("cli.client.requests.post", side_effect=requests.exceptions.Timeout) as mock_post, \
            patch("cli.client.requests.get", return_value=_response(200, listing)):
        with pytest.raises(BidOutcomeUnknown) as exc_info:
            client.place_bid(5, Decimal("1100"))

    assert mock_post.call_count == 1
    assert exc_info.value.listing == listing
    assert exc_info.value.probably_admitted is True


def test_place_bid_timeout_listing_unreachable(client):
    with patch("cli.client.requests.post", side_effect=requests.exceptions.Timeout), \
            patch("cli.client.requests.get", side_effect=requests.exceptions.ConnectionError):
        with pytest.raises(BidOutcomeUnknown) as exc_info:
            client.place_bid(5, Decimal("1100"))

    assert exc_info.value.listing is None
    assert exc_info.value.probably_admitted is False


def test_outbid_after_timeout_not_reported_as_admitted(client):
    listing = {"id": 5, "current_bid": "1500.00", "bid_count": 4}
    with patch("cli.client.requests.post", side_effect=requests.exceptions.Timeout), \
            patch("cli.client.requests.get", return_value=_response(200, listing)):
        with pytest.raises(BidOutcomeUnknown) as exc_info:
            client.place_bid(5, Decimal("1100"))

    assert exc_info.value.probably_admitted is False


def test_error_detail_surfaced(client):
    with patch("cli.client.requests.get", return_value=_response(404, {"detail": "Vehicle not found"})):
        with pytest.raises(requests.exceptions.HTTPError, match="Vehicle not found"):
            client.get_vehicle(99)


def test_not_authenticated():
    with patch("cli.client.get_token", return_value=None), patch("cli.client.get_timezone", return_value="UTC"):
        client = AuctionClient()
    with pytest.raises(ValueError, match="Not authenticated"):
        client.get_vehicle(1)


def test_list_vehicles_drops_empty_filters(client):
    with patch("cli.client.requests.get", return_value=_response(200, [])) as mock_get:
        client.list_vehicles(status="active")
    assert mock_get.call_args.kwargs["params"] == {"status": "active"}


def test_time_remaining(client):
    now = datetime(2026, 5, 1, 12, 0, tzinfo=pytz.UTC)
    assert client.time_remaining("2026-05-03T15:30:00", now=now) == "2d 3h"
    assert client.time_remaining("2026-05-01T15:05:00", now=now) == "3h 5m"
    assert client.time_remaining("2026-05-01T12:05:30", now=now) == "5m"
    assert client.time_remaining("2026-05-01T11:59:00", now=now) == "Ended"


def test_to_local_time():
    with patch("cli.client.get_token", return_value="t"), patch("cli.client.get_timezone", return_value="America/New_York"):
        client = AuctionClient()
    assert client.to_local_time("2026-01-15T17:00:00") == "2026-01-15 12:00:00"
