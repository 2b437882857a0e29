"""Tests for the Traewelling HTTP client using httpx.MockTransport."""

from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import httpx
import pytest

from traewelling_exporter.common.config import AccountConfig
from traewelling_exporter.traewelling.client import TraewellingClient, parse_retry_after
from traewelling_exporter.traewelling.errors import (
    PermanentFetchError,
    RateLimitedError,
    TransientFetchError,
)


def status_payload(status_id, **train_overrides):
    train = {
        "trip": 42,
        "hafasId": "1|2|3",
        "category": "nationalExpress",
        "number": "ICE 571",
        "lineName": "ICE 571",
        "distance": 124000,
        "points": 18,
        "duration": 62,
        "speed": 120.5,
        "origin": {
            "id": 1,
            "name": "Hamburg Hbf",
            "isArrivalDelayed": False,
            "isDepartureDelayed": True,
            "cancelled": False,
        },
        "destination": {
            "id": 2,
            "name": "Hannover Hbf",
            "isArrivalDelayed": True,
            "isDepartureDelayed": False,
            "cancelled": False,
        },
    }
    train.update(train_overrides)
    return {
        "id": status_id,
        "user": 7,
        "username": "alice",
        "business": 0,
        "createdAt": "2024-05-01T08:00:00+02:00",
        "train": train,
        "event": None,
    }


def make_client(handler, token=None):
    return TraewellingClient(
        base_url="https://traewelling.test/api/v1",
        default_token=token,
        timeout_seconds=2.0,
        transport=httpx.MockTransport(handler),
    )


@pytest.fixture
def alice():
    return AccountConfig(account_id="alice", label="alice")


# =============================================================================
# SUCCESSFUL FETCHES
# =============================================================================

class TestFetchPage:
    def test_decodes_statuses_and_next_cursor(self, alice):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["ua"] = request.headers.get("User-Agent")
            return httpx.Response(
                200,
                json={
                    "data": [status_payload(11), status_payload(10)],
                    "links": {"next": "https://traewelling.test/api/v1/user/alice/statuses?page=3"},
                },
            )

        page = make_client(handler, token="secret").fetch_page(alice, 2)

        assert seen["url"] == "https://traewelling.test/api/v1/user/alice/statuses?page=2"
        assert seen["auth"] == "Bearer secret"
        assert seen["ua"].startswith("traewelling-exporter/")
        assert page.next_cursor == 3
        assert [c.id for c in page.checkins] == [11, 10]

        checkin = page.checkins[0]
        assert checkin.category == "nationalExpress"
        assert checkin.line_name == "ICE 571"
        assert checkin.distance_meters == 124000
        assert checkin.duration_minutes == 62
        assert checkin.points == 18
        assert checkin.arrival_delayed is True
        assert checkin.departure_delayed is True
        assert checkin.origin == "Hamburg Hbf"
        assert checkin.created_at == datetime(2024, 5, 1, 6, 0, tzinfo=timezone.utc)
        assert checkin.validation_error() is None

    def test_account_token_overrides_default(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"data": [], "links": {"next": None}})

        account = AccountConfig(account_id="bob", label="bob", token="bob-token")
        make_client(handler, token="global").fetch_page(account, 1)

        assert seen["auth"] == "Bearer bob-token"

    def test_account_id_is_escaped_in_path(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.raw_path
            return httpx.Response(200, json={"data": [], "links": {"next": None}})

        account = AccountConfig(account_id="a/b?c", label="odd")
        make_client(handler).fetch_page(account, 1)

        assert seen["path"] == b"/api/v1/user/a%2Fb%3Fc/statuses?page=1"

    def test_negative_points_are_flagged(self, alice):
        def handler(request):
            return httpx.Response(200, json={"data": [status_payload(5, points=-3)]})

        (checkin,) = make_client(handler).fetch_page(alice, 1).checkins

        assert checkin.id == 5
        assert checkin.validation_error() is not None

    def test_last_page_has_no_next_cursor(self, alice):
        def handler(request):
            return httpx.Response(200, json={"data": [status_payload(1)], "links": {"next": None}})

        assert make_client(handler).fetch_page(alice, 1).next_cursor is None

    def test_malformed_record_is_flagged_not_raised(self, alice):
        def handler(request):
            broken = status_payload(9, distance=-5)
            return httpx.Response(200, json={"data": [status_payload(10), broken, {"foo": 1}]})

        page = make_client(handler).fetch_page(alice, 1)

        assert len(page.checkins) == 3
        assert page.checkins[0].validation_error() is None
        assert page.checkins[1].id == 9
        assert page.checkins[1].validation_error() is not None
        assert page.checkins[2].id is None
        assert page.checkins[2].validation_error() is not None


# =============================================================================
# ERROR CLASSIFICATION
# =============================================================================

class TestErrorClassification:
    @pytest.mark.parametrize("status_code", [500, 502, 503, 504, 408])
    def test_server_errors_are_transient(self, alice, status_code):
        client = make_client(lambda request: httpx.Response(status_code, text="boom"))

        with pytest.raises(TransientFetchError) as exc_info:
            client.fetch_page(alice, 1)
        assert exc_info.value.status_code == status_code

    @pytest.mark.parametrize("status_code", [400, 401, 403, 404, 410])
    def test_client_errors_are_permanent(self, alice, status_code):
        client = make_client(lambda request: httpx.Response(status_code, text="nope"))

        with pytest.raises(PermanentFetchError):
            client.fetch_page(alice, 1)

    def test_rate_limit_carries_retry_after(self, alice):
        client = make_client(
            lambda request: httpx.Response(429, headers={"Retry-After": "30"}, text="slow down")
        )

        with pytest.raises(RateLimitedError) as exc_info:
            client.fetch_page(alice, 1)
        assert exc_info.value.retry_after == 30.0
        assert exc_info.value.outcome == "rate_limited"

    def test_timeout_is_transient(self, alice):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        with pytest.raises(TransientFetchError):
            make_client(handler).fetch_page(alice, 1)

    def test_connection_error_is_transient(self, alice):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientFetchError):
            make_client(handler).fetch_page(alice, 1)

    def test_undecodable_body_is_transient(self, alice):
        def handler(request):
            raise httpx.DecodingError("bad gzip stream", request=request)

        with pytest.raises(TransientFetchError):
            make_client(handler).fetch_page(alice, 1)

    def test_redirect_loop_is_transient(self, alice):
        def handler(request):
            raise httpx.TooManyRedirects("too many redirects", request=request)

        with pytest.raises(TransientFetchError):
            make_client(handler).fetch_page(alice, 1)

    def test_invalid_json_is_transient(self, alice):
        client = make_client(lambda request: httpx.Response(200, text="<html>maintenance</html>"))

        with pytest.raises(TransientFetchError):
            client.fetch_page(alice, 1)


class TestRetryAfter:
    def test_seconds(self):
        assert parse_retry_after("12") == 12.0

    def test_missing_or_garbage(self):
        assert parse_retry_after(None) is None
        assert parse_retry_after("soon") is None

    def test_http_date(self):
        when = datetime.now(timezone.utc) + timedelta(seconds=120)
        delay = parse_retry_after(format_datetime(when, usegmt=True))

        assert 100 <= delay <= 120
