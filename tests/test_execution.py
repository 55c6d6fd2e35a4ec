"""Alpaca order payloads and client error handling."""

import json

import pytest
import requests
from trading_engine.core.errors import BrokerRejectedError, BrokerUnreachableError
from trading_engine.core.types import Direction
from trading_engine.execution.alpaca import AlpacaClient, order_payload
from trading_engine.utils.order_filters import bracket_take_profit, round_quantity, scale_levels


def _response(status, body):
    r = requests.Response()
    r.status_code = status
    r._content = json.dumps(body).encode()
    r.url = "https://paper-api.alpaca.markets/test"
    return r


class FakeHTTP:
    """Stands in for requests.Session: canned responses by (method, path)."""

    def __init__(self, routes):
        self.routes = routes
        self.headers = {}
        self.sent = []

    def request(self, method, url, timeout=None, **kwargs):
        path = url.split(".markets", 1)[1]
        self.sent.append((method, path, kwargs))
        status, body = self.routes[(method, path)]
        return _response(status, body)


def _client(routes):
    http = FakeHTTP(routes)
    return AlpacaClient("key", "secret", session=http), http


def test_fractional_quantity_is_simple_day_order():
    payload = order_payload("AAPL", Direction.LONG, 5.4321, 95.0, 110.0, 100.0)
    assert payload["qty"] == "5.4321"
    assert payload["time_in_force"] == "day"
    assert payload["side"] == "buy"
    assert "order_class" not in payload


def test_whole_quantity_is_gtc_bracket():
    payload = order_payload("AAPL", Direction.SHORT, 10.0, 105.123, 90.0, 100.0)
    assert payload["qty"] == "10"
    assert payload["side"] == "sell"
    assert payload["time_in_force"] == "gtc"
    assert payload["order_class"] == "bracket"
    assert payload["take_profit"] == {"limit_price": 90.0}
    assert payload["stop_loss"] == {"stop_price": 105.12}


def test_bracket_take_profit_fallback():
    # too close to the entry: entry +/- 0.5%
    assert bracket_take_profit(Direction.LONG, 100.0, 100.005) == pytest.approx(100.5)
    assert bracket_take_profit(Direction.SHORT, 100.0, 101.0) == pytest.approx(99.5)
    assert bracket_take_profit(Direction.LONG, 100.0, None) == pytest.approx(100.5)
    assert bracket_take_profit(Direction.LONG, 100.0, 104.567) == pytest.approx(104.57)


def test_round_quantity_and_scale_levels():
    assert round_quantity(3.9, fractionable=False) == 3.0
    assert round_quantity(-1.0) == 0.0
    assert scale_levels(100.0, 102.0, 95.0, 110.0) == pytest.approx((96.9, 112.2))
    assert scale_levels(100.0, 100.0, 95.0, 110.0) == (95.0, 110.0)


def test_client_sends_auth_headers():
    client, http = _client({})
    assert http.headers["APCA-API-KEY-ID"] == "key"
    assert http.headers["APCA-API-SECRET-KEY"] == "secret"


def test_get_account_and_positions():
    client, _ = _client({
        ("GET", "/v2/account"): (200, {"id": "abc", "status": "ACTIVE", "buying_power": "2500.5", "portfolio_value": "10000"}),
        ("GET", "/v2/positions"): (200, [
            {"symbol": "AAPL", "qty": "3", "side": "long", "avg_entry_price": "180.5", "current_price": "182", "unrealized_pl": "4.5"},
            {"symbol": "TSLA", "qty": "-2", "side": "short", "avg_entry_price": "250", "current_price": "245", "unrealized_pl": "10"},
        ]),
    })
    account = client.get_account()
    assert account.account_id == "abc"
    assert account.buying_power == pytest.approx(2500.5)
    positions = client.get_positions()
    assert [p.direction for p in positions] == [Direction.LONG, Direction.SHORT]
    assert positions[1].quantity == 2.0
    assert positions[0].avg_entry_price == pytest.approx(180.5)


def test_place_order_success():
    client, http = _client({("POST", "/v2/orders"): (200, {"id": "order-1", "status": "accepted"})})
    result = client.place_bracket_order("AAPL", Direction.LONG, 3.0, 95.0, 110.0, 100.0)
    assert result.success
    assert result.order_id == "order-1"
    sent = http.sent[0][2]["json"]
    assert sent["order_class"] == "bracket"


def test_place_order_rejected_returns_failure():
    client, _ = _client({("POST", "/v2/orders"): (403, {"message": "insufficient buying power"})})
    result = client.place_bracket_order("AAPL", Direction.LONG, 3.0, 95.0, 110.0, 100.0)
    assert result.success is False
    assert result.rejected is True
    assert "403" in result.message


def test_place_order_zero_quantity():
    client, http = _client({})
    assert client.place_bracket_order("AAPL", Direction.LONG, 0.0, 95.0, 110.0, 100.0).success is False
    assert http.sent == []


def test_account_error_raises_unreachable():
    client, _ = _client({("GET", "/v2/account"): (401, {"message": "unauthorized"})})
    with pytest.raises(BrokerUnreachableError) as exc:
        client.get_account()
    assert exc.value.reason == "broker_unreachable"
    assert "secret" not in exc.value.detail


def test_close_sends_position_quantity():
    client, http = _client({("DELETE", "/v2/positions/AAPL"): (200, {"id": "close-1", "status": "accepted"})})
    result = client.close_position("AAPL", 2.5)
    assert result.success
    assert result.order_id == "close-1"
    assert http.sent[0][2]["params"] == {"qty": "2.5"}
    client.close_position("AAPL", 3.0)
    assert http.sent[1][2]["params"] == {"qty": "3"}


def test_close_without_quantity_closes_everything():
    client, http = _client({("DELETE", "/v2/positions/AAPL"): (200, {})})
    assert client.close_position("AAPL").success
    assert http.sent[0][2]["params"] is None


def test_close_of_missing_position_is_already_flat():
    client, _ = _client({("DELETE", "/v2/positions/AAPL"): (404, {"message": "position does not exist"})})
    result = client.close_position("AAPL", 2.0)
    assert result.success
    assert result.message == "already flat"


def test_client_error_on_read_is_rejection_not_outage():
    client, _ = _client({("GET", "/v2/positions"): (403, {"message": "forbidden"})})
    with pytest.raises(BrokerRejectedError) as exc:
        client.get_positions()
    assert exc.value.status == 403
    assert exc.value.reason == "broker_rejected"


def test_unreachable_order_is_not_marked_rejected():
    client, _ = _client({("POST", "/v2/orders"): (401, {"message": "unauthorized"})})
    result = client.place_bracket_order("AAPL", Direction.LONG, 3.0, 95.0, 110.0, 100.0)
    assert result.success is False
    assert result.rejected is False
