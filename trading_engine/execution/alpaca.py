"""
Alpaca REST client (paper and live) with retry on rate limits and transient errors.
"""

from __future__ import annotations
import logging
from typing import List, Optional

import requests

from trading_engine.core.errors import BrokerRejectedError, BrokerUnreachableError
from trading_engine.core.types import Direction
from trading_engine.execution.base import BrokerAccount, BrokerClient, BrokerPosition, OrderResult
from trading_engine.utils.order_filters import bracket_take_profit, round_price
from trading_engine.utils.retry import retry_on_rate_limit

logger = logging.getLogger("trading_engine.execution.alpaca")


def _float(value, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def format_qty(quantity: float) -> str:
    if quantity == int(quantity):
        return str(int(quantity))
    return f"{quantity:.6f}".rstrip("0").rstrip(".")


def order_payload(
    symbol: str,
    direction: Direction,
    quantity: float,
    stop_loss: float,
    take_profit: float,
    entry_price: float,
) -> dict:
    """
    Fractional quantities must be simple DAY orders; whole quantities go in as a
    GTC bracket with SL/TP legs.
    """
    fractional = quantity != int(quantity)
    side = "buy" if direction == Direction.LONG else "sell"
    payload = {
        "symbol": symbol,
        "qty": format_qty(quantity),
        "side": side,
        "type": "market",
        "time_in_force": "day" if fractional else "gtc",
    }
    if not fractional and stop_loss and take_profit:
        payload["order_class"] = "bracket"
        payload["take_profit"] = {"limit_price": bracket_take_profit(direction, entry_price, take_profit)}
        payload["stop_loss"] = {"stop_price": round_price(stop_loss)}
    return payload


class AlpacaClient(BrokerClient):
    def __init__(
        self,
        api_key: str,
        api_secret: str,
        base_url: str = "https://paper-api.alpaca.markets",
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http = session or requests.Session()
        self._http.headers.update({
            "APCA-API-KEY-ID": api_key,
            "APCA-API-SECRET-KEY": api_secret,
            "Content-Type": "application/json",
        })
        logger.info("Alpaca: using %s", "PAPER" if "paper" in self.base_url else "LIVE")

    @retry_on_rate_limit(max_retries=3, base_delay=1.0)
    def _send(self, method: str, path: str, **kwargs):
        resp = self._http.request(method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs)
        resp.raise_for_status()
        return resp.json() if resp.content else {}

    def _request(self, method: str, path: str, **kwargs):
        try:
            return self._send(method, path, **kwargs)
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            text = e.response.text[:200] if e.response is not None else ""
            detail = f"{method} {path}: HTTP {status} {text}".strip()
            # bad credentials and server errors mean the broker is not usable right now
            if status is None or status == 401 or status >= 500:
                raise BrokerUnreachableError(detail) from e
            raise BrokerRejectedError(detail, status) from e
        except requests.RequestException as e:
            raise BrokerUnreachableError(f"{method} {path}: {type(e).__name__}") from e

    def get_account(self) -> BrokerAccount:
        data = self._request("GET", "/v2/account")
        return BrokerAccount(
            account_id=str(data.get("id", "")),
            status=str(data.get("status", "")),
            buying_power=_float(data.get("buying_power")),
            portfolio_value=_float(data.get("portfolio_value")),
            raw=data,
        )

    def get_positions(self) -> List[BrokerPosition]:
        positions = []
        for p in self._request("GET", "/v2/positions") or []:
            qty = _float(p.get("qty"))
            side = str(p.get("side", "long")).lower()
            positions.append(BrokerPosition(
                symbol=p.get("symbol", ""),
                direction=Direction.SHORT if side == "short" or qty < 0 else Direction.LONG,
                quantity=abs(qty),
                avg_entry_price=_float(p.get("avg_entry_price")),
                current_price=_float(p.get("current_price"), None),
                unrealized_pl=_float(p.get("unrealized_pl")),
            ))
        return positions

    def get_orders(self, status: str = "open") -> List[dict]:
        return list(self._request("GET", "/v2/orders", params={"status": status, "nested": "true"}) or [])

    def place_bracket_order(self, symbol, direction, quantity, stop_loss, take_profit, entry_price) -> OrderResult:
        if quantity <= 0:
            return OrderResult(success=False, message="quantity must be positive", rejected=True)
        payload = order_payload(symbol, direction, quantity, stop_loss, take_profit, entry_price)
        try:
            data = self._request("POST", "/v2/orders", json=payload)
        except BrokerRejectedError as e:
            logger.error("Order rejected %s %s: %s", symbol, direction.value, e.detail)
            return OrderResult(success=False, message=e.detail, rejected=True)
        except BrokerUnreachableError as e:
            logger.error("Order failed %s %s: %s", symbol, direction.value, e.detail)
            return OrderResult(success=False, message=e.detail)
        logger.info("Order placed %s %s qty=%s id=%s", symbol, direction.value, payload["qty"], data.get("id"))
        return OrderResult(
            success=True,
            order_id=data.get("id"),
            avg_price=_float(data.get("filled_avg_price"), None),
            quantity=quantity,
            message=str(data.get("status", "")),
        )

    def close_position(self, symbol: str, quantity: Optional[float] = None) -> OrderResult:
        """
        Market-close quantity shares (the whole position when None). A 404 means the
        broker holds nothing for symbol any more, e.g. a bracket leg already filled.
        """
        params = {"qty": format_qty(quantity)} if quantity else None
        try:
            data = self._request("DELETE", f"/v2/positions/{symbol}", params=params)
        except BrokerRejectedError as e:
            if e.status == 404:
                logger.info("Close %s: no broker position, already flat", symbol)
                return OrderResult(success=True, quantity=quantity, message="already flat")
            logger.error("Close rejected %s: %s", symbol, e.detail)
            return OrderResult(success=False, message=e.detail, rejected=True)
        except BrokerUnreachableError as e:
            logger.error("Close failed %s: %s", symbol, e.detail)
            return OrderResult(success=False, message=e.detail)
        return OrderResult(success=True, order_id=data.get("id"), quantity=quantity, message=str(data.get("status", "")))
