"""Live quote snapshots from the Eastmoney push2 endpoint."""
import logging
import time
from datetime import datetime
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel

from stock_analyst.tools.stock_codes import to_secid

logger = logging.getLogger(__name__)

# price, high, low, open, volume, amount, name, previous close, market values, turnover, change %
QUOTE_FIELDS = "f43,f44,f45,f46,f47,f48,f57,f58,f60,f116,f117,f168,f170"

HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; stock-analyst/1.0)",
    "Accept": "application/json,text/plain,*/*",
}


class QuoteSnapshot(BaseModel):
    code: str
    name: str = ""
    price: float = 0.0
    change: float = 0.0
    change_percent: float = 0.0
    open: float = 0.0
    high: float = 0.0
    low: float = 0.0
    pre_close: float = 0.0
    volume: float = 0.0  # lots
    amount: float = 0.0  # CNY
    turnover_rate: float = 0.0
    total_market_value: float = 0.0
    float_market_value: float = 0.0

    @classmethod
    def from_payload(cls, code: str, data: Dict[str, Any]) -> "QuoteSnapshot":
        # without fltt=2 prices and percentages arrive multiplied by 100
        price = _num(data, "f43", 100)
        pre_close = _num(data, "f60", 100)
        change = price - pre_close if pre_close else 0.0
        return cls(
            code=code.upper(),
            name=str(data.get("f58") or ""),
            price=price,
            change=change,
            change_percent=(change / pre_close * 100) if pre_close > 0 else 0.0,
            open=_num(data, "f46", 100),
            high=_num(data, "f44", 100),
            low=_num(data, "f45", 100),
            pre_close=pre_close,
            volume=_num(data, "f47"),
            amount=_num(data, "f48"),
            turnover_rate=_num(data, "f168", 100),
            total_market_value=_num(data, "f116"),
            float_market_value=_num(data, "f117"),
        )

    def stock_info(self, fetched_at: Optional[datetime] = None) -> Dict[str, Any]:
        """Field names the browser page expects."""
        return {
            "code": self.code,
            "name": self.name,
            "price": self.price,
            "change": round(self.change, 4),
            "changePercent": round(self.change_percent, 4),
            "volume": self.volume,
            "amount": self.amount,
            "high": self.high,
            "low": self.low,
            "open": self.open,
            "preClose": self.pre_close,
            "time": (fetched_at or datetime.now()).strftime("%Y-%m-%d %H:%M:%S"),
        }


def _num(data: Dict[str, Any], key: str, scale: float = 1.0) -> float:
    try:
        return float(data.get(key) or 0) / scale
    except (TypeError, ValueError):
        return 0.0


def _human(value: float) -> str:
    for threshold, suffix in ((1e12, "T"), (1e9, "B"), (1e6, "M"), (1e3, "K")):
        if abs(value) >= threshold:
            return f"{value / threshold:.2f}{suffix}"
    return f"{value:.2f}"


def format_snapshot(snapshot: QuoteSnapshot, now: Optional[datetime] = None) -> str:
    sign = "+" if snapshot.change >= 0 else ""
    lines = [
        "[Live quote]",
        f"Code: {snapshot.code}",
        f"Name: {snapshot.name}",
        f"Price: {snapshot.price:.2f}",
        f"Change: {sign}{snapshot.change:.2f} ({sign}{snapshot.change_percent:.2f}%)",
        f"Open: {snapshot.open:.2f}",
        f"High: {snapshot.high:.2f}",
        f"Low: {snapshot.low:.2f}",
        f"Previous close: {snapshot.pre_close:.2f}",
        f"Volume: {_human(snapshot.volume)} lots",
        f"Amount: {_human(snapshot.amount)} CNY",
        f"Turnover rate: {snapshot.turnover_rate:.2f}%",
        f"Total market value: {_human(snapshot.total_market_value)} CNY",
        f"Float market value: {_human(snapshot.float_market_value)} CNY",
        f"Data time: {(now or datetime.now()).strftime('%Y-%m-%d %H:%M:%S')}",
    ]
    return "\n".join(lines)


def news_url(ticker: str) -> str:
    return f"https://news.eastmoney.com/kuaixunlist.html?symbol={to_secid(ticker)}"


class QuoteClient:
    def __init__(
        self,
        base_url: str = "https://push2.eastmoney.com/api/qt/stock/get",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url
        self.client = httpx.AsyncClient(timeout=timeout, headers=HEADERS, transport=transport)

    async def fetch_snapshot(self, ticker: str) -> Optional[QuoteSnapshot]:
        """Return the snapshot, or None when the endpoint knows nothing about `ticker`."""
        params = {
            "secid": to_secid(ticker),
            "fields": QUOTE_FIELDS,
            "_": str(int(time.time() * 1000)),
        }
        try:
            resp = await self.client.get(self.base_url, params=params)
            resp.raise_for_status()
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Quote fetch failed for %s: %s", ticker, exc)
            raise
        data = payload.get("data") if isinstance(payload, dict) else None
        if not data:
            logger.info("No quote data for %s", ticker)
            return None
        return QuoteSnapshot.from_payload(ticker, data)

    async def close(self):
        await self.client.aclose()
