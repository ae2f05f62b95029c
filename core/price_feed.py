"""
cowtrader Core: Price Feed

Reference price from an ordered list of JSON sources with failover.

Each source is tried once per fetch in priority order. A source that errors,
times out, or returns a non-positive value is skipped (not retried). The first
valid price wins and is recorded into a bounded history with running
high/low watermarks.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import requests

from core.exceptions import AllSourcesUnavailable

logger = logging.getLogger(__name__)

MAX_HISTORY = 200


@dataclass(frozen=True)
class PricePoint:
    price: float
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"price": self.price, "timestamp": self.timestamp.isoformat()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PricePoint":
        ts = data.get("timestamp")
        if isinstance(ts, (int, float)):
            # epoch milliseconds, as older state files stored them
            timestamp = datetime.fromtimestamp(ts / 1000.0, tz=timezone.utc)
        else:
            timestamp = datetime.fromisoformat(str(ts))
        return cls(price=float(data["price"]), timestamp=timestamp)


@dataclass(frozen=True)
class PriceFeedState:
    """Bounded price history plus lifetime watermarks (None until first price)."""
    history: Tuple[PricePoint, ...] = ()
    high_water_mark: Optional[float] = None
    low_water_mark: Optional[float] = None

    @property
    def latest(self) -> Optional[PricePoint]:
        return self.history[-1] if self.history else None

    def recent_prices(self, count: int) -> List[float]:
        if count <= 0:
            return []
        return [p.price for p in self.history[-count:]]

    def record(self, price: float, timestamp: Optional[datetime] = None,
               max_history: int = MAX_HISTORY) -> "PriceFeedState":
        if price <= 0:
            raise ValueError(f"Price must be positive, got {price}")
        point = PricePoint(price=price, timestamp=timestamp or datetime.now(timezone.utc))
        history = (self.history + (point,))[-max_history:]
        high = price if self.high_water_mark is None else max(self.high_water_mark, price)
        low = price if self.low_water_mark is None else min(self.low_water_mark, price)
        return replace(self, history=history, high_water_mark=high, low_water_mark=low)

    def to_dict(self, max_points: Optional[int] = None) -> Dict[str, Any]:
        points = self.history if max_points is None else self.history[-max_points:]
        return {
            "price_history": [p.to_dict() for p in points],
            "high_water_mark": self.high_water_mark,
            "low_water_mark": self.low_water_mark,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PriceFeedState":
        history = []
        for raw in data.get("price_history") or []:
            try:
                point = PricePoint.from_dict(raw)
            except (KeyError, TypeError, ValueError) as exc:
                logger.debug("Dropping malformed price point %s: %s", raw, exc)
                continue
            if point.price > 0:
                history.append(point)
        high = data.get("high_water_mark")
        low = data.get("low_water_mark")
        return cls(
            history=tuple(history[-MAX_HISTORY:]),
            high_water_mark=float(high) if high is not None else None,
            low_water_mark=float(low) if low is not None else None,
        )


def _extract_path(payload: Any, path: str) -> Any:
    """Walk a dotted path ("ethereum.usd", "data.0.price") through nested JSON."""
    value = payload
    for part in path.split("."):
        if isinstance(value, list):
            value = value[int(part)]
        else:
            value = value[part]
    return value


@dataclass
class JsonPriceSource:
    """A price source: GET a JSON endpoint and pull the price at ``path``."""
    name: str
    url: str
    path: str
    timeout: float = 10.0
    session: Optional[requests.Session] = field(default=None, repr=False)

    def __call__(self) -> float:
        http = self.session or requests
        response = http.get(self.url, timeout=self.timeout)
        response.raise_for_status()
        return float(_extract_path(response.json(), self.path))

    @classmethod
    def from_config(cls, raw: Dict[str, Any], session: Optional[requests.Session] = None,
                    timeout: float = 10.0) -> "JsonPriceSource":
        return cls(
            name=raw["name"],
            url=raw["url"],
            path=raw["path"],
            timeout=float(raw.get("timeout_seconds", timeout)),
            session=session,
        )


PriceSource = Callable[[], float]


class PriceFeed:
    """
    Failover price fetcher.

    Sources are plain callables returning a price; ``name`` is read off the
    callable when present for logging.
    """

    def __init__(self, sources: Sequence[PriceSource], max_history: int = MAX_HISTORY):
        if not sources:
            raise ValueError("PriceFeed requires at least one source")
        self.sources = list(sources)
        self.max_history = max_history

    @staticmethod
    def _name(source: PriceSource) -> str:
        return getattr(source, "name", None) or getattr(source, "__name__", "source")

    def fetch_price(self, state: PriceFeedState) -> Tuple[float, PriceFeedState]:
        """
        Fetch a price and return it with the updated feed state.

        Raises:
            AllSourcesUnavailable: if no source produced a positive price
        """
        attempted = []
        last_error: Optional[Exception] = None

        for source in self.sources:
            name = self._name(source)
            attempted.append(name)
            try:
                price = float(source())
            except (requests.RequestException, KeyError, IndexError, TypeError, ValueError) as exc:
                logger.warning("Price source %s failed: %s", name, exc)
                last_error = exc
                continue

            if not price > 0:
                logger.warning("Price source %s returned non-positive price %s", name, price)
                continue

            new_state = state.record(price, max_history=self.max_history)
            logger.info("Price: %.2f (%s)", price, name)
            return price, new_state

        raise AllSourcesUnavailable(attempted, last_error)
