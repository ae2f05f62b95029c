"""Prometheus-backed metrics hooks for the trading cycle."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

METRIC_PREFIX = "cowtrader_"


@dataclass
class CycleStats:
    status: str
    duration_seconds: float
    new_fills: int = 0
    cancelled: int = 0
    placed: int = 0


class MetricsRecorder:
    """
    Expose trading cycle stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    Metrics are only registered when enabled; the last observations are
    kept in memory either way.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = False, port: int = 9100):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = False, port: int = 9100) -> None:
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._last_cycle_stats: Optional[CycleStats] = None
        self._last_no_trade_reason: Optional[str] = None
        self._counts: Dict[str, int] = {}

        if not self._enabled:
            return

        self._cycle_summary = Summary(
            "cowtrader_cycle_duration_seconds",
            "Duration of a full trading cycle",
        )
        self._cycle_counter = Counter(
            "cowtrader_cycle_total",
            "Trading cycles by status",
            labelnames=("status",),
        )
        self._fills_counter = Counter(
            "cowtrader_fills_total",
            "Reconciled fills by direction",
            labelnames=("side",),
        )
        self._decisions_counter = Counter(
            "cowtrader_decisions_total",
            "Decisions by source and action",
            labelnames=("source", "action"),
        )
        self._safety_counter = Counter(
            "cowtrader_safety_rejections_total",
            "Decisions downgraded to WAIT by safety rule",
            labelnames=("rule",),
        )
        self._orders_placed_counter = Counter(
            "cowtrader_orders_placed_total",
            "Orders submitted to the order book",
            labelnames=("side",),
        )
        self._orders_cancelled_counter = Counter(
            "cowtrader_orders_cancelled_total",
            "Orders removed by cancellation",
        )
        self._no_trade_counter = Counter(
            "cowtrader_no_trade_total",
            "Cycles with no order placed, by reason",
            labelnames=("reason",),
        )
        self._price_gauge = Gauge("cowtrader_price", "Last accepted reference price")
        self._holdings_gauge = Gauge("cowtrader_holdings", "Ledger holdings of the asset")
        self._cost_basis_gauge = Gauge("cowtrader_cost_basis", "Ledger weighted-average cost basis")
        self._open_orders_gauge = Gauge("cowtrader_open_orders", "Cached open orders")

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None and cls._instance._enabled:
            for collector in list(REGISTRY._collector_to_names):
                names = REGISTRY._collector_to_names.get(collector, set())
                if any(name.startswith(METRIC_PREFIX) for name in names):
                    REGISTRY.unregister(collector)

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port)
        except OSError as exc:
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)
            return
        self._started = True
        logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)

    def is_enabled(self) -> bool:
        return self._enabled

    def _bump(self, key: str, amount: int = 1) -> None:
        self._counts[key] = self._counts.get(key, 0) + amount

    def observe_cycle(self, stats: CycleStats) -> None:
        self._last_cycle_stats = stats
        self._bump(f"cycle:{stats.status}")
        if self._enabled:
            self._cycle_summary.observe(stats.duration_seconds)
            self._cycle_counter.labels(status=stats.status).inc()

    def record_fill(self, side: str) -> None:
        self._bump(f"fill:{side}")
        if self._enabled:
            self._fills_counter.labels(side=side.lower()).inc()

    def record_decision(self, source: str, action: str) -> None:
        self._bump(f"decision:{source}:{action}")
        if self._enabled:
            self._decisions_counter.labels(source=source, action=action).inc()

    def record_safety_rejection(self, rule: str) -> None:
        self._bump(f"safety:{rule}")
        if self._enabled:
            self._safety_counter.labels(rule=rule).inc()

    def record_order_placed(self, side: str) -> None:
        self._bump(f"placed:{side}")
        if self._enabled:
            self._orders_placed_counter.labels(side=side.lower()).inc()

    def record_orders_cancelled(self, count: int) -> None:
        if count <= 0:
            return
        self._bump("cancelled", count)
        if self._enabled:
            self._orders_cancelled_counter.inc(count)

    def record_no_trade_reason(self, reason: str) -> None:
        self._last_no_trade_reason = reason
        if self._enabled:
            self._no_trade_counter.labels(reason=reason).inc()

    def record_state(self, price: Optional[float], holdings: float, cost_basis: float, open_orders: int) -> None:
        if not self._enabled:
            return
        if price is not None:
            self._price_gauge.set(price)
        self._holdings_gauge.set(holdings)
        self._cost_basis_gauge.set(cost_basis)
        self._open_orders_gauge.set(max(open_orders, 0))

    def last_cycle(self) -> Optional[CycleStats]:
        return self._last_cycle_stats

    def last_no_trade_reason(self) -> Optional[str]:
        return self._last_no_trade_reason

    def count(self, key: str) -> int:
        return self._counts.get(key, 0)


__all__ = ["MetricsRecorder", "CycleStats"]
