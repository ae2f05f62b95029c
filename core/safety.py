"""
cowtrader Core: Safety Filter

Hard trading constraints applied to every decision before execution.

Rules are evaluated in fixed order; the first violation rewrites the
decision to WAIT with a reason:
1. SELL below cost basis + minimum profit margin
2. BUY that would leave the asset share above the concentration cap
3. SELL that would leave the quote share above the concentration cap
4. Notional below the minimum order size

Rule 2 measures the asset share after the buy, so a buy that would push the
share over the cap is rejected along with one that starts above it. Decisions
carrying a non-finite price or size are rejected before any rule runs.

A violation is not an error. apply() never raises.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from ai.schemas import Decision, DecisionContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TradingLimits:
    """Trading policy thresholds (from policy.yaml ``trading`` and ``fallback``)."""
    min_profit_margin: float = 50.0
    max_position_pct: float = 0.8
    low_concentration: float = 0.3
    min_order_size: float = 100.0
    quote_reserve: float = 50.0
    asset_reserve: float = 0.001
    duplicate_threshold: float = 10.0
    stale_distance: float = 200.0
    order_validity_hours: float = 24.0
    fallback_price_offset: float = 50.0
    fallback_buy_fraction: float = 0.3
    fallback_max_buy_quote: float = 500.0
    fallback_sell_fraction: float = 0.3

    @classmethod
    def from_policy(cls, policy: Dict[str, Any]) -> "TradingLimits":
        trading = policy.get("trading", {}) or {}
        fallback = policy.get("fallback", {}) or {}
        defaults = cls()
        return cls(
            min_profit_margin=float(trading.get("min_profit_margin", defaults.min_profit_margin)),
            max_position_pct=float(trading.get("max_position_pct", defaults.max_position_pct)),
            low_concentration=float(trading.get("low_concentration", defaults.low_concentration)),
            min_order_size=float(trading.get("min_order_size", defaults.min_order_size)),
            quote_reserve=float(trading.get("quote_reserve", defaults.quote_reserve)),
            asset_reserve=float(trading.get("asset_reserve", defaults.asset_reserve)),
            duplicate_threshold=float(trading.get("duplicate_threshold", defaults.duplicate_threshold)),
            stale_distance=float(trading.get("stale_distance", defaults.stale_distance)),
            order_validity_hours=float(trading.get("order_validity_hours", defaults.order_validity_hours)),
            fallback_price_offset=float(fallback.get("price_offset", defaults.fallback_price_offset)),
            fallback_buy_fraction=float(fallback.get("buy_fraction", defaults.fallback_buy_fraction)),
            fallback_max_buy_quote=float(fallback.get("max_buy_quote", defaults.fallback_max_buy_quote)),
            fallback_sell_fraction=float(fallback.get("sell_fraction", defaults.fallback_sell_fraction)),
        )


def order_notional(decision: Decision, context: DecisionContext) -> float:
    """Quote-currency notional: size for BUY, size × price for SELL, 0 when unsized."""
    size = decision.parameters.order_size or 0.0
    if decision.action == "BUY":
        return size
    if decision.action == "SELL":
        return size * context.price
    return 0.0


class SafetyFilter:
    """Pure policy function over (decision, context)."""

    def __init__(self, limits: TradingLimits):
        self.limits = limits

    def check(self, decision: Decision, context: DecisionContext) -> Optional[Tuple[str, str]]:
        """First violated rule as (rule, reason), or None."""
        limits = self.limits
        action = decision.action
        if action not in ("BUY", "SELL"):
            return None

        params = decision.parameters
        for name, value in (("price", context.price), ("order size", params.order_size),
                            ("limit buy price", params.limit_buy_price),
                            ("limit sell price", params.limit_sell_price)):
            if value is not None and not math.isfinite(value):
                return "invalid_number", f"{name} is not a finite number"

        size = decision.parameters.order_size or 0.0
        total = context.total_value

        if action == "SELL":
            floor = context.cost_basis + limits.min_profit_margin
            sell_price = decision.parameters.limit_sell_price
            if sell_price is None:
                return "min_profit", "SELL without a limit sell price"
            if sell_price < floor:
                return "min_profit", f"sell price {sell_price:.2f} below cost basis + margin {floor:.2f}"

        if action == "BUY":
            share_after = (context.asset_value + size) / total if total > 0 else 0.0
            if share_after > limits.max_position_pct:
                return "concentration", (
                    f"{context.asset_symbol} share {share_after:.1%} after buy exceeds "
                    f"{limits.max_position_pct:.0%} cap"
                )

        if action == "SELL":
            proceeds = min(size, context.asset_balance) * context.price
            quote_share_after = (context.quote_balance + proceeds) / total if total > 0 else 0.0
            if quote_share_after > limits.max_position_pct:
                return "concentration", (
                    f"{context.quote_symbol} share {quote_share_after:.1%} after sell exceeds "
                    f"{limits.max_position_pct:.0%} cap"
                )

        notional = order_notional(decision, context)
        if notional < limits.min_order_size:
            return "min_order_size", (
                f"order notional {notional:.2f} below minimum {limits.min_order_size:.2f}"
            )

        return None

    def apply(self, decision: Decision, context: DecisionContext) -> Decision:
        violation = self.check(decision, context)
        if violation is None:
            return decision
        rule, reason = violation
        logger.warning("Safety override (%s): %s -> WAIT: %s", rule, decision.action, reason)
        return decision.downgraded(reason, rule=rule)
