"""
Snapshot Builder - Construct the decision context for one cycle.

Combines:
- Current price, rolling price window and watermarks (price feed state)
- Cost basis and holdings (position ledger)
- Wallet balances
- Open order count
"""

import logging
from typing import Sequence

from ai.schemas import DecisionContext
from core.balances import WalletBalances
from core.ledger import PositionLedger
from core.order_state import OpenOrder
from core.price_feed import PriceFeedState
from infra.symbols import TokenPair

logger = logging.getLogger(__name__)

RECENT_PRICE_WINDOW = 10


# ─── Snapshot Builder ──────────────────────────────────────────────────────

def build_decision_context(
    price: float,
    ledger: PositionLedger,
    feed: PriceFeedState,
    balances: WalletBalances,
    open_orders: Sequence[OpenOrder],
    pair: TokenPair,
    window: int = RECENT_PRICE_WINDOW,
) -> DecisionContext:
    """
    Build the context handed to decision backends and the safety filter.

    Args:
        price: Price accepted this cycle
        ledger: Ledger after reconciliation
        feed: Price feed state after this cycle's fetch
        balances: Wallet balances read this cycle
        open_orders: Open-order snapshot after the staleness sweep
        pair: Configured token pair (for labels)
        window: Number of recent prices to include

    Returns:
        DecisionContext
    """
    context = DecisionContext(
        price=price,
        cost_basis=ledger.cost_basis,
        holdings=ledger.holdings,
        asset_balance=balances.asset,
        quote_balance=balances.quote,
        recent_prices=tuple(feed.recent_prices(window)),
        high_water_mark=feed.high_water_mark,
        low_water_mark=feed.low_water_mark,
        open_order_count=len(open_orders),
        asset_symbol=pair.asset_symbol,
        quote_symbol=pair.quote_symbol,
    )
    logger.debug(
        "Context: price=%.2f basis=%.2f share=%.1f%% open_orders=%d",
        price, context.cost_basis, context.asset_share * 100, context.open_order_count,
    )
    return context
