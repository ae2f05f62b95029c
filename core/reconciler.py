"""
cowtrader Core: Fill Reconciliation

Turns completed order-book records into ledger updates.

Each distinct trade id is applied exactly once: ids already in the processed
set are skipped, and every applied id is returned in the new set. New trades
are applied in (timestamp, trade_id) order, the same order bulk_rebuild uses,
so a cold-start rebuild and live reconciliation agree.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

import requests

from core.ledger import PositionLedger, Trade, TradeDirection, bulk_rebuild
from core.order_state import OrderStatus, parse_timestamp
from infra.symbols import TokenPair, from_atoms

logger = logging.getLogger(__name__)


def _amounts(record: Dict[str, Any]) -> Tuple[Any, Any]:
    """Executed amounts when both are present and positive, else requested amounts."""
    executed_sell = record.get("executedSellAmount")
    executed_buy = record.get("executedBuyAmount")
    try:
        if executed_sell is not None and executed_buy is not None \
                and int(executed_sell) > 0 and int(executed_buy) > 0:
            return executed_sell, executed_buy
    except (TypeError, ValueError):
        pass
    return record["sellAmount"], record["buyAmount"]


def parse_trade_record(record: Dict[str, Any], pair: TokenPair) -> Optional[Trade]:
    """
    Parse a completed order record into a Trade.

    Returns None for records on another pair or that are malformed
    (missing field, non-numeric or zero amount, unparseable date).
    """
    try:
        sell_token = record["sellToken"]
        buy_token = record["buyToken"]
        if not pair.matches(sell_token, buy_token):
            return None

        sell_raw, buy_raw = _amounts(record)
        if pair.is_buy(sell_token):
            direction = TradeDirection.BUY
            quote_amount = from_atoms(sell_raw, pair.quote_decimals)
            asset_amount = from_atoms(buy_raw, pair.asset_decimals)
        else:
            direction = TradeDirection.SELL
            asset_amount = from_atoms(sell_raw, pair.asset_decimals)
            quote_amount = from_atoms(buy_raw, pair.quote_decimals)

        return Trade(
            direction=direction,
            asset_amount=asset_amount,
            quote_amount=quote_amount,
            timestamp=parse_timestamp(record["creationDate"]),
            trade_id=str(record["uid"]),
        )
    except (KeyError, TypeError, ValueError) as exc:
        logger.warning("Discarding malformed trade record %s: %s", str(record.get("uid", "?"))[:10], exc)
        return None


@dataclass(frozen=True)
class FillEvent:
    """A newly applied trade, reported once per trade id."""
    trade: Trade
    realized_pnl: float
    ledger_after: PositionLedger


@dataclass(frozen=True)
class ReconcileResult:
    ledger: PositionLedger
    processed_ids: FrozenSet[str]
    fills: Tuple[FillEvent, ...] = field(default_factory=tuple)

    @property
    def has_new_fills(self) -> bool:
        return bool(self.fills)


def apply_new_trades(
    ledger: PositionLedger,
    processed_ids: FrozenSet[str],
    trades: Iterable[Trade],
) -> ReconcileResult:
    """Apply trades whose id is not yet processed, in chronological order."""
    seen = set(processed_ids)
    fresh: Dict[str, Trade] = {}
    for trade in trades:
        if trade.trade_id in seen or trade.trade_id in fresh:
            continue
        fresh[trade.trade_id] = trade

    fills: List[FillEvent] = []
    for trade in sorted(fresh.values(), key=lambda t: t.sort_key()):
        pnl = ledger.realized_pnl(trade)
        ledger = ledger.apply(trade)
        seen.add(trade.trade_id)
        fills.append(FillEvent(trade=trade, realized_pnl=pnl, ledger_after=ledger))
        logger.info(
            "Fill %s %s %.6f @ %.2f (holdings=%.6f basis=%.2f)",
            trade.trade_id[:10], trade.direction.value, trade.asset_amount,
            trade.execution_price, ledger.holdings, ledger.cost_basis,
        )

    return ReconcileResult(ledger=ledger, processed_ids=frozenset(seen), fills=tuple(fills))


class FillReconciler:
    """Pulls completed trades from the order book and folds new ones into the ledger."""

    def __init__(self, exchange, pair: TokenPair, page_size: int = 20, max_pages: int = 1,
                 cold_start_page_size: int = 50, cold_start_max_pages: int = 1):
        self.exchange = exchange
        self.pair = pair
        self.page_size = page_size
        self.max_pages = max_pages
        self.cold_start_page_size = cold_start_page_size
        self.cold_start_max_pages = cold_start_max_pages

    def _fetch_trades(self, page_size: int, max_pages: int) -> List[Trade]:
        records = self.exchange.list_trade_history(page_size=page_size, max_pages=max_pages)
        trades = []
        for record in records:
            if record.get("status") != OrderStatus.FULFILLED.value:
                continue
            trade = parse_trade_record(record, self.pair)
            if trade is not None:
                trades.append(trade)
        return trades

    def reconcile_once(self, ledger: PositionLedger, processed_ids: FrozenSet[str]) -> ReconcileResult:
        """
        Apply new fills to ``ledger``.

        Raises:
            requests.RequestException / ValueError: if the trade history cannot be read;
                the caller skips this step for the cycle.
        """
        trades = self._fetch_trades(self.page_size, self.max_pages)
        result = apply_new_trades(ledger, processed_ids, trades)
        if result.fills:
            logger.info("Reconciled %d new fill(s)", len(result.fills))
        else:
            logger.debug("No new fills (%d records checked)", len(trades))
        return result

    def rebuild_from_history(self) -> ReconcileResult:
        """
        Cold-start ledger built from the recent trade history.

        Every rebuilt id is marked processed. Fills are not reported as new.
        """
        try:
            trades = self._fetch_trades(self.cold_start_page_size, self.cold_start_max_pages)
        except (requests.RequestException, ValueError) as exc:
            logger.error("Cold-start history fetch failed, starting with empty ledger: %s", exc)
            return ReconcileResult(ledger=PositionLedger(), processed_ids=frozenset())

        unique = {t.trade_id: t for t in trades}
        ledger = bulk_rebuild(unique.values())
        logger.info(
            "Rebuilt ledger from %d trade(s): holdings=%.6f basis=%.2f",
            len(unique), ledger.holdings, ledger.cost_basis,
        )
        return ReconcileResult(ledger=ledger, processed_ids=frozenset(unique))
