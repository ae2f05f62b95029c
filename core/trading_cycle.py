"""
Trading Cycle - one pass of the bot's state machine.

Fixed step order, never re-entered within a cycle:
1. RefreshPrice   (abort on AllSourcesUnavailable)
2. Reconcile      (skip on history fetch failure)
3. RefreshOrders  (skip on fetch failure, keep unexpired cached orders)
4. Sweep          (cancel stale orders)
5. BuildContext   (abort on balance read failure)
6. Decide
7. Filter
8. Execute
9. Persist        (every cycle that got past RefreshPrice)

The cycle owns the canonical BotState; steps receive parts of it and return
new values.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
import logging
import time

import requests

from ai.decision_engine import DecisionEngine
from ai.schemas import Decision, DecisionContext
from ai.snapshot_builder import build_decision_context
from core.audit_log import AuditLogger
from core.balances import ChainBalanceReader, WalletBalances
from core.bot_state import BotState
from core.exceptions import AllSourcesUnavailable, CriticalDataUnavailable
from core.ledger import TradeDirection
from core.order_lifecycle import OrderLifecycleManager
from core.order_state import OpenOrder, parse_open_order
from core.price_feed import PriceFeed
from core.reconciler import FillEvent, FillReconciler
from core.safety import SafetyFilter, TradingLimits
from infra.alerting import AlertService, AlertSeverity
from infra.metrics import CycleStats, MetricsRecorder
from infra.state_store import StateStore
from infra.symbols import TokenPair

logger = logging.getLogger(__name__)


@dataclass
class CycleResult:
    """Result of a trading cycle execution"""
    status: str                                  # ok | aborted | skipped_busy
    price: Optional[float] = None
    raw_decision: Optional[Decision] = None
    final_decision: Optional[Decision] = None
    decision_source: Optional[str] = None
    new_fills: List[FillEvent] = field(default_factory=list)
    cancelled: int = 0
    placed_order_id: Optional[str] = None
    no_trade_reason: Optional[str] = None
    error: Optional[str] = None
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "price": self.price,
            "decision_source": self.decision_source,
            "raw_decision": self.raw_decision.to_dict() if self.raw_decision else None,
            "final_decision": self.final_decision.to_dict() if self.final_decision else None,
            "new_fills": [
                {**f.trade.to_dict(), "realized_pnl": round(f.realized_pnl, 2)} for f in self.new_fills
            ],
            "cancelled": self.cancelled,
            "placed_order_id": self.placed_order_id,
            "no_trade_reason": self.no_trade_reason,
            "error": self.error,
            "duration_seconds": round(self.duration_seconds, 3),
        }


class TradingCycle:
    """
    Single-pair trading cycle.

    Collaborators are injected so tests can drive each step with fakes.
    """

    def __init__(self,
                 pair: TokenPair,
                 limits: TradingLimits,
                 price_feed: PriceFeed,
                 reconciler: FillReconciler,
                 exchange,
                 balance_reader: ChainBalanceReader,
                 engine: DecisionEngine,
                 lifecycle: OrderLifecycleManager,
                 store: Optional[StateStore] = None,
                 alerts: Optional[AlertService] = None,
                 metrics: Optional[MetricsRecorder] = None,
                 audit: Optional[AuditLogger] = None,
                 mode: str = "DRY_RUN",
                 state: Optional[BotState] = None):
        self.pair = pair
        self.limits = limits
        self.price_feed = price_feed
        self.reconciler = reconciler
        self.exchange = exchange
        self.balance_reader = balance_reader
        self.engine = engine
        self.safety = SafetyFilter(limits)
        self.lifecycle = lifecycle
        self.store = store
        self.alerts = alerts
        self.metrics = metrics
        self.audit = audit
        self.mode = mode
        self.state = state or BotState()

    # ─── Startup / persistence ─────────────────────────────────────────────

    def load_or_rebuild(self) -> BotState:
        """
        Restore persisted state, or rebuild the ledger from trade history.

        An absent or unreadable state file is a cold start, not an error.
        """
        doc = self.store.load() if self.store else None
        if doc is not None:
            try:
                self.state = BotState.from_document(doc)
            except (KeyError, TypeError, ValueError) as exc:
                logger.error(f"State file unusable ({exc}); rebuilding from trade history")
            else:
                ledger = self.state.ledger
                logger.info(
                    f"Restored state: holdings={ledger.holdings:.6f} basis={ledger.cost_basis:.2f} "
                    f"processed={len(self.state.processed_trade_ids)}"
                )
                return self.state

        rebuilt = self.reconciler.rebuild_from_history()
        self.state = BotState(ledger=rebuilt.ledger, processed_trade_ids=rebuilt.processed_ids)
        if rebuilt.processed_ids:
            self._notify(
                AlertSeverity.INFO,
                "Bot initialized",
                f"Rebuilt position from {len(rebuilt.processed_ids)} trade(s)",
                {
                    f"{self.pair.asset_symbol}": f"{rebuilt.ledger.holdings:.6f}",
                    "cost_basis": f"{rebuilt.ledger.cost_basis:.2f}",
                },
            )
        else:
            self._notify(AlertSeverity.INFO, "Bot started fresh", "No trade history found")
        self.persist()
        return self.state

    def persist(self) -> bool:
        if not self.store:
            return False
        return self.store.save(self.state.to_document())

    # ─── Cycle ─────────────────────────────────────────────────────────────

    def run_once(self, now: Optional[datetime] = None) -> CycleResult:
        """Execute one cycle. Never raises."""
        started = time.perf_counter()
        now = now or datetime.now(timezone.utc)
        state = self.state
        result = CycleResult(status="ok")

        # 1. RefreshPrice
        try:
            price, feed = self.price_feed.fetch_price(state.feed)
        except AllSourcesUnavailable as exc:
            logger.error(f"Cycle aborted: {exc}")
            self._notify(AlertSeverity.WARNING, "Price unavailable", str(exc))
            result.status = "aborted"
            result.error = str(exc)
            return self._finish(result, started, now, persist=False)

        result.price = price
        state = state.evolve(feed=feed, current_price=price)

        try:
            # 2. Reconcile
            state = self._reconcile(state, result)

            # 3. RefreshOrders
            state = state.evolve(open_orders=self._refresh_orders(state, now))

            # 4. Sweep
            sweep = self.lifecycle.sweep_stale(state.open_orders, price, self.limits.stale_distance)
            state = state.evolve(open_orders=sweep.remaining)
            result.cancelled += sweep.cancelled

            # 5. BuildContext
            balances = self.balance_reader.get_balances(self.pair)
            context = build_decision_context(price, state.ledger, state.feed, balances, state.open_orders, self.pair)

            # 6. Decide
            outcome = self.engine.decide(context, state.model_cursor)
            state = state.evolve(model_cursor=outcome.next_index)
            result.raw_decision = outcome.decision
            result.decision_source = outcome.source

            # 7. Filter
            final = self.safety.apply(outcome.decision, context)
            result.final_decision = final
            if self.metrics:
                self.metrics.record_decision(outcome.source, outcome.decision.action)
                if final.safety_rule:
                    self.metrics.record_safety_rejection(final.safety_rule)

            # 8. Execute
            state = self._execute(state, final, context, balances, result, now)

        except CriticalDataUnavailable as exc:
            logger.error(f"Cycle aborted: {exc}")
            self._notify(AlertSeverity.WARNING, "Cycle aborted", str(exc))
            result.status = "aborted"
            result.error = str(exc)
        except Exception as exc:
            logger.error(f"Cycle failed: {exc}", exc_info=True)
            self._notify(AlertSeverity.CRITICAL, "Cycle error", str(exc))
            result.status = "aborted"
            result.error = str(exc)

        # 9. Persist
        self.state = state
        return self._finish(result, started, now, persist=True)

    def _reconcile(self, state: BotState, result: CycleResult) -> BotState:
        try:
            rec = self.reconciler.reconcile_once(state.ledger, state.processed_trade_ids)
        except (requests.RequestException, ValueError) as exc:
            logger.warning(f"Trade history unavailable, skipping reconcile: {exc}")
            return state

        for fill in rec.fills:
            result.new_fills.append(fill)
            trade = fill.trade
            if self.metrics:
                self.metrics.record_fill(trade.direction.value)
            context = {
                "amount": f"{trade.asset_amount:.6f} {self.pair.asset_symbol}",
                "price": f"{trade.execution_price:.2f}",
                "holdings": f"{fill.ledger_after.holdings:.6f}",
                "cost_basis": f"{fill.ledger_after.cost_basis:.2f}",
            }
            if trade.direction is TradeDirection.SELL:
                context["realized_pnl"] = f"{fill.realized_pnl:+.2f}"
            self._notify(AlertSeverity.INFO, f"{trade.direction.value} filled", f"Order {trade.trade_id[:10]}...", context)

        return state.evolve(ledger=rec.ledger, processed_trade_ids=rec.processed_ids)

    def _refresh_orders(self, state: BotState, now: datetime) -> Tuple[OpenOrder, ...]:
        try:
            records = self.exchange.list_open_orders()
        except (requests.RequestException, ValueError) as exc:
            logger.warning(f"Open orders unavailable, keeping cached snapshot: {exc}")
            return tuple(o for o in state.open_orders if not o.is_expired(now))

        orders = []
        for record in records:
            order = parse_open_order(record, self.pair, now)
            if order is not None:
                orders.append(order)
        logger.info(f"Open orders: {len(orders)}")
        return tuple(orders)

    def _execute(self, state: BotState, decision: Decision, context: DecisionContext,
                 balances: WalletBalances, result: CycleResult, now: datetime) -> BotState:
        action = decision.action
        params = decision.parameters

        if action == "WAIT":
            result.no_trade_reason = f"safety_{decision.safety_rule}" if decision.safety_rule else "wait"
            logger.info(f"WAIT: {decision.reasoning}")
            return state

        if action == "CANCEL_ORDERS":
            sweep = self.lifecycle.cancel_all(state.open_orders)
            result.cancelled += sweep.cancelled
            result.no_trade_reason = "cancel_orders"
            if sweep.cancelled:
                self._notify(AlertSeverity.INFO, "Orders cancelled", f"{sweep.cancelled} open order(s) cancelled")
            return state.evolve(open_orders=sweep.remaining)

        if action == "BUY":
            limit_price, quote_size = params.limit_buy_price, params.order_size
            if not limit_price or not quote_size:
                result.no_trade_reason = "missing_parameters"
                logger.warning("BUY decision without limit price or size; skipping")
                return state
            required = quote_size + self.limits.quote_reserve
            if balances.quote < required:
                return self._insufficient(state, result, self.pair.quote_symbol, balances.quote, required)
            direction = TradeDirection.BUY
            asset_amount, quote_amount = quote_size / limit_price, quote_size
        else:
            limit_price, asset_size = params.limit_sell_price, params.order_size
            if not limit_price or not asset_size:
                result.no_trade_reason = "missing_parameters"
                logger.warning("SELL decision without limit price or size; skipping")
                return state
            required = asset_size + self.limits.asset_reserve
            if balances.asset < required:
                return self._insufficient(state, result, self.pair.asset_symbol, balances.asset, required)
            direction = TradeDirection.SELL
            asset_amount, quote_amount = asset_size, asset_size * limit_price

        placement = self.lifecycle.place(
            state.open_orders, direction, limit_price, asset_amount, quote_amount,
            validity_hours=self.limits.order_validity_hours, now=now,
        )
        if placement.placed:
            result.placed_order_id = placement.order_id
            if self.metrics:
                self.metrics.record_order_placed(direction.value)
            self._notify(
                AlertSeverity.INFO,
                f"{direction.value} order placed",
                decision.reasoning,
                {
                    "amount": f"{asset_amount:.6f} {self.pair.asset_symbol}",
                    "limit_price": f"{limit_price:.2f}",
                    "order_id": f"{placement.order_id[:10]}...",
                },
            )
        elif placement.error:
            result.no_trade_reason = "order_failed"
            result.error = placement.error
            self._notify(AlertSeverity.WARNING, f"{direction.value} order failed", placement.error)
        else:
            result.no_trade_reason = (placement.skipped_reason or "skipped").replace(" ", "_")
        return state.evolve(open_orders=placement.open_orders)

    def _insufficient(self, state: BotState, result: CycleResult, symbol: str, available: float, required: float) -> BotState:
        result.no_trade_reason = "insufficient_balance"
        message = f"Need {required:.6g} {symbol}, have {available:.6g}"
        logger.warning(f"Insufficient balance: {message}")
        self._notify(AlertSeverity.WARNING, "Insufficient balance", message)
        return state

    def _finish(self, result: CycleResult, started: float, now: datetime, persist: bool) -> CycleResult:
        result.duration_seconds = time.perf_counter() - started
        if persist:
            self.persist()

        ledger = self.state.ledger
        if self.metrics:
            self.metrics.observe_cycle(CycleStats(
                status=result.status,
                duration_seconds=result.duration_seconds,
                new_fills=len(result.new_fills),
                cancelled=result.cancelled,
                placed=1 if result.placed_order_id else 0,
            ))
            self.metrics.record_orders_cancelled(result.cancelled)
            if result.no_trade_reason:
                self.metrics.record_no_trade_reason(result.no_trade_reason)
            self.metrics.record_state(self.state.current_price, ledger.holdings, ledger.cost_basis,
                                      len(self.state.open_orders))
        if self.audit:
            self.audit.log_cycle(now, self.mode, result.to_dict(), ledger=ledger.to_dict())

        logger.info(
            f"Cycle {result.status}: price={result.price} source={result.decision_source} "
            f"action={result.final_decision.action if result.final_decision else None} "
            f"fills={len(result.new_fills)} cancelled={result.cancelled} "
            f"placed={result.placed_order_id} reason={result.no_trade_reason}"
        )
        return result

    def _notify(self, severity: AlertSeverity, title: str, message: str,
                context: Optional[Dict[str, Any]] = None) -> None:
        if self.alerts:
            self.alerts.notify(severity, title, message, context)
