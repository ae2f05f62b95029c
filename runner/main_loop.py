"""
cowtrader Runner: Main Loop

Wires configuration to the trading cycle and runs it on a timer.

Flow per tick:
1. Single-flight guard (skip the tick if a cycle is still in flight)
2. TradingCycle.run_once()
3. Sleep until next tick (interval + jitter), interruptible by shutdown

Startup fails fast on invalid configuration or missing secrets.
Shutdown (SIGINT/SIGTERM) lets the in-flight cycle finish within a grace
period, persists state, logs the final ledger and releases the instance lock.
"""

import logging
import os
import random
import signal
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from ai.decision_engine import DecisionEngine
from core.audit_log import AuditLogger
from core.balances import ChainBalanceReader
from core.exceptions import ConfigurationError
from core.exchange_cow import CowExchange
from core.order_lifecycle import OrderLifecycleManager
from core.price_feed import JsonPriceSource, PriceFeed
from core.reconciler import FillReconciler
from core.safety import TradingLimits
from core.signing import OrderSigner
from core.trading_cycle import CycleResult, TradingCycle
from infra.alerting import AlertService, AlertSeverity
from infra.cycle_guard import SingleFlight
from infra.env import load_env
from infra.instance_lock import SingleInstanceLock, check_single_instance
from infra.metrics import MetricsRecorder
from infra.state_store import StateStore
from infra.symbols import TokenPair

logger = logging.getLogger(__name__)


def setup_logging(log_cfg: Dict[str, Any]) -> None:
    log_file = log_cfg.get("file", "logs/cowtrader.log")
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, str(log_cfg.get("level", "INFO")).upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
        force=True,
    )


def build_trading_cycle(app: Dict[str, Any], policy: Dict[str, Any],
                        env: Optional[Mapping[str, str]] = None) -> TradingCycle:
    """Construct every collaborator from validated configuration."""
    env = os.environ if env is None else env
    mode = app["app"]["mode"].upper()
    dry_run = mode != "LIVE"

    pair = TokenPair.from_config(app["pair"])
    chain = app["chain"]
    signer = OrderSigner(env["PRIVATE_KEY"], chain_id=chain["chain_id"],
                         settlement_contract=chain["settlement_contract"])
    exchange = CowExchange(
        pair,
        signer,
        api_base=app["order_book"]["api_base"],
        timeout=float(app["order_book"].get("timeout_seconds", 15.0)),
        read_only=dry_run,
    )
    limits = TradingLimits.from_policy(policy)
    reconcile_cfg = policy.get("reconcile", {}) or {}
    monitoring = app.get("monitoring", {}) or {}
    alerts_cfg = monitoring.get("alerts", {}) or {}
    metrics_cfg = monitoring.get("metrics", {}) or {}
    state_cfg = app.get("state", {}) or {}

    return TradingCycle(
        pair=pair,
        limits=limits,
        price_feed=PriceFeed([JsonPriceSource.from_config(s) for s in app["price_sources"]]),
        reconciler=FillReconciler(
            exchange,
            pair,
            page_size=int(reconcile_cfg.get("page_size", 20)),
            max_pages=int(reconcile_cfg.get("max_pages", 1)),
            cold_start_page_size=int(reconcile_cfg.get("cold_start_page_size", 50)),
            cold_start_max_pages=int(reconcile_cfg.get("cold_start_max_pages", 1)),
        ),
        exchange=exchange,
        balance_reader=ChainBalanceReader(
            env[chain.get("rpc_env", "BASE_RPC_URL")],
            signer.address,
            timeout=float(chain.get("rpc_timeout_seconds", 10.0)),
        ),
        engine=DecisionEngine.from_config(policy.get("ai", {}) or {}, limits, env,
                                          asset=pair.asset_symbol, quote=pair.quote_symbol),
        lifecycle=OrderLifecycleManager(exchange, duplicate_threshold=limits.duplicate_threshold, dry_run=dry_run),
        store=StateStore(state_cfg.get("file", "data/bot_state.json")),
        alerts=AlertService.from_config(bool(alerts_cfg.get("enabled", True)), alerts_cfg, env),
        metrics=MetricsRecorder(enabled=bool(metrics_cfg.get("enabled", False)),
                                port=int(metrics_cfg.get("port", 9100))),
        audit=AuditLogger(state_cfg.get("audit_file", "logs/audit.jsonl")),
        mode=mode,
    )


def log_recent_cycles(cycle: TradingCycle, n: int = 1) -> List[Dict[str, Any]]:
    """Log the newest audit records, newest first."""
    if not cycle.audit:
        return []
    recent = cycle.audit.get_recent_cycles(n)
    for entry in recent:
        final = entry.get("final_decision") or {}
        logger.info(
            f"{entry.get('timestamp')} {entry.get('status')}: price={entry.get('price')} "
            f"action={final.get('action')} placed={entry.get('placed_order_id')} "
            f"reason={entry.get('no_trade_reason')}"
        )
    return recent


class TradingLoop:
    """
    Main trading loop.

    Responsibilities:
    - Run periodic cycles under a single-flight guard
    - Handle shutdown signals without interrupting persistence
    """

    def __init__(self,
                 cycle: TradingCycle,
                 interval_seconds: float = 300.0,
                 jitter_pct: float = 0.0,
                 shutdown_grace_seconds: float = 30.0,
                 instance_lock: Optional[SingleInstanceLock] = None):
        self.cycle = cycle
        self.interval_seconds = max(float(interval_seconds), 1.0)
        self.jitter_pct = max(0.0, min(float(jitter_pct), 20.0))
        self.shutdown_grace_seconds = float(shutdown_grace_seconds)
        self.instance_lock = instance_lock
        self.guard = SingleFlight("trading cycle")
        self._stop = threading.Event()
        self._shutdown_done = False

    @classmethod
    def from_config_dir(cls, config_dir: str = "config",
                        env: Optional[Mapping[str, str]] = None) -> "TradingLoop":
        """
        Validate configuration, set up logging, acquire the instance lock and build the loop.

        Raises:
            ConfigurationError: invalid config, missing secrets, or another instance running
        """
        from tools.config_validator import load_validated_configs

        try:
            app, policy = load_validated_configs(config_dir, env=env)
        except ConfigurationError as exc:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(exc.errors, start=1):
                logger.error(f"{idx:>2}. {str(error).splitlines()[0] if str(error) else error}")
            logger.error("=" * 80)
            raise

        setup_logging(app.get("logging", {}) or {})
        mode = app["app"]["mode"]
        logger.info(f"Starting cowtrader in mode={mode}")

        lock = check_single_instance(app["app"].get("name", "cowtrader"), lock_dir=app["state"]["lock_dir"])
        if lock is None:
            raise ConfigurationError(["Another instance is already running"])

        cycle = build_trading_cycle(app, policy, env)
        if cycle.metrics:
            cycle.metrics.start()
        cycle.load_or_rebuild()

        loop_cfg = app.get("loop", {}) or {}
        return cls(
            cycle,
            interval_seconds=float(loop_cfg.get("interval_seconds", 300.0)),
            jitter_pct=float(loop_cfg.get("jitter_pct", 0.0)),
            shutdown_grace_seconds=float(loop_cfg.get("shutdown_grace_seconds", 30.0)),
            instance_lock=lock,
        )

    # ─── Signals ───────────────────────────────────────────────────────────

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)

    def _handle_stop(self, signum=None, frame=None):
        """Only flags the loop to stop; cleanup runs on the main path in shutdown()."""
        logger.warning(f"Shutdown signal received ({signum}); stopping after current cycle")
        self._stop.set()

    def request_stop(self) -> None:
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    # ─── Cycles ────────────────────────────────────────────────────────────

    def run_cycle(self) -> CycleResult:
        with self.guard.try_enter() as entered:
            if not entered:
                return CycleResult(status="skipped_busy", no_trade_reason="cycle_in_flight")
            return self.cycle.run_once()

    def _next_sleep(self, elapsed: float) -> float:
        jitter = random.uniform(0, self.jitter_pct / 100.0) * self.interval_seconds
        return max(1.0, self.interval_seconds - elapsed + jitter)

    def run_forever(self) -> None:
        """
        Run cycles until a stop is requested, then shut down cleanly.

        Each cycle runs on a worker thread so a stop request does not have
        to wait for slow network calls before the grace period starts.
        """
        logger.info(f"Starting continuous loop (interval={self.interval_seconds}s, jitter={self.jitter_pct:.1f}%)")
        try:
            while not self._stop.is_set():
                start = time.monotonic()
                worker = threading.Thread(target=self.run_cycle, name="trading-cycle", daemon=True)
                worker.start()
                while worker.is_alive() and not self._stop.is_set():
                    worker.join(timeout=0.5)
                if self._stop.is_set():
                    break

                elapsed = time.monotonic() - start
                sleep_for = self._next_sleep(elapsed)
                logger.info(f"Cycle took {elapsed:.2f}s, sleeping {sleep_for:.2f}s")
                self._stop.wait(sleep_for)
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        """Grace period for the in-flight cycle, then persist, log and release the lock."""
        if self._shutdown_done:
            return
        self._shutdown_done = True

        if not self.guard.wait_idle(self.shutdown_grace_seconds):
            logger.warning(
                f"In-flight cycle did not finish within {self.shutdown_grace_seconds:.0f}s; "
                "persisting last committed state"
            )

        if self.cycle.persist():
            logger.info("State persisted")
        ledger = self.cycle.state.ledger
        logger.info(
            f"Final state: holdings={ledger.holdings:.6f} cost_basis={ledger.cost_basis:.2f} "
            f"processed={len(self.cycle.state.processed_trade_ids)} open_orders={len(self.cycle.state.open_orders)}"
        )
        if self.cycle.alerts:
            self.cycle.alerts.notify(
                AlertSeverity.INFO,
                "Bot stopped",
                f"holdings={ledger.holdings:.6f} cost_basis={ledger.cost_basis:.2f}",
            )
        if self.instance_lock:
            self.instance_lock.release()
        logger.info("Trading loop stopped cleanly.")


def main():
    """Entry point"""
    import argparse
    import sys

    parser = argparse.ArgumentParser(description="cowtrader CoW Protocol trading bot")
    parser.add_argument("--once", action="store_true", help="Run one cycle and exit")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between cycles (default: app.yaml)")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    load_env()

    try:
        loop = TradingLoop.from_config_dir(config_dir=args.config_dir)
    except ConfigurationError as exc:
        logger.error(f"Startup aborted: {exc}")
        sys.exit(1)

    if args.interval:
        loop.interval_seconds = max(float(args.interval), 1.0)

    if args.once:
        loop.run_cycle()
        loop.shutdown()
        log_recent_cycles(loop.cycle)
        return

    loop.install_signal_handlers()
    loop.run_forever()


if __name__ == "__main__":
    main()
