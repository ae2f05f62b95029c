"""
Decision Engine - ranked backends with failover and a deterministic fallback.

Each decide() call starts at the caller-supplied cursor and walks the ranked
backend list cyclically, at most once around. A backend that errors or
returns text that does not parse into a valid Decision counts as a failure.
When every backend fails the rule-based fallback decides. decide() never
raises.

The cursor is returned, not stored: the caller persists ``next_index`` and
passes it back on the next call.
"""

import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from ai.model_client import ModelClient, create_model_client
from ai.schemas import Decision, DecisionContext, DecisionParameters, parse_decision_text
from core.safety import TradingLimits

logger = logging.getLogger(__name__)

FALLBACK_SOURCE = "fallback"

DEFAULT_BACKENDS = (
    {"provider": "openrouter", "model": "mistralai/mistral-7b-instruct"},
    {"provider": "openrouter", "model": "meta-llama/llama-3.1-8b-instruct"},
    {"provider": "openrouter", "model": "microsoft/DialoGPT-medium"},
)

PROVIDER_KEY_ENV = {
    "openrouter": "OPENROUTER_API_KEY",
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}


def build_system_prompt(limits: TradingLimits, asset: str = "WETH", quote: str = "USDC") -> str:
    """Fixed policy prompt: allowed actions, response shape, and hard rules."""
    return f"""You are the decision module of an automated {asset}/{quote} limit-order trading bot.

Allowed actions: WAIT, BUY, SELL, CANCEL_ORDERS.

Respond with exactly one JSON object and nothing else:
{{
  "action": "WAIT|BUY|SELL|CANCEL_ORDERS",
  "reasoning": "brief explanation",
  "confidence": 0.0-1.0,
  "parameters": {{
    "limitBuyPrice": number or null,
    "limitSellPrice": number or null,
    "orderSize": number or null,
    "urgency": "LOW|MEDIUM|HIGH"
  }},
  "riskLevel": "LOW|MEDIUM|HIGH"
}}

Rules:
- orderSize is in {quote} for BUY and in {asset} for SELL
- Never SELL below cost basis + {limits.min_profit_margin:.0f} {quote}
- Never let either asset exceed {limits.max_position_pct:.0%} of portfolio value
- Orders below {limits.min_order_size:.0f} {quote} notional are rejected
- Prefer WAIT when uncertain
"""


def fallback_decision(context: DecisionContext, limits: TradingLimits) -> Decision:
    """Rule-based decision used when every backend fails."""
    price = context.price
    floor = context.cost_basis + limits.min_profit_margin
    share = context.asset_share

    if price < floor:
        return Decision(
            action="WAIT",
            reasoning=f"Fallback: price {price:.2f} below cost basis + margin {floor:.2f}",
            confidence=0.8,
            risk_level="LOW",
        )

    if share > limits.max_position_pct:
        return Decision(
            action="SELL",
            reasoning=f"Fallback: {context.asset_symbol} share {share:.1%} above {limits.max_position_pct:.0%}, rebalancing",
            confidence=0.7,
            parameters=DecisionParameters(
                limit_sell_price=price + limits.fallback_price_offset,
                order_size=context.asset_balance * limits.fallback_sell_fraction,
                urgency="MEDIUM",
            ),
            risk_level="MEDIUM",
        )

    if share < limits.low_concentration:
        return Decision(
            action="BUY",
            reasoning=f"Fallback: {context.asset_symbol} share {share:.1%} below {limits.low_concentration:.0%}, accumulating",
            confidence=0.7,
            parameters=DecisionParameters(
                limit_buy_price=price - limits.fallback_price_offset,
                order_size=min(limits.fallback_max_buy_quote, context.quote_balance * limits.fallback_buy_fraction),
                urgency="LOW",
            ),
            risk_level="MEDIUM",
        )

    return Decision(
        action="WAIT",
        reasoning=f"Fallback: portfolio balanced ({share:.1%} {context.asset_symbol})",
        confidence=0.6,
        risk_level="LOW",
    )


@dataclass(frozen=True)
class DecisionOutcome:
    decision: Decision
    source: str
    next_index: int
    attempts: int = 0
    failures: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)
    latency_ms: Optional[float] = None

    @property
    def used_fallback(self) -> bool:
        return self.source == FALLBACK_SOURCE


class DecisionEngine:
    """Ranked, cyclic list of decision backends."""

    def __init__(self, backends: Sequence[ModelClient], limits: TradingLimits,
                 timeout: float = 15.0, asset: str = "WETH", quote: str = "USDC"):
        self.backends = list(backends)
        self.limits = limits
        self.timeout = timeout
        self.system_prompt = build_system_prompt(limits, asset, quote)

    @classmethod
    def from_config(cls, ai_cfg: Mapping[str, Any], limits: TradingLimits,
                    env: Optional[Mapping[str, str]] = None,
                    asset: str = "WETH", quote: str = "USDC") -> "DecisionEngine":
        """
        Build backends from policy.yaml ``ai`` section.

        Backends whose provider key is missing from the environment are skipped
        with a warning; an empty list means every decision uses the fallback.
        """
        env = os.environ if env is None else env
        call_cfg = {
            "temperature": float(ai_cfg.get("temperature", 0.3)),
            "max_tokens": int(ai_cfg.get("max_tokens", 500)),
        }
        backends: List[ModelClient] = []
        for backend_cfg in ai_cfg.get("backends") or DEFAULT_BACKENDS:
            provider = str(backend_cfg.get("provider", "openrouter")).lower()
            api_key = env.get(PROVIDER_KEY_ENV.get(provider, ""), "") if provider != "mock" else None
            if provider != "mock" and not api_key:
                logger.warning("Skipping %s backend %s: %s not set",
                               provider, backend_cfg.get("model"), PROVIDER_KEY_ENV.get(provider))
                continue
            backends.append(create_model_client(
                provider,
                api_key=api_key,
                model=backend_cfg.get("model"),
                base_url=backend_cfg.get("base_url"),
                response=backend_cfg.get("response"),
                **call_cfg,
            ))
        logger.info("Decision backends: %s", ", ".join(b.name for b in backends) or "none (fallback only)")
        return cls(backends, limits, timeout=float(ai_cfg.get("timeout_seconds", 15.0)), asset=asset, quote=quote)

    def _user_content(self, context: DecisionContext) -> str:
        return "Current market and portfolio state:\n" + json.dumps(context.to_prompt_payload(), indent=2)

    def decide(self, context: DecisionContext, start_index: int = 0) -> DecisionOutcome:
        """
        Ask backends in ranked order starting at ``start_index``.

        Returns:
            DecisionOutcome whose ``next_index`` is the backend that answered,
            or ``start_index`` unchanged when the fallback decided.
        """
        count = len(self.backends)
        start = start_index % count if count else 0
        user_content = self._user_content(context)
        failures: List[Tuple[str, str]] = []
        t0 = time.perf_counter()

        for offset in range(count):
            index = (start + offset) % count
            backend = self.backends[index]
            try:
                text = backend.complete(self.system_prompt, user_content, self.timeout)
            except Exception as exc:
                logger.warning("Backend %s failed: %s", backend.name, exc)
                failures.append((backend.name, str(exc)))
                continue

            result = parse_decision_text(text)
            if not result.ok:
                logger.warning("Backend %s returned unusable response: %s", backend.name, result.error)
                failures.append((backend.name, result.error))
                continue

            latency = (time.perf_counter() - t0) * 1000
            logger.info("Decision from %s: %s (confidence %.2f)",
                        backend.name, result.decision.action, result.decision.confidence)
            return DecisionOutcome(
                decision=result.decision,
                source=backend.name,
                next_index=index,
                attempts=offset + 1,
                failures=tuple(failures),
                latency_ms=latency,
            )

        decision = fallback_decision(context, self.limits)
        if count:
            logger.warning("All %d backends failed; using fallback: %s", count, decision.action)
        return DecisionOutcome(
            decision=decision,
            source=FALLBACK_SOURCE,
            next_index=start_index,
            attempts=count,
            failures=tuple(failures),
            latency_ms=(time.perf_counter() - t0) * 1000,
        )
