"""
Decision schemas and data structures.

Defines the contract between the trading cycle and the decision layer:
- DecisionContext: snapshot handed to decision backends
- Decision: recommended action, consumed by the safety filter and executor
- parse_decision_text: strict extraction of a Decision from backend text,
  returning a tagged ParsedDecision / ParseFailure
"""

import json
import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterator, Literal, Optional, Tuple, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

Action = Literal["WAIT", "BUY", "SELL", "CANCEL_ORDERS"]
Level = Literal["LOW", "MEDIUM", "HIGH"]

ACTIONS = ("WAIT", "BUY", "SELL", "CANCEL_ORDERS")
LEVELS = ("LOW", "MEDIUM", "HIGH")
MAX_REASONING_CHARS = 500


@dataclass(frozen=True)
class DecisionParameters:
    """Order parameters attached to a decision."""
    limit_buy_price: Optional[float] = None
    limit_sell_price: Optional[float] = None
    order_size: Optional[float] = None  # quote units for BUY, asset units for SELL
    urgency: Level = "LOW"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "limitBuyPrice": self.limit_buy_price,
            "limitSellPrice": self.limit_sell_price,
            "orderSize": self.order_size,
            "urgency": self.urgency,
        }


@dataclass(frozen=True)
class Decision:
    """Recommended action for one cycle."""
    action: Action
    reasoning: str
    confidence: float = 0.5
    parameters: DecisionParameters = field(default_factory=DecisionParameters)
    risk_level: Level = "MEDIUM"
    safety_reason: Optional[str] = None  # set when the safety filter downgraded it
    safety_rule: Optional[str] = None

    @property
    def is_trade(self) -> bool:
        return self.action in ("BUY", "SELL")

    def downgraded(self, reason: str, rule: Optional[str] = None) -> "Decision":
        """This decision rewritten to WAIT with a safety reason."""
        return replace(self, action="WAIT", reasoning=f"Safety: {reason}", safety_reason=reason, safety_rule=rule)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "reasoning": self.reasoning,
            "confidence": self.confidence,
            "parameters": self.parameters.to_dict(),
            "riskLevel": self.risk_level,
            "safetyReason": self.safety_reason,
        }


@dataclass(frozen=True)
class DecisionContext:
    """Market, wallet and ledger snapshot for one decision."""
    price: float
    cost_basis: float
    holdings: float             # ledger holdings
    asset_balance: float        # wallet balance of the asset
    quote_balance: float        # wallet balance of the quote token
    recent_prices: Tuple[float, ...] = ()
    high_water_mark: Optional[float] = None
    low_water_mark: Optional[float] = None
    open_order_count: int = 0
    asset_symbol: str = "WETH"
    quote_symbol: str = "USDC"

    @property
    def asset_value(self) -> float:
        return self.asset_balance * self.price

    @property
    def total_value(self) -> float:
        return self.asset_value + self.quote_balance

    @property
    def asset_share(self) -> float:
        """Fraction of wallet value held in the asset (0 for an empty wallet)."""
        total = self.total_value
        return self.asset_value / total if total > 0 else 0.0

    @property
    def unrealized_pnl(self) -> float:
        if self.holdings <= 0:
            return 0.0
        return self.holdings * (self.price - self.cost_basis)

    def to_prompt_payload(self) -> Dict[str, Any]:
        return {
            "pair": f"{self.asset_symbol}/{self.quote_symbol}",
            "currentPrice": round(self.price, 2),
            "costBasis": round(self.cost_basis, 2),
            "holdings": round(self.holdings, 6),
            "unrealizedPnl": round(self.unrealized_pnl, 2),
            "balances": {
                self.asset_symbol: round(self.asset_balance, 6),
                self.quote_symbol: round(self.quote_balance, 2),
            },
            "portfolioValue": round(self.total_value, 2),
            "assetShare": round(self.asset_share, 4),
            "recentPrices": [round(p, 2) for p in self.recent_prices],
            "highWaterMark": self.high_water_mark,
            "lowWaterMark": self.low_water_mark,
            "openOrders": self.open_order_count,
        }


# ─── Strict parsing ───────────────────────────────────────────────────────


def _upper_choice(value: Any, allowed: Tuple[str, ...], name: str) -> str:
    text = str(value).strip().upper()
    if text not in allowed:
        raise ValueError(f"{name} must be one of {', '.join(allowed)}, got {value!r}")
    return text


class ParametersPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", allow_inf_nan=False)

    limit_buy_price: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("limitBuyPrice", "buyPrice", "limit_buy_price")
    )
    limit_sell_price: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("limitSellPrice", "sellPrice", "limit_sell_price")
    )
    order_size: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("orderSize", "order_size", "size")
    )
    urgency: str = "LOW"

    @field_validator("limit_buy_price", "limit_sell_price", "order_size")
    @classmethod
    def positive_or_none(cls, v):
        if v is not None and v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("urgency", mode="before")
    @classmethod
    def urgency_level(cls, v):
        return "LOW" if v is None else _upper_choice(v, LEVELS, "urgency")


class DecisionPayload(BaseModel):
    """Wire shape of a backend decision."""
    model_config = ConfigDict(extra="ignore", allow_inf_nan=False)

    action: str
    reasoning: str = ""
    confidence: float = 0.5
    parameters: ParametersPayload = Field(default_factory=ParametersPayload)
    risk_level: str = Field(default="MEDIUM", validation_alias=AliasChoices("riskLevel", "risk_level"))

    @field_validator("action", mode="before")
    @classmethod
    def known_action(cls, v):
        if not isinstance(v, str):
            raise ValueError("action must be a string")
        return _upper_choice(v, ACTIONS, "action")

    @field_validator("reasoning", mode="before")
    @classmethod
    def short_reasoning(cls, v):
        return "" if v is None else str(v)[:MAX_REASONING_CHARS]

    @field_validator("confidence", mode="before")
    @classmethod
    def default_confidence(cls, v):
        return 0.5 if v is None else v

    @field_validator("confidence")
    @classmethod
    def clamp_confidence(cls, v):
        return min(max(v, 0.0), 1.0)

    @field_validator("parameters", mode="before")
    @classmethod
    def empty_parameters(cls, v):
        return {} if v is None else v

    @field_validator("risk_level", mode="before")
    @classmethod
    def risk_level_choice(cls, v):
        return "MEDIUM" if v is None else _upper_choice(v, LEVELS, "riskLevel")

    def to_decision(self) -> Decision:
        p = self.parameters
        return Decision(
            action=self.action,
            reasoning=self.reasoning,
            confidence=self.confidence,
            parameters=DecisionParameters(
                limit_buy_price=p.limit_buy_price,
                limit_sell_price=p.limit_sell_price,
                order_size=p.order_size,
                urgency=p.urgency,
            ),
            risk_level=self.risk_level,
        )


@dataclass(frozen=True)
class ParsedDecision:
    decision: Decision
    ok: bool = True


@dataclass(frozen=True)
class ParseFailure:
    error: str
    raw: str = ""
    ok: bool = False


ParseResult = Union[ParsedDecision, ParseFailure]

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def _candidate_objects(text: str) -> Iterator[Any]:
    """JSON values found in ``text``: whole text, fenced blocks, then embedded objects."""
    try:
        yield json.loads(text)
    except ValueError:
        pass

    for match in _FENCE_RE.finditer(text):
        try:
            yield json.loads(match.group(1).strip())
        except ValueError:
            continue

    decoder = json.JSONDecoder()
    idx = text.find("{")
    while idx != -1:
        try:
            obj, end = decoder.raw_decode(text, idx)
        except ValueError:
            idx = text.find("{", idx + 1)
            continue
        yield obj
        idx = text.find("{", end)


def parse_decision_text(text: Optional[str]) -> ParseResult:
    """
    Extract and validate a single Decision from free-form backend text.

    The first JSON object found is the candidate; if it fails validation the
    whole response is a failure (no further scanning).
    """
    if not text or not text.strip():
        return ParseFailure(error="empty response", raw=text or "")

    stripped = text.strip()
    candidate = next((obj for obj in _candidate_objects(stripped) if isinstance(obj, dict)), None)
    if candidate is None:
        return ParseFailure(error="no JSON object found", raw=stripped[:MAX_REASONING_CHARS])

    try:
        payload = DecisionPayload.model_validate(candidate)
    except ValidationError as exc:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in e['loc']) or 'decision'}: {e['msg']}" for e in exc.errors()
        )
        return ParseFailure(error=f"invalid decision ({errors})", raw=stripped[:MAX_REASONING_CHARS])

    return ParsedDecision(decision=payload.to_decision())
