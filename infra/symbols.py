"""Token pair identity and unit conversion utilities.

Provides a single source of truth for the configured asset/quote pair so the
reconciler, open-order parsing, and order construction agree on which side of
a record is which and how raw token atoms scale into decimal amounts.
Addresses are compared case-insensitively; on-chain data mixes checksummed
and lower-case forms.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Any, Mapping, Optional


def normalize_address(address: Optional[str]) -> str:
    """Return a lower-cased ``0x`` address, or an empty string if falsy."""

    if not address:
        return ""
    value = str(address).strip().lower()
    if not value.startswith("0x"):
        value = f"0x{value}"
    return value


def from_atoms(raw: Any, decimals: int) -> float:
    """Scale an integer atom amount (int or numeric string) into token units.

    Raises:
        ValueError: if ``raw`` is not a non-negative integer amount.
    """

    try:
        value = Decimal(str(raw))
    except (InvalidOperation, TypeError) as exc:
        raise ValueError(f"Invalid token amount: {raw!r}") from exc
    if value != value.to_integral_value() or value < 0:
        raise ValueError(f"Token amount must be a non-negative integer: {raw!r}")
    return float(value.scaleb(-decimals))


def to_atoms(amount: float, decimals: int) -> int:
    """Convert a decimal token amount to integer atoms, rounding down."""

    if not math.isfinite(amount):
        raise ValueError(f"Token amount must be finite: {amount}")
    value = Decimal(str(amount)).scaleb(decimals).quantize(Decimal(1), rounding=ROUND_DOWN)
    if value < 0:
        raise ValueError(f"Token amount cannot be negative: {amount}")
    return int(value)


@dataclass(frozen=True)
class TokenPair:
    """The traded pair: ``asset`` is bought/sold, ``quote`` prices it."""

    asset_symbol: str
    asset_token: str
    asset_decimals: int
    quote_symbol: str
    quote_token: str
    quote_decimals: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "asset_token", normalize_address(self.asset_token))
        object.__setattr__(self, "quote_token", normalize_address(self.quote_token))
        if self.asset_token == self.quote_token:
            raise ValueError("Asset and quote tokens must differ")

    @property
    def label(self) -> str:
        return f"{self.asset_symbol}/{self.quote_symbol}"

    def matches(self, sell_token: Optional[str], buy_token: Optional[str]) -> bool:
        """True when a record's two legs are exactly this pair, in either direction."""

        legs = {normalize_address(sell_token), normalize_address(buy_token)}
        return legs == {self.asset_token, self.quote_token}

    def is_buy(self, sell_token: Optional[str]) -> bool:
        """A record that sells the quote token is a BUY of the asset."""

        return normalize_address(sell_token) == self.quote_token

    @classmethod
    def from_config(cls, raw: Mapping[str, Any]) -> "TokenPair":
        asset = raw.get("asset", {}) or {}
        quote = raw.get("quote", {}) or {}
        return cls(
            asset_symbol=str(asset.get("symbol", "WETH")),
            asset_token=str(asset.get("address", "")),
            asset_decimals=int(asset.get("decimals", 18)),
            quote_symbol=str(quote.get("symbol", "USDC")),
            quote_token=str(quote.get("address", "")),
            quote_decimals=int(quote.get("decimals", 6)),
        )


__all__ = ["TokenPair", "from_atoms", "to_atoms", "normalize_address"]
