"""Tests for token pair identity and atom conversion."""

import pytest

from infra.symbols import TokenPair, from_atoms, normalize_address, to_atoms
from tests.helpers import OTHER_TOKEN, USDC, WETH


def test_normalize_address():
    assert normalize_address(USDC) == USDC.lower()
    assert normalize_address("ABCDEF") == "0xabcdef"
    assert normalize_address(None) == ""


@pytest.mark.parametrize("raw,decimals,expected", [
    ("1000000", 6, 1.0),
    (500000000000000000, 18, 0.5),
    ("0", 18, 0.0),
])
def test_from_atoms(raw, decimals, expected):
    assert from_atoms(raw, decimals) == pytest.approx(expected)


@pytest.mark.parametrize("raw", ["1.5", "-1", "abc", None])
def test_from_atoms_rejects(raw):
    with pytest.raises(ValueError):
        from_atoms(raw, 6)


def test_to_atoms_rounds_down():
    assert to_atoms(1.2345679, 6) == 1234567
    assert to_atoms(0.1, 18) == 10**17


@pytest.mark.parametrize("amount", [float("nan"), float("inf"), -1.0])
def test_to_atoms_rejects(amount):
    with pytest.raises(ValueError):
        to_atoms(amount, 18)


class TestTokenPair:

    def test_matches_either_direction(self, pair):
        assert pair.matches(WETH, USDC)
        assert pair.matches(USDC.lower(), WETH)
        assert not pair.matches(WETH, OTHER_TOKEN)
        assert not pair.matches(None, USDC)

    def test_buy_detection(self, pair):
        assert pair.is_buy(USDC)
        assert not pair.is_buy(WETH)

    def test_same_token_rejected(self):
        with pytest.raises(ValueError):
            TokenPair("WETH", WETH, 18, "WETH", WETH.lower(), 18)

    def test_from_config(self):
        pair = TokenPair.from_config({
            "asset": {"symbol": "WETH", "address": WETH, "decimals": 18},
            "quote": {"symbol": "USDC", "address": USDC, "decimals": 6},
        })
        assert pair.label == "WETH/USDC"
        assert pair.quote_token == USDC.lower()
