"""Test helpers for the cowtrader test suite"""

from tests.helpers.cow_stubs import (
    CONFIG_DIR,
    OTHER_TOKEN,
    T0,
    TEST_ENV,
    USDC,
    WETH,
    FakeExchange,
    FakeResponse,
    edit_yaml,
    make_pair,
    order_record,
)

__all__ = [
    "CONFIG_DIR",
    "OTHER_TOKEN",
    "T0",
    "TEST_ENV",
    "USDC",
    "WETH",
    "FakeExchange",
    "FakeResponse",
    "edit_yaml",
    "make_pair",
    "order_record",
]
