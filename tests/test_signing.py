"""
Tests for EIP-712 order and cancellation signing.
"""

import pytest
from eth_account import Account
from eth_account.messages import encode_typed_data

from core.exceptions import SigningError
from core.exchange_cow import ZERO_APP_DATA
from core.signing import ORDER_TYPES, OrderSigner, _hex_bytes
from tests.helpers import USDC, WETH

TEST_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
TEST_ADDRESS = "0x2c7536E3605D9C16a7a3D7b1898e529396a65c23"


def sample_order(**overrides):
    order = {
        "sellToken": USDC,
        "buyToken": WETH,
        "receiver": TEST_ADDRESS,
        "sellAmount": "195000000",
        "buyAmount": "100000000000000000",
        "validTo": 1_700_086_400,
        "appData": ZERO_APP_DATA,
        "feeAmount": "0",
        "kind": "sell",
        "partiallyFillable": False,
        "sellTokenBalance": "erc20",
        "buyTokenBalance": "erc20",
    }
    order.update(overrides)
    return order


@pytest.fixture
def signer():
    return OrderSigner(TEST_KEY)


class TestOrderSigner:

    def test_address(self, signer):
        assert signer.address == TEST_ADDRESS

    def test_domain(self, signer):
        assert signer.domain["name"] == "Gnosis Protocol"
        assert signer.domain["version"] == "v2"
        assert signer.domain["chainId"] == 8453

    def test_invalid_key(self):
        with pytest.raises(SigningError):
            OrderSigner("not-a-key")

    def test_order_signature_shape(self, signer):
        signature = signer.sign_order(sample_order())
        assert signature.startswith("0x")
        assert len(signature) == 2 + 130

    def test_order_signature_deterministic(self, signer):
        assert signer.sign_order(sample_order()) == signer.sign_order(sample_order())
        assert signer.sign_order(sample_order()) != signer.sign_order(sample_order(sellAmount="195000001"))

    def test_order_signature_recovers_signer(self, signer):
        order = sample_order()
        signature = signer.sign_order(order)
        message = {
            **order,
            "sellAmount": int(order["sellAmount"]),
            "buyAmount": int(order["buyAmount"]),
            "feeAmount": int(order["feeAmount"]),
            "appData": _hex_bytes(order["appData"]),
        }
        signable = encode_typed_data(domain_data=signer.domain, message_types=ORDER_TYPES, message_data=message)
        assert Account.recover_message(signable, signature=signature) == TEST_ADDRESS

    def test_chain_id_changes_signature(self):
        base = OrderSigner(TEST_KEY).sign_order(sample_order())
        mainnet = OrderSigner(TEST_KEY, chain_id=1).sign_order(sample_order())
        assert base != mainnet

    def test_cancellation_signature(self, signer):
        uid = "0x" + "ab" * 56
        signature = signer.sign_cancellation([uid])
        assert signature.startswith("0x")
        assert len(signature) == 132
