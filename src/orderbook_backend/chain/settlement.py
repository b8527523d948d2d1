"""
Settlement contract bindings.

Only the events the backend listens to and the read-only views used for
reconciliation are bound. Nothing here sends a transaction.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from web3 import AsyncWeb3

from orderbook_backend.chain.connection import NetworkConnection

logger = logging.getLogger(__name__)

# Known deployments; overridable per network through configuration
DEFAULT_CHAIN_IDS = {
    "bsc": 56,
    "base": 8453,
}

DEFAULT_SETTLEMENT_ADDRESSES = {
    "bsc": "0x7DBA6a1488356428C33cC9fB8Ef3c8462c8679d0",
    "base": "0xBBf7A39F053BA2B8F4991282425ca61F2D871f45",
}

SETTLEMENT_EVENTS = ("Matched", "OrderFilled", "OrderCancelled", "MinNonceUpdated")


def _input(name: str, type_: str, indexed: Optional[bool] = None) -> dict:
    entry = {"internalType": type_, "name": name, "type": type_}
    if indexed is not None:
        entry["indexed"] = indexed
    return entry


def _event(name: str, *inputs: dict) -> dict:
    return {"anonymous": False, "inputs": list(inputs), "name": name, "type": "event"}


def _view(name: str, inputs: list[dict], output_type: str) -> dict:
    return {
        "inputs": inputs,
        "name": name,
        "outputs": [_input("", output_type)],
        "stateMutability": "view",
        "type": "function",
    }


SETTLEMENT_ABI = [
    _event(
        "Matched",
        _input("buyHash", "bytes32", True),
        _input("sellHash", "bytes32", True),
        _input("matcher", "address", True),
        _input("amountBase", "uint256", False),
        _input("amountQuote", "uint256", False),
    ),
    _event(
        "MinNonceUpdated",
        _input("maker", "address", True),
        _input("newMinNonce", "uint256", False),
    ),
    _event(
        "OrderCancelled",
        _input("orderHash", "bytes32", True),
        _input("maker", "address", True),
        _input("nonce", "uint256", False),
    ),
    _event(
        "OrderFilled",
        _input("orderHash", "bytes32", True),
        _input("maker", "address", True),
        _input("taker", "address", True),
        _input("tokenIn", "address", False),
        _input("tokenOut", "address", False),
        _input("amountIn", "uint256", False),
        _input("amountOut", "uint256", False),
    ),
    _view("filledAmountIn", [_input("", "bytes32")], "uint256"),
    _view("cancelled", [_input("", "bytes32")], "bool"),
    _view("minNonce", [_input("", "address")], "uint256"),
]

ERC20_DECIMALS_ABI = [_view("decimals", [], "uint8")]


def _hash_bytes(order_hash: str) -> bytes:
    return bytes.fromhex(order_hash[2:] if order_hash.startswith("0x") else order_hash)


class SettlementContract:
    """Read-only access to one network's settlement contract."""

    def __init__(self, connection: NetworkConnection, address: str) -> None:
        self.connection = connection
        self.address = AsyncWeb3.to_checksum_address(address)
        self.contract = connection.web3.eth.contract(address=self.address, abi=SETTLEMENT_ABI)

    @property
    def network(self) -> str:
        return self.connection.name

    async def block_number(self) -> int:
        return await self.connection.call(
            lambda: self.connection.web3.eth.block_number, what="eth_blockNumber"
        )

    async def get_events(self, event_name: str, from_block: int, to_block: int) -> list[Any]:
        """Decoded logs of one event in an inclusive block range."""
        event = getattr(self.contract.events, event_name)
        return await self.connection.call(
            lambda: event.get_logs(from_block=from_block, to_block=to_block),
            what=f"get_logs {event_name} [{from_block}, {to_block}]",
        )

    async def filled_amount_in(self, order_hash: str) -> int:
        return await self.connection.call(
            lambda: self.contract.functions.filledAmountIn(_hash_bytes(order_hash)).call(),
            what="filledAmountIn",
        )

    async def is_cancelled(self, order_hash: str) -> bool:
        return await self.connection.call(
            lambda: self.contract.functions.cancelled(_hash_bytes(order_hash)).call(),
            what="cancelled",
        )

    async def min_nonce(self, maker: str) -> int:
        return await self.connection.call(
            lambda: self.contract.functions.minNonce(
                AsyncWeb3.to_checksum_address(maker)
            ).call(),
            what="minNonce",
        )

    async def token_decimals(self, token: str) -> int:
        """ERC-20 decimals of a token."""
        erc20 = self.connection.web3.eth.contract(
            address=AsyncWeb3.to_checksum_address(token), abi=ERC20_DECIMALS_ABI
        )
        return int(
            await self.connection.call(
                lambda: erc20.functions.decimals().call(), what=f"decimals {token}"
            )
        )
