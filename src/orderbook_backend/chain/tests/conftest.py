"""
Chain layer test fixtures.

No RPC endpoint is contacted: connections get a fake web3 factory and the
listener gets a fake settlement contract serving canned logs.
"""
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from orderbook_backend.chain.connection import ConnectionSettings
from orderbook_backend.storage.models import Order, OrderStatus

# Throwaway key, never funded
TEST_SIGNING_KEY = "0x" + "11" * 32


class FakeEth:
    def __init__(self, factory):
        self._factory = factory

    @property
    def chain_id(self):
        return self._factory.next_chain_id()


class FakeProvider:
    def __init__(self):
        self.disconnected = False

    async def disconnect(self):
        self.disconnected = True


class FakeWeb3:
    def __init__(self, factory, url):
        self.url = url
        self.eth = FakeEth(factory)
        self.provider = FakeProvider()


class FakeWeb3Factory:
    """
    Builds FakeWeb3 sessions whose eth_chainId answers from a script.

    Each item of ``script`` is either a chain id or an exception raised
    by that attempt; the last item repeats.
    """

    def __init__(self, script):
        self.script = list(script)
        self.calls = 0
        self.sessions: list[FakeWeb3] = []
        self.urls: list[str] = []

    def __call__(self, url):
        self.urls.append(url)
        w3 = FakeWeb3(self, url)
        self.sessions.append(w3)
        return w3

    async def _answer(self, item):
        if isinstance(item, BaseException):
            raise item
        return item

    def next_chain_id(self):
        index = min(self.calls, len(self.script) - 1)
        self.calls += 1
        return self._answer(self.script[index])


class FakeSettlementContract:
    """Canned head block and logs per event name."""

    def __init__(self, network="bsc", head=100):
        self.network = network
        self.head = head
        self.events: dict[str, list] = {}
        self.get_events_calls: list[tuple[str, int, int]] = []
        self.decimals = {}
        self.filled = {}
        self.cancelled = set()
        self.min_nonces = {}
        self.fail_get_events = None

    async def block_number(self):
        return self.head

    async def get_events(self, name, from_block, to_block):
        self.get_events_calls.append((name, from_block, to_block))
        if self.fail_get_events is not None:
            raise self.fail_get_events
        return [
            e for e in self.events.get(name, [])
            if from_block <= e["blockNumber"] <= to_block
        ]

    async def token_decimals(self, token):
        return self.decimals.get(token, 18)

    async def filled_amount_in(self, order_hash):
        return self.filled.get(order_hash, 0)

    async def is_cancelled(self, order_hash):
        return order_hash in self.cancelled

    async def min_nonce(self, maker):
        return self.min_nonces.get(maker, 0)


def make_log(block, log_index, tx="aa", **args):
    return {
        "blockNumber": block,
        "logIndex": log_index,
        "transactionHash": bytes.fromhex(tx * 32),
        "args": args,
    }


@pytest.fixture
def signing_key():
    return TEST_SIGNING_KEY


@pytest.fixture
def settings():
    return ConnectionSettings(attempts=3, base_delay=0.01, max_delay=0.05, rpc_timeout=1.0)


@pytest.fixture
def no_sleep():
    return AsyncMock()


@pytest.fixture
def web3_factory_cls():
    return FakeWeb3Factory


@pytest.fixture
def contract():
    return FakeSettlementContract()


@pytest.fixture
def contract_cls():
    return FakeSettlementContract


@pytest.fixture
def log_factory():
    return make_log


@pytest.fixture
def stored_order():
    return Order(
        network="bsc",
        order_id="ord-1",
        order_hash="0x" + "ab" * 32,
        maker="0x" + "01" * 20,
        token_in="0x" + "0b" * 20,
        token_out="0x" + "0c" * 20,
        amount_in=Decimal("1000000000000000000000"),
        amount_out_min=Decimal("0"),
        remaining=Decimal("1000000000000000000000"),
        status=OrderStatus.OPEN,
        base_address="0x" + "0b" * 20,
        quote_address="0x" + "0c" * 20,
    )


@pytest.fixture
def order_repo(stored_order):
    repo = MagicMock()
    repo.get_by_hash = AsyncMock(return_value=stored_order)
    repo.apply_fill = AsyncMock(return_value=stored_order)
    repo.mark_cancelled = AsyncMock(return_value=True)
    repo.cancel_below_nonce = AsyncMock(return_value=2)
    repo.set_remaining = AsyncMock(return_value=True)
    return repo


@pytest.fixture
def trade_repo():
    repo = MagicMock()
    repo.record = AsyncMock(return_value=True)
    return repo
