"""
Multi-network RPC connection management.

Features:
    - Exponential backoff on connect (1s -> 2s -> 4s -> ... -> max)
    - Chain-id validation (a mismatch is never retried)
    - Fallback across several RPC endpoints per network
    - Bounded timeout on every RPC call after setup

A network that fails to connect is excluded for the lifetime of the
process. Startup only fails when no network at all is reachable.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3
from web3.middleware import ExtraDataToPOAMiddleware

from orderbook_backend.retry import RetryExhaustedError, retry_with_backoff, with_timeout

logger = logging.getLogger(__name__)


class ConnectError(Exception):
    """A network could not be connected."""


class ConfigurationError(ConnectError):
    """Missing or invalid configuration. Never retried."""


class ChainIdMismatchError(ConnectError):
    """The endpoint serves a different chain than configured."""

    def __init__(self, network: str, expected: int, actual: int):
        self.network = network
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{network}: chain id mismatch (expected {expected}, got {actual})"
        )


class NoNetworksAvailableError(Exception):
    """Raised when every configured network failed to connect."""


Web3Factory = Callable[[str], AsyncWeb3]


def default_web3_factory(url: str) -> AsyncWeb3:
    """Fresh AsyncWeb3 session for one connection attempt."""
    w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(url))
    # BSC and other PoA chains put more than 32 bytes in extraData
    w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
    return w3


async def close_web3(w3: AsyncWeb3) -> None:
    """Release the provider's HTTP session, ignoring errors."""
    disconnect = getattr(w3.provider, "disconnect", None)
    if disconnect is None:
        return
    try:
        await disconnect()
    except Exception as e:
        logger.debug(f"Ignoring error while closing provider: {e}")


@dataclass
class ConnectionSettings:
    """Retry and timeout settings shared by all networks."""

    attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 10.0
    rpc_timeout: float = 10.0


@dataclass
class NetworkConfig:
    """Static configuration of one network."""

    name: str
    rpc_urls: list[str]
    chain_id: int
    settlement_address: Optional[str] = None
    start_block: Optional[int] = None


@dataclass
class NetworkConnection:
    """A live, validated connection to one network."""

    name: str
    chain_id: int
    endpoint: str
    web3: AsyncWeb3
    account: LocalAccount
    rpc_timeout: float = 10.0
    config: Optional[NetworkConfig] = field(default=None, repr=False)

    @property
    def address(self) -> str:
        return self.account.address

    async def call(
        self,
        fn: Callable[[], Awaitable[Any]],
        timeout: Optional[float] = None,
        what: str = "rpc call",
    ) -> Any:
        """Run one RPC call under a bounded timeout."""
        return await with_timeout(
            fn(), timeout if timeout is not None else self.rpc_timeout, f"{self.name}: {what}"
        )

    async def close(self) -> None:
        await close_web3(self.web3)


def load_account(signing_key: Optional[str]) -> LocalAccount:
    """
    Build the signing identity.

    Raises:
        ConfigurationError: if the key is missing or malformed
    """
    if not signing_key:
        raise ConfigurationError("signing key not configured")
    try:
        return Account.from_key(signing_key)
    except (ValueError, TypeError) as e:
        raise ConfigurationError(f"invalid signing key: {e}") from e


async def connect(
    name: str,
    url: str,
    expected_chain_id: int,
    signing_key: Optional[str],
    settings: Optional[ConnectionSettings] = None,
    web3_factory: Web3Factory = default_web3_factory,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> NetworkConnection:
    """
    Connect to one endpoint and validate its chain id.

    Every attempt builds a fresh session, so a half-open session from a
    failed attempt is never reused.

    Raises:
        ConfigurationError: missing endpoint or signing key
        ChainIdMismatchError: endpoint serves another chain (not retried)
        ConnectError: all attempts failed
    """
    settings = settings or ConnectionSettings()
    if not url:
        raise ConfigurationError(f"{name}: no RPC endpoint configured")
    account = load_account(signing_key)

    async def attempt() -> NetworkConnection:
        w3 = web3_factory(url)
        try:
            chain_id = await with_timeout(
                w3.eth.chain_id, settings.rpc_timeout, f"{name}: eth_chainId"
            )
        except BaseException:
            await close_web3(w3)
            raise
        if int(chain_id) != int(expected_chain_id):
            await close_web3(w3)
            raise ChainIdMismatchError(name, expected_chain_id, int(chain_id))
        return NetworkConnection(
            name=name,
            chain_id=int(chain_id),
            endpoint=url,
            web3=w3,
            account=account,
            rpc_timeout=settings.rpc_timeout,
        )

    try:
        return await retry_with_backoff(
            attempt,
            max_attempts=settings.attempts,
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
            retry_on=(Exception,),
            fatal=(ConnectError,),
            sleep=sleep,
            description=f"{name}: connect to {url}",
        )
    except RetryExhaustedError as e:
        raise ConnectError(
            f"{name}: failed to connect to {url} after {e.attempts} attempts: {e.last_error}"
        ) from e.last_error


class ConnectionManager:
    """
    Owns the connections of every configured network.

    Usage:
        manager = ConnectionManager(networks, signing_key, settings)
        await manager.connect_all()
        for conn in manager.connections.values():
            ...
        await manager.close_all()
    """

    def __init__(
        self,
        networks: list[NetworkConfig],
        signing_key: Optional[str],
        settings: Optional[ConnectionSettings] = None,
        web3_factory: Web3Factory = default_web3_factory,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._networks = list(networks)
        self._signing_key = signing_key
        self._settings = settings or ConnectionSettings()
        self._web3_factory = web3_factory
        self._sleep = sleep
        self.connections: dict[str, NetworkConnection] = {}
        self.failed: dict[str, str] = {}

    @property
    def active_networks(self) -> list[str]:
        return list(self.connections)

    def get(self, name: str) -> Optional[NetworkConnection]:
        return self.connections.get(name)

    async def _connect_network(self, network: NetworkConfig) -> Optional[NetworkConnection]:
        """Try each endpoint of one network in order. Never raises ConnectError."""
        if not network.rpc_urls:
            self.failed[network.name] = "no RPC endpoint configured"
            logger.error(f"{network.name}: no RPC endpoint configured, network disabled")
            return None

        last_error: Optional[Exception] = None
        for url in network.rpc_urls:
            try:
                conn = await connect(
                    network.name,
                    url,
                    network.chain_id,
                    self._signing_key,
                    self._settings,
                    web3_factory=self._web3_factory,
                    sleep=self._sleep,
                )
            except ConfigurationError as e:
                # Same for every endpoint; report once
                self.failed[network.name] = str(e)
                logger.error(f"{network.name}: configuration error, network disabled: {e}")
                return None
            except ConnectError as e:
                last_error = e
                logger.warning(f"{network.name}: endpoint {url} unusable: {e}")
                continue
            conn.config = network
            logger.info(
                f"{network.name}: connected to chain {conn.chain_id} via {url} "
                f"as {conn.address}"
            )
            return conn

        self.failed[network.name] = str(last_error)
        logger.error(f"{network.name}: all endpoints failed, network disabled: {last_error}")
        return None

    async def connect_all(self) -> dict[str, NetworkConnection]:
        """
        Connect every configured network concurrently.

        Raises:
            NoNetworksAvailableError: if not a single network connected
        """
        results = await asyncio.gather(
            *(self._connect_network(n) for n in self._networks)
        )
        for network, conn in zip(self._networks, results):
            if conn is not None:
                self.connections[network.name] = conn

        if not self.connections:
            raise NoNetworksAvailableError(
                f"No networks available (failed: {', '.join(self.failed) or 'none configured'})"
            )

        if self.failed:
            logger.warning(
                f"Running with {len(self.connections)}/{len(self._networks)} networks; "
                f"unavailable: {', '.join(sorted(self.failed))}"
            )
        return self.connections

    async def close_all(self) -> None:
        """Tear down provider sessions."""
        connections, self.connections = self.connections, {}
        for conn in connections.values():
            await conn.close()
        if connections:
            logger.info(f"Closed {len(connections)} network connections")
