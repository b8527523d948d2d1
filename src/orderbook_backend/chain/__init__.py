"""
Chain Layer - RPC connections and settlement contract events.

Public API:
    ConnectionManager, NetworkConnection, NetworkConfig, ConnectionSettings
    connect() - single endpoint connect with chain-id validation
    SettlementContract - read-only settlement views and event logs
    SettlementListener, ListenerConfig - feeds fills/cancels back into the store
"""
from orderbook_backend.chain.connection import (
    ChainIdMismatchError,
    ConfigurationError,
    ConnectError,
    ConnectionManager,
    ConnectionSettings,
    NetworkConfig,
    NetworkConnection,
    NoNetworksAvailableError,
    connect,
)
from orderbook_backend.chain.listener import ListenerConfig, SettlementListener
from orderbook_backend.chain.settlement import (
    DEFAULT_CHAIN_IDS,
    DEFAULT_SETTLEMENT_ADDRESSES,
    SETTLEMENT_ABI,
    SettlementContract,
)

__all__ = [
    # Connections
    "ConnectionManager",
    "ConnectionSettings",
    "NetworkConfig",
    "NetworkConnection",
    "connect",
    # Errors
    "ConnectError",
    "ConfigurationError",
    "ChainIdMismatchError",
    "NoNetworksAvailableError",
    # Settlement
    "DEFAULT_CHAIN_IDS",
    "DEFAULT_SETTLEMENT_ADDRESSES",
    "SETTLEMENT_ABI",
    "SettlementContract",
    "ListenerConfig",
    "SettlementListener",
]
