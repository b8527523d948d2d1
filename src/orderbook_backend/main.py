"""
Order Book Backend - Main Entry Point

Connects to every configured network, then drives the conditional trigger
engine, the adaptive pricing engine and the settlement listener until
stopped.

Usage:
    python -m orderbook_backend.main              # Run until SIGINT/SIGTERM
    python -m orderbook_backend.main --once       # One tick, then exit
    python -m orderbook_backend.main --log-level DEBUG

Environment Variables:
    DATABASE_URL                  PostgreSQL connection string (required)
    SIGNING_KEY                   Backend signing key (required)
    LOG_LEVEL                     Logging level (DEBUG/INFO/WARNING/ERROR)
    NETWORKS                      Comma-separated networks (default: bsc,base)
    RPC_URLS_<NET>                Comma-separated RPC endpoints, tried in order
    CHAIN_ID_<NET>                Expected chain id (default: known id for bsc/base)
    SETTLEMENT_ADDRESS_<NET>      Settlement contract (default: known deployment)
    START_BLOCK_<NET>             First block for the settlement listener
    CONNECT_ATTEMPTS              Connect attempts per endpoint (default: 5)
    CONNECT_BASE_DELAY            First backoff delay in seconds (default: 1.0)
    CONNECT_MAX_DELAY             Backoff cap in seconds (default: 10.0)
    RPC_TIMEOUT_SECONDS           Timeout of every RPC call (default: 10)
    TICK_INTERVAL_SECONDS         Engine tick interval (default: 10)
    NETWORK_TIMEOUT_SECONDS       Per-network tick budget (default: 30)
    PRICE_WINDOW                  Trades in the median price window (default: 10)
    LISTENER_ENABLED              Poll settlement events (default: true)
    LISTENER_POLL_SECONDS         Settlement poll interval (default: 5)
    LISTENER_CONFIRMATIONS        Blocks behind head considered final (default: 3)
    REWARD_SYSTEM_ENABLED         Maker/taker rewards (default: false)
    REWARD_MAKER_RATE             Maker reward rate (default: 0.001)
    REWARD_TAKER_RATE             Taker reward rate (default: 0.0005)
    REWARD_MIN_VOLUME_USD         Minimum rewarded volume (default: 0.1)
    TELEGRAM_BOT_TOKEN            Telegram bot token for alerts
    TELEGRAM_CHAT_ID              Telegram chat ID for alerts
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Optional

from orderbook_backend.chain import (
    DEFAULT_CHAIN_IDS,
    DEFAULT_SETTLEMENT_ADDRESSES,
    ConnectionManager,
    ConnectionSettings,
    ListenerConfig,
    NetworkConfig,
    SettlementContract,
    SettlementListener,
)
from orderbook_backend.core import (
    AdaptivePricingEngine,
    ConditionalTriggerEngine,
    SchedulerConfig,
    TickScheduler,
)
from orderbook_backend.market import PriceOracle
from orderbook_backend.monitoring import AlertManager
from orderbook_backend.storage import (
    AnalyticsRepository,
    ConditionalOrderRepository,
    Database,
    DatabaseConfig,
    OrderRepository,
    PriceHistoryRepository,
    TradeRepository,
)

# Configure logging before anything logs
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    return os.environ.get(name, "true" if default else "false").lower() == "true"


def _env_list(name: str, default: str = "") -> list[str]:
    return [item.strip() for item in os.environ.get(name, default).split(",") if item.strip()]


def load_network_configs() -> list[NetworkConfig]:
    """
    Per-network settings from NETWORKS and the <NAME>_<NET> variables.

    A network without a known or configured chain id is left out with an
    error; the remaining networks still start.
    """
    networks = []
    for name in _env_list("NETWORKS", "bsc,base"):
        name = name.lower()
        suffix = name.upper()

        chain_id_raw = os.environ.get(f"CHAIN_ID_{suffix}")
        if chain_id_raw:
            try:
                chain_id = int(chain_id_raw)
            except ValueError:
                logger.error(f"{name}: invalid CHAIN_ID_{suffix}={chain_id_raw!r}, network disabled")
                continue
        elif name in DEFAULT_CHAIN_IDS:
            chain_id = DEFAULT_CHAIN_IDS[name]
        else:
            logger.error(f"{name}: CHAIN_ID_{suffix} not set and no default known, network disabled")
            continue

        start_block_raw = os.environ.get(f"START_BLOCK_{suffix}")
        networks.append(
            NetworkConfig(
                name=name,
                rpc_urls=_env_list(f"RPC_URLS_{suffix}"),
                chain_id=chain_id,
                settlement_address=(
                    os.environ.get(f"SETTLEMENT_ADDRESS_{suffix}")
                    or DEFAULT_SETTLEMENT_ADDRESSES.get(name)
                ),
                start_block=int(start_block_raw) if start_block_raw else None,
            )
        )
    return networks


@dataclass
class RewardConfig:
    """Maker/taker reward settings, handed to the reward collaborator."""

    enabled: bool = False
    maker_rate: Decimal = Decimal("0.001")
    taker_rate: Decimal = Decimal("0.0005")
    min_volume_usd: Decimal = Decimal("0.1")

    @classmethod
    def from_env(cls) -> "RewardConfig":
        return cls(
            enabled=_env_bool("REWARD_SYSTEM_ENABLED", False),
            maker_rate=Decimal(os.environ.get("REWARD_MAKER_RATE", "0.001")),
            taker_rate=Decimal(os.environ.get("REWARD_TAKER_RATE", "0.0005")),
            min_volume_usd=Decimal(os.environ.get("REWARD_MIN_VOLUME_USD", "0.1")),
        )


@dataclass
class BackendConfig:
    """Complete backend configuration."""

    # Database
    database_url: str = ""

    # Networks
    signing_key: Optional[str] = None
    networks: list[NetworkConfig] = field(default_factory=list)
    connection: ConnectionSettings = field(default_factory=ConnectionSettings)

    # Engines
    tick_interval_seconds: float = 10.0
    network_timeout_seconds: float = 30.0
    price_window: int = 10

    # Settlement listener
    listener_enabled: bool = True
    listener_poll_seconds: float = 5.0
    listener_confirmations: int = 3
    reconcile_enabled: bool = True
    reconcile_interval_seconds: float = 900.0

    rewards: RewardConfig = field(default_factory=RewardConfig)

    # Alerts
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None

    @classmethod
    def from_env(cls) -> "BackendConfig":
        """Load configuration from environment variables."""
        return cls(
            database_url=os.environ.get("DATABASE_URL", ""),
            signing_key=os.environ.get("SIGNING_KEY"),
            networks=load_network_configs(),
            connection=ConnectionSettings(
                attempts=int(os.environ.get("CONNECT_ATTEMPTS", "5")),
                base_delay=float(os.environ.get("CONNECT_BASE_DELAY", "1.0")),
                max_delay=float(os.environ.get("CONNECT_MAX_DELAY", "10.0")),
                rpc_timeout=float(os.environ.get("RPC_TIMEOUT_SECONDS", "10")),
            ),
            tick_interval_seconds=float(os.environ.get("TICK_INTERVAL_SECONDS", "10")),
            network_timeout_seconds=float(os.environ.get("NETWORK_TIMEOUT_SECONDS", "30")),
            price_window=int(os.environ.get("PRICE_WINDOW", "10")),
            listener_enabled=_env_bool("LISTENER_ENABLED", True),
            listener_poll_seconds=float(os.environ.get("LISTENER_POLL_SECONDS", "5")),
            listener_confirmations=int(os.environ.get("LISTENER_CONFIRMATIONS", "3")),
            reconcile_enabled=_env_bool("RECONCILE_ENABLED", True),
            reconcile_interval_seconds=float(
                os.environ.get("RECONCILE_INTERVAL_SECONDS", "900")
            ),
            rewards=RewardConfig.from_env(),
            telegram_bot_token=os.environ.get("TELEGRAM_BOT_TOKEN"),
            telegram_chat_id=os.environ.get("TELEGRAM_CHAT_ID"),
        )

    def validate(self) -> list[str]:
        """Configuration problems that prevent startup."""
        errors = []
        if not self.database_url:
            errors.append("DATABASE_URL environment variable is required")
        if not self.signing_key:
            errors.append("SIGNING_KEY environment variable is required")
        if not self.networks:
            errors.append("No usable network configured (see NETWORKS)")
        return errors


class OrderBackend:
    """
    Main backend orchestrator.

    Manages the lifecycle of all components:
    - Database connection
    - Network connections
    - Trigger and pricing engines, settlement listener
    - Scheduler and alerts
    """

    def __init__(self, config: BackendConfig):
        self.config = config
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized on start)
        self._db: Optional[Database] = None
        self._connections: Optional[ConnectionManager] = None
        self._alert_manager: Optional[AlertManager] = None
        self._trigger_engine: Optional[ConditionalTriggerEngine] = None
        self._pricing_engine: Optional[AdaptivePricingEngine] = None
        self._listener: Optional[SettlementListener] = None
        self._scheduler: Optional[TickScheduler] = None

    async def start(self, once: bool = False) -> None:
        """
        Start the backend and run until shutdown.

        Args:
            once: Run a single tick and return
        """
        logger.info("=" * 60)
        logger.info("ORDER BOOK BACKEND")
        logger.info("=" * 60)
        logger.info(f"Networks: {', '.join(n.name for n in self.config.networks)}")
        logger.info(f"Rewards: {'enabled' if self.config.rewards.enabled else 'disabled'}")
        logger.info("=" * 60)

        self._running = True
        self._shutdown_event.clear()
        self._setup_signal_handlers()

        try:
            self._alert_manager = AlertManager(
                telegram_bot_token=self.config.telegram_bot_token,
                telegram_chat_id=self.config.telegram_chat_id,
            )

            await self._init_database()
            if self._shutdown_event.is_set():
                logger.info("Shutdown requested during startup")
                return

            await self._init_networks()
            if self._shutdown_event.is_set():
                logger.info("Shutdown requested during startup")
                return

            self._init_engines()

            if once:
                await self._run_once()
                return

            await self._scheduler.start()

            logger.info("=" * 60)
            logger.info("Backend started successfully")
            logger.info("Press Ctrl+C to stop")
            logger.info("=" * 60)

            await self._shutdown_event.wait()

        except Exception as e:
            logger.exception(f"Fatal error: {e}")
            raise
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the backend gracefully."""
        if not self._running:
            return

        logger.info("Shutting down...")
        self._running = False
        self._shutdown_event.set()

        # Stop components in reverse order
        if self._scheduler:
            try:
                await self._scheduler.stop()
            except Exception as e:
                logger.warning(f"Error stopping scheduler: {e}")

        if self._connections:
            try:
                await self._connections.close_all()
            except Exception as e:
                logger.warning(f"Error closing network connections: {e}")

        if self._db:
            try:
                await self._db.close()
            except Exception as e:
                logger.warning(f"Error closing database: {e}")

        logger.info("Shutdown complete")

    async def _init_database(self) -> None:
        """Initialize database connection."""
        if not self.config.database_url:
            raise ValueError("DATABASE_URL environment variable is required")

        self._db = Database(DatabaseConfig(url=self.config.database_url))
        await self._db.initialize()

        if not await self._db.health_check():
            raise RuntimeError("Database health check failed")

        logger.info("Database: Connected")

    async def _init_networks(self) -> None:
        """Connect every configured network; fails only when none connects."""
        self._connections = ConnectionManager(
            self.config.networks,
            self.config.signing_key,
            self.config.connection,
        )
        try:
            await self._connections.connect_all()
        finally:
            for network, reason in self._connections.failed.items():
                await asyncio.to_thread(
                    self._alert_manager.alert_network_unavailable, network, reason
                )

        logger.info(f"Networks: {', '.join(self._connections.active_networks)} active")

    def _init_engines(self) -> None:
        """Build repositories, engines, listener and scheduler."""
        db = self._db
        order_repo = OrderRepository(db)
        trade_repo = TradeRepository(db)
        oracle = PriceOracle(trade_repo, window=self.config.price_window)

        self._trigger_engine = ConditionalTriggerEngine(
            ConditionalOrderRepository(db),
            order_repo,
            oracle,
            alert_manager=self._alert_manager,
        )
        self._pricing_engine = AdaptivePricingEngine(
            db,
            order_repo,
            PriceHistoryRepository(db),
            AnalyticsRepository(db),
            oracle,
        )

        if self.config.listener_enabled:
            self._listener = self._build_listener(order_repo, trade_repo)

        self._scheduler = TickScheduler(
            self._connections.active_networks,
            self._trigger_engine,
            self._pricing_engine,
            listener=self._listener,
            config=SchedulerConfig(
                interval_seconds=self.config.tick_interval_seconds,
                network_timeout_seconds=self.config.network_timeout_seconds,
                listener_enabled=self.config.listener_enabled,
                listener_poll_seconds=self.config.listener_poll_seconds,
                reconcile_enabled=self.config.reconcile_enabled,
                reconcile_interval_seconds=self.config.reconcile_interval_seconds,
            ),
        )

    def _build_listener(
        self, order_repo: OrderRepository, trade_repo: TradeRepository
    ) -> Optional[SettlementListener]:
        contracts = {}
        start_blocks = {}
        for name, conn in self._connections.connections.items():
            network = conn.config
            if network is None or not network.settlement_address:
                logger.warning(f"{name}: no settlement address, listener disabled for network")
                continue
            try:
                contracts[name] = SettlementContract(conn, network.settlement_address)
            except ValueError as e:
                logger.error(f"{name}: invalid settlement address: {e}")
                continue
            if network.start_block is not None:
                start_blocks[name] = network.start_block

        if not contracts:
            logger.warning("Settlement listener: no network to listen on")
            return None

        logger.info(f"Settlement listener: {', '.join(contracts)}")
        return SettlementListener(
            contracts,
            order_repo,
            trade_repo,
            config=ListenerConfig(
                poll_interval_seconds=self.config.listener_poll_seconds,
                confirmations=self.config.listener_confirmations,
            ),
            start_blocks=start_blocks,
        )

    async def _run_once(self) -> None:
        if self._listener is not None:
            await self._listener.poll_once()
            if self.config.reconcile_enabled:
                await self._listener.reconcile_once()
        results = await self._scheduler.tick()
        for result in results:
            logger.info(
                f"{result.network}: triggered={result.triggered} "
                f"repriced={result.repriced} error={result.error or '-'}"
            )
        await self._scheduler.check_orphans()

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def handle_signal(sig):
            logger.info(f"Received signal {sig}")
            self._shutdown_event.set()

        try:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass


def load_env_file(path: str = ".env") -> None:
    """Load environment variables from .env file if it exists."""
    env_path = Path(path)
    if env_path.exists():
        logger.info(f"Loading environment from {env_path}")
        with open(env_path) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, _, value = line.partition("=")
                    value = value.strip().strip('"').strip("'")
                    os.environ.setdefault(key.strip(), value)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Order Book Backend",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single tick and exit",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override log level",
    )
    return parser.parse_args(argv)


async def main_async(args: argparse.Namespace) -> int:
    """Async main function."""
    config = BackendConfig.from_env()

    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(error)
        return 1

    backend = OrderBackend(config)
    try:
        await backend.start(once=args.once)
        return 0
    except KeyboardInterrupt:
        logger.info("Shutdown requested")
        return 0
    except Exception as e:
        logger.error(f"Backend stopped: {e}")
        return 1


def main() -> int:
    """Main entry point."""
    load_env_file()

    args = parse_args()

    if args.log_level:
        logging.getLogger().setLevel(getattr(logging, args.log_level))

    try:
        return asyncio.run(main_async(args))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
