"""
Configuration Management Module

This module loads, validates and provides access to the runtime
configuration from environment variables (.env file).

Uses Pydantic Settings for automatic validation and type conversion. Nested
sections are addressed with a double underscore, e.g.:

    DISPATCH__MAX_WORKERS=20
    NTP_CLIENT__LEVEL=warn
    ORDER_MANAGER__LIMIT_AMOUNT=1.5
    SCRIPTING__ENABLED=true

Usage:
    from core.config import Settings, validate_configuration

    cfg = Settings(scripting={"enabled": True})
    validate_configuration(cfg)

Components never read the module-level `settings` object; the Engine hands
each of them its own section at construction time.
"""

from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.errors import ConfigInvalidError
from core.schemas import AssetClass


# ============================================
# Section Models
# ============================================

class DispatchConfig(BaseModel):
    enabled: bool = True
    max_workers: int = Field(default=10, description="Dispatcher worker tasks")
    jobs_limit: int = Field(default=100, description="Bounded job queue size")
    pipe_buffer: int = Field(default=50, description="Per-subscriber channel size")


class ConnectionMonitorConfig(BaseModel):
    enabled: bool = True
    dns_list: List[str] = Field(default_factory=lambda: ["8.8.8.8", "8.8.4.4", "1.1.1.1"])
    public_domain_list: List[str] = Field(
        default_factory=lambda: ["www.google.com", "www.cloudflare.com", "www.facebook.com"]
    )
    check_interval: float = Field(default=1.0, description="Seconds between checks")
    http_timeout: float = Field(default=2.0, description="Per-target HTTP timeout")


class NTPLevel(str, Enum):
    """How the time-sync probe reacts to drift."""

    DISABLED = "disabled"
    PROMPT_ONCE = "prompt_once"
    ALERT = "alert"
    WARN = "warn"


class NTPClientConfig(BaseModel):
    enabled: bool = False
    level: NTPLevel = NTPLevel.PROMPT_ONCE
    pool: List[str] = Field(default_factory=lambda: ["0.pool.ntp.org:123", "pool.ntp.org:123"])
    allowed_difference: float = Field(default=0.05, description="Allowed positive drift (s)")
    allowed_negative_difference: float = Field(default=0.05, description="Allowed negative drift (s)")
    check_interval: float = 30.0
    retry_limit: int = 3
    query_timeout: float = 2.0


class DatabaseDriver(str, Enum):
    SQLITE3 = "sqlite3"
    POSTGRES = "postgres"


class DatabaseConfig(BaseModel):
    enabled: bool = False
    driver: DatabaseDriver = DatabaseDriver.SQLITE3
    database: str = Field(default="venuehub.db", description="Database name or SQLite file")
    host: str = "localhost"
    port: int = 5432
    username: str = ""
    password: str = ""
    connection_string: str = Field(default="", description="Overrides the URL built from the fields above")
    check_interval: float = 2.0
    verbose: bool = False


class OrderManagerConfig(BaseModel):
    enabled: bool = True
    enforce_limit_config: bool = False
    allow_market_orders: bool = True
    cancel_orders_on_shutdown: bool = False
    limit_amount: float = Field(default=0.0, description="Per-order max amount, 0 = no cap")
    allowed_pairs: List[str] = Field(default_factory=list, description="Empty = all pairs")
    allowed_exchanges: List[str] = Field(default_factory=list, description="Empty = all venues")
    order_submission_retries: int = 0
    reconcile_interval: float = Field(default=0.0, description="0 = reconcile only on demand")


class ScriptingConfig(BaseModel):
    enabled: bool = False
    script_dir: Optional[Path] = None
    script_timeout: float = 30.0
    max_virtual_machines: int = 10
    allow_imports: bool = False
    auto_load: List[str] = Field(default_factory=list)
    verbose: bool = False


class ExchangeSyncerConfig(BaseModel):
    enabled: bool = False
    sync_ticker: bool = True
    sync_orderbook: bool = True
    sync_interval: float = 10.0
    pairs: Dict[str, List[str]] = Field(default_factory=lambda: {"binance": ["BTC-USDT"]})
    asset_class: AssetClass = AssetClass.PERPETUAL_SWAP


class PortfolioConfig(BaseModel):
    enabled: bool = False
    sync_interval: float = 60.0


class CommunicationsConfig(BaseModel):
    enabled: bool = False
    relayers: List[str] = Field(default_factory=lambda: ["log"])
    webhook_url: str = Field(default="", description="Target of the webhook relayer")
    webhook_timeout: float = 5.0


class RPCEndpointConfig(BaseModel):
    enabled: bool = False
    listen_address: str = "localhost:9050"
    scheme: str = "http"


class ExchangeConfig(BaseModel):
    name: str
    enabled: bool = True
    http_timeout: float = 15.0
    asset_classes: List[AssetClass] = Field(default_factory=lambda: [AssetClass.PERPETUAL_SWAP])
    base_url: str = ""
    ws_url: str = ""
    websocket_enabled: bool = False


# ============================================
# Settings
# ============================================

class Settings(BaseSettings):
    """
    Application Settings

    Attributes:
        data_dir: Root directory for runtime state (scripts, TLS material)
        tls_dir: Directory holding cert.pem / key.pem (defaults to data_dir/tls)
        log_level: Logging level
        app_host / app_port: Control surface listen address
        dispatch ... remote_control: Per-subsystem sections
        exchanges: Venue adapters to load at startup
    """

    data_dir: Path = Field(default=Path.home() / ".venuehub")
    tls_dir: Optional[Path] = None
    log_level: str = "INFO"
    app_host: str = "0.0.0.0"
    app_port: int = 9050

    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    connection_monitor: ConnectionMonitorConfig = Field(default_factory=ConnectionMonitorConfig)
    ntp_client: NTPClientConfig = Field(default_factory=NTPClientConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    order_manager: OrderManagerConfig = Field(default_factory=OrderManagerConfig)
    scripting: ScriptingConfig = Field(default_factory=ScriptingConfig)
    exchange_syncer: ExchangeSyncerConfig = Field(default_factory=ExchangeSyncerConfig)
    portfolio: PortfolioConfig = Field(default_factory=PortfolioConfig)
    communications: CommunicationsConfig = Field(default_factory=CommunicationsConfig)
    remote_control: Dict[str, RPCEndpointConfig] = Field(
        default_factory=lambda: {
            "http_api": RPCEndpointConfig(enabled=True, listen_address="localhost:9050"),
            "websocket_rpc": RPCEndpointConfig(enabled=False, listen_address="localhost:9051", scheme="ws"),
        }
    )
    exchanges: List[ExchangeConfig] = Field(
        default_factory=lambda: [ExchangeConfig(name="binance")]
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False
    )

    @model_validator(mode="after")
    def resolve_paths(self) -> "Settings":
        if self.tls_dir is None:
            self.tls_dir = self.data_dir / "tls"
        if self.scripting.script_dir is None:
            self.scripting.script_dir = self.data_dir / "scripts"
        return self

    def get_exchange_config(self, name: str) -> ExchangeConfig:
        for exch in self.exchanges:
            if exch.name.lower() == name.lower():
                return exch
        raise ConfigInvalidError(f"exchange '{name}' has no configuration")


settings = Settings()


# ============================================
# Configuration Validation
# ============================================

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def validate_configuration(cfg: Settings) -> None:
    """
    Validate configuration for contradictions.

    Raises:
        ConfigInvalidError: On the first contradiction found

    Called at application startup (fatal) and by the facade before a
    subsystem is enabled.
    """
    from core.logging import get_logger
    logger = get_logger(__name__)

    if cfg.log_level.upper() not in VALID_LOG_LEVELS:
        raise ConfigInvalidError(
            f"Invalid LOG_LEVEL: '{cfg.log_level}'. Must be one of: {', '.join(VALID_LOG_LEVELS)}"
        )

    if not (1 <= cfg.app_port <= 65535):
        raise ConfigInvalidError(f"Invalid port number: {cfg.app_port}. Must be between 1 and 65535")

    if cfg.dispatch.max_workers < 1 or cfg.dispatch.jobs_limit < 1 or cfg.dispatch.pipe_buffer < 1:
        raise ConfigInvalidError("dispatch max_workers, jobs_limit and pipe_buffer must be at least 1")

    if cfg.connection_monitor.check_interval <= 0 or cfg.connection_monitor.http_timeout <= 0:
        raise ConfigInvalidError("connection monitor interval and timeout must be positive")

    if cfg.ntp_client.allowed_difference < 0 or cfg.ntp_client.allowed_negative_difference < 0:
        raise ConfigInvalidError("NTP allowed differences cannot be negative")

    if cfg.ntp_client.enabled and not cfg.ntp_client.pool:
        raise ConfigInvalidError("NTP client enabled with an empty server pool")

    if cfg.database.enabled and not (cfg.database.database or cfg.database.connection_string):
        raise ConfigInvalidError("database enabled without a database name or connection string")

    if cfg.order_manager.limit_amount < 0:
        raise ConfigInvalidError("order manager limit_amount cannot be negative")

    if cfg.order_manager.order_submission_retries < 0:
        raise ConfigInvalidError("order submission retries cannot be negative")

    if cfg.scripting.max_virtual_machines < 1:
        raise ConfigInvalidError("scripting max_virtual_machines must be at least 1")

    if cfg.scripting.script_timeout <= 0:
        raise ConfigInvalidError("scripting script_timeout must be positive")

    seen = set()
    for exch in cfg.exchanges:
        key = exch.name.lower()
        if key in seen:
            raise ConfigInvalidError(f"duplicate exchange configuration: '{exch.name}'")
        seen.add(key)

    logger.info("Configuration validated successfully")
    logger.info(f"Data directory: {cfg.data_dir}")
    logger.info(f"Exchanges: {', '.join(e.name for e in cfg.exchanges) or 'none'}")
    logger.info(f"Log level: {cfg.log_level.upper()}")
