"""
Configuration loaded from environment variables. Fail-fast on invalid values.
"""

from pydantic_settings import BaseSettings
from pydantic import Field


class Config(BaseSettings):
    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "frozen": True, "extra": "ignore"}

    # Credentials (required for live trading only)
    private_key: str = Field(default="", description="Polygon wallet private key (hex)")
    polymarket_profile_address: str = Field(default="", description="Polymarket proxy address")
    signature_type: int = Field(default=1, ge=0, le=2)

    # API endpoints
    clob_host: str = "https://clob.polymarket.com"
    gamma_host: str = "https://gamma-api.polymarket.com"
    ws_market_url: str = "wss://ws-subscriptions-clob.polymarket.com/ws/market"
    chain_id: int = 137  # Polygon mainnet

    # Tick cadence and windows
    poll_interval_seconds: float = Field(default=2.0, gt=0)
    window_duration_minutes: int = Field(default=15, gt=0)

    # Detection
    min_edge_margin: float = Field(default=0.01, ge=0, lt=1.0)
    # Max spread between quote timestamps within one linked set
    quote_staleness_ms: float = Field(default=500.0, gt=0)
    # Max age of any single quote relative to now
    quote_max_age_ms: float = Field(default=2000.0, gt=0)

    # Sizing
    per_trade_risk_ceiling: float = Field(default=20.0, gt=0)
    # When true, per_trade_risk_ceiling is a fraction of available capital
    risk_ceiling_is_fraction: bool = False
    max_concurrent_positions_per_market_set: int = Field(default=1, ge=1)
    min_trade_amount: float = Field(default=1.0, ge=0)
    min_tradable_unit: float = Field(default=1.0, gt=0)
    max_slippage: float = Field(default=0.02, ge=0, lt=1.0)

    # Timing
    expiry_safety_buffer_sec: float = Field(default=30.0, ge=0)
    # Settlement is only polled for windows at least this old
    settlement_check_delay_sec: float = Field(default=840.0, ge=0)

    # Venue I/O
    max_retries: int = Field(default=3, ge=1)
    retry_backoff_sec: float = Field(default=1.0, ge=0)
    book_fetch_workers: int = Field(default=8, ge=1, le=32)

    # Strategy
    assets: str = "btc,eth"
    cross_asset_enabled: bool = True
    # Cross-asset pairs only trade when every leg's ask is at least this price
    cross_asset_min_leg_price: float = Field(default=0.6, ge=0, le=1.0)

    # Fees
    fee_model_enabled: bool = True
    crypto_fee_max_rate: float = Field(default=0.0315, ge=0, lt=1.0)

    # Bankroll and paper fills
    starting_bankroll: float = Field(default=100.0, gt=0)
    paper_fill_ratio: float = Field(default=1.0, ge=0, le=1.0)

    # Modes
    dry_run: bool = True
    log_level: str = "INFO"

    # Storage
    state_db_path: str = "state.db"
    ledger_db_path: str = "ledger.db"
    state_checkpoint_interval: int = Field(default=10, ge=1)
    status_file: str = "status.md"

    # Report server
    report_server_enabled: bool = True
    report_host: str = "127.0.0.1"
    report_port: int = Field(default=8765, ge=1, le=65535)

    # Push quote feed
    ws_enabled: bool = False
    ws_reconnect_max: int = Field(default=5, ge=1)

    @property
    def asset_list(self) -> list[str]:
        return [a.strip().lower() for a in self.assets.split(",") if a.strip()]


def load_config() -> Config:
    """Load and validate config from environment. Raises on invalid fields."""
    return Config()
