"""Engine configuration."""

import logging
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)
load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    # API
    coinbase_api_key: str = Field(default="", alias="COINBASE_API_KEY")
    coinbase_api_secret: str = Field(default="", alias="COINBASE_API_SECRET")

    # Mode
    trading_mode: Literal["paper", "live"] = Field(default="paper", alias="TRADING_MODE")
    paper_start_balance_quote: float = Field(default=1000.0, alias="PAPER_START_BALANCE")
    paper_start_balance_base: float = 0.0

    # Instrument
    trading_pair: str = Field(default="XRP-USDC", alias="TRADING_PAIR")
    base_currency: str = Field(default="XRP", alias="BASE_CURRENCY")
    quote_currency: str = Field(default="USDC", alias="QUOTE_CURRENCY")
    lot_decimals: int = 8
    price_decimals: int = 4

    # Candles / scheduling
    candle_granularity_s: int = 60
    candle_cache_size: int = 200
    initial_fetch_hours: int = 1
    cycle_buffer_ms: int = 500

    # Indicators
    bb_period: int = 20
    bb_std_dev: float = 2.5
    rsi_period: int = 14
    ema_fast_period: int = 9
    ema_slow_period: int = 50
    macd_fast_period: int = 12
    macd_slow_period: int = 26
    macd_signal_period: int = 9
    stoch_period: int = 14
    stoch_k_smooth: int = 3
    stoch_d_smooth: int = 3

    # Scoring
    rsi_buy_threshold: float = 30.0
    rsi_sell_threshold: float = 75.0
    stoch_k_buy_threshold: float = 20.0
    stoch_k_sell_threshold: float = 85.0
    stoch_safe_zone: float = 65.0
    ema_close_threshold_pct: float = 0.1
    macd_sell_offset: float = 30.0
    volume_avg_period: int = 10
    volume_surge_ratio: float = 1.2
    trend_consistency_lookback: int = 10
    min_buy_score: int = 7
    min_entry_quality: int = 8
    min_short_quality: int = 8
    min_sell_score: int = 4
    low_conviction_max_penalty: int = 5
    recent_low_lookback: int = 288
    recent_low_max_range_pct: float = 30.0
    recent_high_lookback: int = 45
    recent_high_tolerance_pct: float = 0.5

    # Confirmation
    buy_confirmations_required: int = 4
    sell_confirmations_required: int = 5
    short_confirmations_required: int = 4
    cover_confirmations_required: int = 6
    buy_reset_tolerance_pct: float = 0.2
    sell_reset_tolerance_pct: float = 0.1
    short_reset_tolerance_pct: float = 0.2
    cover_reset_tolerance_pct: float = 0.1
    aggressive_confirmation: bool = True
    aggressive_pause_move_pct: float = 0.1
    max_pattern_acceleration: int = 3
    max_continuous_price_drops: int = 4

    # Exits
    take_profit_confirm_pct: float = 0.5
    take_profit_pct: float = 2.5
    stop_loss_pct: float = 4.0
    short_stop_loss_pct: float = 2.0
    short_take_profit_pct: float = 2.0
    trailing_activation_pct: float = 2.0
    trailing_distance_pct: float = 1.5
    rising_candle_min_pct: float = 0.5
    rising_candles_hold: int = 2
    bullish_hold_net_score: float = 2.0
    cover_immediate_pct: float = 2.0
    cover_strong_pct: float = 1.2
    cover_modest_pct: float = 0.7
    strong_downtrend_drop_pct: float = 2.0
    partial_exit_min_profit_pct: float = 1.5
    recently_loaded_minutes: int = 5
    recently_loaded_min_pnl_pct: float = 5.0

    # Averaging
    averaging_enabled: bool = True
    averaging_min_drop_pct: float = 2.0
    max_averaging_entries: int = 3

    # Risk / sizing
    risk_percent_per_trade: float = Field(default=35.0, alias="RISK_PERCENT_PER_TRADE")
    max_balance_usage: float = 0.95
    notional_safety_margin: float = 0.99
    maker_fee_pct: float = 0.6
    taker_fee_pct: float = 1.2
    min_quote_trade: float = 10.0
    min_base_trade: float = 5.0

    # Re-entry
    reentry_price_pct: float = 1.0
    reentry_cooldown_minutes: int = 30

    # Reconciliation
    reconcile_tolerance_pct: float = 1.0
    recovered_position_min_base: float = 1.0
    recovered_stop_pct: float = 5.0
    dust_threshold_base: float = 0.00001

    # Orders
    post_only_sells: bool = Field(default=False, alias="POST_ONLY_SELLS")
    order_max_attempts: int = 3
    fetch_max_attempts: int = 3

    # Notifications
    telegram_bot_token: str = Field(default="", alias="TELEGRAM_BOT_TOKEN")
    telegram_chat_id: str = Field(default="", alias="TELEGRAM_CHAT_ID")
    notification_batch_size: int = 20
    notification_keep_sent: int = 200

    # Files
    data_dir: str = Field(default="", alias="DATA_DIR")
    price_history_hours: int = 24

    @property
    def is_live(self) -> bool:
        return self.trading_mode == "live"

    @property
    def min_required_candles(self) -> int:
        """Longest warm-up any indicator needs."""
        return max(
            self.bb_period,
            self.rsi_period + 1,
            self.ema_slow_period,
            self.macd_slow_period + self.macd_signal_period,
            self.stoch_period + self.stoch_k_smooth + self.stoch_d_smooth,
        )

    def resolve_data_dir(self) -> Path:
        """Explicit DATA_DIR wins over the mode-scoped default."""
        if self.data_dir:
            path = Path(self.data_dir)
            path.mkdir(parents=True, exist_ok=True)
            return path
        from core.mode_paths import get_data_dir
        return get_data_dir(self.trading_mode)


settings = Settings()
