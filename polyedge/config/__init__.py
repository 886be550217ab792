"""Configuration for PolyEdge."""

from polyedge.config.settings import Settings, get_settings
from polyedge.config.trading import TradingConfig, get_trading_config

__all__ = ["Settings", "get_settings", "TradingConfig", "get_trading_config"]
