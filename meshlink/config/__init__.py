"""Configuration module for meshlink."""

from meshlink.config.loader import check_required, load_config
from meshlink.config.schema import Config, LinkConfig, LowpanConfig

__all__ = ["Config", "LinkConfig", "LowpanConfig", "load_config", "check_required"]
