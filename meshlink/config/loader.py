"""Configuration loading and startup validation."""

import json
import re
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from meshlink.config.schema import Config
from meshlink.errors import ConfigurationError

_PLACEHOLDER_RE = re.compile(r"^<.*>$")


def get_config_path() -> Path:
    """Get the default configuration file path."""
    return Path.home() / ".meshlink" / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """
    Load configuration from file or create default.

    Environment variables (``MESHLINK_*``) override values from the file.

    Args:
        config_path: Optional path to config file. Uses default if not provided.

    Returns:
        Loaded configuration object.
    """
    path = Path(config_path) if config_path else get_config_path()

    if path.exists():
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            return Config(**data)
        except (json.JSONDecodeError, TypeError, ValidationError) as e:
            logger.error("[Config] failed to load {}: {}", path, e)
            logger.warning("[Config] using default configuration")
    elif config_path:
        logger.warning("[Config] {} not found, using defaults", path)

    return Config()


def _is_placeholder(value: str) -> bool:
    return bool(_PLACEHOLDER_RE.match(value.strip()))


def check_required(config: Config) -> None:
    """Refuse to start with missing or placeholder settings.

    Raises
    ------
    ConfigurationError
        With every problem found, one per line.
    """
    problems: list[str] = []
    lowpan = config.lowpan
    link = config.link

    if lowpan.driver == "wpanctl" and (
        not lowpan.interface_name.strip() or _is_placeholder(lowpan.interface_name)
    ):
        problems.append("lowpan.interfaceName must name the wpantund interface")
    if lowpan.provision_mode != "none":
        key = lowpan.network_key.strip()
        if not key or _is_placeholder(key):
            problems.append("lowpan.networkKey is required to form or join a network")
        else:
            try:
                bytes.fromhex(key)
            except ValueError:
                problems.append("lowpan.networkKey must be a hex string")
    if link.role == "transmitter":
        address = link.server_address.strip()
        if not address or _is_placeholder(address):
            problems.append("link.serverAddress must be set to the receiver's address")

    if problems:
        raise ConfigurationError("\n".join(problems))
