"""Configuration schema using Pydantic."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource


class Base(BaseModel):
    """Base model that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LowpanConfig(Base):
    """LoWPAN interface and attachment configuration."""

    driver: Literal["wpanctl", "simulated"] = "wpanctl"
    interface_name: str = "wpan0"
    wpanctl_path: str = "wpanctl"
    poll_interval: float = Field(default=2.0, gt=0)     # Seconds between wpanctl status polls
    command_timeout: float = Field(default=30.0, gt=0)  # Seconds before a wpanctl call is abandoned
    network_name: str = "lowpan_sample"
    network_key: str = ""  # Hex master key. Required whenever provision_mode is not "none"
    channel: int | None = Field(default=None, ge=0, le=255)  # None lets the stack pick
    scan_duration: float = Field(default=10.0, gt=0)
    provision_mode: Literal["form", "join", "none"] = "form"
    auto_provision: bool = True  # Provision as soon as the interface appears


class LinkConfig(Base):
    """Byte-value link relay configuration."""

    role: Literal["receiver", "transmitter", "none"] = "receiver"
    listen_host: str = "::"
    port: int = Field(default=23456, ge=0, le=65535)
    server_address: str = ""  # Receiver host name or address (transmitter only)
    connect_timeout: float = Field(default=5.0, gt=0)
    auto_connect: bool = True  # Transmitter dials server_address once attached
    teardown_on_write_error: bool = True


class Config(BaseSettings):
    """Root configuration for meshlink."""

    lowpan: LowpanConfig = Field(default_factory=LowpanConfig)
    link: LinkConfig = Field(default_factory=LinkConfig)
    log_level: str = "INFO"

    model_config = ConfigDict(env_prefix="MESHLINK_", env_nested_delimiter="__")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Environment wins over values loaded from the config file.
        return env_settings, init_settings, dotenv_settings, file_secret_settings
