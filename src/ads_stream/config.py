"""Configuration model of the ADS streaming input."""

import re
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ._constants import PLC_RUNTIME_PORT
from ._types import AmsNetId
from .errors import ConfigInvalid
from .logging import LogLevel

AUTO = "auto"
INPUT_NAME = "adsComm"

_HOST_LABEL = re.compile(r"[^A-Za-z0-9_-]")


class ReadType(str, Enum):
    """How symbol values are acquired from the PLC."""

    notification = "notification"
    interval = "interval"


class AdsInputConfig(BaseModel):
    """Parameters of one ADS streaming input.

    Field names follow the keys used in pipeline configuration files, e.g.
    ``targetIP`` or ``readType``; the Python attribute names are snake case.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="forbid")

    target_ip: str = Field(alias="targetIP", description="IP address of the PLC")
    target_ams: str = Field(alias="targetAMS", description="Target AMS net ID")
    port: int = Field(
        default=PLC_RUNTIME_PORT,
        ge=1,
        le=65535,
        description="AMS port of the PLC runtime, 801 for TwinCAT 2, 851 for TwinCAT 3",
    )
    host_ams: str = Field(
        default=AUTO,
        alias="hostAMS",
        description="Host AMS net ID, 'auto' derives it from the local IP address",
    )
    read_type: ReadType = Field(
        default=ReadType.notification,
        alias="readType",
        description="Read type, 'notification' or 'interval'",
    )
    cycle_time: int = Field(
        default=1000,
        ge=1,
        alias="cycleTime",
        description="PLC sampling cycle of notifications in milliseconds",
    )
    max_delay: int = Field(
        default=100,
        ge=0,
        alias="maxDelay",
        description="Maximum delay in milliseconds before the PLC sends a change",
    )
    interval_time: int = Field(
        default=1000,
        ge=1,
        alias="intervalTime",
        description="Poll period in interval mode, in milliseconds",
    )
    timeout: int = Field(
        default=10,
        ge=1,
        description="Timeout in seconds of connection attempts and requests",
    )
    symbols: list[str] = Field(
        min_length=1,
        description="Symbols to read, e.g. 'MAIN.counter' or '.globalCounter'",
    )
    log_level: LogLevel = Field(
        default=LogLevel.info, alias="logLevel", description="Log level of the input"
    )

    @field_validator("target_ams")
    @classmethod
    def check_target_ams(cls, value: str) -> str:
        """Check the target AMS net ID has six octets."""
        AmsNetId.from_string(value)
        return value

    @field_validator("host_ams")
    @classmethod
    def check_host_ams(cls, value: str) -> str:
        """Check the host AMS net ID is 'auto' or has six octets."""
        if value.strip().lower() == AUTO:
            return AUTO
        AmsNetId.from_string(value)
        return value

    @field_validator("target_ip")
    @classmethod
    def check_target_ip(cls, value: str) -> str:
        """Check the PLC address isn't blank."""
        if not value.strip():
            raise ValueError("targetIP must not be empty")
        return value.strip()

    @field_validator("symbols")
    @classmethod
    def check_symbols(cls, value: list[str]) -> list[str]:
        """Check no symbol name is blank."""
        if any(not name.strip() for name in value):
            raise ValueError("symbol names must not be empty")
        return value

    @property
    def target_net_id(self) -> AmsNetId:
        return AmsNetId.from_string(self.target_ams)

    @property
    def host_net_id(self) -> AmsNetId | None:
        """The configured host AMS net ID, or None if derived automatically."""
        if self.host_ams == AUTO:
            return None
        return AmsNetId.from_string(self.host_ams)

    @property
    def label(self) -> str:
        """Name identifying this input in log records."""
        return _HOST_LABEL.sub("_", f"{self.target_ip}_{self.port}")

    @classmethod
    def parse(cls, data: Any) -> "AdsInputConfig":
        """Validate a parsed configuration mapping.

        Args:
            data: Mapping using the pipeline configuration keys

        Returns:
            AdsInputConfig instance

        Raises:
            ConfigInvalid: If the configuration is rejected
        """
        try:
            return cls.model_validate(data)
        except ValidationError as err:
            raise ConfigInvalid(f"Invalid {INPUT_NAME} configuration: {err}") from err


def load_config(path: Path) -> AdsInputConfig:
    """Load the input configuration from a YAML file.

    The file holds either the input configuration itself or a pipeline
    configuration nesting it as ``input: {adsComm: {...}}``.

    Args:
        path: Path to YAML file

    Returns:
        AdsInputConfig instance

    Raises:
        ConfigInvalid: If the file can't be parsed or the configuration is rejected
    """
    try:
        with path.open() as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as err:
        raise ConfigInvalid(f"Failed to read configuration {path}: {err}") from err

    if isinstance(data, dict) and isinstance(data.get("input"), dict):
        data = data["input"].get(INPUT_NAME)
    if not isinstance(data, dict):
        raise ConfigInvalid(f"No {INPUT_NAME} input configuration found in {path}.")
    return AdsInputConfig.parse(data)
