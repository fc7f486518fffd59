from __future__ import annotations
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any, ClassVar, Optional

import tomli
from pydantic import BaseModel as PydanticBaseModel
from pydantic import ConfigDict, Field, field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings as PydanticBaseSettings
from pydantic_settings import PydanticBaseSettingsSource, SettingsConfigDict

from streamrelay.types import PathT


__all__ = [
    'PROJECT_DIR',
    'DEFAULT_CONFIG_FILE_NAME',
    'DEFAULT_CONFIG_FILE_PATHS',
    'CONFIG_FILE_PATHS_PARAM',
    'SessionSettings',
    'SupervisorSettings',
    'BufferSettings',
    'StatsSettings',
    'MonitoringSettings',
    'Settings',
    'ConfigFileSettingsSource',
    'config_file_settings',
]

log = logging.getLogger(__name__)

_THIS_DIR = Path(__file__).parent
PROJECT_DIR = _THIS_DIR.parent.parent
DEFAULT_CONFIG_FILE_NAME = 'config.toml'
DEFAULT_CONFIG_FILE_PATHS = [
    Path('/etc/streamrelay', DEFAULT_CONFIG_FILE_NAME),
    Path(PROJECT_DIR, DEFAULT_CONFIG_FILE_NAME),
    Path('.', DEFAULT_CONFIG_FILE_NAME),
]
CONFIG_FILE_PATHS_PARAM = '_config_file_paths'


class SettingsBaseModel(PydanticBaseModel):
    model_config = ConfigDict(extra='forbid', validate_assignment=True)


class BaseSettings(PydanticBaseSettings):
    _config_file_paths: ClassVar[list[Path]] = DEFAULT_CONFIG_FILE_PATHS

    model_config = SettingsConfigDict(
        env_prefix='streamrelay_',
        env_nested_delimiter='__',
        extra='forbid',
        validate_assignment=True,
    )

    def __init__(self, **kwargs: Any) -> None:
        config_paths = kwargs.pop(CONFIG_FILE_PATHS_PARAM, [])
        type(self)._config_file_paths = DEFAULT_CONFIG_FILE_PATHS + [
            Path(path) for path in config_paths
        ]
        super().__init__(**kwargs)

    @classmethod
    def get_config_file_paths(cls) -> list[Path]:
        return cls._config_file_paths

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[PydanticBaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return init_settings, env_settings, ConfigFileSettingsSource(settings_cls)


class SessionSettings(SettingsBaseModel):
    grace_period_sec: float = 60.0
    client_timeout_sec: float = 120.0
    max_spawn_tries: int = 3
    spawn_retry_delay_sec: float = 2.0
    cleanup_interval_sec: float = 30.0
    stream_limits: dict[str, int] = {}

    @field_validator('max_spawn_tries')
    @classmethod
    def at_least_one_try(cls, tries: int) -> int:
        return max(tries, 1)


class SupervisorSettings(SettingsBaseModel):
    binary_ffmpeg: str = 'ffmpeg'
    check_user: Optional[str] = None
    user_agent: str = 'streamrelay'
    extra_input_args: list[str] = []
    startup_check_sec: float = 1.0
    terminate_timeout_sec: float = 1.0
    read_chunk_size: int = 64 * 1024
    max_buffered_chunks: int = 50
    bandwidth_window_sec: int = 10
    hls_time: int = 4
    hls_list_size: int = 10


class BufferSettings(SettingsBaseModel):
    path: Path = Path('/tmp/streamrelay')
    max_total_mb: float = 0.0
    min_free_space_mb: float = 1000.0
    base_segments: int = 30
    segments_per_client: int = 5
    max_extra_segments: int = 50
    temp_file_max_age_sec: float = 60. * 60


class StatsSettings(SettingsBaseModel):
    snapshot_interval_sec: float = 60.0
    retention_days: float = 7.0
    prune_interval_sec: float = 60. * 60

    @field_validator('snapshot_interval_sec', 'prune_interval_sec')
    @classmethod
    def ensure_min_interval(cls, interval: float) -> float:
        return max(interval, 1.)


class MonitoringSettings(SettingsBaseModel):
    prom_text_file: Optional[Path] = None
    update_freq_sec: float = 15.0


class Settings(BaseSettings):
    listen_address: str = '127.0.0.1'
    listen_port: int = 9030
    dev_mode: bool = False
    sessions: SessionSettings = Field(default_factory=SessionSettings)
    supervisor: SupervisorSettings = Field(default_factory=SupervisorSettings)
    buffer: BufferSettings = Field(default_factory=BufferSettings)
    stats: StatsSettings = Field(default_factory=StatsSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    def make_url(self, path: str = "/", scheme: str = "http") -> str:
        if not path.startswith("/"):
            path = "/" + path
        return f"{scheme}://{self.listen_address}:{self.listen_port}{path}"


class ConfigFileSettingsSource(PydanticBaseSettingsSource):
    """Settings source reading all config files known to the settings class."""

    def get_field_value(
        self,
        field: FieldInfo,
        field_name: str,
    ) -> tuple[Any, str, bool]:
        # Values are only ever read all at once in `__call__`.
        return None, field_name, False

    def __call__(self) -> dict[str, Any]:
        return config_file_settings(
            self.settings_cls.get_config_file_paths()  # type: ignore[attr-defined]
        )


def config_file_settings(paths: Iterable[Path]) -> dict[str, Any]:
    """
    Incrementally loads (and updates) settings from all config files.

    Files are read in the order given; later files override top-level keys
    of earlier ones. Tries available loaders and returns the result in a
    dictionary. Missing files are skipped.
    """
    config = {}
    for path in paths:
        if not path.is_file():
            log.info("No file found at '%s'", str(path.resolve()))
            continue
        log.info("Reading config file '%s'", str(path.resolve()))
        if path.suffix == ".toml":
            config.update(load_toml(path))
        else:
            log.warning("Unknown config file extension '%s'", path.suffix)
    return config


def load_toml(path: PathT) -> dict[str, Any]:
    with Path(path).open("rb") as f:
        return tomli.load(f)
