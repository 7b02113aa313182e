from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import os
import yaml


class ConfigError(RuntimeError):
    """Raised when the configuration file is invalid."""


STORAGE_BACKENDS = ("json", "mongo")


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    ban_log_channel_id: Optional[int] = None
    message_log_channel_id: Optional[int] = None


@dataclass(slots=True)
class RolesConfig:
    owner: Optional[int] = None
    admin: Optional[int] = None
    mod: Optional[int] = None
    staff: Optional[int] = None
    mute: Optional[int] = None


@dataclass(slots=True)
class GiveawaysConfig:
    channel_ids: List[int] = field(default_factory=list)
    entry_emoji: str = "🎉"

    @property
    def default_channel_id(self) -> Optional[int]:
        return self.channel_ids[0] if self.channel_ids else None


@dataclass(slots=True)
class StorageConfig:
    backend: str = "json"
    data_dir: Path = Path("data")
    mongodb_uri: Optional[str] = None
    database: str = "fsg_watcher"


@dataclass(slots=True)
class KeepaliveConfig:
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 3000


@dataclass(slots=True)
class Config:
    token: str
    application_id: int
    prefix: str = "!"
    development_guild_id: Optional[int] = None
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    roles: RolesConfig = field(default_factory=RolesConfig)
    giveaways: GiveawaysConfig = field(default_factory=GiveawaysConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    keepalive: KeepaliveConfig = field(default_factory=KeepaliveConfig)


def _require(data: Dict[str, Any], key: str) -> Any:
    if key not in data:
        raise ConfigError(f"Missing required config key: {key}")
    return data[key]

def _resolve_env_value(value: str, key: str) -> str:
    trimmed = value.strip()
    if trimmed.startswith("${") and trimmed.endswith("}"):
        env_name = trimmed[2:-1].strip()
        if not env_name:
            raise ConfigError(f"Environment reference for '{key}' is empty.")
        env_value = os.getenv(env_name)
        if env_value is None:
            raise ConfigError(
                f"Environment variable '{env_name}' referenced by '{key}' is not set."
            )
        return env_value
    return value


def _optional_id(value: Any, key: str) -> Optional[int]:
    if value in (None, "", 0):
        return None
    if isinstance(value, str):
        value = _resolve_env_value(value, key).strip()
        if not value:
            return None
    try:
        snowflake = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be an integer ID or null.") from exc
    if snowflake <= 0:
        raise ConfigError(f"{key} must be a positive integer.")
    return snowflake


def _parse_logging(data: Dict[str, Any]) -> LoggingConfig:
    level = str(data.get("level", "INFO"))
    return LoggingConfig(
        level=level,
        ban_log_channel_id=_optional_id(
            data.get("ban_log_channel_id"), "logging.ban_log_channel_id"
        ),
        message_log_channel_id=_optional_id(
            data.get("message_log_channel_id"), "logging.message_log_channel_id"
        ),
    )


def _parse_roles(data: Dict[str, Any]) -> RolesConfig:
    return RolesConfig(
        owner=_optional_id(data.get("owner"), "roles.owner"),
        admin=_optional_id(data.get("admin"), "roles.admin"),
        mod=_optional_id(data.get("mod"), "roles.mod"),
        staff=_optional_id(data.get("staff"), "roles.staff"),
        mute=_optional_id(data.get("mute"), "roles.mute"),
    )


def _parse_giveaways(data: Dict[str, Any]) -> GiveawaysConfig:
    channels_raw = data.get("channel_ids", [])
    if isinstance(channels_raw, str):
        # comma separated list, e.g. from an environment reference
        channels_raw = [
            part
            for part in _resolve_env_value(channels_raw, "giveaways.channel_ids").split(",")
            if part.strip()
        ]
    if not isinstance(channels_raw, list):
        raise ConfigError("giveaways.channel_ids must be a list of channel IDs.")
    channel_ids: List[int] = []
    for channel_id in channels_raw:
        resolved = _optional_id(
            channel_id.strip() if isinstance(channel_id, str) else channel_id,
            "giveaways.channel_ids",
        )
        if resolved is None:
            raise ConfigError(
                f"giveaways.channel_ids contains invalid channel id: {channel_id!r}"
            )
        channel_ids.append(resolved)
    entry_emoji = str(data.get("entry_emoji", "🎉")).strip()
    if not entry_emoji:
        raise ConfigError("giveaways.entry_emoji must not be empty.")
    return GiveawaysConfig(channel_ids=channel_ids, entry_emoji=entry_emoji)


def _parse_storage(data: Dict[str, Any]) -> StorageConfig:
    backend = str(data.get("backend", "json")).strip().lower()
    if backend not in STORAGE_BACKENDS:
        raise ConfigError(
            f"storage.backend must be one of {', '.join(STORAGE_BACKENDS)}; got {backend!r}."
        )
    data_dir = Path(str(data.get("data_dir", "data")))
    database = str(data.get("database", "fsg_watcher")).strip()
    mongodb_uri: Optional[str] = None
    if backend == "mongo":
        uri_raw = str(_require(data, "mongodb_uri"))
        mongodb_uri = _resolve_env_value(uri_raw, "storage.mongodb_uri").strip()
        if not mongodb_uri:
            raise ConfigError("storage.mongodb_uri must not be empty for the mongo backend.")
        if not database:
            raise ConfigError("storage.database must not be empty.")
    return StorageConfig(
        backend=backend,
        data_dir=data_dir,
        mongodb_uri=mongodb_uri,
        database=database or "fsg_watcher",
    )


def _parse_keepalive(data: Dict[str, Any]) -> KeepaliveConfig:
    enabled = bool(data.get("enabled", True))
    host = str(data.get("host", "0.0.0.0"))
    port_raw = data.get("port", 3000)
    if isinstance(port_raw, str):
        port_raw = _resolve_env_value(port_raw, "keepalive.port")
    try:
        port = int(port_raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError("keepalive.port must be an integer.") from exc
    if not 0 <= port <= 65535:
        raise ConfigError("keepalive.port must be between 0 and 65535.")
    return KeepaliveConfig(enabled=enabled, host=host, port=port)


def parse_config(data: Dict[str, Any]) -> Config:
    if not isinstance(data, dict):
        raise ConfigError("Configuration file must contain a mapping at the root.")

    token_raw = str(_require(data, "token"))
    token = _resolve_env_value(token_raw, "token").strip()
    if not token:
        raise ConfigError("token must not be empty.")
    application_id = _optional_id(_require(data, "application_id"), "application_id")
    if application_id is None:
        raise ConfigError("application_id must not be empty.")
    prefix = str(data.get("prefix", "!"))
    if not prefix.strip():
        raise ConfigError("prefix must not be empty.")

    return Config(
        token=token,
        application_id=application_id,
        prefix=prefix.strip(),
        development_guild_id=_optional_id(
            data.get("development_guild_id"), "development_guild_id"
        ),
        logging=_parse_logging(data.get("logging") or {}),
        roles=_parse_roles(data.get("roles") or {}),
        giveaways=_parse_giveaways(data.get("giveaways") or {}),
        storage=_parse_storage(data.get("storage") or {}),
        keepalive=_parse_keepalive(data.get("keepalive") or {}),
    )


def load_config(path: Path) -> Config:
    if not path.exists():
        raise ConfigError(f"Config file {path} does not exist.")

    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    return parse_config(data)
