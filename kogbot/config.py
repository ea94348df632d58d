import os
from dataclasses import dataclass

import yaml

CONFIG_ENV_KEY = "CONFIG_PATH"
DEFAULT_CONFIG_PATH = "config.yml"
DEFAULT_MEMBER_ROLE = "KoG"
DEFAULT_REFRESH_CONCURRENCY = 5


@dataclass
class BotConfig:
    token: str
    log_level: str
    database_path: str
    log_channel_id: int | None = None
    command_channel_id: int | None = None
    member_role_name: str = DEFAULT_MEMBER_ROLE
    guild_id: int | None = None
    refresh_concurrency: int = DEFAULT_REFRESH_CONCURRENCY
    refresh_timezone: str | None = None
    log_file: str | None = None


def _optional_id(data: dict, key: str) -> int | None:
    value = data.get(key)
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Config '{key}' must be a numeric Discord id") from exc


def load_config(path: str | None = None) -> BotConfig:
    config_path = path or os.environ.get(CONFIG_ENV_KEY, DEFAULT_CONFIG_PATH)
    with open(config_path, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}

    token = str(data.get("token") or "").strip()
    if not token:
        raise ValueError("Config missing 'token'")

    log_level = str(data.get("log_level") or "INFO").upper()
    valid_levels = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
    if log_level not in valid_levels:
        raise ValueError(
            f"Invalid log_level '{log_level}'. Must be one of {sorted(valid_levels)}"
        )

    database_path = str(data.get("database_path") or "kog.db")

    member_role_name = str(data.get("member_role_name") or DEFAULT_MEMBER_ROLE)

    raw_concurrency = data.get("refresh_concurrency")
    if raw_concurrency in (None, ""):
        raw_concurrency = DEFAULT_REFRESH_CONCURRENCY
    try:
        refresh_concurrency = int(raw_concurrency)
    except (TypeError, ValueError) as exc:
        raise ValueError("Config 'refresh_concurrency' must be an integer") from exc
    if refresh_concurrency < 1:
        raise ValueError("Config 'refresh_concurrency' must be at least 1")

    refresh_timezone = data.get("refresh_timezone") or None
    log_file = data.get("log_file") or None

    return BotConfig(
        token=token,
        log_level=log_level,
        database_path=database_path,
        log_channel_id=_optional_id(data, "log_channel_id"),
        command_channel_id=_optional_id(data, "command_channel_id"),
        member_role_name=member_role_name,
        guild_id=_optional_id(data, "guild_id"),
        refresh_concurrency=refresh_concurrency,
        refresh_timezone=str(refresh_timezone) if refresh_timezone else None,
        log_file=str(log_file) if log_file else None,
    )
