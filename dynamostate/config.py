"""Configuration loading for dynamostate."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .dynamo.backend import Account
from .sync.app_state import (
    DEFAULT_ACTIVE_PERIOD,
    DEFAULT_IDLE_PERIOD,
    DEFAULT_UPDATE_PERIOD,
    AppState,
    make_app_state,
)


@dataclass
class AccountConfig:
    access_key: str = ""
    secret_key: str = ""
    session_token: str | None = None
    region: str = ""
    table_name: str = ""
    endpoint_url: str | None = None  # e.g. http://localhost:8000 for DynamoDB Local


@dataclass
class AppStateConfig:
    """Item layout and timing for the synchronizer."""

    key_name: str = "key"
    value_attribute_name: str = "value"
    save_count_attribute_name: str = "saveCount"
    save_count_key: str = "saveCount"
    key_counts_key: str = "keyCounts"
    key_prefix: str | None = None
    idle_period_ms: int = DEFAULT_IDLE_PERIOD
    update_period_ms: int = DEFAULT_UPDATE_PERIOD
    active_period_ms: int = DEFAULT_ACTIVE_PERIOD


@dataclass
class SyncConfig:
    """Configuration for the session driver."""

    interval_seconds: float = 1.0
    max_conflict_retries: int = 5
    conflict_backoff_seconds: float = 0.1
    max_queued: int = 16
    request_timeout_seconds: float = 30.0
    snapshot_path: str = ""  # Empty disables the local snapshot


@dataclass
class Config:
    account: AccountConfig = field(default_factory=AccountConfig)
    app_state: AppStateConfig = field(default_factory=AppStateConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)

    def make_account(self) -> Account:
        return Account(
            access_key=self.account.access_key,
            secret_key=self.account.secret_key,
            region=self.account.region,
            table_name=self.account.table_name,
            session_token=self.account.session_token,
            endpoint_url=self.account.endpoint_url,
        )

    def make_app_state(self) -> AppState:
        layout = self.app_state
        return make_app_state(
            self.make_account(),
            key_name=layout.key_name,
            value_attribute_name=layout.value_attribute_name,
            save_count_attribute_name=layout.save_count_attribute_name,
            save_count_key=layout.save_count_key,
            key_counts_key=layout.key_counts_key,
            key_prefix=layout.key_prefix,
            idle_period=layout.idle_period_ms,
            update_period=layout.update_period_ms,
            active_period=layout.active_period_ms,
            max_conflict_retries=self.sync.max_conflict_retries,
            conflict_backoff=self.sync.conflict_backoff_seconds,
        )


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with DYNAMOSTATE_ prefix."""
    return os.environ.get(f"DYNAMOSTATE_{key}", default)


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Standard AWS variables fill in whatever the file left empty
    if not config.account.access_key:
        config.account.access_key = os.environ.get("AWS_ACCESS_KEY_ID", "")
    if not config.account.secret_key:
        config.account.secret_key = os.environ.get("AWS_SECRET_ACCESS_KEY", "")
    if not config.account.session_token:
        config.account.session_token = os.environ.get("AWS_SESSION_TOKEN")
    if not config.account.region:
        config.account.region = os.environ.get(
            "AWS_REGION", os.environ.get("AWS_DEFAULT_REGION", "")
        )

    # Account overrides
    if access_key := _get_env("ACCESS_KEY"):
        config.account.access_key = access_key
    if secret_key := _get_env("SECRET_KEY"):
        config.account.secret_key = secret_key
    if region := _get_env("REGION"):
        config.account.region = region
    if table := _get_env("TABLE"):
        config.account.table_name = table
    if endpoint_url := _get_env("ENDPOINT_URL"):
        config.account.endpoint_url = endpoint_url

    # App state overrides
    if key_prefix := _get_env("KEY_PREFIX"):
        config.app_state.key_prefix = key_prefix
    if idle_period := _get_env("IDLE_PERIOD_MS"):
        config.app_state.idle_period_ms = int(idle_period)
    if update_period := _get_env("UPDATE_PERIOD_MS"):
        config.app_state.update_period_ms = int(update_period)

    # Sync overrides
    if interval := _get_env("SYNC_INTERVAL"):
        config.sync.interval_seconds = float(interval)
    if snapshot_path := _get_env("SNAPSHOT_PATH"):
        config.sync.snapshot_path = snapshot_path

    return config


def _section(data: dict, name: str, defaults: Any) -> dict[str, Any]:
    """Merge a YAML section over a dataclass's current values."""
    section = data.get(name) or {}
    merged = dict(vars(defaults))
    for key, value in section.items():
        if key not in merged:
            raise ValueError(f"Unknown {name} setting: {key}")
        merged[key] = value
    return merged


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            if "account" in data:
                config.account = AccountConfig(**_section(data, "account", config.account))

            if "app_state" in data:
                config.app_state = AppStateConfig(
                    **_section(data, "app_state", config.app_state)
                )

            if "sync" in data:
                config.sync = SyncConfig(**_section(data, "sync", config.sync))

    return _apply_env_overrides(config)
