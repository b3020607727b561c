"""
Configuration management and loading.

Handles cap thresholds, alert channels and provider credentials.
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from ai_spend_guard.core.alerts import AlertChannels
from ai_spend_guard.core.caps import CapConfig, CapScope
from ai_spend_guard.core.rollups import DEFAULT_RETENTION_DAYS
from ai_spend_guard.storage.models import Provider


DEFAULT_DEBOUNCE_MINUTES = 60
DEFAULT_CRON_LOOKBACK_HOURS = 48


@dataclass(frozen=True)
class ProviderConfig:
    """Ingestion settings for one provider."""
    enabled: bool = False
    credential_env: Optional[str] = None


@dataclass(frozen=True)
class MonitorConfig:
    """Complete spend monitor configuration."""
    caps: CapConfig
    channels: Optional[AlertChannels] = None
    providers: Dict[str, ProviderConfig] = field(default_factory=dict)
    debounce_window: timedelta = timedelta(minutes=DEFAULT_DEBOUNCE_MINUTES)
    retention_days: int = DEFAULT_RETENTION_DAYS
    cron_lookback_hours: int = DEFAULT_CRON_LOOKBACK_HOURS

    def __post_init__(self):
        """Validate numeric settings."""
        if self.retention_days < 0:
            raise ValueError("retention_days cannot be negative")
        if self.cron_lookback_hours <= 0:
            raise ValueError("cron_lookback_hours must be > 0")
        if self.debounce_window < timedelta(0):
            raise ValueError("debounce window cannot be negative")


def load_monitor_config(path: str) -> MonitorConfig:
    """Load and validate monitor configuration from a YAML file.

    Every misconfiguration is fatal here so that the engine never runs
    with caps or credentials it cannot trust.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated MonitorConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Monitor config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    return parse_monitor_config(raw_config)


def parse_monitor_config(raw_config: Dict[str, Any]) -> MonitorConfig:
    """Validate an already-decoded configuration mapping.

    Raises:
        ValueError: If configuration is invalid
    """
    allowed_top_keys = {'caps', 'alerts', 'providers', 'retention_days', 'cron_lookback_hours'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    if 'caps' not in raw_config:
        raise ValueError("Missing required 'caps' section")
    caps = _parse_caps(raw_config['caps'])

    channels = None
    debounce_minutes = DEFAULT_DEBOUNCE_MINUTES
    alerts_data = raw_config.get('alerts') or {}
    if not isinstance(alerts_data, dict):
        raise ValueError("'alerts' must be a dictionary")
    if alerts_data:
        channels, debounce_minutes = _parse_alerts(alerts_data)

    providers_data = raw_config.get('providers') or {}
    if not isinstance(providers_data, dict):
        raise ValueError("'providers' must be a dictionary")
    providers = {}
    for name, provider_data in providers_data.items():
        providers[name] = _parse_provider(name, provider_data)

    retention_days = _parse_int(raw_config.get('retention_days', DEFAULT_RETENTION_DAYS), "retention_days")
    lookback = _parse_int(
        raw_config.get('cron_lookback_hours', DEFAULT_CRON_LOOKBACK_HOURS), "cron_lookback_hours"
    )

    return MonitorConfig(
        caps=caps,
        channels=channels,
        providers=providers,
        debounce_window=timedelta(minutes=debounce_minutes),
        retention_days=retention_days,
        cron_lookback_hours=lookback,
    )


def _parse_caps(data: Any) -> CapConfig:
    """Parse the caps section into a CapConfig.

    Scopes or levels left out default to zero (not configured).
    """
    if not isinstance(data, dict):
        raise ValueError("'caps' must be a dictionary")

    allowed_scopes = {scope.value for scope in CapScope}
    unknown_scopes = set(data.keys()) - allowed_scopes
    if unknown_scopes:
        raise ValueError(f"Unknown cap scopes: {unknown_scopes}")

    values: Dict[str, Decimal] = {}
    for scope_name, levels in data.items():
        if levels is None:
            continue
        if not isinstance(levels, dict):
            raise ValueError(f"caps.{scope_name} must be a dictionary")
        unknown_levels = set(levels.keys()) - {'soft', 'hard'}
        if unknown_levels:
            raise ValueError(f"Unknown keys in caps.{scope_name}: {unknown_levels}")
        for level, value in levels.items():
            path = f"caps.{scope_name}.{level}"
            amount = _parse_amount(value, path)
            if amount < 0:
                raise ValueError(f"'{path}' cannot be negative")
            values[f"{scope_name}_{level}"] = amount

    return CapConfig(**values)


def _parse_alerts(data: Dict[str, Any]) -> Tuple[Optional[AlertChannels], int]:
    """Parse the alerts section into channels and a debounce interval in minutes."""
    allowed_keys = {'slack_webhook', 'email_webhook', 'hard_cap_webhook', 'debounce_minutes'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in alerts: {unknown_keys}")

    urls = {}
    for key in ('slack_webhook', 'email_webhook', 'hard_cap_webhook'):
        value = data.get(key)
        if value is None or value == "":
            continue
        if not isinstance(value, str) or not value.startswith(("http://", "https://")):
            raise ValueError(f"'alerts.{key}' must be an http(s) URL")
        urls[key] = value

    debounce_minutes = _parse_int(data.get('debounce_minutes', DEFAULT_DEBOUNCE_MINUTES), "alerts.debounce_minutes")
    if debounce_minutes < 0:
        raise ValueError("'alerts.debounce_minutes' cannot be negative")

    channels = AlertChannels(**urls)
    return (channels if channels.is_configured else None), debounce_minutes


def _parse_provider(name: str, data: Any) -> ProviderConfig:
    """Parse and validate one provider entry, checking its credential is present."""
    path = f"providers.{name}"
    if name not in {provider.value for provider in Provider}:
        raise ValueError(f"Unknown provider '{name}'")
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    unknown_keys = set(data.keys()) - {'enabled', 'credential_env'}
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    enabled = data.get('enabled', False)
    if not isinstance(enabled, bool):
        raise ValueError(f"'{path}.enabled' must be a boolean")

    credential_env = data.get('credential_env')
    if credential_env is not None and not isinstance(credential_env, str):
        raise ValueError(f"'{path}.credential_env' must be a string")

    if enabled:
        if not credential_env:
            raise ValueError(f"Provider '{name}' enabled without 'credential_env'")
        if not os.environ.get(credential_env):
            raise ValueError(
                f"Provider '{name}' enabled but environment variable {credential_env} is not set"
            )

    return ProviderConfig(enabled=enabled, credential_env=credential_env)


def _parse_amount(value: Any, path: str) -> Decimal:
    """Coerce a YAML number to Decimal without binary float artifacts."""
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{path}' must be a number")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")


def _parse_int(value: Any, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{path}' must be an integer")
    return value
