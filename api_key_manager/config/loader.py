"""
Configuration management and loading.

Handles provider settings from YAML files and environment variables.
"""

import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml

from api_key_manager.core.backup import BackupSource, EnvBackupSource, StaticBackupSource
from api_key_manager.core.clock import Clock
from api_key_manager.core.engine import RotationEngine
from api_key_manager.core.policy import (
    ManualOnly,
    Periodic,
    PolicyRegistry,
    RotationSchedule,
    StaleCredentialAction,
)
from api_key_manager.core.store import CredentialRecord, CredentialStore

# Provider set and cadence of the legacy deployment
DEFAULT_PROVIDERS = ("zai", "anthropic", "google", "openai")
DEFAULT_PERIODIC = {"zai": timedelta(hours=5)}


@dataclass(frozen=True)
class ProviderConfig:
    """Startup configuration for a single provider."""
    name: str
    key: Optional[str] = None
    key_env: Optional[str] = None
    backup: Optional[str] = None
    backup_env: Optional[str] = None
    schedule: RotationSchedule = ManualOnly()
    on_stale: StaleCredentialAction = StaleCredentialAction.SERVE_STALE

    def __post_init__(self):
        """Validate that key and backup each come from one place."""
        if not self.name:
            raise ValueError("provider name cannot be empty")
        if self.key is not None and self.key_env is not None:
            raise ValueError(f"Provider '{self.name}' sets both 'key' and 'key_env'")
        if self.backup is not None and self.backup_env is not None:
            raise ValueError(f"Provider '{self.name}' sets both 'backup' and 'backup_env'")

    def initial_value(self, environ: Mapping[str, str]) -> Optional[str]:
        if self.key_env is not None:
            return environ.get(self.key_env) or None
        return self.key or None

    def backup_source(self, environ: Optional[Mapping[str, str]] = None) -> Optional[BackupSource]:
        if self.backup_env is not None:
            return EnvBackupSource(self.backup_env, environ=environ)
        if self.backup:
            return StaticBackupSource(self.backup)
        return None


@dataclass(frozen=True)
class KeyManagerConfig:
    """Complete provider configuration."""
    providers: Dict[str, ProviderConfig]

    def get_provider_config(self, provider: str) -> Optional[ProviderConfig]:
        return self.providers.get(provider)


def default_config() -> KeyManagerConfig:
    """Legacy provider set: Z.AI every 5 hours, everything else manual.

    Keys come from `<PROVIDER>_KEY` and backups from `<PROVIDER>_BACKUP_KEY`.
    """
    providers = {}
    for name in DEFAULT_PROVIDERS:
        interval = DEFAULT_PERIODIC.get(name)
        providers[name] = ProviderConfig(
            name=name,
            key_env=f"{name.upper()}_KEY",
            backup_env=f"{name.upper()}_BACKUP_KEY",
            schedule=Periodic(interval) if interval else ManualOnly()
        )
    return KeyManagerConfig(providers=providers)


def load_config(path: str) -> KeyManagerConfig:
    """Load and validate provider configuration from YAML file.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated KeyManagerConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Key manager config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    unknown_keys = set(raw_config.keys()) - {'providers'}
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    if 'providers' not in raw_config:
        raise ValueError("Missing required 'providers' section")

    providers_data = raw_config['providers']
    if not isinstance(providers_data, dict) or not providers_data:
        raise ValueError("'providers' must be a non-empty dictionary")

    providers = {}
    for name, provider_data in providers_data.items():
        if not isinstance(name, str):
            raise ValueError(f"Provider name must be a string, got {name!r}")
        if provider_data is None:
            provider_data = {}
        if not isinstance(provider_data, dict):
            raise ValueError(f"Provider '{name}' must be a dictionary")
        providers[name] = _parse_provider_config(name, provider_data, f"providers.{name}")

    return KeyManagerConfig(providers=providers)


def _parse_provider_config(name: str, data: Dict, path: str) -> ProviderConfig:
    """Parse and validate a single provider entry.

    Args:
        name: Provider identifier
        data: Provider configuration data
        path: Path for error messages

    Returns:
        Validated ProviderConfig

    Raises:
        ValueError: If configuration is invalid
    """
    allowed_keys = {'key', 'key_env', 'backup', 'backup_env', 'rotation', 'on_stale'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    for field_name in ('key', 'key_env', 'backup', 'backup_env'):
        value = data.get(field_name)
        if value is not None and not isinstance(value, str):
            raise ValueError(f"'{field_name}' in {path} must be a string")

    schedule = _parse_schedule(data.get('rotation', 'manual'), f"{path}.rotation")

    on_stale_str = data.get('on_stale', StaleCredentialAction.SERVE_STALE.value)
    if not isinstance(on_stale_str, str):
        raise ValueError(f"'on_stale' in {path} must be a string")
    try:
        on_stale = StaleCredentialAction(on_stale_str.lower())
    except ValueError:
        valid_actions = [action.value for action in StaleCredentialAction]
        raise ValueError(f"'on_stale' in {path} must be one of: {valid_actions}")

    return ProviderConfig(
        name=name,
        key=data.get('key'),
        key_env=data.get('key_env'),
        backup=data.get('backup'),
        backup_env=data.get('backup_env'),
        schedule=schedule,
        on_stale=on_stale
    )


def _parse_schedule(data, path: str) -> RotationSchedule:
    """Parse `manual` or `{interval_hours|interval_minutes: n}`."""
    if isinstance(data, str):
        if data.lower() == 'manual':
            return ManualOnly()
        raise ValueError(f"{path} must be 'manual' or an interval mapping")

    if not isinstance(data, dict):
        raise ValueError(f"{path} must be 'manual' or an interval mapping")

    allowed_keys = {'interval_hours', 'interval_minutes'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
    if len(data) != 1:
        raise ValueError(f"{path} must set exactly one of: {sorted(allowed_keys)}")

    unit, amount = next(iter(data.items()))
    if isinstance(amount, bool) or not isinstance(amount, (int, float)) or amount <= 0:
        raise ValueError(f"'{unit}' in {path} must be > 0")

    if unit == 'interval_hours':
        return Periodic(timedelta(hours=amount))
    return Periodic(timedelta(minutes=amount))


def build_engine(
    config: KeyManagerConfig,
    clock: Optional[Clock] = None,
    environ: Optional[Mapping[str, str]] = None
) -> RotationEngine:
    """Create the engine for a configuration.

    Providers with neither an initial value nor a resolvable backup are
    left out, so every operation on them reports NOT_CONFIGURED.

    Args:
        config: Provider configuration
        clock: Time source (defaults to system time)
        environ: Environment mapping (defaults to os.environ)

    Returns:
        A RotationEngine ready to hand to the transport layer
    """
    env = os.environ if environ is None else environ
    records = {}
    policies = PolicyRegistry()
    for name, provider in config.providers.items():
        backup_source = provider.backup_source(environ)
        value = provider.initial_value(env)
        if value is None and backup_source is not None:
            value = backup_source.fetch()
        if value is None:
            continue
        records[name] = CredentialRecord(active_value=value, backup_source=backup_source)
        policies.register(name, provider.schedule, provider.on_stale)

    return RotationEngine(CredentialStore(records), policies, clock=clock)
