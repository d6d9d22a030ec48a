"""Configuration loader with environment variable support."""
import copy
import os
from pathlib import Path
from typing import Any, Dict, List, Optional
import yaml
from dotenv import load_dotenv

from utils import InvalidWalletAddressError, validate_wallet_address

# Environment variable prefix
ENV_PREFIX = "PNL_TRACKER_"

# Default configuration values
DEFAULTS: Dict[str, Any] = {
    # username -> list of wallet addresses
    "accounts": {},
    # slug -> {display_name, image, accounts: {username: [addresses]}}
    "personas": {},
    "sync": {
        "interval_minutes": 5,
        "trade_limit": 100,
        "run_on_start": True,
    },
    "backfill": {
        "carry_forward": False,
    },
    "api": {
        "data_api_url": "https://data-api.polymarket.com",
        "profile_url": "https://polymarket.com/profile",
        "max_retries": 3,
        "min_wait": 1,
        "max_wait": 30,
        "timeout": 30,
    },
    "database": {
        "path": "pnl_tracker.db",
    },
    "server": {
        "host": "0.0.0.0",
        "port": 8080,
    },
    "reporting": {
        "log_level": "INFO",
        "webhook_url": "",
    },
}

# Mapping of environment variables to config paths
ENV_MAPPING = {
    "SYNC_INTERVAL_MINUTES": "sync.interval_minutes",
    "TRADE_LIMIT": "sync.trade_limit",
    "RUN_ON_START": "sync.run_on_start",
    "BACKFILL_CARRY_FORWARD": "backfill.carry_forward",
    "API_MAX_RETRIES": "api.max_retries",
    "API_TIMEOUT": "api.timeout",
    "DATA_API_URL": "api.data_api_url",
    "DB_PATH": "database.path",
    "HOST": "server.host",
    "PORT": "server.port",
    "LOG_LEVEL": "reporting.log_level",
    "WEBHOOK_URL": "reporting.webhook_url",
}


class ConfigError(ValueError):
    """Raised when the configuration is invalid."""
    pass


def _deep_merge(base: Dict, override: Dict) -> Dict:
    """Deep merge two dictionaries."""
    result = copy.deepcopy(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _set_nested(config: Dict, path: str, value: Any) -> None:
    """Set a nested config value using dot notation path."""
    keys = path.split(".")
    current = config
    for key in keys[:-1]:
        if key not in current:
            current[key] = {}
        current = current[key]
    current[keys[-1]] = value


def _parse_env_value(value: str, current_value: Any) -> Any:
    """Parse environment variable value based on current config type."""
    if isinstance(current_value, bool):
        return value.lower() in ("true", "1", "yes", "on")
    elif isinstance(current_value, int):
        return int(value)
    elif isinstance(current_value, float):
        return float(value)
    elif isinstance(current_value, list):
        # Split comma-separated values
        return [v.strip() for v in value.split(",") if v.strip()]
    return value


def _get_nested(config: Dict, path: str, default: Any = None) -> Any:
    """Get a nested config value using dot notation path."""
    keys = path.split(".")
    current = config
    for key in keys:
        if not isinstance(current, dict) or key not in current:
            return default
        current = current[key]
    return current


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from defaults, config file, and environment variables.

    Priority (highest to lowest):
    1. Environment variables (PNL_TRACKER_*)
    2. Config file (config.yaml)
    3. Default values

    Args:
        config_path: Optional path to config file. If not provided, looks for
                    config.yaml in current directory.

    Returns:
        Merged configuration dictionary
    """
    config = _deep_merge({}, DEFAULTS)

    explicit_config_path = config_path is not None
    if not explicit_config_path:
        load_dotenv()
    if config_path is None:
        config_path = os.getenv(f"{ENV_PREFIX}CONFIG_PATH", "config.yaml")

    config_file = Path(config_path)
    if config_file.exists():
        with open(config_file) as f:
            file_config = yaml.safe_load(f) or {}
            config = _deep_merge(config, file_config)

    for env_suffix, config_path_str in ENV_MAPPING.items():
        env_var = f"{ENV_PREFIX}{env_suffix}"
        env_value = os.getenv(env_var)
        if env_value is not None:
            current_value = _get_nested(config, config_path_str)
            parsed_value = _parse_env_value(env_value, current_value)
            _set_nested(config, config_path_str, parsed_value)

    return config


def _check_addresses(username: str, addresses: Any) -> None:
    if isinstance(addresses, str):
        addresses = [addresses]
    if not addresses:
        raise ConfigError(f"Account '{username}' has no addresses")
    for address in addresses:
        try:
            validate_wallet_address(address)
        except InvalidWalletAddressError as e:
            raise ConfigError(f"Account '{username}': {e}")


def validate_config(config: Dict[str, Any]) -> None:
    """Validate a loaded configuration.

    Raises:
        ConfigError: If any setting is unusable
    """
    sync = config.get("sync", {})
    if int(sync.get("interval_minutes", 0)) <= 0:
        raise ConfigError("sync.interval_minutes must be positive")
    if int(sync.get("trade_limit", 0)) <= 0:
        raise ConfigError("sync.trade_limit must be positive")

    port = config.get("server", {}).get("port")
    if not isinstance(port, int) or not 0 < port < 65536:
        raise ConfigError(f"server.port must be between 1 and 65535, got {port!r}")

    if not get_db_path(config):
        raise ConfigError("database.path must not be empty")

    accounts = config.get("accounts") or {}
    personas = config.get("personas") or {}
    if not accounts and not personas:
        raise ConfigError("No accounts or personas configured")

    for username, addresses in accounts.items():
        _check_addresses(username, addresses)

    for slug, persona in personas.items():
        if not isinstance(persona, dict):
            raise ConfigError(f"Persona '{slug}' must be a mapping")
        if not persona.get("display_name"):
            raise ConfigError(f"Persona '{slug}' has no display_name")
        persona_accounts = persona.get("accounts") or {}
        if not persona_accounts:
            raise ConfigError(f"Persona '{slug}' has no accounts")
        for username, addresses in persona_accounts.items():
            _check_addresses(username, addresses)


def get_all_accounts(config: Dict[str, Any]) -> Dict[str, List[str]]:
    """Merge standalone accounts with persona accounts.

    Returns:
        Mapping of username to its lowercased, de-duplicated addresses
    """
    merged: Dict[str, List[str]] = {}

    def add(username: str, addresses: Any) -> None:
        if isinstance(addresses, str):
            addresses = [addresses]
        bucket = merged.setdefault(username, [])
        for address in addresses or []:
            normalized = address.lower()
            if normalized not in bucket:
                bucket.append(normalized)

    for username, addresses in (config.get("accounts") or {}).items():
        add(username, addresses)
    for persona in (config.get("personas") or {}).values():
        for username, addresses in (persona.get("accounts") or {}).items():
            add(username, addresses)
    return merged


def get_db_path(config: Dict[str, Any]) -> str:
    """Get database path from config."""
    return config.get("database", {}).get("path", DEFAULTS["database"]["path"])


def get_webhook_url(config: Dict[str, Any]) -> Optional[str]:
    """Get webhook URL from config, returns None if empty or placeholder.

    Note: Treats 'placeholder', 'disabled', and 'none' as disabled for
    compatibility with Secret Manager which doesn't allow empty values.
    """
    url = config.get("reporting", {}).get("webhook_url", "")
    if not url or url.lower() in ("placeholder", "disabled", "none", "null"):
        return None
    return url
