"""
TenantScope - Configuration Management

Supports loading configuration from:
1. YAML config file (--config)
2. Environment variables (TENANTSCOPE_*, MS365_*)
3. Command-line arguments (highest priority)

JSON config files are accepted too, since JSON is valid YAML.

Config file example:
```yaml
tenant_id: ${MS365_TENANT_ID}
client_id: ${MS365_CLIENT_ID}
output: "./tenantscope-output"

thresholds:
  inactiveDays: 90
  staleDeviceDays: 60
  retryBackoff: linear

licensePrices:
  SPE_E3: 36.00
currency: USD
```
"""
import os
import re
import stat
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, Any, Optional

import yaml  # type: ignore[import-untyped]

from .constants import (
    DEFAULT_AUDIT_LOG_DAYS,
    DEFAULT_AUDIT_LOG_PAGE_LIMIT,
    DEFAULT_CREDENTIAL_CRITICAL_DAYS,
    DEFAULT_CREDENTIAL_WARNING_DAYS,
    DEFAULT_CURRENCY,
    DEFAULT_EXPORT_MAX_POLLS,
    DEFAULT_EXPORT_POLL_INTERVAL,
    DEFAULT_GROUP_MEMBER_PAGE_LIMIT,
    DEFAULT_HIGH_STORAGE_THRESHOLD_GB,
    DEFAULT_INACTIVE_DAYS,
    DEFAULT_INACTIVE_SITE_DAYS,
    DEFAULT_INACTIVE_TEAM_DAYS,
    DEFAULT_NONCOMPLIANT_INSIGHT_THRESHOLD,
    DEFAULT_POOR_ENDPOINT_SCORE,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_BACKOFF,
    DEFAULT_RETRY_BASE_DELAY,
    DEFAULT_RISK_DETECTION_DAYS,
    DEFAULT_SIGN_IN_DAYS,
    DEFAULT_SIGN_IN_PAGE_LIMIT,
    DEFAULT_SIGNATURE_AGE_DAYS,
    DEFAULT_SLOW_BOOT_SECONDS,
    DEFAULT_STALE_DEVICE_DAYS,
    DEFAULT_STALE_GUEST_DAYS,
    DEFAULT_URGENCY_CRITICAL_DAYS,
    DEFAULT_URGENCY_HIGH_DAYS,
    DEFAULT_URGENCY_MEDIUM_DAYS,
    DEFAULT_VULNERABILITY_PAGE_LIMIT,
    RETRY_BACKOFF_STRATEGIES,
)
from .utils import RetryPolicy

logger = logging.getLogger(__name__)


# Default config file locations (checked in order)
DEFAULT_CONFIG_PATHS = [
    './tenantscope.yaml',
    './tenantscope.yml',
    './tenantscope.json',
    '~/.tenantscope/config.yaml',
    '~/.tenantscope/config.yml',
]

# Environment variable prefix
ENV_PREFIX = 'TENANTSCOPE_'

# Mapping from config keys to env vars
ENV_VAR_MAPPING = {
    'tenant_id': 'MS365_TENANT_ID',
    'client_id': 'MS365_CLIENT_ID',
    'output': 'TENANTSCOPE_OUTPUT',
    'log_level': 'TENANTSCOPE_LOG_LEVEL',
    'currency': 'TENANTSCOPE_CURRENCY',
    'collectors.only': 'TENANTSCOPE_ONLY',
    'collectors.skip': 'TENANTSCOPE_SKIP',
    'thresholds.inactiveDays': 'TENANTSCOPE_INACTIVE_DAYS',
    'thresholds.staleDeviceDays': 'TENANTSCOPE_STALE_DEVICE_DAYS',
    'thresholds.maxRetries': 'TENANTSCOPE_MAX_RETRIES',
    'thresholds.retryBackoff': 'TENANTSCOPE_RETRY_BACKOFF',
}


# =============================================================================
# Collection Settings
# =============================================================================

@dataclass
class CollectionSettings:
    """
    Thresholds and limits shared by every collector.

    Built from the `thresholds:` block of the config file. Keys may be
    camelCase (inactiveDays) or snake_case (inactive_days).
    """
    inactive_days: int = DEFAULT_INACTIVE_DAYS
    stale_device_days: int = DEFAULT_STALE_DEVICE_DAYS
    stale_guest_days: int = DEFAULT_STALE_GUEST_DAYS
    risk_detection_days: int = DEFAULT_RISK_DETECTION_DAYS
    signature_age_days: int = DEFAULT_SIGNATURE_AGE_DAYS
    sign_in_days: int = DEFAULT_SIGN_IN_DAYS
    audit_log_days: int = DEFAULT_AUDIT_LOG_DAYS
    credential_critical_days: int = DEFAULT_CREDENTIAL_CRITICAL_DAYS
    credential_warning_days: int = DEFAULT_CREDENTIAL_WARNING_DAYS
    urgency_critical_days: int = DEFAULT_URGENCY_CRITICAL_DAYS
    urgency_high_days: int = DEFAULT_URGENCY_HIGH_DAYS
    urgency_medium_days: int = DEFAULT_URGENCY_MEDIUM_DAYS
    inactive_site_days: int = DEFAULT_INACTIVE_SITE_DAYS
    inactive_team_days: int = DEFAULT_INACTIVE_TEAM_DAYS
    high_storage_threshold_gb: float = DEFAULT_HIGH_STORAGE_THRESHOLD_GB
    noncompliant_insight_threshold: int = DEFAULT_NONCOMPLIANT_INSIGHT_THRESHOLD
    slow_boot_seconds: int = DEFAULT_SLOW_BOOT_SECONDS
    poor_endpoint_score: int = DEFAULT_POOR_ENDPOINT_SCORE
    group_member_page_limit: int = DEFAULT_GROUP_MEMBER_PAGE_LIMIT
    sign_in_page_limit: int = DEFAULT_SIGN_IN_PAGE_LIMIT
    audit_log_page_limit: int = DEFAULT_AUDIT_LOG_PAGE_LIMIT
    vulnerability_page_limit: int = DEFAULT_VULNERABILITY_PAGE_LIMIT
    max_retries: int = DEFAULT_RETRY_ATTEMPTS
    retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY
    retry_backoff: str = DEFAULT_RETRY_BACKOFF
    export_poll_interval: float = DEFAULT_EXPORT_POLL_INTERVAL
    export_max_polls: int = DEFAULT_EXPORT_MAX_POLLS
    license_prices: Dict[str, float] = field(default_factory=dict)
    currency: str = DEFAULT_CURRENCY

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]]) -> 'CollectionSettings':
        """Build settings from a merged config dict, falling back to defaults."""
        config = config or {}
        thresholds = config.get('thresholds') or {}
        if not isinstance(thresholds, dict):
            logger.warning("Config 'thresholds' is not a mapping; using defaults")
            thresholds = {}

        values: Dict[str, Any] = {}
        known = {f.name: f for f in fields(cls) if f.name not in ('license_prices', 'currency')}
        for raw_key, raw_value in thresholds.items():
            name = _snake_case(str(raw_key))
            if name not in known:
                logger.warning(f"Unknown threshold '{raw_key}' ignored")
                continue
            default = known[name].default
            values[name] = _coerce_setting(name, raw_value, default)

        prices = config.get('license_prices', config.get('licensePrices')) or {}
        values['license_prices'] = _coerce_prices(prices)

        currency = config.get('currency')
        if currency:
            values['currency'] = str(currency)

        return cls(**values)

    def retry_policy(self) -> RetryPolicy:
        """Retry policy for API clients."""
        return RetryPolicy(
            max_attempts=self.max_retries,
            base_delay=self.retry_base_delay,
            strategy=self.retry_backoff,
        )


# Page limits and attempt counts must be at least one
_MIN_ONE = {
    'group_member_page_limit', 'sign_in_page_limit', 'audit_log_page_limit',
    'vulnerability_page_limit', 'max_retries', 'export_max_polls',
}


def _snake_case(name: str) -> str:
    """inactiveDays -> inactive_days, highStorageThresholdGB -> high_storage_threshold_gb."""
    name = re.sub(r'([a-z0-9])([A-Z])', r'\1_\2', name)
    name = re.sub(r'([A-Z]+)([A-Z][a-z])', r'\1_\2', name)
    return name.lower()


def _coerce_setting(name: str, value: Any, default: Any) -> Any:
    """Validate a threshold value against its default's type."""
    if isinstance(default, str):
        text = str(value).strip().lower()
        if name == 'retry_backoff' and text not in RETRY_BACKOFF_STRATEGIES:
            logger.warning(f"Invalid value for {name}: {value!r}; using default {default!r}")
            return default
        return text

    try:
        if isinstance(value, bool):
            raise ValueError("boolean")
        number = float(value) if isinstance(default, float) else int(str(value).strip())
    except (TypeError, ValueError):
        logger.warning(f"Invalid value for {name}: {value!r}; using default {default!r}")
        return default

    minimum = 1 if name in _MIN_ONE else 0
    if number < minimum:
        logger.warning(f"Invalid value for {name}: {value!r}; using default {default!r}")
        return default
    return number


def _coerce_prices(prices: Any) -> Dict[str, float]:
    if not isinstance(prices, dict):
        logger.warning("Config 'licensePrices' is not a mapping; ignoring")
        return {}
    result = {}
    for sku, price in prices.items():
        try:
            result[str(sku)] = float(price)
        except (TypeError, ValueError):
            logger.warning(f"Invalid license price for {sku}: {price!r}; ignoring")
    return result


# =============================================================================
# Config Sources
# =============================================================================

def _substitute_env_vars(value: Any) -> Any:
    """Substitute ${ENV_VAR} patterns in string values."""
    if isinstance(value, str):
        # Pattern: ${VAR_NAME} or ${VAR_NAME:-default}
        pattern = r'\$\{([^}:]+)(?::-([^}]*))?\}'

        def replace(match):
            var_name = match.group(1)
            default = match.group(2) or ''
            return os.environ.get(var_name, default)

        return re.sub(pattern, replace, value)
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def _set_nested(data: Dict, key_path: str, value: Any) -> None:
    """Set a nested value in a dict using dot notation."""
    keys = key_path.split('.')
    for key in keys[:-1]:
        data = data.setdefault(key, {})
    data[keys[-1]] = value


def _split_list(value: Any) -> Any:
    """Turn a comma-separated string into a list."""
    if isinstance(value, str):
        return [v.strip() for v in value.split(',') if v.strip()]
    return value


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load configuration from a YAML (or JSON) file."""
    path = Path(config_path).expanduser()

    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    # Security check: warn if config file has loose permissions
    file_mode = path.stat().st_mode
    if file_mode & (stat.S_IRWXG | stat.S_IRWXO):  # Group or world access
        logger.warning(f"Config file {config_path} has loose permissions. "
                       f"Consider: chmod 600 {config_path}")

    logger.info(f"Loading config from {path}")

    with open(path, encoding='utf-8') as f:
        config = yaml.safe_load(f) or {}

    if not isinstance(config, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping")

    # Substitute environment variables
    return _substitute_env_vars(config)


def find_default_config() -> Optional[str]:
    """Find a config file in default locations."""
    for path in DEFAULT_CONFIG_PATHS:
        expanded = Path(path).expanduser()
        if expanded.exists():
            return str(expanded)
    return None


def load_env_config() -> Dict[str, Any]:
    """Load configuration from environment variables."""
    config: Dict[str, Any] = {}

    for config_key, env_var in ENV_VAR_MAPPING.items():
        value = os.environ.get(env_var)
        if value is not None:
            if config_key in ('collectors.only', 'collectors.skip'):
                value = _split_list(value)
            _set_nested(config, config_key, value)

    return config


def merge_configs(*configs: Dict[str, Any]) -> Dict[str, Any]:
    """Merge multiple config dicts. Later configs override earlier ones."""
    result: Dict[str, Any] = {}

    for config in configs:
        for key, value in config.items():
            if isinstance(value, dict) and isinstance(result.get(key), dict):
                result[key] = merge_configs(result[key], value)
            elif value is not None:
                result[key] = value

    return result


def args_to_config(args) -> Dict[str, Any]:
    """Convert argparse args to config dict format."""
    config: Dict[str, Any] = {}

    arg_mapping = {
        'tenant_id': 'tenant_id',
        'client_id': 'client_id',
        'output': 'output',
        'log_level': 'log_level',
        'only': 'collectors.only',
        'skip': 'collectors.skip',
    }

    for arg_name, config_key in arg_mapping.items():
        value = getattr(args, arg_name, None)
        if value is not None:
            if arg_name in ('only', 'skip'):
                value = _split_list(value)
            _set_nested(config, config_key, value)

    return config


def config_to_args(config: Dict[str, Any], args) -> None:
    """Apply config values to argparse args object."""
    for key in ('tenant_id', 'client_id', 'output', 'log_level'):
        if config.get(key) is not None:
            setattr(args, key, config[key])

    collectors = config.get('collectors') or {}
    if collectors.get('only') is not None:
        args.only = _split_list(collectors['only'])
    if collectors.get('skip') is not None:
        args.skip = _split_list(collectors['skip'])


def load_config(args) -> Dict[str, Any]:
    """
    Load configuration from all sources and merge them.

    Priority (highest to lowest):
    1. CLI arguments
    2. Config file (--config or default location)
    3. Environment variables

    Returns merged config dict.
    """
    configs = []

    # 1. Environment variables (lowest priority)
    env_config = load_env_config()
    if env_config:
        logger.debug("Loaded config from environment variables")
        configs.append(env_config)

    # 2. Config file
    config_path = getattr(args, 'config', None)
    if config_path:
        configs.append(load_config_file(config_path))
    else:
        default_config = find_default_config()
        if default_config:
            logger.info(f"Found default config file: {default_config}")
            configs.append(load_config_file(default_config))

    # 3. CLI arguments (highest priority)
    configs.append(args_to_config(args))

    merged = merge_configs(*configs)

    # Apply merged config back to args
    config_to_args(merged, args)

    return merged


def add_common_arguments(parser, default_output: str = './tenantscope-output') -> None:
    """Arguments shared by collect.py and the per-domain collector scripts."""
    parser.add_argument('--config', '-c',
                        help='Path to YAML/JSON config file')
    parser.add_argument('--tenant-id',
                        help='Entra ID tenant ID (or set MS365_TENANT_ID env var)')
    parser.add_argument('--client-id',
                        help='App registration client ID (or set MS365_CLIENT_ID env var)')
    # Client secret is env-var only (no CLI arg to avoid shell history exposure)
    parser.add_argument('--output', '-o',
                        help=f'Output directory (default: {default_output})')
    parser.add_argument('--log-level',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Logging level (default: INFO)')
    parser.add_argument('--only',
                        help='Comma-separated collector names to run')
    parser.add_argument('--skip',
                        help='Comma-separated collector names to skip')
    parser.add_argument('--generate-config', action='store_true',
                        help='Print a sample config file and exit')


def generate_sample_config() -> str:
    """Generate a sample config file content."""
    return '''# TenantScope Configuration
#
# Environment variable substitution supported:
#   ${VAR_NAME}           - required env var
#   ${VAR_NAME:-default}  - env var with default value

# =============================================================================
# Common Settings
# =============================================================================

# Entra ID tenant and app registration
tenant_id: ${MS365_TENANT_ID}
client_id: ${MS365_CLIENT_ID}

# Client secret (always use env var, never put secrets in config files!)
#   export MS365_CLIENT_SECRET="..."

# Output directory for collection results
output: "./tenantscope-output"

# Logging level: DEBUG, INFO, WARNING, ERROR
log_level: INFO

# Collector selection (names as shown by collect.py --list)
# collectors:
#   skip:
#     - vulnerabilities
#     - defender-device-health


# =============================================================================
# Thresholds
# =============================================================================
thresholds:
  # Days without sign-in before a user is inactive
  inactiveDays: 90
  staleDeviceDays: 90
  staleGuestDays: 90

  # Look-back windows
  riskDetectionDays: 30
  signInDays: 7
  auditLogDays: 30

  # Defender signature age before a device is flagged
  signatureAgeDays: 7

  # Credential expiry buckets
  credentialCriticalDays: 7
  credentialWarningDays: 30

  # Urgency buckets (days remaining)
  urgencyCriticalDays: 3
  urgencyHighDays: 7
  urgencyMediumDays: 14

  # Collaboration
  inactiveSiteDays: 90
  inactiveTeamDays: 90
  highStorageThresholdGB: 20

  # Insights
  noncompliantInsightThreshold: 10

  # Endpoint analytics: boot time and score below which a device is flagged
  slowBootSeconds: 120
  poorEndpointScore: 50

  # Page caps for bounded-cost endpoints
  groupMemberPageLimit: 4
  signInPageLimit: 4
  auditLogPageLimit: 10
  vulnerabilityPageLimit: 20

  # Throttling retry: linear (base * attempt) or exponential (base * 2^(attempt-1))
  maxRetries: 4
  retryBaseDelay: 2
  retryBackoff: exponential

  # Intune report export polling
  exportPollInterval: 5
  exportMaxPolls: 60


# =============================================================================
# License Cost (optional, monthly price per license by SKU part number)
# =============================================================================
# licensePrices:
#   SPE_E3: 36.00
#   SPE_E5: 57.00
currency: USD
'''
