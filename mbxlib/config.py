"""
Mailbox Report - Configuration Management

Supports loading configuration from:
1. YAML config file (--config)
2. Environment variables (MS365_*, MBX_*)
3. Command-line arguments (highest priority)

Config file example:
```yaml
output: "./mailbox_reports"
log_level: INFO

m365:
  tenant_id: ${MS365_TENANT_ID}
  client_id: ${MS365_CLIENT_ID}
  organization: contoso.onmicrosoft.com

report:
  mailbox_type: Shared
  licensed_only: false
```
"""
import logging
import os
import re
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from rich.console import Console

from .constants import DEFAULT_LOG_LEVEL, DEFAULT_OUTPUT_DIR
from .models import FilterMode, MailboxCategory

logger = logging.getLogger(__name__)


# Default config file locations (checked in order)
DEFAULT_CONFIG_PATHS = [
    './mailbox-report.yaml',
    './mailbox-report.yml',
    '~/.mailbox-report/config.yaml',
    '~/.mailbox-report/config.yml',
]

# Mapping from config keys to env vars
ENV_VAR_MAPPING = {
    'output': 'MBX_OUTPUT',
    'log_level': 'MBX_LOG_LEVEL',
    'm365.tenant_id': 'MS365_TENANT_ID',
    'm365.client_id': 'MS365_CLIENT_ID',
    'm365.cert_path': 'MS365_CERT_PATH',
    'm365.organization': 'MBX_ORGANIZATION',
}

# Client secret is env-var only (never from config files or CLI)
CLIENT_SECRET_ENV_VAR = 'MS365_CLIENT_SECRET'


@dataclass
class ReportConfig:
    """Everything a report run needs, passed explicitly instead of module globals."""
    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = field(default=None, repr=False)
    cert_path: Optional[str] = None
    organization: Optional[str] = None
    output_dir: str = DEFAULT_OUTPUT_DIR
    log_level: str = DEFAULT_LOG_LEVEL
    category: Optional[MailboxCategory] = None
    filter_mode: Optional[FilterMode] = None
    console: Console = field(default_factory=Console, repr=False)

    def missing_credentials(self) -> list:
        """Names of the credential settings that are not provided."""
        missing = []
        if not self.tenant_id:
            missing.append('--tenant-id or MS365_TENANT_ID')
        if not self.client_id:
            missing.append('--client-id or MS365_CLIENT_ID')
        if not self.client_secret and not self.cert_path:
            missing.append(f'{CLIENT_SECRET_ENV_VAR} or --cert-path')
        return missing


def parse_mailbox_category(value: str) -> MailboxCategory:
    """Parse 'shared', 'user' or 'all' (case-insensitive)."""
    for category in MailboxCategory:
        if category.value.lower() == str(value).strip().lower():
            return category
    raise ValueError(f"Unknown mailbox type: {value!r} (expected Shared, User or All)")


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


def _get_nested(data: Dict, key_path: str, default: Any = None) -> Any:
    """Get a nested value from a dict using dot notation."""
    keys = key_path.split('.')
    value = data
    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def _set_nested(data: Dict, key_path: str, value: Any) -> None:
    """Set a nested value in a dict using dot notation."""
    keys = key_path.split('.')
    for key in keys[:-1]:
        data = data.setdefault(key, {})
    data[keys[-1]] = value


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load configuration from a YAML file."""
    path = Path(config_path).expanduser()

    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    file_mode = path.stat().st_mode
    if file_mode & (stat.S_IRWXG | stat.S_IRWXO):  # Group or world access
        logger.warning(f"Config file {config_path} has loose permissions. "
                       f"Consider: chmod 600 {config_path}")

    logger.info(f"Loading config from {path}")

    with open(path, encoding='utf-8') as f:
        config = yaml.safe_load(f) or {}

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
        'output_dir': 'output',
        'log_level': 'log_level',
        'tenant_id': 'm365.tenant_id',
        'client_id': 'm365.client_id',
        'cert_path': 'm365.cert_path',
        'organization': 'm365.organization',
        'mailbox_type': 'report.mailbox_type',
        'licensed_only': 'report.licensed_only',
    }

    for arg_name, config_key in arg_mapping.items():
        value = getattr(args, arg_name, None)
        if value is not None:
            _set_nested(config, config_key, value)

    if getattr(args, 'verbose', False):
        config['log_level'] = 'DEBUG'

    return config


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

    return merge_configs(*configs)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('true', '1', 'yes')
    return bool(value)


def build_report_config(config: Dict[str, Any], console: Optional[Console] = None) -> ReportConfig:
    """Turn a merged config dict into a ReportConfig."""
    mailbox_type = _get_nested(config, 'report.mailbox_type')
    licensed_only = _get_nested(config, 'report.licensed_only')

    filter_mode = None
    if licensed_only is not None:
        filter_mode = FilterMode.LICENSED_ONLY if _as_bool(licensed_only) else FilterMode.ALL_MAILBOXES

    return ReportConfig(
        tenant_id=_get_nested(config, 'm365.tenant_id') or None,
        client_id=_get_nested(config, 'm365.client_id') or None,
        client_secret=os.environ.get(CLIENT_SECRET_ENV_VAR) or None,
        cert_path=_get_nested(config, 'm365.cert_path') or None,
        organization=_get_nested(config, 'm365.organization') or None,
        output_dir=config.get('output') or DEFAULT_OUTPUT_DIR,
        log_level=config.get('log_level') or DEFAULT_LOG_LEVEL,
        category=parse_mailbox_category(mailbox_type) if mailbox_type else None,
        filter_mode=filter_mode,
        console=console or Console(),
    )


def generate_sample_config() -> str:
    """Generate a sample config file content."""
    return '''# Mailbox Report Configuration
#
# Environment variable substitution supported:
#   ${VAR_NAME}           - required env var
#   ${VAR_NAME:-default}  - env var with default value

# Output directory for CSV reports and log files
output: "./mailbox_reports"

# Logging level: DEBUG, INFO, WARNING, ERROR
log_level: INFO


# =============================================================================
# Microsoft 365 Settings
# =============================================================================
# Requires an Entra ID App Registration with:
#   - Microsoft Graph: User.Read.All, Organization.Read.All (Application)
#   - Office 365 Exchange Online: Exchange.ManageAsApp (Application)
#   - A directory role that can read recipients (e.g. Global Reader)
#
m365:
  tenant_id: ${MS365_TENANT_ID}
  client_id: ${MS365_CLIENT_ID}

  # Client secret (always use env var, never put secrets in config files!)
  # Set MS365_CLIENT_SECRET, or use a certificate instead:
  # cert_path: ~/.mailbox-report/app-cert.pem

  # Primary tenant domain used to route Exchange Online admin calls
  # organization: contoso.onmicrosoft.com


# =============================================================================
# Report Settings (leave unset to be prompted)
# =============================================================================
report:
  # Shared, User or All
  # mailbox_type: All

  # Export only mailboxes with at least one license
  # licensed_only: false
'''
