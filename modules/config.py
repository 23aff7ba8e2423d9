"""
Configuration module for cl-autoloop

Contains the Config dataclass holding the plugin's startup options. The
autolooper's own rules and fee limits are not options; they live in
Parameters and are changed at runtime over RPC.
"""

from dataclasses import dataclass, fields
from typing import Dict, Any


# Type mapping for config fields (for validation)
CONFIG_FIELD_TYPES: Dict[str, type] = {
    'db_path': str,
    'autoloop_interval': int,
    'min_confirmations': int,
    'enable_debug_rpc': bool,
    'enable_prometheus': bool,
    'prometheus_port': int,
    'dispatch_retention_days': int,
}

# Range constraints for numeric fields
CONFIG_FIELD_RANGES: Dict[str, tuple] = {
    'autoloop_interval': (10, 86400),
    'min_confirmations': (1, 1000),
    'prometheus_port': (1, 65535),
    'dispatch_retention_days': (1, 3650),
}

# Plugin option name for each config field
OPTION_NAMES: Dict[str, str] = {
    'db_path': 'autoloop-db-path',
    'autoloop_interval': 'autoloop-interval',
    'min_confirmations': 'autoloop-min-confirmations',
    'enable_debug_rpc': 'autoloop-enable-debug-rpc',
    'enable_prometheus': 'autoloop-enable-prometheus',
    'prometheus_port': 'autoloop-prometheus-port',
    'dispatch_retention_days': 'autoloop-dispatch-retention-days',
}

# Network on which debug-only RPC methods are always refused
MAINNET = 'bitcoin'


def parse_value(key: str, value: Any) -> Any:
    """
    Convert a raw option value to the field's type and range-check it.

    Raises:
        ValueError: if the value cannot be converted or is out of range
    """
    field_type = CONFIG_FIELD_TYPES.get(key, str)
    try:
        if field_type == bool:
            if isinstance(value, bool):
                typed_value = value
            else:
                typed_value = str(value).lower() in ('true', '1', 'yes', 'on')
        elif field_type == int:
            typed_value = int(value)
        else:
            typed_value = str(value)
    except (ValueError, TypeError) as e:
        raise ValueError(f"Invalid value for {key} (expected {field_type.__name__}): {e}")

    if key in CONFIG_FIELD_RANGES:
        min_val, max_val = CONFIG_FIELD_RANGES[key]
        if not (min_val <= typed_value <= max_val):
            raise ValueError(f"Value {typed_value} out of range [{min_val}, {max_val}] for {key}")

    return typed_value


@dataclass
class Config:
    """
    Configuration container for the autoloop plugin.

    All values can be set via plugin options at startup.
    """

    # Database path
    db_path: str = '~/.lightning/autoloop.db'

    # Seconds between scheduled autoloop cycles
    autoloop_interval: int = 600

    # Lowest sweep conf target an operator may configure
    min_confirmations: int = 9

    # Allow autoloop-force (never on mainnet)
    enable_debug_rpc: bool = False

    # Observability
    enable_prometheus: bool = False
    prometheus_port: int = 9810

    # Dispatch log retention
    dispatch_retention_days: int = 90

    @classmethod
    def from_options(cls, options: Dict[str, Any]) -> 'Config':
        """
        Build a Config from the plugin's init options.

        Missing options keep their defaults.

        Raises:
            ValueError: if any option fails type or range validation
        """
        values = {}
        for f in fields(cls):
            option = OPTION_NAMES[f.name]
            if option in options and options[option] is not None:
                values[f.name] = parse_value(f.name, options[option])
        return cls(**values)

    def debug_rpc_allowed(self, network: str) -> bool:
        return self.enable_debug_rpc and network != MAINNET
