#!/usr/bin/env python3
"""
Storage configuration: defaults, YAML/.env loading and validation.

Values are resolved in this order, later sources winning:
DEFAULT_CONFIG, the YAML file, environment variables (optionally loaded from a
.env file), and finally explicit overrides.
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from dotenv import load_dotenv

from truenas_block.base_component import ComponentConfig
from truenas_block.errors import ConfigError
from truenas_block.helpers import parse_size


class StorageConfig(ComponentConfig, total=False):
    """Configuration for one TrueNAS block storage backend."""
    storage_id: str
    # Appliance API
    api_host: str
    api_key: str
    api_transport: Literal['ws', 'rest']
    api_scheme: str
    api_port: Optional[int]
    api_insecure: bool
    api_timeout: float
    api_ws_path: str
    api_rest_path: str
    api_retry_max: int
    api_retry_delay: float
    connection_max_age: float
    cache_ttl: float
    job_timeout: float
    # Volumes
    dataset: str
    zvol_blocksize: Optional[str]
    tn_sparse: bool
    enable_preflight: bool
    space_overhead_percent: int
    force_delete_on_inuse: bool
    # iSCSI
    target_iqn: str
    discovery_portal: str
    portals: List[str]
    chap_user: Optional[str]
    chap_password: Optional[str]
    use_multipath: bool
    use_by_path: bool
    logout_on_free: bool
    device_wait_timeout: float
    device_poll_interval: float
    command_timeout: float


DEFAULT_CONFIG: StorageConfig = {
    'storage_id': 'truenas',
    'log_level': 'INFO',
    'api_transport': 'ws',
    'api_scheme': 'wss',
    'api_port': None,
    'api_insecure': False,
    'api_timeout': 30.0,
    'api_ws_path': '/api/current',
    'api_rest_path': '/api/v2.0',
    'api_retry_max': 3,
    'api_retry_delay': 1.0,
    'connection_max_age': 3600.0,
    'cache_ttl': 60.0,
    'job_timeout': 300.0,
    'zvol_blocksize': None,
    'tn_sparse': True,
    'enable_preflight': True,
    'space_overhead_percent': 20,
    'force_delete_on_inuse': False,
    'portals': [],
    'chap_user': None,
    'chap_password': None,
    'use_multipath': True,
    'use_by_path': False,
    'logout_on_free': False,
    'device_wait_timeout': 10.0,
    'device_poll_interval': 0.5,
    'command_timeout': 30.0,
}

REQUIRED_KEYS = ('api_host', 'api_key', 'dataset', 'target_iqn', 'discovery_portal')

ENV_KEYS = {
    'TRUENAS_API_HOST': 'api_host',
    'TRUENAS_API_KEY': 'api_key',
    'TRUENAS_CHAP_USER': 'chap_user',
    'TRUENAS_CHAP_PASSWORD': 'chap_password',
}

_SECURE_SCHEMES = ('wss', 'https')
_VALID_SCHEMES = ('ws', 'wss', 'http', 'https')
_BLOCKSIZE_RE = re.compile(r'^\d+[KM]?$', re.IGNORECASE)


def default_port(scheme: str) -> int:
    return 443 if scheme in _SECURE_SCHEMES else 80


def validate_config(config: Dict[str, Any]) -> StorageConfig:
    """
    Check a merged configuration and fill in derived values.

    Returns:
        A new, normalised StorageConfig

    Raises:
        ConfigError: listing every problem found
    """
    merged: StorageConfig = DEFAULT_CONFIG | config
    problems: List[str] = []

    for key in REQUIRED_KEYS:
        if not merged.get(key):
            problems.append(f"'{key}' is required")

    if merged['api_transport'] not in ('ws', 'rest'):
        problems.append(f"api_transport must be 'ws' or 'rest', got {merged['api_transport']!r}")

    scheme = str(merged.get('api_scheme', '')).lower()
    if scheme not in _VALID_SCHEMES:
        problems.append(f"api_scheme must be one of {', '.join(_VALID_SCHEMES)}, got {scheme!r}")
    merged['api_scheme'] = scheme

    retry_max = merged.get('api_retry_max')
    if not isinstance(retry_max, int) or isinstance(retry_max, bool) or not 0 <= retry_max <= 10:
        problems.append(f"api_retry_max must be an integer between 0 and 10, got {retry_max!r}")

    try:
        retry_delay = float(merged.get('api_retry_delay'))
        if not 0.1 <= retry_delay <= 60:
            raise ValueError
        merged['api_retry_delay'] = retry_delay
    except (TypeError, ValueError):
        problems.append(f"api_retry_delay must be between 0.1 and 60 seconds, got {merged.get('api_retry_delay')!r}")

    for key in ('api_timeout', 'connection_max_age', 'cache_ttl', 'job_timeout',
                'device_wait_timeout', 'device_poll_interval', 'command_timeout'):
        try:
            value = float(merged.get(key))
            if value <= 0:
                raise ValueError
            merged[key] = value
        except (TypeError, ValueError):
            problems.append(f"{key} must be a positive number, got {merged.get(key)!r}")

    overhead = merged.get('space_overhead_percent')
    if not isinstance(overhead, int) or overhead < 0:
        problems.append(f"space_overhead_percent must be a non-negative integer, got {overhead!r}")

    blocksize = merged.get('zvol_blocksize')
    if blocksize:
        if not _BLOCKSIZE_RE.match(str(blocksize)):
            problems.append(f"zvol_blocksize must look like '16K', got {blocksize!r}")
        else:
            merged['zvol_blocksize'] = str(blocksize).upper()

    dataset = merged.get('dataset')
    if dataset:
        merged['dataset'] = str(dataset).strip('/')

    if merged.get('chap_user') and not merged.get('chap_password'):
        problems.append("chap_password is required when chap_user is set")

    port = merged.get('api_port')
    if port in (None, ''):
        merged['api_port'] = default_port(scheme)
    else:
        try:
            merged['api_port'] = int(port)
            if not 0 < merged['api_port'] < 65536:
                raise ValueError
        except (TypeError, ValueError):
            problems.append(f"api_port must be a valid TCP port, got {port!r}")

    portals = merged.get('portals') or []
    if isinstance(portals, str):
        portals = [p.strip() for p in portals.split(',') if p.strip()]
    merged['portals'] = list(portals)

    if problems:
        raise ConfigError(problems)
    return merged


def load_config(path: Optional[str | Path] = None, overrides: Optional[Dict[str, Any]] = None,
                env_file: Optional[str | Path] = None) -> StorageConfig:
    """
    Build a validated StorageConfig from a YAML file, the environment and overrides.

    Args:
        path: Optional YAML file holding a mapping of config keys
        overrides: Values that win over every other source
        env_file: Optional .env file; falls back to ./.env when present

    Raises:
        ConfigError: if the file is unreadable or values are invalid
    """
    config: Dict[str, Any] = {}

    if path is not None:
        try:
            with open(path, 'r') as f:
                loaded = yaml.safe_load(f) or {}
        except (FileNotFoundError, yaml.YAMLError) as e:
            raise ConfigError([f"cannot read {path}: {e}"]) from e
        if not isinstance(loaded, dict):
            raise ConfigError([f"{path} must contain a mapping, got {type(loaded).__name__}"])
        config |= loaded

    env_path = Path(env_file) if env_file is not None else Path.cwd() / '.env'
    if env_path.exists():
        load_dotenv(dotenv_path=env_path)

    for env_name, key in ENV_KEYS.items():
        if value := os.getenv(env_name):
            config[key] = value

    return validate_config(config | (overrides or {}))


def redacted(config: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of config safe for logging."""
    return {k: ('***' if k in ('api_key', 'chap_password') and v else v) for k, v in config.items()}


def volblocksize_bytes(config: StorageConfig) -> int:
    blocksize = config.get('zvol_blocksize')
    return parse_size(blocksize) if blocksize else 0
