"""
Configuration Module
Loads calibration constants and runtime settings from config.yaml
"""

import copy
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

from .exceptions import ConfigurationError


DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / 'config.yaml'

DEFAULT_CONFIG: Dict[str, Any] = {
    'significance': {
        'threshold_pct': 10.0,
        'alpha': 0.05,
        'effect_size_thresholds': [0.2, 0.5, 0.8],
    },
    'reference': {
        'weekday_tolerance': 1,
        'hour_tolerance': 2,
        'lookback_days': 30,
        'base_confidence': 60,
        'confidence_per_sample': 2,
        'max_confidence': 95,
    },
    'validation': {
        # Canned values seen in placeholder data, compared after rounding
        'rejected_values': [35, 45, 65, 87, 95],
        'max_abs_percentage_change': 100.0,
        'max_count': 10_000_000,
        'canned_value_kinds': ['percentage_change', 'growth', 'rate', 'metric'],
    },
    'conversion': {
        'value_per_conversion': 50.0,
        'value_per_session': 0.5,
        'default_ctr': 0.02,
        'default_landing_rate': 0.9,
        'stage_confidence': {
            'impressions': 0.9,
            'clicks': 0.8,
            'landing': 0.75,
            'engagement': 0.7,
            'conversion': 0.6,
        },
    },
    'prediction': {
        'primary_metric': 'active_users',
        'default_expected_lift': 0.10,
        'content_quality': 0.8,
        'audience_match': 0.85,
        'default_frequency_per_week': 3,
        'anomaly_z_threshold': 3.0,
        'factor_bounds': {
            'temporal': [0.5, 1.5],
            'audience': [0.5, 2.0],
            'content': [0.5, 1.5],
            'market': [0.5, 1.5],
        },
    },
    'orchestrator': {
        'max_workers': 4,
        'event_timeout_seconds': 30,
        'fetch_retries': 2,
        'retry_backoff_seconds': 0.1,
        'reference_cache_size': 256,
    },
    'logging': {
        'level': 'INFO',
        'file': None,
        'console': True,
    },
}


def _deep_merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``"""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """
    Load configuration from a YAML file, falling back to defaults

    Args:
        path: Optional path to a YAML file. Defaults to the repository
            config.yaml; when that file is absent the built-in defaults
            are returned.

    Returns:
        Configuration dictionary with every section populated

    Raises:
        ConfigurationError: If an explicitly given file is missing or
            does not contain a mapping
    """
    explicit = path is not None
    config_path = Path(path) if explicit else DEFAULT_CONFIG_PATH

    if not config_path.exists():
        if explicit:
            raise ConfigurationError(f"Config file not found: {config_path}", field='config')
        return copy.deepcopy(DEFAULT_CONFIG)

    with open(config_path, 'r') as f:
        loaded = yaml.safe_load(f) or {}

    if not isinstance(loaded, Mapping):
        raise ConfigurationError(f"Config file must contain a mapping: {config_path}", field='config')

    return _deep_merge(DEFAULT_CONFIG, loaded)


def resolve_config(config: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """Merge a partial in-memory config over the defaults"""
    if config is None:
        return load_config()
    return _deep_merge(DEFAULT_CONFIG, config)
