"""
Settings for a panorama build

Settings are plain dictionaries, optionally read from a YAML file and
merged over DEFAULT_SETTINGS.
"""

import copy
import logging
from pathlib import Path
from typing import Dict, Optional, Union

import yaml

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS: Dict = {
    'focal_length': 600.0,
    'alignment': {
        'iterations': 500,
        'threshold': 2.0,
        'seed': None,
        'min_inliers': 2,
    },
    'blending': {
        'blend_radius': 200.0,
        'workers': 1,
    },
    'logging': {
        'level': 'INFO',
    },
}


def _merge(base: Dict, override: Dict, path: str = "") -> Dict:
    """Recursively merge override into a copy of base, rejecting unknown keys"""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if key not in base:
            raise ValueError(f"Unknown setting: {path}{key}")
        if isinstance(base[key], dict):
            if not isinstance(value, dict):
                raise ValueError(f"Setting {path}{key} must be a mapping")
            merged[key] = _merge(base[key], value, f"{path}{key}.")
        else:
            merged[key] = value
    return merged


def validate_settings(settings: Dict):
    """Raise ValueError on out-of-range values"""
    if settings['focal_length'] <= 0:
        raise ValueError("focal_length must be positive")

    alignment = settings['alignment']
    if int(alignment['iterations']) < 1:
        raise ValueError("alignment.iterations must be at least 1")
    if float(alignment['threshold']) <= 0:
        raise ValueError("alignment.threshold must be positive")
    if int(alignment['min_inliers']) < 1:
        raise ValueError("alignment.min_inliers must be at least 1")

    blending = settings['blending']
    if float(blending['blend_radius']) <= 0:
        raise ValueError("blending.blend_radius must be positive")
    if int(blending['workers']) < 1:
        raise ValueError("blending.workers must be at least 1")

    level = settings['logging']['level']
    if not isinstance(logging.getLevelName(str(level).upper()), int):
        raise ValueError(f"Unknown logging level: {level}")


def load_settings(source: Optional[Union[str, Path, Dict]] = None) -> Dict:
    """
    Load settings and fill in defaults.

    Args:
        source: YAML file path, dict of overrides, or None for defaults

    Returns:
        Complete, validated settings dictionary
    """
    if source is None:
        overrides = {}
    elif isinstance(source, dict):
        overrides = source
    else:
        path = Path(source)
        with open(path, 'r', encoding='utf-8') as f:
            overrides = yaml.safe_load(f) or {}
        if not isinstance(overrides, dict):
            raise ValueError(f"Settings file {path} must contain a mapping")
        logger.info(f"Loaded settings from {path}")

    settings = _merge(DEFAULT_SETTINGS, overrides)
    validate_settings(settings)
    return settings
