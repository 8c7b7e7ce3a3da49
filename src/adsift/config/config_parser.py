"""Configuration parsing helpers for adsift.

Brief:
  Reads the YAML config file used by the CLI entrypoint, validates it against
  the JSON Schema and builds the typed AdsiftConfig.

Inputs:
  - YAML config paths

Outputs:
  - Raw config dicts and AdsiftConfig instances
"""

from __future__ import annotations

import os
from typing import Any, Dict, Optional, Tuple

import yaml

from .config_schema import AdsiftConfig, build_config, validate_config


def load_yaml(config_path: str) -> Dict[str, Any]:
    """Brief: Read a YAML file whose root must be a mapping.

    Inputs:
      - config_path: Path to the YAML file.

    Outputs:
      - dict: Parsed mapping ({} for an empty file).

    Raises:
      - ValueError: when the root is not a mapping.
      - OSError: when the file cannot be read.
    """
    with open(config_path, "r") as f:
        cfg = yaml.safe_load(f) or {}
    if not isinstance(cfg, dict):
        raise ValueError("Configuration root must be a mapping")
    return cfg


def parse_config_file(
    config_path: Optional[str],
    *,
    unknown_keys: str = "warn",
) -> Tuple[Dict[str, Any], AdsiftConfig]:
    """Brief: Read, schema-validate and type a YAML config file.

    Inputs:
      - config_path: Path to the YAML configuration file. None or a path that
        does not exist yields the built-in defaults.
      - unknown_keys: Policy for keys the schema does not describe.

    Outputs:
      - (raw_cfg, AdsiftConfig)

    Raises:
      - ValueError: When schema validation fails or the preset is unknown.
    """
    if config_path and os.path.exists(config_path):
        cfg = load_yaml(config_path)
    else:
        cfg = {}
    validate_config(cfg, config_path=config_path, unknown_keys=unknown_keys)
    return cfg, build_config(cfg)


def parse_config_text(text: str) -> Tuple[Dict[str, Any], AdsiftConfig]:
    """Brief: Same as parse_config_file for an in-memory YAML document.

    Example:
      >>> _, cfg = parse_config_text("dns: {port: 5300}")
      >>> cfg.dns.port
      5300
    """
    cfg = yaml.safe_load(text) or {}
    if not isinstance(cfg, dict):
        raise ValueError("Configuration root must be a mapping")
    validate_config(cfg)
    return cfg, build_config(cfg)
