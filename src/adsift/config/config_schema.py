"""Configuration schema and typed models for adsift.

Brief:
  Raw YAML mappings are first checked against a JSON Schema (structure,
  types, unknown keys) and then turned into pydantic models that the rest of
  the program consumes. Blocker presets mirror the classic profiles
  (default, minimal, privacy_focused, performance_focused); explicit keys in
  the config override the chosen preset.

Inputs:
  - Parsed YAML configuration mappings

Outputs:
  - Validated AdsiftConfig instances
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple, Union

from jsonschema import Draft202012Validator, ValidationError
from pydantic import BaseModel, Field, validator

from ..patterns import HeuristicThresholds
from ..verdict import Category

logger = logging.getLogger(__name__)

PRESETS: Dict[str, Dict[str, bool]] = {
    "default": {
        "enable_easylist": True,
        "enable_easyprivacy": True,
        "enable_malware_protection": False,
        "block_tracking": True,
        "block_social": False,
        "cache_filters": True,
    },
    "minimal": {
        "enable_easylist": True,
        "enable_easyprivacy": False,
        "enable_malware_protection": False,
        "block_tracking": False,
        "block_social": False,
        "cache_filters": True,
    },
    "privacy_focused": {
        "enable_easylist": True,
        "enable_easyprivacy": True,
        "enable_malware_protection": True,
        "block_tracking": True,
        "block_social": True,
        "cache_filters": True,
    },
    "performance_focused": {
        "enable_easylist": True,
        "enable_easyprivacy": False,
        "enable_malware_protection": False,
        "block_tracking": False,
        "block_social": False,
        "cache_filters": True,
    },
}

DEFAULT_UPSTREAMS: List[Dict[str, Any]] = [
    {"host": "8.8.8.8", "port": 53},
    {"host": "1.1.1.1", "port": 53},
    {"host": "9.9.9.9", "port": 53},
]

_STRING_LIST = {"type": "array", "items": {"type": "string"}}
_SOURCE_LIST = {
    "type": "array",
    "items": {
        "oneOf": [
            {"type": "string"},
            {
                "type": "object",
                "properties": {
                    "source": {"type": "string"},
                    "category": {"enum": [c.value for c in Category]},
                },
                "required": ["source"],
                "additionalProperties": False,
            },
        ]
    },
}

CONFIG_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "logging": {
            "type": "object",
            "properties": {
                "level": {"type": "string"},
                "stderr": {"type": "boolean"},
                "file": {"type": ["string", "null"]},
                "syslog": {"type": ["boolean", "object"]},
            },
            "additionalProperties": False,
        },
        "blocker": {
            "type": "object",
            "properties": {
                "preset": {"enum": sorted(PRESETS)},
                "enable_easylist": {"type": "boolean"},
                "enable_easyprivacy": {"type": "boolean"},
                "enable_malware_protection": {"type": "boolean"},
                "block_tracking": {"type": "boolean"},
                "block_social": {"type": "boolean"},
                "cache_filters": {"type": "boolean"},
                "cache_ttl_seconds": {"type": "integer", "minimum": 1},
                "cache_dir": {"type": ["string", "null"]},
                "custom_filters": _STRING_LIST,
                "whitelist_domains": _STRING_LIST,
                "blocked_domains": _STRING_LIST,
                "blocklist_urls": _SOURCE_LIST,
                "blocklist_files": _SOURCE_LIST,
                "heuristics": {
                    "type": "object",
                    "properties": {
                        "min_labels": {"type": "integer", "minimum": 1},
                        "digit_ratio_divisor": {"type": "integer", "minimum": 1},
                        "programmatic_vocabulary": _STRING_LIST,
                        "shape_keywords": _STRING_LIST,
                    },
                    "additionalProperties": False,
                },
            },
            "additionalProperties": False,
        },
        "dns": {
            "type": "object",
            "properties": {
                "enabled": {"type": "boolean"},
                "host": {"type": "string"},
                "port": {"type": "integer", "minimum": 0, "maximum": 65535},
                "timeout_ms": {"type": "integer", "minimum": 1},
                "upstreams": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "host": {"type": "string"},
                            "port": {"type": "integer", "minimum": 1, "maximum": 65535},
                        },
                        "required": ["host"],
                        "additionalProperties": False,
                    },
                },
            },
            "additionalProperties": False,
        },
        "proxy": {
            "type": "object",
            "properties": {
                "enabled": {"type": "boolean"},
                "host": {"type": "string"},
                "port": {"type": "integer", "minimum": 0, "maximum": 65535},
                "connect_timeout_ms": {"type": "integer", "minimum": 1},
            },
            "additionalProperties": False,
        },
        "statistics": {
            "type": "object",
            "properties": {
                "enabled": {"type": "boolean"},
                "interval_seconds": {"type": "integer", "minimum": 1},
                "reset_on_log": {"type": "boolean"},
                "log_level": {"type": "string"},
                "sigusr2_resets_stats": {"type": "boolean"},
            },
            "additionalProperties": False,
        },
    },
    "additionalProperties": False,
}


class LoggingConfig(BaseModel):
    level: str = "info"
    stderr: bool = True
    file: Optional[str] = None
    syslog: Union[bool, Dict[str, Any]] = False


class BlocklistSource(BaseModel):
    """Brief: One hosts/domain list plus the category its entries report.

    Inputs:
      - source: URL or local path.
      - category: Provenance category for every domain loaded from it.

    Outputs:
      - BlocklistSource instance.
    """

    source: str
    category: Category = Category.CUSTOM


class BlockerConfig(BaseModel):
    """Brief: Typed configuration for the classification pipeline.

    Inputs:
      - preset: Name of the base profile; explicit keys override it.
      - enable_easylist / enable_easyprivacy / enable_malware_protection:
        Which remote rule lists to load.
      - block_tracking: Enables the tracking keyword tier and tracker rules.
      - block_social: Enables social-widget rules.
      - cache_filters, cache_ttl_seconds, cache_dir: List caching.
      - custom_filters: Extra adblock rules (category Custom).
      - whitelist_domains: Domains that are never blocked.
      - blocked_domains: Extra exact blocklist entries (category Custom).
      - blocklist_urls / blocklist_files: Hosts/domain lists to load.
      - heuristics: HeuristicThresholds for the structural detectors.

    Outputs:
      - BlockerConfig instance.
    """

    preset: str = "default"
    enable_easylist: bool = True
    enable_easyprivacy: bool = True
    enable_malware_protection: bool = False
    block_tracking: bool = True
    block_social: bool = False
    cache_filters: bool = True
    cache_ttl_seconds: int = Field(default=86400, ge=1)
    cache_dir: Optional[str] = None
    custom_filters: List[str] = Field(default_factory=list)
    whitelist_domains: List[str] = Field(default_factory=list)
    blocked_domains: List[str] = Field(default_factory=list)
    blocklist_urls: List[BlocklistSource] = Field(default_factory=list)
    blocklist_files: List[BlocklistSource] = Field(default_factory=list)
    heuristics: HeuristicThresholds = Field(default_factory=HeuristicThresholds)

    class Config:
        extra = "ignore"

    @validator("blocklist_urls", "blocklist_files", pre=True)
    def _coerce_sources(cls, v: object) -> list:  # type: ignore[override]
        """Brief: Accept plain strings as sources with the default category."""
        if v is None:
            return []
        if not isinstance(v, list):
            raise ValueError("blocklist sources must be a list")
        return [{"source": item} if isinstance(item, str) else item for item in v]


class UpstreamConfig(BaseModel):
    host: str
    port: int = Field(default=53, ge=1, le=65535)

    def as_dict(self) -> Dict[str, Any]:
        return {"host": self.host, "port": int(self.port)}


class DnsConfig(BaseModel):
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = Field(default=5353, ge=0, le=65535)
    timeout_ms: int = Field(default=2000, ge=1)
    upstreams: List[UpstreamConfig] = Field(
        default_factory=lambda: [UpstreamConfig(**u) for u in DEFAULT_UPSTREAMS]
    )

    def upstream_dicts(self) -> List[Dict[str, Any]]:
        return [u.as_dict() for u in self.upstreams]


class ProxyConfig(BaseModel):
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = Field(default=8888, ge=0, le=65535)
    connect_timeout_ms: int = Field(default=10000, ge=1)


class StatisticsConfig(BaseModel):
    enabled: bool = True
    interval_seconds: int = Field(default=300, ge=1)
    reset_on_log: bool = False
    log_level: str = "info"
    sigusr2_resets_stats: bool = True


class AdsiftConfig(BaseModel):
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    blocker: BlockerConfig = Field(default_factory=BlockerConfig)
    dns: DnsConfig = Field(default_factory=DnsConfig)
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)
    statistics: StatisticsConfig = Field(default_factory=StatisticsConfig)


def apply_preset(blocker_raw: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Brief: Expand the ``preset`` key of a raw blocker mapping.

    Inputs:
      - blocker_raw: The raw ``blocker`` mapping (may be None).

    Outputs:
      - dict: Preset flags overlaid with every explicitly configured key.

    Raises:
      - ValueError: for an unknown preset name.

    Example:
      >>> apply_preset({"preset": "minimal", "block_social": True})["block_social"]
      True
      >>> apply_preset({"preset": "minimal"})["enable_easyprivacy"]
      False
    """
    raw = dict(blocker_raw or {})
    name = str(raw.get("preset", "default")).lower()
    if name not in PRESETS:
        raise ValueError(
            f"unknown blocker preset {name!r}; expected one of {sorted(PRESETS)}"
        )
    merged: Dict[str, Any] = dict(PRESETS[name])
    merged.update(raw)
    merged["preset"] = name
    return merged


def _format_errors(errors: List[ValidationError], *, config_path: Optional[str]) -> str:
    where = f" in {config_path}" if config_path else ""
    lines = [f"Invalid configuration{where}:"]
    for err in errors:
        path = "/".join(str(p) for p in err.absolute_path) or "<root>"
        lines.append(f"  - {path}: {err.message}")
    return "\n".join(lines)


def _split_extra_property_errors(
    errors: List[ValidationError],
) -> Tuple[List[ValidationError], List[ValidationError]]:
    extra = [e for e in errors if e.validator == "additionalProperties"]
    other = [e for e in errors if e.validator != "additionalProperties"]
    return extra, other


def validate_config(
    cfg: Dict[str, Any],
    *,
    config_path: Optional[str] = None,
    unknown_keys: str = "warn",
) -> None:
    """Brief: Validate a parsed YAML configuration mapping against CONFIG_SCHEMA.

    Inputs:
      - cfg: Dict loaded from YAML (top-level configuration mapping).
      - config_path: Optional path used only in error messages.
      - unknown_keys: "ignore", "warn" (default) or "error" for keys the
        schema does not describe.

    Outputs:
      - None on success.

    Raises:
      - ValueError: when validation fails (or when unknown keys are present
        and ``unknown_keys`` is "error").

    Example:
      >>> validate_config({"dns": {"port": 5353}})
    """
    if unknown_keys not in {"ignore", "warn", "error"}:
        raise ValueError(
            f"unknown_keys policy must be 'ignore', 'warn', or 'error', got {unknown_keys!r}"
        )

    validator_ = Draft202012Validator(CONFIG_SCHEMA)
    all_errors = sorted(validator_.iter_errors(cfg), key=lambda e: list(e.path))
    if not all_errors:
        return None

    extra_errors, other_errors = _split_extra_property_errors(all_errors)

    if other_errors or (extra_errors and unknown_keys == "error"):
        raise ValueError(
            _format_errors(other_errors + extra_errors, config_path=config_path)
        )

    if extra_errors and unknown_keys == "warn":
        logger.warning(
            "%s", _format_errors(extra_errors, config_path=config_path)
        )
    return None


def build_config(cfg: Optional[Dict[str, Any]]) -> AdsiftConfig:
    """Brief: Turn a validated raw mapping into an AdsiftConfig.

    Inputs:
      - cfg: Raw configuration mapping (already schema-validated).

    Outputs:
      - AdsiftConfig with the blocker preset applied.
    """
    data = dict(cfg or {})
    data["blocker"] = apply_preset(data.get("blocker"))
    return AdsiftConfig(**{k: v for k, v in data.items() if v is not None})
