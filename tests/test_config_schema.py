"""
Brief: Tests for adsift.config.config_schema validation, presets and models.

Inputs:
  - None

Outputs:
  - None
"""

import logging

import pytest
from pydantic import ValidationError as PydanticValidationError

from adsift.config.config_schema import (
    PRESETS,
    AdsiftConfig,
    BlockerConfig,
    apply_preset,
    build_config,
    validate_config,
)
from adsift.verdict import Category


def test_empty_config_is_valid_and_uses_defaults():
    validate_config({})
    cfg = build_config({})
    assert isinstance(cfg, AdsiftConfig)
    assert cfg.blocker.preset == "default"
    assert cfg.dns.port == 5353
    assert cfg.proxy.port == 8888
    assert cfg.dns.upstream_dicts()[0] == {"host": "8.8.8.8", "port": 53}
    assert cfg.statistics.sigusr2_resets_stats is True


@pytest.mark.parametrize(
    "cfg,fragment",
    [
        ({"dns": {"port": "53"}}, "dns/port"),
        ({"dns": {"port": 70000}}, "dns/port"),
        ({"blocker": {"preset": "paranoid"}}, "blocker/preset"),
        ({"blocker": {"custom_filters": "||x^"}}, "blocker/custom_filters"),
        ({"dns": {"upstreams": [{"port": 53}]}}, "dns/upstreams/0"),
        ({"blocker": {"blocklist_files": [{"source": "x", "category": "Spam"}]}}, "blocker/blocklist_files/0"),
    ],
)
def test_schema_errors_name_the_offending_path(cfg, fragment):
    with pytest.raises(ValueError) as exc:
        validate_config(cfg, config_path="test.yaml")
    msg = str(exc.value)
    assert "Invalid configuration in test.yaml" in msg
    assert fragment in msg


def test_unknown_keys_policy(caplog):
    cfg = {"dns": {"port": 5353, "colour": "blue"}, "plugins": []}

    with caplog.at_level(logging.WARNING):
        validate_config(cfg)
    assert "colour" in caplog.text

    caplog.clear()
    validate_config(cfg, unknown_keys="ignore")
    assert caplog.text == ""

    with pytest.raises(ValueError):
        validate_config(cfg, unknown_keys="error")

    with pytest.raises(ValueError):
        validate_config(cfg, unknown_keys="sometimes")


def test_presets_match_profiles():
    assert PRESETS["minimal"]["block_tracking"] is False
    assert PRESETS["privacy_focused"]["block_social"] is True
    assert PRESETS["privacy_focused"]["enable_malware_protection"] is True
    assert PRESETS["performance_focused"]["enable_easyprivacy"] is False
    assert all(p["enable_easylist"] for p in PRESETS.values())


def test_apply_preset_explicit_keys_win():
    merged = apply_preset({"preset": "Minimal", "block_tracking": True})
    assert merged["preset"] == "minimal"
    assert merged["block_tracking"] is True
    assert merged["enable_easyprivacy"] is False
    assert apply_preset(None) == {**PRESETS["default"], "preset": "default"}
    with pytest.raises(ValueError):
        apply_preset({"preset": "nope"})


def test_build_config_applies_preset():
    cfg = build_config({"blocker": {"preset": "privacy_focused"}})
    assert cfg.blocker.block_social is True
    assert cfg.blocker.enable_malware_protection is True


def test_blocklist_sources_accept_strings_and_mappings():
    b = BlockerConfig(
        blocklist_urls=["https://lists.example/hosts"],
        blocklist_files=[{"source": "/tmp/x.hosts", "category": "Malware"}],
    )
    assert b.blocklist_urls[0].source == "https://lists.example/hosts"
    assert b.blocklist_urls[0].category is Category.CUSTOM
    assert b.blocklist_files[0].category is Category.MALWARE
    assert BlockerConfig(blocklist_urls=None).blocklist_urls == []
    with pytest.raises(PydanticValidationError):
        BlockerConfig(blocklist_urls="https://lists.example/hosts")


def test_heuristics_thresholds_are_configurable():
    cfg = build_config({"blocker": {"heuristics": {"min_labels": 2}}})
    assert cfg.blocker.heuristics.min_labels == 2
    assert cfg.blocker.heuristics.digit_ratio_divisor == 3
