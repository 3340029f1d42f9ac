"""Tests for the framework configuration module."""
import dataclasses
import logging

import pytest

from markerconf.config import (
    FrameworkConfig,
    get_framework_config,
    reset_framework_config,
    set_framework_config,
    update_framework_config,
)
from markerconf.errors import ArgumentError, log_fatal


def test_defaults():
    config = get_framework_config()
    assert config.strict is False
    assert config.config_root == "Configs"
    assert config.file_suffix == ".json"


def test_set_and_get():
    config = FrameworkConfig(strict=True, config_root="/tmp/cfg")
    set_framework_config(config)
    assert get_framework_config() is config


def test_set_rejects_wrong_type():
    with pytest.raises(TypeError):
        set_framework_config({"strict": True})


def test_update_replaces_selected_fields():
    updated = update_framework_config(file_suffix=".cfg")
    assert updated.file_suffix == ".cfg"
    assert updated.config_root == "Configs"
    assert get_framework_config() is updated


def test_config_is_frozen():
    with pytest.raises(dataclasses.FrozenInstanceError):
        get_framework_config().strict = True


def test_reset_reads_environment(monkeypatch):
    monkeypatch.setenv("MARKERCONF_STRICT", "yes")
    monkeypatch.setenv("MARKERCONF_CONFIG_ROOT", "/srv/configs")
    reset_framework_config()
    config = get_framework_config()
    assert config.strict is True
    assert config.config_root == "/srv/configs"


def test_reset_without_environment(monkeypatch):
    monkeypatch.delenv("MARKERCONF_STRICT", raising=False)
    monkeypatch.delenv("MARKERCONF_CONFIG_ROOT", raising=False)
    reset_framework_config()
    assert get_framework_config() == FrameworkConfig()


def test_log_fatal_logs_when_not_strict(caplog):
    logger = logging.getLogger("markerconf.test")
    with caplog.at_level(logging.CRITICAL, logger="markerconf.test"):
        log_fatal(logger, ArgumentError("broken"), "Scan aborted")
    assert "Scan aborted: broken" in caplog.text


def test_log_fatal_raises_when_strict(strict_mode):
    with pytest.raises(ArgumentError, match="broken"):
        log_fatal(logging.getLogger("markerconf.test"), ArgumentError("broken"))
