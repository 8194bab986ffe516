#!/usr/bin/env python3
"""Tests for the controller configuration model."""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from vmsnapshot.config import ControllerConfig


class TestControllerConfig:
    """Test ControllerConfig validation."""

    def test_default_values(self):
        config = ControllerConfig()
        assert config.namespace is None
        assert config.workers == 2
        assert config.retry_interval_seconds == 5.0
        assert config.backoff_base_seconds == 0.005
        assert config.backoff_max_seconds == 300.0
        assert config.resync_period_seconds == 0.0
        assert config.log_level == "INFO"
        assert config.audit_log is None

    @pytest.mark.parametrize("workers,valid", [
        (1, True),
        (8, True),
        (64, True),
        (0, False),
        (65, False),
    ])
    def test_workers_validation(self, workers, valid):
        if valid:
            assert ControllerConfig(workers=workers).workers == workers
        else:
            with pytest.raises(ValidationError):
                ControllerConfig(workers=workers)

    @pytest.mark.parametrize("level,expected", [
        ("debug", "DEBUG"),
        ("Info", "INFO"),
        ("WARNING", "WARNING"),
    ])
    def test_log_level_is_normalized(self, level, expected):
        assert ControllerConfig(log_level=level).log_level == expected

    def test_invalid_log_level(self):
        with pytest.raises(ValidationError):
            ControllerConfig(log_level="verbose")

    @pytest.mark.parametrize("namespace", ["", "   "])
    def test_blank_namespace_means_all(self, namespace):
        assert ControllerConfig(namespace=namespace).namespace is None

    def test_backoff_must_be_ordered(self):
        with pytest.raises(ValidationError):
            ControllerConfig(backoff_base_seconds=10, backoff_max_seconds=1)

    def test_retry_interval_must_be_positive(self):
        with pytest.raises(ValidationError):
            ControllerConfig(retry_interval_seconds=0)


class TestLoad:
    """Test loading configuration from YAML."""

    def test_load_file(self, tmp_path):
        path = tmp_path / "controller.yaml"
        path.write_text(yaml.dump({
            "namespace": "vms",
            "workers": 4,
            "log_level": "debug",
            "audit_log": str(tmp_path / "audit.log"),
        }))

        config = ControllerConfig.load(path)
        assert config.namespace == "vms"
        assert config.workers == 4
        assert config.log_level == "DEBUG"
        assert config.audit_log == tmp_path / "audit.log"

    def test_empty_file_uses_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert ControllerConfig.load(path) == ControllerConfig()

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ControllerConfig.load(tmp_path / "nope.yaml")

    def test_invalid_values_rejected(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.dump({"workers": 0}))
        with pytest.raises(ValidationError):
            ControllerConfig.load(Path(path))


class TestFromEnv:
    """Test environment variable overrides."""

    def test_overrides_base(self):
        base = ControllerConfig(namespace="vms", workers=4)
        config = ControllerConfig.from_env(base, environ={
            "VMSNAPSHOT_WORKERS": "8",
            "VMSNAPSHOT_LOG_JSON": "true",
            "UNRELATED": "x",
        })
        assert config.workers == 8
        assert config.log_json is True
        assert config.namespace == "vms"

    def test_without_base(self):
        config = ControllerConfig.from_env(environ={"VMSNAPSHOT_NAMESPACE": "prod"})
        assert config.namespace == "prod"
        assert config.workers == 2

    def test_invalid_env_value(self):
        with pytest.raises(ValidationError):
            ControllerConfig.from_env(environ={"VMSNAPSHOT_WORKERS": "many"})

    def test_reads_process_environment(self, monkeypatch):
        monkeypatch.setenv("VMSNAPSHOT_RESYNC_PERIOD_SECONDS", "30")
        assert ControllerConfig.from_env().resync_period_seconds == 30.0
