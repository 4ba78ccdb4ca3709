#!/usr/bin/env python3
"""Tests for configuration loading and dial options."""
import logging
from pathlib import Path

import grpc
import pytest
import yaml

from obslytics.config import Config, InputConfig, OutputConfig, TLSConfig, load_config
from obslytics.tls import build_dial_options


def write_config(tmp_path, data) -> str:
    path = tmp_path / "export.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


def test_config_loading(tmp_path):
    """A full config file loads with every section populated."""
    print("Testing config loading...")
    path = write_config(tmp_path, {
        "global": {"log_level": "DEBUG", "metrics_textfile": "/tmp/obslytics.prom"},
        "input": {"endpoint": "store:10901", "insecure": True, "timeout_s": 30},
        "output": {"type": "csv", "path": "out.csv", "schema_mode": "two_pass"},
        "tracing": {"enabled": False},
    })

    config = load_config(path)
    assert isinstance(config, Config)
    assert config.global_.log_level == "DEBUG"
    assert config.input.endpoint == "store:10901"
    assert config.input.timeout_s == 30
    assert config.output.type == "CSV"
    assert config.output.schema_mode == "two_pass"
    print("  ✓ Full config")


def test_empty_config_uses_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    config = load_config(str(path))
    assert config.input.endpoint == "localhost:10901"
    assert config.output.type == "PARQUET"
    assert config.output.schema_mode is None
    assert config.global_.metrics_prefix == "obslytics_"


def test_env_overrides(tmp_path, monkeypatch):
    path = write_config(tmp_path, {"input": {"endpoint": "a:1"}})
    monkeypatch.setenv("OBSLYTICS_ENDPOINT", "b:2")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")

    config = load_config(path)
    assert config.input.endpoint == "b:2"
    assert config.global_.log_level == "WARNING"


def test_missing_file():
    with pytest.raises(FileNotFoundError):
        load_config("/nonexistent/export.yaml")


@pytest.mark.parametrize("data", [
    {"output": {"type": "xlsx"}},
    {"output": {"schema_mode": "lazy"}},
    {"input": {"timeout_s": 0}},
    {"input": {"tls_config": {"cert_file": "client.crt"}}},
])
def test_invalid_config(tmp_path, data):
    with pytest.raises(ValueError, match="validation failed"):
        load_config(write_config(tmp_path, data))


def test_plaintext_dial_options():
    options = build_dial_options(InputConfig(endpoint="store:10901", insecure=True, max_recv_message_bytes=1024))
    assert options.credentials is None
    assert ("grpc.max_receive_message_length", 1024) in options.options


def test_tls_dial_options_with_server_name():
    config = InputConfig(endpoint="10.0.0.1:10901", tls_config=TLSConfig(server_name="store.internal"))
    options = build_dial_options(config, logging.getLogger("test"))
    assert isinstance(options.credentials, grpc.ChannelCredentials)
    assert ("grpc.ssl_target_name_override", "store.internal") in options.options


def test_skip_verify_rejected():
    config = InputConfig(tls_config=TLSConfig(insecure_skip_verify=True))
    with pytest.raises(ValueError, match="insecure_skip_verify"):
        build_dial_options(config)


def test_unreadable_ca_file(tmp_path):
    config = InputConfig(tls_config=TLSConfig(ca_file=str(tmp_path / "missing-ca.pem")))
    with pytest.raises(ValueError, match="client CA"):
        build_dial_options(config)


def test_output_type_case_insensitive():
    assert OutputConfig(type="ndjson").type == "NDJSON"


def test_example_config_loads():
    path = Path(__file__).parent.parent / "configs" / "export.yaml"
    config = load_config(str(path))
    assert config.output.type == "PARQUET"
    assert config.input.insecure
