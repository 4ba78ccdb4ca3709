#!/usr/bin/env python3
"""Tests for the command line entry point."""
import json
import threading

import pytest
import yaml

from obslytics.config import load_config
from obslytics.main import (
    EXIT_CANCELLED, EXIT_CONFIG_ERROR, EXIT_EXPORT_ERROR,
    _indexed_path, build_parser, main, run_export
)

from helpers import make_series


def export_args(config_path, output, *extra):
    return build_parser().parse_args([
        "export",
        "--config", config_path,
        "--match", 'up{job="api"}',
        "--min-time", "1",
        "--max-time", "5",
        "--resolution", "1s",
        "--output", output,
        *extra,
    ])


def write_config(tmp_path, endpoint) -> str:
    path = tmp_path / "export.yaml"
    path.write_text(yaml.safe_dump({
        "global": {"metrics_textfile": str(tmp_path / "obslytics.prom")},
        "input": {"endpoint": endpoint, "insecure": True},
        "output": {"type": "NDJSON"},
    }))
    return str(path)


def test_indexed_path():
    assert _indexed_path("out.parquet", 0) == "out-0.parquet"
    assert _indexed_path("dir.v2/out", 1) == "dir.v2/out-1"
    assert _indexed_path("out", 2) == "out-2"


def test_parser_requires_selector():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["export", "--config", "c.yaml"])


def test_run_export(store, tmp_path):
    store.series = [make_series({"__name__": "up", "job": "api"}, [(1000, 1.0), (2500, 2.0)])]
    config_path = write_config(tmp_path, store.address)
    output = str(tmp_path / "out.ndjson")

    status = run_export(export_args(config_path, output), load_config(config_path), threading.Event())

    assert status == 0
    rows = [json.loads(line) for line in open(output)]
    assert [(r["_bucket_start"], r["_count"]) for r in rows] == [(1000, 1), (2000, 1)]
    assert "obslytics_rows_total 2.0" in (tmp_path / "obslytics.prom").read_text()


def test_run_export_several_selectors(store, tmp_path):
    store.series = [
        make_series({"__name__": "up", "job": "api"}, [(1000, 1.0)]),
        make_series({"__name__": "down", "job": "api"}, [(1000, 1.0)]),
    ]
    config_path = write_config(tmp_path, store.address)
    output = str(tmp_path / "out.ndjson")
    args = export_args(config_path, output, "--match", "down")

    assert run_export(args, load_config(config_path), threading.Event()) == 0
    assert (tmp_path / "out-0.ndjson").exists()
    assert (tmp_path / "out-1.ndjson").exists()


def test_run_export_bad_selector(tmp_path):
    config_path = write_config(tmp_path, "localhost:1")
    args = export_args(config_path, str(tmp_path / "out.ndjson"))
    args.match = ['{job=~".*"}']
    assert run_export(args, load_config(config_path), threading.Event()) == EXIT_CONFIG_ERROR


def test_run_export_store_down(tmp_path):
    config_path = write_config(tmp_path, "localhost:1")
    args = export_args(config_path, str(tmp_path / "out.ndjson"), "--timeout", "5")
    assert run_export(args, load_config(config_path), threading.Event()) == EXIT_EXPORT_ERROR


def test_run_export_cancelled(store, tmp_path):
    config_path = write_config(tmp_path, store.address)
    cancel = threading.Event()
    cancel.set()
    args = export_args(config_path, str(tmp_path / "out.ndjson"))
    assert run_export(args, load_config(config_path), cancel) == EXIT_CANCELLED


def test_main_missing_config(tmp_path):
    with pytest.raises(SystemExit) as exc:
        main(["export", "--config", str(tmp_path / "missing.yaml"), "--match", "up",
              "--min-time", "0", "--max-time", "1", "--resolution", "1m"])
    assert exc.value.code == EXIT_CONFIG_ERROR


def test_run_export_non_finite_time(tmp_path):
    config_path = write_config(tmp_path, "localhost:1")
    args = export_args(config_path, str(tmp_path / "out.ndjson"))
    args.min_time = "inf"
    assert run_export(args, load_config(config_path), threading.Event()) == EXIT_CONFIG_ERROR
