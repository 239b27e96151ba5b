#!/usr/bin/env python3
"""
Test configuration loading and validation
"""

import json

import pytest

from tensor_override.config import (
    DEFAULT_CONFIG,
    build_run_config,
    load_config,
    parse_percentage_list,
)
from tensor_override.errors import ConfigurationError


def make_config(**overrides):
    config = load_config("/nonexistent/config.json")
    config.update(overrides)
    return config


def test_missing_file_falls_back_to_defaults(capsys):
    config = load_config("/nonexistent/config.json")

    assert config == DEFAULT_CONFIG
    assert config is not DEFAULT_CONFIG
    assert "Warning" in capsys.readouterr().err


def test_bundled_config_matches_defaults(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert load_config("config.json") == DEFAULT_CONFIG


def test_file_values_merge_over_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"context_length": 8192, "output": {"verbose": True}}))

    config = load_config(str(path))

    assert config["context_length"] == 8192
    assert config["output"]["verbose"] is True
    assert config["output"]["save_override_params"] is True
    assert DEFAULT_CONFIG["output"]["verbose"] is False


def test_invalid_json(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json")
    with pytest.raises(ConfigurationError):
        load_config(str(path))


def test_non_object_json(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("[1, 2]")
    with pytest.raises(ConfigurationError):
        load_config(str(path))


def test_run_config_defaults():
    run_config = build_run_config(make_config(context_length=4096))

    assert run_config.context_length == 4096
    assert run_config.context_quant_bits == 16
    assert run_config.check is True
    assert run_config.gpu_utilization is None
    assert run_config.per_device_utilization is None
    assert run_config.host_utilization == 0.95


def test_context_length_required():
    with pytest.raises(ConfigurationError, match="Context length is required"):
        build_run_config(make_config())


@pytest.mark.parametrize("value", [0, -5, "many"])
def test_bad_context_length(value):
    with pytest.raises(ConfigurationError):
        build_run_config(make_config(context_length=value))


def test_bad_quantization_size():
    with pytest.raises(ConfigurationError, match="4, 8, or 16"):
        build_run_config(make_config(context_length=4096, context_quantization_size=2))


def test_gpu_percentages_are_exclusive():
    with pytest.raises(ConfigurationError):
        build_run_config(make_config(context_length=4096, gpu_percentage=0.8,
                                     granular_gpu_percentage="0.9,0.8"))


def test_gpu_percentage_range():
    with pytest.raises(ConfigurationError):
        build_run_config(make_config(context_length=4096, gpu_percentage="1.5"))


def test_granular_percentages():
    run_config = build_run_config(make_config(context_length=4096, granular_gpu_percentage="0.9, 0.8,0.7"))
    assert run_config.per_device_utilization == [0.9, 0.8, 0.7]


def test_parse_percentage_list_accepts_lists():
    assert parse_percentage_list([0.5, "0.25"]) == [0.5, 0.25]
    with pytest.raises(ConfigurationError):
        parse_percentage_list([])
    with pytest.raises(ConfigurationError):
        parse_percentage_list("0.9,abc")


@pytest.mark.parametrize("value", ["false", 0, None])
def test_check_must_be_boolean(value):
    with pytest.raises(ConfigurationError, match="check"):
        build_run_config(make_config(context_length=4096, check=value))


def test_check_false_is_kept():
    assert build_run_config(make_config(context_length=4096, check=False)).check is False


def test_output_flags_must_be_boolean():
    config = make_config(context_length=4096)
    config["output"]["save_analysis_json"] = "yes"
    with pytest.raises(ConfigurationError, match="save_analysis_json"):
        build_run_config(config)


def test_output_section_must_be_object(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"output": "verbose"}))
    with pytest.raises(ConfigurationError, match="output"):
        load_config(str(path))
