#!/usr/bin/env python3
"""
Configuration for the tensor override planner.
Values come from a JSON file merged over DEFAULT_CONFIG; CLI flags override both.
"""

import copy
import json
import os
import sys
from dataclasses import dataclass
from typing import Dict, List, Optional

from tensor_override.errors import ConfigurationError
from tensor_override.memory_calculator import CONTEXT_QUANTIZATION_SIZES

DEFAULT_CONFIG = {
    "context_length": None,
    "context_quantization_size": 16,
    "check": True,
    "gpu_percentage": None,           # defaults to 0.9 when no granular list is set
    "granular_gpu_percentage": None,  # e.g. "0.9,0.8,0.7", indexed by CUDA device
    "host_memory_percentage": 0.95,
    "download_dir": None,
    "output": {
        "save_override_params": True,
        "save_analysis_json": False,
        "verbose": False
    }
}


@dataclass
class RunConfig:
    context_length: int
    context_quant_bits: int = 16
    check: bool = True
    gpu_utilization: Optional[float] = None
    per_device_utilization: Optional[List[float]] = None
    host_utilization: float = 0.95
    verbose: bool = False


def load_config(config_path: str) -> Dict:
    """Load configuration from a JSON file, falling back to defaults"""
    config = copy.deepcopy(DEFAULT_CONFIG)

    if not os.path.isabs(config_path) and not os.path.exists(config_path):
        config_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), config_path)

    try:
        with open(config_path, 'r') as f:
            loaded = json.load(f)
    except OSError as e:
        print(f"Warning: Could not load config file {config_path}: {e}", file=sys.stderr)
        print("Using default configuration", file=sys.stderr)
        return config
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Config file {config_path} is not valid JSON: {e}") from e

    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Config file {config_path} must contain a JSON object")

    output = loaded.pop("output", None) or {}
    if not isinstance(output, dict):
        raise ConfigurationError(f"Config file {config_path}: \"output\" must be a JSON object")
    config.update(loaded)
    config["output"].update(output)
    return config


def parse_percentage(value, label: str = "GPU percentage") -> float:
    try:
        percentage = float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid {label}: {value}. It should be a number between 0 and 1.") from None
    if not 0 <= percentage <= 1:
        raise ConfigurationError(f"Invalid {label}: {value}. It should be a number between 0 and 1.")
    return percentage


def parse_percentage_list(value) -> List[float]:
    """Parse "0.9,0.8,0.7" (or a JSON list) into per-device fractions"""
    items = value.split(",") if isinstance(value, str) else list(value)
    if not items:
        raise ConfigurationError("Granular GPU percentage list is empty")
    return [parse_percentage(str(item).strip()) for item in items]


def parse_flag(value, label: str) -> bool:
    # JSON true / false only; strings such as "false" are rejected
    if not isinstance(value, bool):
        raise ConfigurationError(f"Invalid {label}: {value!r}. It should be true or false.")
    return value


def build_run_config(config: Dict) -> RunConfig:
    """Validate a merged config dict into a RunConfig"""
    context_length = config.get("context_length")
    if context_length is None:
        raise ConfigurationError("Context length is required. Please provide a valid length.")
    try:
        context_length = int(context_length)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Context length must be an integer, got {context_length!r}") from None
    if context_length <= 0:
        raise ConfigurationError(f"Context length must be positive, got {context_length}")

    try:
        quant_bits = int(config.get("context_quantization_size", 16))
    except (TypeError, ValueError):
        quant_bits = None
    if quant_bits not in CONTEXT_QUANTIZATION_SIZES:
        raise ConfigurationError(
            "Context quantization size must be one of 4, 8, or 16. Please provide a valid size."
        )

    gpu_percentage = config.get("gpu_percentage")
    granular = config.get("granular_gpu_percentage")
    if gpu_percentage is not None and granular is not None:
        raise ConfigurationError(
            "You cannot use both gpu percentage and granular gpu percentage at the same time. Please choose one."
        )

    output = config.get("output", {})
    for key in ("save_override_params", "save_analysis_json"):
        parse_flag(output.get(key, False), f"output.{key}")

    return RunConfig(
        context_length=context_length,
        context_quant_bits=quant_bits,
        check=parse_flag(config.get("check", True), "check"),
        gpu_utilization=parse_percentage(gpu_percentage) if gpu_percentage is not None else None,
        per_device_utilization=parse_percentage_list(granular) if granular is not None else None,
        host_utilization=parse_percentage(config.get("host_memory_percentage", 0.95), "host memory percentage"),
        verbose=parse_flag(output.get("verbose", False), "output.verbose"),
    )
