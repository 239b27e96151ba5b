#!/usr/bin/env python3
"""
Memory Calculator
Tensor, KV cache and total memory sizing, plus the up-front check that a
model fits in combined GPU and host memory.
"""

from typing import Optional, Sequence

from tensor_override.architectures import Geometry, extract_geometry
from tensor_override.errors import ConfigurationError
from tensor_override.gguf_analyzer import ModelInfo, TensorInfo
from tensor_override.quant_sizes import bytes_per_element

CONTEXT_QUANTIZATION_SIZES = (4, 8, 16)
DEFAULT_GPU_UTILIZATION = 0.9


def bytes_to_mib(size_bytes: float) -> float:
    return size_bytes / (1024 * 1024)


def tensor_size_bytes(tensor: TensorInfo) -> float:
    return tensor.n_elements * bytes_per_element(tensor.quant_type, tensor.name)


def total_tensors_size_bytes(model: ModelInfo) -> float:
    return sum(tensor_size_bytes(tensor) for tensor in model.tensors)


def kv_cache_size_bytes(geometry: Geometry, context_length: int, context_quant_bits: int) -> float:
    """
    KV cache for the whole context:
    2 (key and value) * bytes per element * layers * context * kv heads * head size
    """
    if context_quant_bits not in CONTEXT_QUANTIZATION_SIZES:
        raise ConfigurationError(
            f"Context quantization size must be one of {CONTEXT_QUANTIZATION_SIZES}, got {context_quant_bits}"
        )
    return (
        2
        * (context_quant_bits / 8)
        * geometry.num_layers
        * context_length
        * geometry.num_key_value_heads
        * geometry.head_size
    )


def kv_cache_per_layer_bytes(geometry: Geometry, context_length: int, context_quant_bits: int) -> float:
    return kv_cache_size_bytes(geometry, context_length, context_quant_bits) / geometry.num_layers


def gpu_utilization_fractions(gpu_count: int,
                              gpu_utilization: Optional[float] = None,
                              per_device_utilization: Optional[Sequence[float]] = None) -> list:
    """Resolve the usable fraction of each GPU, in inventory order"""
    if gpu_utilization is not None and per_device_utilization is not None:
        raise ConfigurationError("gpu_utilization and per_device_utilization are mutually exclusive")

    if per_device_utilization is not None:
        fractions = [float(f) for f in per_device_utilization]
        if len(fractions) != gpu_count:
            raise ConfigurationError(
                f"Got {len(fractions)} per-device GPU percentages for {gpu_count} GPUs"
            )
    else:
        fraction = DEFAULT_GPU_UTILIZATION if gpu_utilization is None else float(gpu_utilization)
        fractions = [fraction] * gpu_count

    for fraction in fractions:
        if not 0 <= fraction <= 1:
            raise ConfigurationError(f"GPU percentage must be between 0 and 1, got {fraction}")
    return fractions


def required_memory_bytes(model: ModelInfo, context_length: int, context_quant_bits: int) -> float:
    geometry = extract_geometry(model)
    return kv_cache_size_bytes(geometry, context_length, context_quant_bits) + total_tensors_size_bytes(model)


def available_memory_bytes(gpus, host_bytes: float,
                           gpu_utilization: Optional[float] = None,
                           per_device_utilization: Optional[Sequence[float]] = None) -> float:
    fractions = gpu_utilization_fractions(len(gpus), gpu_utilization, per_device_utilization)
    gpu_bytes = sum(gpu.total_memory_bytes * fraction for gpu, fraction in zip(gpus, fractions))
    return host_bytes + gpu_bytes


def model_fits_in_memory(model: ModelInfo, gpus, host_bytes: float, context_length: int,
                         context_quant_bits: int,
                         gpu_utilization: Optional[float] = None,
                         per_device_utilization: Optional[Sequence[float]] = None) -> bool:
    required = required_memory_bytes(model, context_length, context_quant_bits)
    available = available_memory_bytes(gpus, host_bytes, gpu_utilization, per_device_utilization)
    return required <= available
