#!/usr/bin/env python3
"""
Test tensor, KV cache and fit calculations
"""

import pytest

from tensor_override.architectures import extract_geometry
from tensor_override.cuda_detector import CUDADevice
from tensor_override.errors import ConfigurationError, UnsupportedQuantizationError
from tensor_override.gguf_analyzer import ModelInfo, TensorInfo
from tensor_override.memory_calculator import (
    available_memory_bytes,
    gpu_utilization_fractions,
    kv_cache_per_layer_bytes,
    kv_cache_size_bytes,
    model_fits_in_memory,
    tensor_size_bytes,
    total_tensors_size_bytes,
)

QWEN3_METADATA = {
    "qwen3.embedding_length": 4096,
    "qwen3.attention.head_count": 32,
    "qwen3.block_count": 2,
    "qwen3.attention.head_count_kv": 8,
}


def create_mock_model(tensors=()):
    return ModelInfo("qwen3", dict(QWEN3_METADATA), tuple(tensors))


def test_tensor_size_is_elements_times_bytes_per_element():
    tensor = TensorInfo("blk.0.attn_q.weight", "F16", (4096, 4096))
    assert tensor_size_bytes(tensor) == 4096 * 4096 * 2

    quantized = TensorInfo("blk.0.ffn_up.weight", "Q4_0", (4096, 128))
    assert tensor_size_bytes(quantized) == 4096 * 128 * 0.5625


def test_tensor_size_unknown_type():
    with pytest.raises(UnsupportedQuantizationError):
        tensor_size_bytes(TensorInfo("blk.0.attn_q.weight", "Q9_9", (8,)))


def test_total_tensors_size():
    model = create_mock_model([
        TensorInfo("token_embd.weight", "F32", (10, 10)),
        TensorInfo("blk.0.attn_q.weight", "F16", (10,)),
    ])
    assert total_tensors_size_bytes(model) == 400 + 20


def test_qwen3_kv_cache_exact():
    geometry = extract_geometry(create_mock_model())
    assert kv_cache_size_bytes(geometry, 1024, 16) == 2 * 2 * 2 * 1024 * 8 * 128
    assert kv_cache_per_layer_bytes(geometry, 1024, 16) == 2 * 2 * 1024 * 8 * 128


def test_kv_cache_scales_with_quantization_bits():
    geometry = extract_geometry(create_mock_model())
    assert kv_cache_size_bytes(geometry, 1024, 8) == kv_cache_size_bytes(geometry, 1024, 16) / 2
    assert kv_cache_size_bytes(geometry, 1024, 4) == kv_cache_size_bytes(geometry, 1024, 16) / 4


def test_kv_cache_rejects_other_bit_widths():
    geometry = extract_geometry(create_mock_model())
    with pytest.raises(ConfigurationError):
        kv_cache_size_bytes(geometry, 1024, 32)


def test_utilization_fractions():
    assert gpu_utilization_fractions(2) == [0.9, 0.9]
    assert gpu_utilization_fractions(2, gpu_utilization=0.5) == [0.5, 0.5]
    assert gpu_utilization_fractions(2, per_device_utilization=[0.9, 0.7]) == [0.9, 0.7]


def test_utilization_fractions_validation():
    with pytest.raises(ConfigurationError):
        gpu_utilization_fractions(2, gpu_utilization=0.5, per_device_utilization=[0.9, 0.7])
    with pytest.raises(ConfigurationError):
        gpu_utilization_fractions(2, per_device_utilization=[0.9])
    with pytest.raises(ConfigurationError):
        gpu_utilization_fractions(1, gpu_utilization=1.5)


def test_available_memory_scales_gpus_only():
    gpus = [CUDADevice(0, "GPU A", 1000), CUDADevice(1, "GPU B", 2000)]
    assert available_memory_bytes(gpus, 500, gpu_utilization=0.5) == 500 + 1500
    assert available_memory_bytes(gpus, 500, per_device_utilization=[1.0, 0.25]) == 500 + 1000 + 500


def test_model_fits_in_memory_boundary():
    model = create_mock_model([TensorInfo("blk.0.attn_q.weight", "F16", (1000,))])
    kv = kv_cache_size_bytes(extract_geometry(model), 16, 16)
    required = kv + 2000
    gpus = [CUDADevice(0, "GPU", 1000)]

    assert model_fits_in_memory(model, gpus, required - 1000, 16, 16, gpu_utilization=1.0)
    assert not model_fits_in_memory(model, gpus, required - 1001, 16, 16, gpu_utilization=1.0)
