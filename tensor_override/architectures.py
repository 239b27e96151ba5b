#!/usr/bin/env python3
"""
Architecture Metadata Adapter
Maps a GGUF architecture tag to the normalized attention geometry used for
KV cache sizing. Supporting a new family means adding one registry row.
"""

from dataclasses import dataclass
from typing import Dict

from tensor_override.errors import ModelMetadataError, UnsupportedArchitectureError
from tensor_override.gguf_analyzer import ModelInfo


@dataclass(frozen=True)
class ArchitectureKeys:
    prefix: str

    @property
    def embedding_length(self) -> str:
        return f"{self.prefix}.embedding_length"

    @property
    def head_count(self) -> str:
        return f"{self.prefix}.attention.head_count"

    @property
    def block_count(self) -> str:
        return f"{self.prefix}.block_count"

    @property
    def head_count_kv(self) -> str:
        return f"{self.prefix}.attention.head_count_kv"


@dataclass(frozen=True)
class Geometry:
    hidden_size: int
    num_attention_heads: int
    num_layers: int
    num_key_value_heads: int
    head_size: float


ARCHITECTURES: Dict[str, ArchitectureKeys] = {
    # dense transformer and its mixture-of-experts variant
    "qwen3": ArchitectureKeys("qwen3"),
    "qwen3moe": ArchitectureKeys("qwen3moe"),
    "qwen2": ArchitectureKeys("qwen2"),
    "qwen2moe": ArchitectureKeys("qwen2moe"),
    # second mixture-of-experts family
    "hunyuan-moe": ArchitectureKeys("hunyuan-moe"),
    # vision / long context
    "qwen2vl": ArchitectureKeys("qwen2vl"),
    # independent families
    "llama": ArchitectureKeys("llama"),
    "gemma3": ArchitectureKeys("gemma3"),
}


def _read_count(model: ModelInfo, key: str) -> int:
    if key not in model.metadata:
        raise ModelMetadataError(f"Missing metadata key {key} for architecture {model.architecture}")

    value = model.metadata[key]
    # per-layer arrays are dropped by the reader and surface as missing keys
    try:
        count = int(value)
    except (TypeError, ValueError):
        raise ModelMetadataError(f"Metadata key {key} is not a number: {value!r}") from None
    if count <= 0:
        raise ModelMetadataError(f"Metadata key {key} must be positive, got {count}")
    return count


def extract_geometry(model: ModelInfo) -> Geometry:
    keys = ARCHITECTURES.get(model.architecture)
    if keys is None:
        raise UnsupportedArchitectureError(model.architecture)

    hidden_size = _read_count(model, keys.embedding_length)
    num_attention_heads = _read_count(model, keys.head_count)
    return Geometry(
        hidden_size=hidden_size,
        num_attention_heads=num_attention_heads,
        num_layers=_read_count(model, keys.block_count),
        num_key_value_heads=_read_count(model, keys.head_count_kv),
        head_size=hidden_size / num_attention_heads,
    )
