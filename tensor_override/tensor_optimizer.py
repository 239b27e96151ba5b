#!/usr/bin/env python3
"""
Tensor Assignment Optimizer
Places every model tensor, plus the KV cache, on CUDA devices or host RAM.

Devices are filled greedily in priority order: the GPU with the most memory
first, host RAM last. Tensors are placed in passes so the ones that matter
most for speed claim GPU memory first:

1. token_embd.weight pinned to host RAM
2. attention tensors, block by block, each block preceded by its KV cache share
3. dense feed-forward tensors
4. expert gate tensors (mixture-of-experts models)
5. normalization tensors
6. everything else
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from tensor_override.architectures import extract_geometry
from tensor_override.errors import (
    CapacityExceededError,
    ConfigurationError,
    InfeasiblePlanError,
    NoDeviceCapacityError,
    UnknownDeviceError,
)
from tensor_override.gguf_analyzer import ModelInfo, TensorInfo
from tensor_override.memory_calculator import (
    available_memory_bytes,
    bytes_to_mib,
    gpu_utilization_fractions,
    kv_cache_per_layer_bytes,
    model_fits_in_memory,
    required_memory_bytes,
    tensor_size_bytes,
)
from tensor_override.parameter_generator import build_command_fragment

HOST_DEVICE_NAME = "CPU"
HOST_DEVICE_PRIORITY = 0
DEFAULT_HOST_UTILIZATION = 0.95

EMBEDDING_TENSOR_NAME = "token_embd.weight"
ATTENTION_TENSOR_FLAGS = ("attention", "attn")
FFN_TENSOR_FLAGS = ("ffn", "feed_forward")
FFN_EXCLUDED_FLAGS = ("exp", "expert", "gate", "norm")
GATE_TENSOR_FLAGS = ("gate",)
NORM_TENSOR_FLAGS = ("norm",)


class CapacityMode(Enum):
    BOUNDED = "bounded"
    # host memory backed by swap: never refuse an allocation
    UNBOUNDED = "unbounded"


class Device:
    def __init__(self, name: str, memory_total_bytes: float, priority: float,
                 utilization: float = 1.0, mode: CapacityMode = CapacityMode.BOUNDED):
        self.name = name
        self.memory_total_bytes = memory_total_bytes
        self.priority = priority
        self.utilization = utilization
        self.mode = mode
        self.bytes_allocated = 0.0

    @property
    def usable_bytes(self) -> float:
        return self.memory_total_bytes * self.utilization

    def can_allocate(self, size_bytes: float) -> bool:
        if self.mode == CapacityMode.UNBOUNDED:
            return True
        return self.bytes_allocated + size_bytes <= self.usable_bytes

    def allocate(self, size_bytes: float):
        if size_bytes < 0:
            raise ValueError(f"Cannot allocate a negative size on device {self.name}")
        if not self.can_allocate(size_bytes):
            raise CapacityExceededError(
                f"Cannot allocate {bytes_to_mib(size_bytes):.2f} MiB on device {self.name}."
            )
        self.bytes_allocated += size_bytes

    def __repr__(self):
        return (f"Device({self.name}: {bytes_to_mib(self.bytes_allocated):.1f} / "
                f"{bytes_to_mib(self.usable_bytes):.1f} MiB, {self.mode.value})")


class DeviceAllocator:
    def __init__(self, devices: Iterable[Device]):
        self.devices: List[Device] = list(devices)
        # insertion order is allocation order
        self.tensor_map: Dict[str, str] = {}

    def get_device(self, name: str) -> Device:
        for device in self.devices:
            if device.name == name:
                return device
        raise UnknownDeviceError(f"Unknown device: {name}")

    def devices_by_priority(self) -> List[Device]:
        # sorted() is stable, so equal priorities keep inventory order
        return sorted(self.devices, key=lambda d: -d.priority)

    def allocate_any(self, size_bytes: float, tensor_name: Optional[str] = None) -> str:
        """Allocate on the highest priority device with room; returns its name"""
        for device in self.devices_by_priority():
            if device.can_allocate(size_bytes):
                device.allocate(size_bytes)
                if tensor_name is not None:
                    self.tensor_map[tensor_name] = device.name
                return device.name

        what = f"tensor {tensor_name}" if tensor_name else "KV cache"
        raise NoDeviceCapacityError(
            f"Cannot allocate {bytes_to_mib(size_bytes):.2f} MiB for {what} on any device."
        )

    def allocate_on(self, device_name: str, size_bytes: float, tensor_name: Optional[str] = None) -> str:
        device = self.get_device(device_name)
        device.allocate(size_bytes)
        if tensor_name is not None:
            self.tensor_map[tensor_name] = device.name
        return device.name


@dataclass
class DeviceReport:
    name: str
    bytes_allocated: float
    capacity_bytes: float
    utilization_fraction: float
    unbounded: bool = False

    @property
    def percent_used(self) -> float:
        return (self.bytes_allocated / self.capacity_bytes * 100) if self.capacity_bytes > 0 else 0.0


@dataclass
class OptimizationResult:
    command_fragment: str
    tensor_device_map: Dict[str, str]
    device_report: List[DeviceReport]
    kv_cache_bytes: float = 0.0
    tensor_bytes: float = 0.0
    pass_bytes: Dict[str, float] = field(default_factory=dict)


def tensors_blockwise(tensors: Iterable[TensorInfo]) -> List[Tuple[int, List[TensorInfo]]]:
    """Group tensors by block index, ascending; tensors without one are left out"""
    blocks: Dict[int, List[TensorInfo]] = {}
    for tensor in tensors:
        block_id = tensor.block_id
        if block_id is None:
            continue
        blocks.setdefault(block_id, []).append(tensor)
    return sorted(blocks.items())


def name_matches(name: str, flags: Sequence[str]) -> bool:
    lowered = name.lower()
    return any(flag in lowered for flag in flags)


class TensorOptimizer:
    def __init__(self, model: ModelInfo, gpus: Sequence, host_bytes: float, context_length: int,
                 context_quant_bits: int = 16, check: bool = True,
                 gpu_utilization: Optional[float] = None,
                 per_device_utilization: Optional[Sequence[float]] = None,
                 host_utilization: float = DEFAULT_HOST_UTILIZATION,
                 log: Optional[Callable[[str], None]] = None):
        if isinstance(context_length, bool) or not isinstance(context_length, int) or context_length <= 0:
            raise ConfigurationError(f"Context length must be a positive integer, got {context_length!r}")
        if not 0 <= host_utilization <= 1:
            raise ConfigurationError(f"Host memory percentage must be between 0 and 1, got {host_utilization}")

        self.model = model
        self.gpus = list(gpus)
        self.host_bytes = host_bytes
        self.context_length = context_length
        self.context_quant_bits = context_quant_bits
        self.check = check
        self.gpu_utilization = gpu_utilization
        self.per_device_utilization = per_device_utilization
        self.host_utilization = host_utilization
        self.log = log

        self.allocator: Optional[DeviceAllocator] = None
        self.tensor_sizes: Dict[str, float] = {}
        self.seen = set()
        self.kv_cache_bytes = 0.0
        self.pass_bytes: Dict[str, float] = {}

    def _log(self, message: str):
        if self.log is not None:
            self.log(message)

    def optimize_tensor_placement(self) -> OptimizationResult:
        # Everything that can fail on bad input fails here, before any device exists
        geometry = extract_geometry(self.model)
        self.tensor_sizes = {}
        self.seen = set()
        self.kv_cache_bytes = 0.0
        self.pass_bytes = {}
        for tensor in self.model.tensors:
            self.tensor_sizes.setdefault(tensor.name, tensor_size_bytes(tensor))
        fractions = gpu_utilization_fractions(len(self.gpus), self.gpu_utilization, self.per_device_utilization)

        if self.check:
            self._check_fits()

        self.allocator = DeviceAllocator(self._create_devices(fractions))
        kv_per_block = kv_cache_per_layer_bytes(geometry, self.context_length, self.context_quant_bits)

        self._log(f"Optimizing tensor placement for {self.model.architecture} "
                  f"({len(self.model.tensors)} tensors, {geometry.num_layers} layers)")
        self._log(f"Per-block KV cache: {bytes_to_mib(kv_per_block):.2f} MiB")

        self._pin_embedding()
        self._assign_attention(kv_per_block)
        self._assign_matching("FFN", FFN_TENSOR_FLAGS, FFN_EXCLUDED_FLAGS)
        self._assign_matching("gate", GATE_TENSOR_FLAGS)
        self._assign_matching("norm", NORM_TENSOR_FLAGS)
        self._assign_remaining()

        return self._build_result()

    def _check_fits(self):
        if model_fits_in_memory(self.model, self.gpus, self.host_bytes, self.context_length,
                                self.context_quant_bits, self.gpu_utilization, self.per_device_utilization):
            return
        required = required_memory_bytes(self.model, self.context_length, self.context_quant_bits)
        available = available_memory_bytes(self.gpus, self.host_bytes, self.gpu_utilization,
                                           self.per_device_utilization)
        raise InfeasiblePlanError(
            f"Model does not fit in combined GPU and RAM memory "
            f"({bytes_to_mib(required):.2f} MiB required, {bytes_to_mib(available):.2f} MiB available). "
            f"Try reducing context length or quantization size."
        )

    def _create_devices(self, fractions: Sequence[float]) -> List[Device]:
        host_mode = CapacityMode.BOUNDED if self.check else CapacityMode.UNBOUNDED
        devices = [Device(HOST_DEVICE_NAME, self.host_bytes, HOST_DEVICE_PRIORITY,
                          self.host_utilization, host_mode)]
        for gpu, fraction in zip(self.gpus, fractions):
            # more memory stands in for more compute
            devices.append(Device(gpu.override_name, gpu.total_memory_bytes,
                                  gpu.total_memory_bytes, fraction))
        return devices

    def _place(self, tensor: TensorInfo) -> float:
        size = self.tensor_sizes[tensor.name]
        self.allocator.allocate_any(size, tensor.name)
        self.seen.add(tensor.name)
        return size

    def _pin_embedding(self):
        """Some runtimes cannot run quantized embedding lookups on the GPU"""
        total = 0.0
        for tensor in self.model.tensors:
            if tensor.name == EMBEDDING_TENSOR_NAME and tensor.name not in self.seen:
                size = self.tensor_sizes[tensor.name]
                self.allocator.allocate_on(HOST_DEVICE_NAME, size, tensor.name)
                self.seen.add(tensor.name)
                total += size
        self._finish_pass("embedding", total)

    def _assign_attention(self, kv_per_block: float):
        total = 0.0
        for _, block in tensors_blockwise(self.model.tensors):
            # KV cache share has no tensor name, so it never shows up in the map
            self.allocator.allocate_any(kv_per_block)
            self.kv_cache_bytes += kv_per_block
            total += kv_per_block
            for tensor in block:
                if tensor.name in self.seen or not name_matches(tensor.name, ATTENTION_TENSOR_FLAGS):
                    continue
                total += self._place(tensor)
        self._finish_pass("attention", total)

    def _assign_matching(self, label: str, flags: Sequence[str], excluded: Sequence[str] = ()):
        total = 0.0
        for tensor in self.model.tensors:
            if tensor.name in self.seen or not name_matches(tensor.name, flags):
                continue
            if excluded and name_matches(tensor.name, excluded):
                continue
            total += self._place(tensor)
        self._finish_pass(label, total)

    def _assign_remaining(self):
        total = 0.0
        for tensor in self.model.tensors:
            if tensor.name in self.seen:
                continue
            total += self._place(tensor)
        self._finish_pass("rest", total)

    def _finish_pass(self, label: str, total: float):
        self.pass_bytes[label] = total
        self._log(f"Total {label} bytes allocated: {bytes_to_mib(total):.2f} MiB")
        self._log(f"Device allocation after {label} pass:")
        for device in self.allocator.devices:
            self._log(f"  {device.name}: {bytes_to_mib(device.bytes_allocated):.2f} MiB allocated")

    def _build_result(self) -> OptimizationResult:
        tensor_map = dict(self.allocator.tensor_map)
        report = [
            DeviceReport(
                name=device.name,
                bytes_allocated=device.bytes_allocated,
                capacity_bytes=device.memory_total_bytes,
                utilization_fraction=device.utilization,
                unbounded=device.mode == CapacityMode.UNBOUNDED,
            )
            for device in self.allocator.devices
        ]
        return OptimizationResult(
            command_fragment=build_command_fragment(tensor_map),
            tensor_device_map=tensor_map,
            device_report=report,
            kv_cache_bytes=self.kv_cache_bytes,
            tensor_bytes=sum(self.tensor_sizes.values()),
            pass_bytes=dict(self.pass_bytes),
        )
