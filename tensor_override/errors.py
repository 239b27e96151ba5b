#!/usr/bin/env python3
"""
Tensor Override Errors
Every error here is fatal for a planning run: no partial plan is produced.
"""


class TensorOverrideError(Exception):
    """Base class for all planner errors."""


class UnsupportedArchitectureError(TensorOverrideError):
    def __init__(self, architecture):
        super().__init__(f"Unsupported architecture: {architecture}")
        self.architecture = architecture


class ModelMetadataError(TensorOverrideError):
    """Metadata is missing a key or holds an unusable value."""


class UnsupportedQuantizationError(TensorOverrideError):
    def __init__(self, quant_type, tensor_name=None):
        message = f"Unsupported quantization type: {quant_type}"
        if tensor_name:
            message += f" in tensor {tensor_name}"
        super().__init__(message)
        self.quant_type = quant_type
        self.tensor_name = tensor_name


class InfeasiblePlanError(TensorOverrideError):
    """Required bytes exceed the combined GPU and host memory."""


class NoDeviceCapacityError(TensorOverrideError):
    """No device, in priority order, can accept an allocation."""


class CapacityExceededError(TensorOverrideError):
    """A named device cannot hold the requested bytes."""


class UnknownDeviceError(TensorOverrideError):
    """A named device is not part of the allocator."""


class ModelLoadError(TensorOverrideError):
    """The GGUF model could not be read or downloaded."""


class ConfigurationError(TensorOverrideError, ValueError):
    """Run configuration is invalid."""
