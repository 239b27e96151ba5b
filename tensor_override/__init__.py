"""
Tensor Override Planner
Plans llama.cpp tensor placement across CUDA devices and host RAM.
"""

from tensor_override.errors import TensorOverrideError
from tensor_override.gguf_analyzer import ModelInfo, TensorInfo
from tensor_override.tensor_optimizer import OptimizationResult, TensorOptimizer

__version__ = "1.0.0"

__all__ = [
    "ModelInfo",
    "OptimizationResult",
    "TensorInfo",
    "TensorOptimizer",
    "TensorOverrideError",
]
