#!/usr/bin/env python3
"""
GGML Quantization Size Table
Approximate bytes per element for every GGML tensor type llama.cpp can load.

Block formats store a per-block scale next to the packed quants, so their
size lands between the nominal bit width / 8 and the next whole byte.
Values are configuration data: change them here, never compute them.

[1] block layouts from ggml-common.h (block_q4_0, block_q8_0, ...)
"""

from typing import Dict, Optional

from tensor_override.errors import UnsupportedQuantizationError

QUANTIZATION_SIZE_BYTES: Dict[str, float] = {
    # Floating point, no block overhead
    "F64": 8,
    "F32": 4,
    "F16": 2,
    "BF16": 2,

    # Plain integers, width in bytes
    "I8": 1,
    "I16": 2,
    "I32": 4,
    "I64": 8,

    # Uniform block formats, 32 elements per block [1]
    "Q4_0": 0.5625,  # fp16 delta + 16 bytes of nibbles
    "Q4_1": 0.5938,  # delta + min header counted as 3 bytes
    "Q5_0": 0.6875,  # fp16 delta + high bits + nibbles
    "Q5_1": 0.7188,  # delta + min header counted as 3 bytes
    "Q8_0": 1.0625,  # fp16 delta + 32 int8 quants
    "Q8_1": 1.0938,  # delta + sum header counted as 3 bytes

    # K-series super blocks of 256 elements, approximated against the
    # uniform formats above
    "Q2_K": 0.5625,  # same as Q4_0
    "Q3_K": 0.625,   # halfway between Q4_0 and Q5_0
    "Q4_K": 0.625,   # halfway between Q4_0 and Q5_0
    "Q5_K": 0.6875,  # same as Q5_0
    "Q6_K": 0.75,    # just above Q5_0
    "Q8_K": 1,       # 8 bits, scales ignored

    # Importance-aware low bit formats: bits per element, except the 4 bit
    # block formats which use their block layout
    "IQ1_S": 0.5,      # counted as 4 bits
    "IQ1_M": 0.5,      # counted as 4 bits
    "IQ2_XXS": 0.25,   # 2 bits
    "IQ2_XS": 0.25,    # 2 bits
    "IQ2_S": 0.25,     # 2 bits
    "IQ3_XXS": 0.1667, # ~1.33 bits
    "IQ3_S": 0.1667,   # ~1.33 bits
    "IQ4_NL": 0.5625,  # fp16 delta + 16 bytes of nibbles per 32 [1]
    "IQ4_XS": 0.5313,  # 136 bytes per 256 element super block [1]

    # Ternary formats
    "TQ1_0": 0.5,      # counted as 4 bits
    "TQ2_0": 0.25,     # 2 bits
}


def bytes_per_element(quant_type: str, tensor_name: Optional[str] = None) -> float:
    """Look up bytes per element; unknown types name the offending tensor."""
    size = QUANTIZATION_SIZE_BYTES.get(str(quant_type).upper())
    if size is None:
        raise UnsupportedQuantizationError(quant_type, tensor_name)
    return size
