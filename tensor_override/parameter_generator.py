#!/usr/bin/env python3
"""
Parameter Generator for llama.cpp -ot (Override Tensor) Parameters
Turns a tensor -> device map into the command fragment passed to llama.cpp
and a per-device usage report.
"""

import os
import re
from typing import Dict, List, Optional

# -ngl 0 keeps llama.cpp from offloading layers on its own
NO_IMPLICIT_OFFLOAD = "-ngl 0"
OVERRIDE_PATTERN = re.compile(r'-ot\s+"([^"]*)"')
MIB = 1024 * 1024


def override_argument(tensor_name: str, device_name: str) -> str:
    return f'-ot "{tensor_name}={device_name}"'


def llama_cpp_arguments(tensor_device_map: Dict[str, str]) -> List[str]:
    """-ngl 0 followed by one -ot "<tensor>=<device>" per tensor, in map order"""
    return [NO_IMPLICIT_OFFLOAD] + [
        override_argument(tensor_name, device_name)
        for tensor_name, device_name in tensor_device_map.items()
    ]


def build_command_fragment(tensor_device_map: Dict[str, str]) -> str:
    return " ".join(llama_cpp_arguments(tensor_device_map))


def parse_override_parameters(fragment: str) -> Dict[str, str]:
    """Recover the tensor -> device map from a command fragment"""
    overrides = {}
    for match in OVERRIDE_PATTERN.finditer(fragment):
        tensor_name, separator, device_name = match.group(1).rpartition("=")
        if not separator:
            raise ValueError(f"Malformed override: {match.group(0)}")
        overrides[tensor_name] = device_name
    return overrides


class ParameterGenerator:
    def __init__(self, result):
        self.result = result

    def format_llama_cpp_parameters(self) -> List[str]:
        """Format parameters for the llama.cpp command line"""
        return llama_cpp_arguments(self.result.tensor_device_map)

    def format_device_report(self) -> List[str]:
        lines = []
        for device in self.result.device_report:
            used_mib = device.bytes_allocated / MIB
            capacity_mib = device.capacity_bytes / MIB
            line = (f"{device.name}: {used_mib:.1f} MiB / {capacity_mib:.1f} MiB "
                    f"({device.percent_used:.1f}%, {device.utilization_fraction * 100:.0f}% usable)")
            if device.unbounded:
                line += " [unbounded]"
            lines.append(line)
        return lines

    def print_assignment_summary(self):
        """Print a summary of tensor assignments"""
        print("\nTensor Assignment Summary:")
        print("=" * 60)

        counts: Dict[str, int] = {}
        for device_name in self.result.tensor_device_map.values():
            counts[device_name] = counts.get(device_name, 0) + 1

        for device, line in zip(self.result.device_report, self.format_device_report()):
            print(f"{line} - {counts.get(device.name, 0)} tensors")

        print(f"\nModel tensors: {self.result.tensor_bytes / MIB:.1f} MiB")
        print(f"KV cache: {self.result.kv_cache_bytes / MIB:.1f} MiB")

    def save_parameters(self, output_file: str, model_path: Optional[str] = None):
        """Save the command fragment to a file"""
        with open(output_file, 'w') as f:
            f.write("# llama.cpp tensor override parameters\n")
            f.write("# Generated by tensor-override optimizer\n")
            if model_path is not None:
                f.write(f"# Model: {os.path.basename(model_path)}\n")
            f.write("\n")
            f.write(self.result.command_fragment + "\n")

        print(f"Parameters saved to {output_file}")

    def get_parameter_summary(self) -> Dict:
        """Get a summary of generated parameters"""
        parameters = self.format_llama_cpp_parameters()
        overrides = parameters[1:]

        return {
            'total_parameters': len(overrides),
            'cpu_overrides': len([p for p in overrides if p.endswith('=CPU"')]),
            'gpu_overrides': len([p for p in overrides if '=CUDA' in p]),
            'parameters': parameters,
        }

    def get_assignment_data(self) -> Dict:
        """Get structured assignment data for export"""
        return {
            'total_tensors': len(self.result.tensor_device_map),
            'tensor_device_map': dict(self.result.tensor_device_map),
            'kv_cache_bytes': self.result.kv_cache_bytes,
            'tensor_bytes': self.result.tensor_bytes,
            'pass_bytes': dict(self.result.pass_bytes),
            'devices': [
                {
                    'name': d.name,
                    'bytes_allocated': d.bytes_allocated,
                    'capacity_bytes': d.capacity_bytes,
                    'utilization_fraction': d.utilization_fraction,
                    'utilization_percent': d.percent_used,
                    'unbounded': d.unbounded,
                } for d in self.result.device_report
            ],
            'command_fragment': self.result.command_fragment,
        }
