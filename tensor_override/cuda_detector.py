#!/usr/bin/env python3
"""
CUDA Device Detection
Detects CUDA devices and their total VRAM through nvidia-smi.
"""

import subprocess
import sys
from typing import Dict, List

MIB = 1024 * 1024


class CUDADevice:
    def __init__(self, device_id: int, name: str, total_memory_bytes: int):
        self.device_id = device_id
        self.name = name
        self.total_memory_bytes = total_memory_bytes

    @property
    def override_name(self) -> str:
        """Buffer name llama.cpp accepts in -ot overrides"""
        return f"CUDA{self.device_id}"

    def __repr__(self):
        return f"{self.override_name}: {self.name} ({self.total_memory_bytes // MIB} MiB)"


def parse_nvidia_smi_output(output: str) -> List[CUDADevice]:
    """Parse `index, name, memory.total` CSV rows with memory in MiB"""
    devices = []
    for line in output.strip().split("\n"):
        if not line.strip():
            continue
        parts = [p.strip() for p in line.split(",")]
        if len(parts) < 3:
            print(f"Warning: Unexpected nvidia-smi line: {line}", file=sys.stderr)
            continue
        try:
            device_id = int(parts[0])
            memory_mib = int(parts[-1].replace("MiB", "").strip())
        except ValueError:
            print(f"Warning: Could not parse nvidia-smi line: {line}", file=sys.stderr)
            continue
        # product names may contain commas
        name = ", ".join(parts[1:-1])
        devices.append(CUDADevice(device_id, name, memory_mib * MIB))
    return devices


class CUDADetector:
    def __init__(self):
        self.devices: List[CUDADevice] = []
        self.total_vram_bytes = 0

    def detect_devices(self) -> List[CUDADevice]:
        """Detect all CUDA devices and their VRAM"""
        try:
            result = subprocess.run([
                'nvidia-smi', '--query-gpu=index,name,memory.total',
                '--format=csv,noheader,nounits'
            ], capture_output=True, text=True, check=True)
        except FileNotFoundError:
            print("Warning: nvidia-smi not found", file=sys.stderr)
            return []
        except subprocess.CalledProcessError as e:
            print(f"Warning: Error running nvidia-smi: {e}", file=sys.stderr)
            return []

        self.devices = parse_nvidia_smi_output(result.stdout)
        self.total_vram_bytes = sum(d.total_memory_bytes for d in self.devices)
        return self.devices

    def get_device_info(self) -> Dict:
        """Get structured device information"""
        return {
            'devices': [
                {
                    'device_id': d.device_id,
                    'name': d.name,
                    'override_name': d.override_name,
                    'total_memory_bytes': d.total_memory_bytes,
                } for d in self.devices
            ],
            'total_vram_bytes': self.total_vram_bytes,
            'device_count': len(self.devices)
        }

    def print_device_summary(self):
        print("CUDA Device Detection Summary:")
        print("=" * 50)
        for device in self.devices:
            print(f"Device {device.device_id}: {device.name}")
            print(f"  Total VRAM: {device.total_memory_bytes // MIB:,} MiB")
        print(f"Total VRAM across all devices: {self.total_vram_bytes // MIB:,} MiB")
