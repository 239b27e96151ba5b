#!/usr/bin/env python3
"""
Host memory information via psutil.
"""

from typing import Dict

import psutil


def get_ram_bytes() -> int:
    return psutil.virtual_memory().total


def get_ram_info() -> Dict:
    """Get system RAM information"""
    mem = psutil.virtual_memory()
    return {
        "total_ram_bytes": mem.total,
        "total_ram_gb": round(mem.total / (1024**3), 2),
        "available_ram_bytes": mem.available,
        "available_ram_gb": round(mem.available / (1024**3), 2)
    }
