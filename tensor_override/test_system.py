#!/usr/bin/env python3
"""
Test host memory detection
"""

from collections import namedtuple

from tensor_override import system

VirtualMemory = namedtuple("VirtualMemory", ["total", "available"])


def test_ram_from_psutil(monkeypatch):
    monkeypatch.setattr(system.psutil, "virtual_memory",
                        lambda: VirtualMemory(64 * 1024 ** 3, 16 * 1024 ** 3))

    assert system.get_ram_bytes() == 64 * 1024 ** 3

    info = system.get_ram_info()
    assert info["total_ram_gb"] == 64.0
    assert info["available_ram_bytes"] == 16 * 1024 ** 3
    assert info["available_ram_gb"] == 16.0


def test_real_ram_is_positive():
    assert system.get_ram_bytes() > 0
