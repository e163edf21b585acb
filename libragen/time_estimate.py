"""
Embedding time estimates and human-readable formatting for build summaries.
"""

from __future__ import annotations

import os
import platform
import sys
from dataclasses import dataclass
from typing import Optional


@dataclass
class SystemInfo:
    cpu_model: str
    cpu_cores: int
    platform: str
    arch: str


@dataclass
class TimeEstimate:
    estimated_seconds: float
    formatted_time: str
    chunks_per_second: int
    system_info: SystemInfo


def get_system_info() -> SystemInfo:
    machine = platform.machine().lower()
    arch = {"x86_64": "x64", "amd64": "x64", "aarch64": "arm64"}.get(machine, machine)
    return SystemInfo(
        cpu_model=platform.processor() or "Unknown CPU",
        cpu_cores=os.cpu_count() or 1,
        platform=sys.platform,
        arch=arch,
    )


def _apple_silicon_rate(info: SystemInfo) -> int:
    tiers = {
        "M4": ((14, 70), (10, 65), (0, 60)),
        "M3": ((14, 60), (11, 55), (0, 50)),
        "M2": ((12, 55), (10, 50), (0, 45)),
        "M1": ((10, 45), (8, 40), (0, 35)),
    }
    for family, steps in tiers.items():
        if family in info.cpu_model:
            for min_cores, rate in steps:
                if info.cpu_cores >= min_cores:
                    return rate
    return 40


def baseline_chunks_per_second(info: SystemInfo) -> int:
    # Conservative chunks/second for a small local embedding model, batch
    # size 32, ~1000-character chunks.
    if info.arch == "arm64" and info.platform == "darwin":
        return _apple_silicon_rate(info)
    if info.arch == "x64":
        if info.cpu_cores >= 16:
            return 30
        if info.cpu_cores >= 8:
            return 22
        if info.cpu_cores >= 4:
            return 15
        return 10
    if info.arch == "arm64":
        return 20 if info.cpu_cores >= 8 else 8
    return 15


def format_duration(seconds: float) -> str:
    """``42s``, ``3m 5s``, ``2h 10m``."""
    if seconds < 60:
        return f"{round(seconds)}s"
    minutes = int(seconds // 60)
    rest = round(seconds % 60)
    if rest == 60:
        minutes, rest = minutes + 1, 0
    if minutes < 60:
        return f"{minutes}m {rest}s" if rest > 0 else f"{minutes}m"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m" if minutes > 0 else f"{hours}h"


def format_bytes(n: int) -> str:
    """``512 B``, ``1.5 KB``, ``2.3 MB``."""
    if n < 1024:
        return f"{n} B"
    value = float(n)
    for unit in ("KB", "MB", "GB", "TB"):
        value /= 1024
        if value < 1024 or unit == "TB":
            return f"{value:.1f} {unit}"
    return f"{n} B"  # unreachable


def estimate_embedding_time(chunk_count: int, info: Optional[SystemInfo] = None) -> TimeEstimate:
    """Estimate how long embedding *chunk_count* chunks takes on this machine."""
    info = info or get_system_info()
    rate = baseline_chunks_per_second(info)
    seconds = chunk_count / rate
    return TimeEstimate(seconds, format_duration(seconds), rate, info)


def format_system_info(info: SystemInfo) -> str:
    name = info.cpu_model
    for token in ("(R)", "(TM)"):
        name = name.replace(token, "")
    if "@" in name:
        name = name.split("@", 1)[0].rstrip()
        if name.endswith("CPU"):
            name = name[:-3]
    name = " ".join(name.split()) or "Unknown CPU"
    if len(name) > 40:
        name = name[:37] + "..."
    return f"{name} ({info.cpu_cores} cores)"
