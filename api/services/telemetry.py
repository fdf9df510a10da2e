"""Live host telemetry: memory, load average and CPU count.

Telemetry is sampled, never mutated, so it needs no locking.  Everything
here is read straight from the OS so that a sample costs a few syscalls.
"""
from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass
from typing import Dict, Optional

logger = logging.getLogger(__name__)

_GB = 1024 ** 3
_MEMINFO = "/proc/meminfo"


@dataclass(frozen=True)
class SystemResources:
    free_memory_gb: float
    total_memory_gb: float
    memory_usage_pct: float
    load_avg_1m: float
    cpu_count: int

    @property
    def load_per_cpu(self) -> float:
        return self.load_avg_1m / max(1, self.cpu_count)

    def describe(self) -> str:
        return (
            f"{self.free_memory_gb:.1f}GB free / {self.total_memory_gb:.1f}GB total, "
            f"load {self.load_avg_1m:.1f}"
        )

    def to_dict(self) -> Dict[str, float]:
        d = asdict(self)
        d["load_per_cpu"] = round(self.load_per_cpu, 3)
        return d

    @classmethod
    def from_values(
        cls,
        free_memory_gb: float,
        total_memory_gb: float,
        load_avg_1m: float = 0.0,
        cpu_count: int = 4,
    ) -> "SystemResources":
        """Build a reading from raw numbers, deriving the usage percentage."""
        pct = 0.0
        if total_memory_gb > 0:
            pct = (total_memory_gb - free_memory_gb) / total_memory_gb * 100
        return cls(free_memory_gb, total_memory_gb, pct, load_avg_1m, cpu_count)


def _read_meminfo_available() -> Optional[float]:
    """MemAvailable in bytes, or None where /proc is not available."""
    try:
        with open(_MEMINFO, encoding="ascii") as fh:
            for line in fh:
                if line.startswith("MemAvailable:"):
                    return float(line.split()[1]) * 1024
    except OSError:
        return None
    return None


def _total_memory_bytes() -> float:
    try:
        return float(os.sysconf("SC_PHYS_PAGES") * os.sysconf("SC_PAGE_SIZE"))
    except (ValueError, OSError, AttributeError):
        logger.debug("sysconf memory size unavailable")
        return 0.0


def _free_memory_bytes() -> float:
    available = _read_meminfo_available()
    if available is not None:
        return available
    try:
        return float(os.sysconf("SC_AVPHYS_PAGES") * os.sysconf("SC_PAGE_SIZE"))
    except (ValueError, OSError, AttributeError):
        return 0.0


def sample_resources() -> SystemResources:
    """Take one telemetry reading of the current host."""
    total = _total_memory_bytes() / _GB
    free = _free_memory_bytes() / _GB
    try:
        load_1m = os.getloadavg()[0]
    except (OSError, AttributeError):
        load_1m = 0.0
    return SystemResources.from_values(
        free_memory_gb=free,
        total_memory_gb=total,
        load_avg_1m=load_1m,
        cpu_count=os.cpu_count() or 1,
    )
