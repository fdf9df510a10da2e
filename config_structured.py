"""
Structured configuration for the job engine using typed dataclasses.

This is the AUTHORITATIVE source of truth for all tunable values.
``config.py`` re-exports flat constants derived from here.

Each subsystem gets its own dataclass.

Usage:
    from jobforge.config_structured import get_config
    cfg = get_config()
    cfg.registry.max_output_lines
    cfg.toolchains["dotnet"].base_parallelism
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple


# ── Job registry ─────────────────────────────────────────────────────


@dataclass
class RegistryConfig:
    """Job record retention and output buffering."""

    max_output_lines: int = 1000
    retained_jobs: int = 50
    recent_jobs_default: int = 20


# ── Build toolchains ─────────────────────────────────────────────────


@dataclass
class ToolchainConfig:
    """Parallelism profile for one build toolchain family.

    ``shared_precompile`` toolchains get a sequential warm-up phase before
    the per-artifact batches.  ``heavy`` toolchains wait for resource
    relief before each batch and pause briefly between batches.
    """

    base_parallelism: int = 2
    shared_precompile: bool = False
    heavy: bool = False
    min_memory_gb_per_unit: float = 0.0
    wait_min_free_gb: float = 1.0

    def __post_init__(self):
        if not isinstance(self.base_parallelism, int) or self.base_parallelism < 1:
            raise ValueError(
                f"base_parallelism must be a positive integer, got {self.base_parallelism}"
            )
        if self.min_memory_gb_per_unit < 0:
            raise ValueError("min_memory_gb_per_unit cannot be negative")


def _default_toolchains() -> Dict[str, ToolchainConfig]:
    return {
        "dotnet": ToolchainConfig(
            base_parallelism=4,
            shared_precompile=True,
            heavy=True,
            min_memory_gb_per_unit=1.5,
            wait_min_free_gb=2.0,
        ),
        "typescript-edge": ToolchainConfig(base_parallelism=4),
        "js": ToolchainConfig(base_parallelism=8),
        "python": ToolchainConfig(base_parallelism=8),
    }


DEFAULT_TOOLCHAIN = ToolchainConfig(base_parallelism=2)


@dataclass
class ThrottleConfig:
    """Resource-pressure thresholds for adaptive parallelism."""

    high_memory_pct: float = 80.0
    very_high_memory_pct: float = 90.0
    high_load_per_cpu: float = 1.5
    # "Safe to proceed" thresholds used by the pre-batch wait
    safe_memory_pct: float = 95.0
    safe_load_per_cpu: float = 2.0
    resource_wait_timeout_s: float = 10.0
    resource_poll_interval_s: float = 1.0
    batch_pause_s: float = 0.1


# ── Approval gate ────────────────────────────────────────────────────


@dataclass
class ApprovalConfig:
    """Heuristics for deciding whether a plan reports real changes."""

    change_markers: List[str] = field(default_factory=lambda: ["[+]", "[-]", "[~]"])
    sensitive_categories: List[str] = field(
        default_factory=lambda: ["IAM Statement Changes", "Security Group Changes"]
    )
    # 0 = plan ran and found no differences, 1 = plan ran and found differences
    plan_ok_exit_codes: Tuple[int, ...] = (0, 1)


# ── Log tailing ──────────────────────────────────────────────────────


@dataclass
class TailConfig:
    """Live log tailing loop."""

    events_per_batch: int = 500
    poll_interval_s: float = 2.0
    idle_retry_s: float = 2.0


@dataclass
class RetryConfig:
    """Retry policy for full-project builds ahead of a test run."""

    build_attempts: int = 3


@dataclass
class SystemConfig:
    """Top-level configuration aggregating all subsystems."""

    registry: RegistryConfig = field(default_factory=RegistryConfig)
    toolchains: Dict[str, ToolchainConfig] = field(default_factory=_default_toolchains)
    throttle: ThrottleConfig = field(default_factory=ThrottleConfig)
    approval: ApprovalConfig = field(default_factory=ApprovalConfig)
    tail: TailConfig = field(default_factory=TailConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)

    def toolchain(self, name: str) -> ToolchainConfig:
        """Return the profile for *name*, falling back to the default profile."""
        return self.toolchains.get(name, DEFAULT_TOOLCHAIN)


# ── Module-level singleton ──────────────────────────────────────────

_CONFIG: Optional[SystemConfig] = None


def get_config() -> SystemConfig:
    """Return the singleton SystemConfig instance.

    On first call, instantiates the default SystemConfig. Subsequent
    calls return the same instance so all callers share one source of
    truth.
    """
    global _CONFIG
    if _CONFIG is None:
        _CONFIG = SystemConfig()
    return _CONFIG
