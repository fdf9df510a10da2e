"""
Central configuration for the job engine.

Flat-constant interface over ``config_structured.py``.  Values that have a
structured counterpart are derived from the structured config singleton so
there is a single source of truth.
"""
from __future__ import annotations

from pathlib import Path

from .config_structured import get_config as _get_config

_cfg = _get_config()

# ── Paths ──────────────────────────────────────────────────────────────
ROOT_DIR = Path(__file__).parent
STATE_DIR = Path.home() / ".jobforge"
DEFAULT_JOB_DB = STATE_DIR / "jobs.db"

# ── Logging ────────────────────────────────────────────────────────────
LOG_LEVEL = "INFO"
LOG_FORMAT = "structured"  # "structured" or "json"

# ── Job registry ───────────────────────────────────────────────────────
MAX_OUTPUT_LINES = _cfg.registry.max_output_lines
RETAINED_JOBS = _cfg.registry.retained_jobs
RECENT_JOBS_DEFAULT = _cfg.registry.recent_jobs_default

# ── Adaptive parallelism ───────────────────────────────────────────────
HIGH_MEMORY_PCT = _cfg.throttle.high_memory_pct
VERY_HIGH_MEMORY_PCT = _cfg.throttle.very_high_memory_pct
HIGH_LOAD_PER_CPU = _cfg.throttle.high_load_per_cpu
SAFE_MEMORY_PCT = _cfg.throttle.safe_memory_pct
SAFE_LOAD_PER_CPU = _cfg.throttle.safe_load_per_cpu
RESOURCE_WAIT_TIMEOUT_S = _cfg.throttle.resource_wait_timeout_s
BATCH_PAUSE_S = _cfg.throttle.batch_pause_s

# ── Tailing / retries ──────────────────────────────────────────────────
TAIL_EVENTS_PER_BATCH = _cfg.tail.events_per_batch
TAIL_POLL_INTERVAL_S = _cfg.tail.poll_interval_s
BUILD_ATTEMPTS = _cfg.retry.build_attempts

# ── Status markers written into job output ─────────────────────────────
CANCELLED_MARKER = "[Job cancelled by user]"
FORCE_KILLED_MARKER = "[Job force-killed]"
APPROVED_MARKER = "✓ Approved by user"
REJECTED_MARKER = "✗ Rejected by user"
SEPARATOR = "━" * 50


def validate_config() -> list:
    """Check config for common misconfigurations.

    Returns a list of dicts: [{"level": "WARNING"|"ERROR", "message": str}].
    Called on server startup.
    """
    cfg = _get_config()
    issues = []

    # 1. Memory thresholds must be ordered
    if cfg.throttle.high_memory_pct >= cfg.throttle.very_high_memory_pct:
        issues.append({
            "level": "ERROR",
            "message": (
                f"high_memory_pct ({cfg.throttle.high_memory_pct}) must be below "
                f"very_high_memory_pct ({cfg.throttle.very_high_memory_pct}); "
                "the high-pressure tier would never apply."
            ),
        })

    # 2. The pre-batch wait must be looser than the throttling thresholds
    if cfg.throttle.safe_memory_pct < cfg.throttle.very_high_memory_pct:
        issues.append({
            "level": "WARNING",
            "message": (
                f"safe_memory_pct ({cfg.throttle.safe_memory_pct}) is stricter than "
                f"very_high_memory_pct ({cfg.throttle.very_high_memory_pct}); heavy "
                "batches will routinely wait for the full timeout."
            ),
        })

    # 3. Output cap
    if cfg.registry.max_output_lines < 1:
        issues.append({
            "level": "ERROR",
            "message": "max_output_lines must be at least 1.",
        })

    # 4. Retention
    if cfg.registry.retained_jobs < 1:
        issues.append({
            "level": "ERROR",
            "message": "retained_jobs must be at least 1 or every job is deleted on startup.",
        })

    # 5. Toolchains that pre-compile shared code are expected to be heavy
    for name, tc in cfg.toolchains.items():
        if tc.shared_precompile and not tc.heavy:
            issues.append({
                "level": "WARNING",
                "message": (
                    f"Toolchain '{name}' pre-compiles shared projects but is not marked heavy; "
                    "batches will not wait for resource relief."
                ),
            })

    # 6. Retry budget
    if cfg.retry.build_attempts < 1:
        issues.append({
            "level": "ERROR",
            "message": "build_attempts must be at least 1.",
        })

    return issues
