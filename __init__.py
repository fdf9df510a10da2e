"""jobforge: job orchestration and adaptive build-execution engine."""

__version__ = "1.0.0"
