"""Dependency injection providers."""
from .providers import (
    get_cache,
    get_changed_files,
    get_context,
    get_discovery,
    get_infra,
    get_job_runner,
    get_job_store,
    get_log_source,
    get_orchestrator,
    get_registry,
    get_runtime_config,
    get_settings,
    reset_providers,
)

__all__ = [
    "get_cache",
    "get_changed_files",
    "get_context",
    "get_discovery",
    "get_infra",
    "get_job_runner",
    "get_job_store",
    "get_log_source",
    "get_orchestrator",
    "get_registry",
    "get_runtime_config",
    "get_settings",
    "reset_providers",
]
