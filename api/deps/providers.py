"""Singleton dependency providers for FastAPI ``Depends()``."""
from __future__ import annotations

from functools import lru_cache

from ..config import ApiSettings, RuntimeConfig


@lru_cache
def get_settings() -> ApiSettings:
    return ApiSettings()


@lru_cache
def get_runtime_config() -> RuntimeConfig:
    return RuntimeConfig()


# Lazy singletons, initialised at first call rather than import time
# so the event loop is already running when async resources are needed.

_job_store = None
_registry = None
_cache = None
_discovery = None
_orchestrator = None
_infra = None
_log_source = None
_context = None
_runner = None


def get_job_store():
    """Return the singleton ``JobStore``."""
    global _job_store
    if _job_store is None:
        from ...config import RETAINED_JOBS
        from ..jobs.store import JobStore

        _job_store = JobStore(get_settings().job_db_path, retained_jobs=RETAINED_JOBS)
    return _job_store


def get_registry():
    """Return the singleton ``JobRegistry``."""
    global _registry
    if _registry is None:
        from ..jobs.registry import JobRegistry

        _registry = JobRegistry(get_job_store())
    return _registry


def get_cache():
    """Return the singleton ``CacheManager``."""
    global _cache
    if _cache is None:
        from ..cache.manager import CacheManager

        _cache = CacheManager()
    return _cache


def get_discovery():
    """Return the singleton ``DirectoryDiscovery``."""
    global _discovery
    if _discovery is None:
        from ..services.discovery import DirectoryDiscovery

        _discovery = DirectoryDiscovery(cache=get_cache())
    return _discovery


def get_orchestrator():
    """Return the singleton ``AdaptiveBuildOrchestrator``."""
    global _orchestrator
    if _orchestrator is None:
        from ..orchestrator import AdaptiveBuildOrchestrator
        from ..services.toolchains import CommandBuilder

        registry = get_registry()
        builder = CommandBuilder(registry, discovery=get_discovery())
        _orchestrator = AdaptiveBuildOrchestrator(registry, builder)
    return _orchestrator


def get_infra():
    """Return the singleton ``InfraCommands`` built from settings."""
    global _infra
    if _infra is None:
        from ..services.infra import InfraCommands

        settings = get_settings()
        _infra = InfraCommands(
            command=settings.infra_command,
            environment=settings.environment,
            stage=settings.infra_stage,
            push_command=settings.push_command,
        )
    return _infra


def get_log_source():
    """Return the singleton ``FileLogSource`` over ``settings.log_dir``."""
    global _log_source
    if _log_source is None:
        from ..services.logs import FileLogSource

        settings = get_settings()
        _log_source = FileLogSource(settings.resolve(settings.log_dir))
    return _log_source


def get_context():
    """Return the ``JobContext`` shared by every strategy."""
    global _context
    if _context is None:
        from ..jobs.strategies.base import JobContext

        _context = JobContext(
            registry=get_registry(),
            settings=get_settings(),
            discovery=get_discovery(),
            orchestrator=get_orchestrator(),
            infra=get_infra(),
            log_source=get_log_source(),
            cache=get_cache(),
        )
    return _context


def get_job_runner():
    """Return the singleton ``JobRunner``."""
    global _runner
    if _runner is None:
        from ..jobs.runner import JobRunner

        _runner = JobRunner(get_registry(), get_context())
    return _runner


def reset_providers() -> None:
    """Drop every singleton; the next call rebuilds from current settings."""
    global _job_store, _registry, _cache, _discovery, _orchestrator
    global _infra, _log_source, _context, _runner
    _job_store = _registry = _cache = _discovery = _orchestrator = None
    _infra = _log_source = _context = _runner = None
    get_settings.cache_clear()
    get_runtime_config.cache_clear()


def get_changed_files():
    """Return the ``ChangedFilesProvider`` used for staleness checks."""
    from ..services.staleness import GitChangedFiles

    return GitChangedFiles()
