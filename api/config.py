"""Settings for the API process and runtime-adjustable engine knobs."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic_settings import BaseSettings

from ..config import DEFAULT_JOB_DB
from ..config_structured import SystemConfig, get_config

logger = logging.getLogger(__name__)

# Keys that may be patched at runtime via the /api/config endpoint,
# mapped to (section, attribute) on the structured config.
_ADJUSTABLE_KEYS: Dict[str, Tuple[str, str]] = {
    "HIGH_MEMORY_PCT": ("throttle", "high_memory_pct"),
    "VERY_HIGH_MEMORY_PCT": ("throttle", "very_high_memory_pct"),
    "HIGH_LOAD_PER_CPU": ("throttle", "high_load_per_cpu"),
    "SAFE_MEMORY_PCT": ("throttle", "safe_memory_pct"),
    "SAFE_LOAD_PER_CPU": ("throttle", "safe_load_per_cpu"),
    "RESOURCE_WAIT_TIMEOUT_S": ("throttle", "resource_wait_timeout_s"),
    "BUILD_ATTEMPTS": ("retry", "build_attempts"),
    "TAIL_EVENTS_PER_BATCH": ("tail", "events_per_batch"),
}

# key -> (validator_fn, human-readable description)
CONFIG_VALIDATORS: Dict[str, Tuple[Callable[[Any], bool], str]] = {
    "HIGH_MEMORY_PCT": (lambda v: 0.0 < v < 100.0, "Must be between 0 and 100"),
    "VERY_HIGH_MEMORY_PCT": (lambda v: 0.0 < v < 100.0, "Must be between 0 and 100"),
    "HIGH_LOAD_PER_CPU": (lambda v: v > 0.0, "Must be positive"),
    "SAFE_MEMORY_PCT": (lambda v: 0.0 < v <= 100.0, "Must be between 0 and 100"),
    "SAFE_LOAD_PER_CPU": (lambda v: v > 0.0, "Must be positive"),
    "RESOURCE_WAIT_TIMEOUT_S": (lambda v: 0.0 <= v <= 600.0, "Must be between 0 and 600"),
    "BUILD_ATTEMPTS": (lambda v: 1 <= v <= 10, "Must be between 1 and 10"),
    "TAIL_EVENTS_PER_BATCH": (lambda v: 1 <= v <= 10000, "Must be between 1 and 10000"),
}


class ApiSettings(BaseSettings):
    """Immutable settings loaded from environment / .env file."""

    host: str = "127.0.0.1"
    port: int = 8000
    cors_origins: str = "http://localhost:5173,http://localhost:8000"
    job_db_path: str = str(DEFAULT_JOB_DB)
    log_level: str = "INFO"
    log_format: str = "structured"

    # Workspace layout; relative dirs resolve against workspace_path
    workspace_path: str = "."
    backend_dir: str = "backend"
    infra_dir: str = "infrastructure"
    clients_dir: str = "clients"
    log_dir: str = "logs"
    test_project_dir: str = "tests"

    # Infrastructure target selection
    environment: Optional[str] = None
    infra_stage: str = "dev"
    protected_environments: str = "prod,production"
    infra_command: str = "yarn cdk"
    push_command: str = (
        "aws lambda update-function-code --function-name {remote} "
        "--zip-file fileb://{package} --no-cli-pager"
    )

    model_config = {"env_prefix": "JOBFORGE_API_"}

    def resolve(self, directory: str) -> str:
        path = Path(directory).expanduser()
        if not path.is_absolute():
            path = Path(self.workspace_path).expanduser() / path
        return str(path)

    @property
    def backend_path(self) -> str:
        return self.resolve(self.backend_dir)

    @property
    def infra_path(self) -> str:
        return self.resolve(self.infra_dir)

    @property
    def clients_path(self) -> str:
        return self.resolve(self.clients_dir)

    @property
    def protected_list(self) -> List[str]:
        return [e.strip() for e in self.protected_environments.split(",") if e.strip()]

    def is_protected(self, environment: Optional[str] = None) -> bool:
        env = environment if environment is not None else self.environment
        return bool(env) and env in self.protected_list


class RuntimeConfig:
    """Get/patch access to whitelisted knobs of the structured config."""

    def __init__(self, config: Optional[SystemConfig] = None) -> None:
        self._cfg = config or get_config()

    def get_adjustable(self) -> Dict[str, Any]:
        """Return the current value of every adjustable key."""
        out: Dict[str, Any] = {}
        for key in sorted(_ADJUSTABLE_KEYS):
            section, attr = _ADJUSTABLE_KEYS[key]
            out[key] = getattr(getattr(self._cfg, section), attr)
        return out

    def patch(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Apply validated updates and return the new state.

        Raises ``KeyError`` for unknown keys and ``ValueError`` for values
        that cannot be coerced or fail validation.  Nothing is applied
        unless every update is valid.
        """
        bad = set(updates) - set(_ADJUSTABLE_KEYS)
        if bad:
            raise KeyError(f"Keys not adjustable: {sorted(bad)}")
        staged: List[Tuple[object, str, Any, str]] = []
        for key, value in updates.items():
            section, attr = _ADJUSTABLE_KEYS[key]
            target = getattr(self._cfg, section)
            target_type = type(getattr(target, attr))
            try:
                coerced = target_type(value)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"Cannot coerce {key}={value!r} to {target_type.__name__}") from exc
            check_fn, description = CONFIG_VALIDATORS[key]
            if not check_fn(coerced):
                raise ValueError(f"Invalid value for {key}: {coerced!r}. {description}")
            staged.append((target, attr, coerced, key))
        for target, attr, coerced, key in staged:
            setattr(target, attr, coerced)
            logger.info("RuntimeConfig patched %s = %r", key, coerced)
        return self.get_adjustable()
