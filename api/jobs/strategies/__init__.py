"""Default job-type to strategy table.

``JobRunner`` copies this table per instance; extend a runner with
``JobRunner.register_strategy`` rather than mutating the module table.
"""
from typing import Dict, Optional

from .base import JobContext, JobParams, JobStrategy
from .build import BuildStrategy
from .composite import BuildDeployAllStrategy
from .deploy_unit import DeployUnitStrategy
from .frontend_build import FrontendBuildStrategy
from .infra import InfraStrategy
from .tail_logs import TailLogsStrategy
from .testing import TestRunStrategy

STRATEGIES: Dict[str, JobStrategy] = {
    "build": BuildStrategy(),
    "diff": InfraStrategy("diff"),
    "synth": InfraStrategy("synth"),
    "deploy": InfraStrategy("deploy"),
    "deploy-unit": DeployUnitStrategy(),
    "tail-logs": TailLogsStrategy(),
    "frontend-build": FrontendBuildStrategy(),
    "build-deploy-all": BuildDeployAllStrategy(),
    "test-run": TestRunStrategy(),
}


def get_strategy(job_type: str) -> Optional[JobStrategy]:
    return STRATEGIES.get(getattr(job_type, "value", job_type))


__all__ = [
    "JobContext",
    "JobParams",
    "JobStrategy",
    "STRATEGIES",
    "get_strategy",
]
