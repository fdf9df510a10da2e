"""Infrastructure tool invocations: stack naming, plan/apply argv and env."""
from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from typing import Dict, List, Optional


class InfraConfigError(ValueError):
    """Raised when an infrastructure command cannot be formed."""


@dataclass
class InfraCommands:
    """Builds argv lists for the infrastructure tool.

    ``command`` is the tool prefix (``"yarn cdk"`` by default); plan is
    ``<command> diff <stack>``, apply is
    ``<command> deploy <stack> --require-approval never``.
    """

    command: str = "yarn cdk"
    environment: Optional[str] = None
    stage: str = "dev"
    push_command: str = (
        "aws lambda update-function-code --function-name {remote} "
        "--zip-file fileb://{package} --no-cli-pager"
    )
    stack_aliases: Dict[str, str] = field(default_factory=lambda: {
        "static-backend": "backend",
        "beanstalk-backend": "backend-beanstalk",
    })

    def _prefix(self) -> List[str]:
        return shlex.split(self.command)

    def require_environment(self) -> str:
        if not self.environment:
            raise InfraConfigError("No environment selected. Please select an environment first.")
        return self.environment

    def stack_name(self, target: str) -> str:
        if target in self.stack_aliases:
            return self.stack_aliases[target]
        return f"{target}-{self.require_environment()}"

    def action_argv(self, action: str, stack: str) -> List[str]:
        return self._prefix() + [action, stack]

    def plan_argv(self, stack: str) -> List[str]:
        return self.action_argv("diff", stack)

    def apply_argv(self, stack: str) -> List[str]:
        return self.action_argv("deploy", stack) + ["--require-approval", "never"]

    def env(self, target: str) -> Dict[str, str]:
        """Variables the infrastructure app reads to select its stack."""
        return {
            "STACK": target,
            "SUFFIX": self.require_environment(),
            "INFRA_STAGE": self.stage,
            "NODE_OPTIONS": "--max_old_space_size=8192",
            "NO_COLOR": "1",
            "FORCE_COLOR": "0",
        }

    def push_argv(self, remote: str, package: str) -> List[str]:
        """Argv that uploads *package* as the code of remote unit *remote*."""
        return [part.format(remote=remote, package=package) for part in shlex.split(self.push_command)]
