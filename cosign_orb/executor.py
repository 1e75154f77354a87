"""Run cosign with an assembled command plan."""

import logging
import os
import subprocess
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Mapping, Optional

from .adapter import CommandPlan
from .errors import ConfigurationError, ExecutionError

logger = logging.getLogger(__name__)


@contextmanager
def materialize_documents(plan: CommandPlan) -> Iterator[List[str]]:
    """
    Write the plan's inline documents to temporary files.

    Yields:
        Final arguments, with one ``--flag=<file>`` per document inserted
        before the target
    """
    paths: List[Path] = []
    try:
        extra = []
        for flag, content in plan.documents.items():
            fd, name = tempfile.mkstemp(prefix="cosign-orb-", suffix=".json")
            with os.fdopen(fd, "w") as f:
                f.write(content)
            paths.append(Path(name))
            extra.append(f"{flag}={name}")
        yield plan.args[:-1] + extra + plan.args[-1:]
    finally:
        for path in paths:
            path.unlink(missing_ok=True)


class Executor:
    """Runs the external signer and propagates its exit status unchanged."""

    def __init__(self, binary: str = "cosign", environ: Optional[Mapping[str, str]] = None):
        """
        Initialize executor.

        Args:
            binary: Name or path of the cosign executable
            environ: Base environment for the child; defaults to os.environ
        """
        self.binary = binary
        self.environ = environ

    def _environment(
        self, plan: CommandPlan, secret_env: Optional[Mapping[str, str]]
    ) -> Dict[str, str]:
        env = dict(os.environ if self.environ is None else self.environ)
        env.update(plan.env)
        if secret_env:
            env.update(secret_env)
        return env

    def run(
        self,
        plan: CommandPlan,
        secret_env: Optional[Mapping[str, str]] = None,
        check: bool = True,
    ) -> int:
        """
        Execute cosign for a plan.

        Args:
            plan: Command plan from the version adapter
            secret_env: Secret environment values (e.g. COSIGN_PASSWORD) for the child only
            check: Raise ExecutionError on a non-zero exit status

        Returns:
            The signer's exit status

        Raises:
            ConfigurationError: If cosign is not installed
            ExecutionError: If cosign exits non-zero and check is True
        """
        env = self._environment(plan, secret_env)

        with materialize_documents(plan) as args:
            shown = plan.redacted()
            logger.debug("Running: %s %s", self.binary, " ".join(shown))
            try:
                result = subprocess.run([self.binary] + args, env=env)
            except FileNotFoundError:
                raise ConfigurationError(f"Cosign executable not found: {self.binary}")

        if result.returncode != 0:
            logger.error(
                "cosign %s failed with exit status %d", plan.operation.value, result.returncode
            )
            if check:
                raise ExecutionError(result.returncode, f"cosign {plan.operation.value}")
        return result.returncode
