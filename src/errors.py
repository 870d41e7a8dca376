"""
Exception hierarchy for the KubeVirt agent fleet tooling.
"""

from typing import Any, Optional


class VirtFleetError(Exception):
    """Base class for all errors raised by this tool."""


class PrereqMissing(VirtFleetError):
    """A pre-flight requirement (executable, cluster, directory) is missing."""


class ClusterApiError(VirtFleetError):
    """Non-success response from the cluster API."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ResourceNotFound(ClusterApiError):
    """The requested resource does not exist (HTTP 404)."""

    def __init__(self, message: str):
        super().__init__(message, status_code=404)


class ApplyFailed(VirtFleetError):
    """A declarative apply or patch was rejected."""


class ConvergenceTimeout(VirtFleetError):
    """Something we were waiting for did not happen within its budget."""

    def __init__(
        self,
        what: str,
        timeout: float,
        elapsed: float,
        last_state: Any = None,
        last_error: Optional[BaseException] = None,
    ):
        self.what = what
        self.timeout = timeout
        self.elapsed = elapsed
        self.last_state = last_state
        self.last_error = last_error
        message = (
            f"Timeout waiting for {what} after {elapsed:.0f}s "
            f"(budget {timeout:.0f}s); last observed: {last_state!r}"
        )
        if last_error is not None:
            message += f"; last error: {last_error}"
        super().__init__(message)


class InstallPlanTimeout(ConvergenceTimeout):
    """Subscription never reported an installed CSV."""


class InstallTimeout(ConvergenceTimeout):
    """CSV never reached the Succeeded phase."""


class CapabilityUnhealthy(ConvergenceTimeout):
    """HyperConverged never became healthy."""


class VMNotReady(ConvergenceTimeout):
    """VMI never reported the Ready condition."""


class SSHUnavailable(ConvergenceTimeout):
    """SSH round trip to the VM never succeeded."""


class RemoteExecFailed(VirtFleetError):
    """A command executed inside a VM exited non-zero."""

    def __init__(self, command: str, returncode: int, output: str = ""):
        self.command = command
        self.returncode = returncode
        self.output = output
        detail = output.strip().splitlines()[-1] if output.strip() else ""
        super().__init__(
            f"Remote command failed (exit {returncode}): {command}"
            + (f": {detail}" if detail else "")
        )


class CopyFailed(VirtFleetError):
    """Copying a file into a VM failed."""


class BuildFailed(VirtFleetError):
    """Building the agent binary failed."""
