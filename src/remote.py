"""
Remote exec/copy into KubeVirt VMs through `virtctl`, plus the shared
subprocess helper used for every external executable.
"""

import logging
import shutil
import subprocess
from typing import Iterable, List, Mapping, Optional

from errors import CopyFailed, PrereqMissing, RemoteExecFailed
from models import ExecResult

logger = logging.getLogger(__name__)

INSTALL_HINTS = {"virtctl": "Install it with: kubectl krew install virt"}


def require_executables(names: Iterable[str]) -> None:
    """
    Fail if any of the given executables is not on PATH.

    Raises:
        PrereqMissing: Naming the first missing executable
    """
    for name in names:
        if shutil.which(name) is None:
            hint = INSTALL_HINTS.get(name)
            raise PrereqMissing(
                f"{name} is not installed or not in PATH" + (f". {hint}" if hint else "")
            )


def run_command(
    argv: List[str],
    cwd: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    timeout: Optional[float] = None,
) -> ExecResult:
    """
    Run a local command and capture its output.

    A command that cannot be started or that times out is reported as a
    non-zero ExecResult rather than an exception.

    Args:
        argv: Command and arguments
        cwd: Working directory
        env: Full environment for the child process
        timeout: Seconds before the child is killed

    Returns:
        ExecResult with exit status and captured output
    """
    logger.debug(f"Running: {' '.join(argv)}")
    try:
        proc = subprocess.run(
            argv,
            cwd=cwd,
            env=dict(env) if env is not None else None,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired:
        return ExecResult(returncode=124, stderr=f"timed out after {timeout}s")
    except OSError as e:
        return ExecResult(returncode=127, stderr=str(e))
    return ExecResult(returncode=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)


class VirtctlClient:
    """Executes commands and copies files into VMs over `virtctl ssh`/`scp`."""

    def __init__(
        self,
        namespace: str,
        user: str,
        connect_timeout: int = 10,
        batch_mode: bool = True,
        command_timeout: Optional[float] = 600,
        virtctl: str = "virtctl",
    ):
        """
        Initialize the virtctl client.

        Args:
            namespace: Namespace of the target VMs
            user: Login user inside the VMs
            connect_timeout: SSH connect timeout in seconds
            batch_mode: Never prompt for passwords or passphrases
            command_timeout: Local timeout for a single virtctl invocation
            virtctl: virtctl executable
        """
        self.namespace = namespace
        self.user = user
        self.connect_timeout = connect_timeout
        self.batch_mode = batch_mode
        self.command_timeout = command_timeout
        self.virtctl = virtctl

    def _target(self, vm_name: str) -> str:
        return f"{self.user}@vmi/{vm_name}"

    def _options(self, connect_timeout: Optional[int] = None) -> List[str]:
        ssh_opts = [
            "-o StrictHostKeyChecking=no",
            "-o UserKnownHostsFile=/dev/null",
        ]
        if self.batch_mode:
            ssh_opts.append("-o BatchMode=yes")
        ssh_opts.append(f"-o ConnectTimeout={connect_timeout or self.connect_timeout}")
        return ["--namespace", self.namespace] + [
            f"--local-ssh-opts={opt}" for opt in ssh_opts
        ]

    def ssh_argv(
        self, vm_name: str, command: str, connect_timeout: Optional[int] = None
    ) -> List[str]:
        return (
            [self.virtctl, "ssh"]
            + self._options(connect_timeout)
            + ["--command", command, self._target(vm_name)]
        )

    def exec(
        self, vm_name: str, command: str, connect_timeout: Optional[int] = None
    ) -> ExecResult:
        """Run a command inside the VM and capture its output."""
        return run_command(
            self.ssh_argv(vm_name, command, connect_timeout),
            timeout=self.command_timeout,
        )

    def run(self, vm_name: str, command: str) -> ExecResult:
        """
        Run a command inside the VM, failing on a non-zero exit status.

        Raises:
            RemoteExecFailed: If the command fails
        """
        result = self.exec(vm_name, command)
        if not result.ok:
            raise RemoteExecFailed(command, result.returncode, result.output)
        return result

    def copy(self, vm_name: str, local_path: str, remote_path: str = "") -> None:
        """
        Copy a local file into the VM (relative remote paths land in $HOME).

        Raises:
            CopyFailed: If virtctl scp fails
        """
        argv = (
            [self.virtctl, "scp"]
            + self._options()
            + [local_path, f"{self._target(vm_name)}:{remote_path}"]
        )
        result = run_command(argv, timeout=self.command_timeout)
        if not result.ok:
            raise CopyFailed(
                f"Failed to copy {local_path} to {vm_name}: "
                f"{result.output.strip() or f'exit {result.returncode}'}"
            )

    def stream(self, vm_name: str, command: str) -> int:
        """Run a command inside the VM with output passed straight through."""
        argv = self.ssh_argv(vm_name, command)
        logger.debug(f"Running: {' '.join(argv)}")
        return subprocess.call(argv)

    def forget_host(self, vm_name: str) -> None:
        """Drop any stale known_hosts entry for the VM (best effort)."""
        host = f"vmi.{vm_name}.{self.namespace}"
        result = run_command(["ssh-keygen", "-R", host])
        if not result.ok:
            logger.debug(f"ssh-keygen -R {host} failed: {result.output.strip()}")
