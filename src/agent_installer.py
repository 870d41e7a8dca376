"""
Builds the monitoring agent and installs it as a systemd service inside a
single KubeVirt VM.
"""

import logging
import os
import time
from typing import Callable, Tuple

import manifests
from clients import VIRTUAL_MACHINE_INSTANCE, KubeRestClient
from config import FleetConfig
from errors import (
    BuildFailed,
    PrereqMissing,
    ResourceNotFound,
    SSHUnavailable,
    VirtFleetError,
    VMNotReady,
)
from models import AgentInstallJob, ExecResult, JobOutcome, VMIPhase
from poller import poll_until
from remote import VirtctlClient, require_executables, run_command

logger = logging.getLogger(__name__)

SSH_READY_TOKEN = "SSH ready"
RUNNING_MARKER = "Active: active (running)"


class AgentBuilder:
    """Builds the agent binary from its Go source tree."""

    def __init__(
        self,
        config: FleetConfig,
        runner: Callable[..., ExecResult] = run_command,
    ):
        self.config = config
        self.runner = runner

    def check_prerequisites(self) -> None:
        """
        Verify the toolchain and source tree are available.

        Raises:
            PrereqMissing: If go/git or the source directories are missing
        """
        require_executables(["go", "git"])
        repo = os.path.expanduser(self.config.source_repo)
        if not os.path.isdir(repo):
            raise PrereqMissing(
                f"StackRox repository not found at: {repo}. "
                "Please specify the location via the STACKROX_REPO environment variable"
            )
        if not os.path.isdir(self.config.agent_dir):
            raise PrereqMissing(f"Agent directory not found at: {self.config.agent_dir}")
        if self.config.service_file and not os.path.isfile(self.config.service_file):
            raise PrereqMissing(
                f"{self.config.service_unit} file not found at: {self.config.service_file}"
            )

    def describe_source(self) -> None:
        """Log which commit will be built and warn about local modifications."""
        repo = os.path.expanduser(self.config.source_repo)
        logger.info("Checking git repository status...")

        if not self.runner(["git", "rev-parse", "--git-dir"], cwd=repo).ok:
            logger.warning(f"{repo} is not a git repository")
            return

        branch = self.runner(["git", "branch", "--show-current"], cwd=repo).stdout.strip()
        if not branch:
            branch = self.runner(
                ["git", "rev-parse", "--short", "HEAD"], cwd=repo
            ).stdout.strip()
        logger.info(f"Current branch: {branch}")

        if not self.runner(["git", "diff-index", "--quiet", "HEAD", "--"], cwd=repo).ok:
            logger.warning(
                "Repository has uncommitted changes; the built binary will include them"
            )

        commit = self.runner(["git", "log", "-1", "--oneline"], cwd=repo).stdout.strip()
        logger.info(f"Building from commit: {commit or 'unknown'}")

        if branch not in ("master", "main"):
            logger.warning(f"You are not on the master/main branch (current: {branch})")

    def build(self, output_dir: str) -> str:
        """
        Cross-compile the agent into output_dir.

        Args:
            output_dir: Directory for the binary

        Returns:
            Path of the built binary

        Raises:
            BuildFailed: If `go build` fails
        """
        os.makedirs(output_dir, exist_ok=True)
        output = os.path.abspath(os.path.join(output_dir, self.config.binary_name))
        env = dict(
            os.environ,
            GOOS=self.config.target_os,
            GOARCH=self.config.target_arch,
        )
        result = self.runner(
            ["go", "build", "-o", output, "."], cwd=self.config.agent_dir, env=env
        )
        if not result.ok:
            raise BuildFailed(
                f"Failed to build {self.config.binary_name}: "
                f"{result.output.strip() or f'exit {result.returncode}'}"
            )
        return output

    def service_file(self, output_dir: str) -> str:
        """Path of the systemd unit to install, rendering the default if needed."""
        if self.config.service_file:
            return self.config.service_file
        os.makedirs(output_dir, exist_ok=True)
        path = os.path.join(output_dir, self.config.service_unit)
        with open(path, "w") as f:
            f.write(
                manifests.agent_service_unit(
                    self.config.service_name, self.config.remote_binary_path
                )
            )
        return path


class AgentInstaller:
    """Installs, (re)starts and verifies the agent service in one VM."""

    def __init__(
        self,
        api: KubeRestClient,
        remote: VirtctlClient,
        builder: AgentBuilder,
        config: FleetConfig,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the per-VM installer.

        Args:
            api: Cluster REST client
            remote: virtctl client bound to the VM namespace and user
            builder: Agent builder
            config: Fleet configuration
            sleep: Sleep function used by pollers and settle delays
        """
        self.api = api
        self.remote = remote
        self.builder = builder
        self.config = config
        self.sleep = sleep

    # -- single-VM helpers ---------------------------------------------------

    def detect_vm(self) -> str:
        """
        Pick the first VMI in the namespace.

        Raises:
            PrereqMissing: If there is none
        """
        names = self.api.list_names(VIRTUAL_MACHINE_INSTANCE, self.config.namespace)
        if not names:
            raise PrereqMissing(f"No VMI found in namespace {self.config.namespace}")
        logger.info(f"Found VMI: {names[0]}")
        return names[0]

    def validate_running(self, vm_name: str) -> None:
        """
        Require the VMI to exist and be in phase Running. Query errors are
        fatal here rather than retried.

        Raises:
            PrereqMissing: If the VMI is missing or not running
        """
        try:
            vmi = self.api.get(VIRTUAL_MACHINE_INSTANCE, self.config.namespace, vm_name)
        except ResourceNotFound:
            raise PrereqMissing(
                f"VMI '{vm_name}' not found in namespace '{self.config.namespace}'"
            ) from None
        phase = VMIPhase.parse((vmi.get("status") or {}).get("phase"))
        if phase is not VMIPhase.RUNNING:
            raise PrereqMissing(
                f"VMI '{vm_name}' is not running (current phase: {phase.value or 'none'})"
            )
        logger.info("VMI is running")

    @staticmethod
    def check_ssh_agent() -> None:
        """Warn when no ssh-agent keys are available (passphrase prompts ahead)."""
        if not os.environ.get("SSH_AUTH_SOCK"):
            logger.warning(
                "SSH agent is not running; start it and add your key "
                "(eval $(ssh-agent); ssh-add ~/.ssh/id_ed25519)"
            )
            return
        result = run_command(["ssh-add", "-l"])
        keys = [line for line in result.stdout.splitlines() if line[:1].isdigit()]
        if not result.ok or not keys:
            logger.warning(
                "No SSH keys loaded in ssh-agent; add one with: ssh-add ~/.ssh/id_ed25519"
            )
        else:
            logger.info(f"✓ SSH agent is running with {len(keys)} key(s) loaded")

    # -- workflow steps ------------------------------------------------------

    def wait_for_vmi_ready(self, vm_name: str) -> None:
        logger.info(f"[{vm_name}] Waiting for VMI to be ready...")
        poll_until(
            probe=lambda: self.api.get_conditions(
                VIRTUAL_MACHINE_INSTANCE, self.config.namespace, vm_name
            ),
            predicate=lambda conditions: conditions.get("Ready") == "True",
            interval=self.config.vmi_ready_interval,
            timeout=self.config.vmi_ready_timeout,
            what=f"VMI {vm_name} to become Ready",
            error_cls=VMNotReady,
            sleep=self.sleep,
        )
        logger.info(f"[{vm_name}] ✓ VMI is ready")

    def wait_for_ssh(self, vm_name: str) -> None:
        """
        Gate on an SSH round trip.

        Makes up to ssh_max_attempts probes with ssh_retry_interval seconds
        of sleep between them; the time a probe itself takes does not use up
        attempts.

        Raises:
            SSHUnavailable: If no probe succeeded
        """
        logger.info(f"[{vm_name}] Waiting for SSH to be available...")
        attempts = max(self.config.ssh_max_attempts, 1)
        interval = self.config.ssh_retry_interval
        start = time.monotonic()
        result = None
        for attempt in range(1, attempts + 1):
            result = self.remote.exec(
                vm_name, f"echo {SSH_READY_TOKEN}", connect_timeout=5
            )
            if SSH_READY_TOKEN in result.stdout:
                logger.info(f"[{vm_name}] ✓ SSH is ready")
                return
            if attempt == attempts:
                break
            if attempt % 5 == 0:
                logger.info(
                    f"[{vm_name}] SSH not ready yet "
                    f"(attempt {attempt}/{attempts}, exit {result.returncode})"
                )
            self.sleep(interval)

        elapsed = time.monotonic() - start
        logger.error(f"[{vm_name}] SSH not available after {attempts} attempt(s)")
        raise SSHUnavailable(
            f"SSH on {vm_name}",
            timeout=interval * (attempts - 1),
            elapsed=elapsed,
            last_state=result,
        )

    def service_state(self, vm_name: str) -> str:
        """systemctl is-active of the agent service; 'not-found' if unknown."""
        unit = self.config.service_unit
        result = self.remote.exec(
            vm_name, f"sudo systemctl is-active {unit} 2>/dev/null || echo 'not-found'"
        )
        lines = result.stdout.strip().splitlines()
        if not result.ok or not lines:
            return "not-found"
        return lines[0].strip()

    def stop_existing_service(self, vm_name: str) -> None:
        state = self.service_state(vm_name)
        if state == "active":
            logger.info(f"[{vm_name}] {self.config.service_unit} is running, stopping it to update...")
            self.remote.run(vm_name, f"sudo systemctl stop {self.config.service_unit}")
            logger.info(f"[{vm_name}] Service stopped")
        elif state in ("inactive", "failed"):
            logger.info(
                f"[{vm_name}] {self.config.service_unit} exists but is not running "
                f"(status: {state}), will update and restart"
            )
        else:
            logger.info(f"[{vm_name}] {self.config.service_unit} not found, fresh installation")

    def install_command(self) -> str:
        unit = self.config.service_unit
        binary = f"~/{self.config.binary_name}"
        return " && ".join(
            [
                f"sudo mv ~/{unit} /etc/systemd/system/",
                f"(sudo restorecon -v /etc/systemd/system/{unit} 2>/dev/null || true)",
                f"sudo chmod +x {binary}",
                f"(sudo chcon -t bin_t {binary} 2>/dev/null || true)",
                "sudo systemctl daemon-reload",
                f"sudo systemctl enable {unit}",
                f"sudo systemctl start {unit}",
            ]
        )

    def verify_service(self, vm_name: str) -> Tuple[bool, str]:
        """Return (running, status text) after a short settle delay."""
        self.sleep(self.config.service_settle_delay)
        result = self.remote.exec(
            vm_name, f"sudo systemctl status {self.config.service_unit} --no-pager"
        )
        status = result.output.strip()
        return RUNNING_MARKER in status, status

    def install(self, vm_name: str, index: int = 1, total: int = 1) -> AgentInstallJob:
        """
        Install the agent into one VM.

        Every failure is contained in the returned job; nothing raised by a
        step escapes except unexpected programming errors.

        Args:
            vm_name: VM (and VMI) name
            index: 1-based position in the fleet
            total: Fleet size (for progress output)

        Returns:
            AgentInstallJob with outcome success or failed
        """
        job = AgentInstallJob(vm_name=vm_name, index=index, start_time=time.time())
        logger.info(f"[{index}/{total}] Setting up VM: {vm_name}")
        output_dir = os.path.join(self.config.build_dir, vm_name)

        try:
            self.wait_for_vmi_ready(vm_name)
            self.wait_for_ssh(vm_name)
            self.stop_existing_service(vm_name)

            logger.info(f"[{vm_name}] Building agent binary...")
            binary = self.builder.build(output_dir)
            service_file = self.builder.service_file(output_dir)
            logger.info(f"[{vm_name}] Build successful: {binary}")

            logger.info(f"[{vm_name}] Copying agent binary and service file...")
            self.remote.copy(vm_name, binary, self.config.binary_name)
            self.remote.copy(vm_name, service_file, self.config.service_unit)

            logger.info(f"[{vm_name}] Installing and starting {self.config.service_unit}...")
            self.remote.run(vm_name, self.install_command())

            running, status = self.verify_service(vm_name)
            job.service_status = status
            if running:
                job.outcome = JobOutcome.SUCCESS
                logger.info(f"[{vm_name}] ✓ {self.config.service_unit} is running")
            else:
                job.outcome = JobOutcome.FAILED
                job.error_message = "Service is not active (running)"
                logger.error(f"[{vm_name}] ✗ {self.config.service_unit} is not running:")
                for line in status.splitlines():
                    logger.error(f"[{vm_name}]     {line}")
        except VirtFleetError as e:
            job.outcome = JobOutcome.FAILED
            job.error_message = str(e)
            logger.error(f"[{vm_name}] ✗ Setup failed: {e}")
        finally:
            job.end_time = time.time()

        return job
