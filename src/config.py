"""
Configuration management for the KubeVirt agent fleet tooling.
"""

import os
from dataclasses import dataclass, field, replace
from typing import Mapping, Optional, Tuple

DEFAULT_NAMESPACE = "openshift-cnv"
DEFAULT_VM_PREFIX = "rhel9"
DEFAULT_SSH_USER = "cloud-user"
DEFAULT_VM_PASSWORD = "password"
DEFAULT_CONTAINER_IMAGE = "registry.redhat.io/rhel9/rhel-guest-image:latest"
DEFAULT_SOURCE_REPO = "~/src/go/src/github.com/stackrox/stackrox"
DEFAULT_AGENT_SUBDIR = "compliance/virtualmachines/roxagent"


@dataclass(frozen=True)
class OperatorConfig:
    """Constants describing the OpenShift Virtualization (HCO) install."""

    namespace: str = "openshift-cnv"
    subscription_name: str = "kubevirt-hyperconverged"
    package_name: str = "kubevirt-hyperconverged"
    channel: str = "stable"
    catalog_source: str = "redhat-operators"
    catalog_namespace: str = "openshift-marketplace"
    hco_name: str = "kubevirt-hyperconverged"
    feature_gate: str = "VSOCK"
    operator_selector: str = "hyperconverged-cluster-operator"
    env_name: str = "KVM_EMULATION"
    env_value: str = "true"

    # (interval, timeout) pairs in seconds
    install_plan_interval: float = 5
    install_plan_timeout: float = 300
    install_interval: float = 5
    install_timeout: float = 900
    health_interval: float = 10
    health_timeout: float = 1800


@dataclass(frozen=True)
class FleetConfig:
    """Configuration shared by every command, built once at start-up."""

    namespace: str = DEFAULT_NAMESPACE
    vm_prefix: str = DEFAULT_VM_PREFIX
    ssh_user: str = DEFAULT_SSH_USER
    vm_password: str = DEFAULT_VM_PASSWORD
    container_image: str = DEFAULT_CONTAINER_IMAGE
    ssh_keys: Tuple[str, ...] = ()
    source_repo: str = DEFAULT_SOURCE_REPO
    agent_subdir: str = DEFAULT_AGENT_SUBDIR
    kube_context: Optional[str] = None

    # Agent payload
    service_name: str = "vm-agent"
    binary_name: str = "vm-agent-amd64"
    service_file: Optional[str] = None
    build_dir: str = ".build"
    target_os: str = "linux"
    target_arch: str = "amd64"

    # Per-VM readiness gates
    vmi_ready_interval: float = 5
    vmi_ready_timeout: float = 300
    ssh_retry_interval: float = 10
    ssh_max_attempts: int = 30
    ssh_connect_timeout: int = 10
    service_settle_delay: float = 2
    fleet_settle_delay: float = 10

    operator: OperatorConfig = field(default_factory=OperatorConfig)
    verbose: bool = False

    @property
    def agent_dir(self) -> str:
        """Directory of the agent sources inside the source repository."""
        return os.path.join(os.path.expanduser(self.source_repo), self.agent_subdir)

    @property
    def service_unit(self) -> str:
        return f"{self.service_name}.service"

    @property
    def remote_binary_path(self) -> str:
        """Where the agent binary lands inside the VM (the login user's home)."""
        return f"/home/{self.ssh_user}/{self.binary_name}"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "FleetConfig":
        """
        Create configuration from environment variables.

        Recognized variables: NAMESPACE, VM_PREFIX, SSH_USER, VM_PASSWORD,
        CONTAINER_IMAGE, STACKROX_REPO and SSH_AUTHORIZED_KEYS (one public
        key per line). Unset or empty variables keep their defaults.

        Args:
            environ: Mapping to read from (defaults to os.environ)

        Returns:
            FleetConfig instance
        """
        env = os.environ if environ is None else environ

        def get(key: str, default: str) -> str:
            return env.get(key) or default

        keys = tuple(
            line.strip()
            for line in env.get("SSH_AUTHORIZED_KEYS", "").splitlines()
            if line.strip()
        )
        return cls(
            namespace=get("NAMESPACE", DEFAULT_NAMESPACE),
            vm_prefix=get("VM_PREFIX", DEFAULT_VM_PREFIX),
            ssh_user=get("SSH_USER", DEFAULT_SSH_USER),
            vm_password=get("VM_PASSWORD", DEFAULT_VM_PASSWORD),
            container_image=get("CONTAINER_IMAGE", DEFAULT_CONTAINER_IMAGE),
            source_repo=get("STACKROX_REPO", DEFAULT_SOURCE_REPO),
            ssh_keys=keys,
        )

    @classmethod
    def from_args(
        cls, args, environ: Optional[Mapping[str, str]] = None
    ) -> "FleetConfig":
        """
        Create configuration from command-line arguments layered over the
        environment.

        Args:
            args: Parsed argparse arguments; attributes left as None keep the
                environment or default value
            environ: Mapping to read environment defaults from

        Returns:
            FleetConfig instance
        """
        config = cls.from_env(environ)
        overrides = {}
        for attr, dest in (
            ("namespace", "namespace"),
            ("vm_prefix", "prefix"),
            ("container_image", "image"),
            ("source_repo", "source_repo"),
            ("service_file", "service_file"),
            ("kube_context", "context"),
        ):
            value = getattr(args, dest, None)
            if value is not None:
                overrides[attr] = value

        key_files = getattr(args, "ssh_key_file", None) or []
        if key_files:
            overrides["ssh_keys"] = config.ssh_keys + tuple(
                read_public_key(path) for path in key_files
            )

        overrides["verbose"] = bool(getattr(args, "verbose", False))
        return replace(config, **overrides)


def read_public_key(path: str) -> str:
    """Read an SSH public key file, returning its first non-empty line."""
    with open(os.path.expanduser(path)) as f:
        for line in f:
            if line.strip():
                return line.strip()
    raise ValueError(f"No public key found in {path}")
