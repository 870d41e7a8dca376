"""Console entry point for the KubeVirt agent fleet CLI."""

from __future__ import annotations

import argparse
import logging
import time
from typing import Callable, Dict, List

from agent_installer import AgentBuilder, AgentInstaller
from clients import KubeRestClient
from config import FleetConfig
from errors import PrereqMissing, VirtFleetError
from log_utils import banner, setup_logging
from models import JobOutcome
from operator_installer import OperatorInstaller
from orchestrator import FleetOrchestrator
from provisioner import FleetProvisioner
from remote import VirtctlClient, require_executables
from vm_logs import DEFAULT_ACTION, AgentLogViewer

logger = logging.getLogger(__name__)

LOG_FILES = {
    "install-operator": "virt-install.log",
    "add-vms": "add-vms.log",
    "setup-vm": "setup-vm.log",
    "logs": None,
}


def parse_count(value: str) -> int:
    """Parse the VM count argument, which must be a positive integer."""
    try:
        number = int(value)
    except ValueError:
        number = 0
    if number < 1:
        raise ValueError(
            f"invalid count {value!r}: please provide a valid positive number"
        )
    return number


def build_parser() -> argparse.ArgumentParser:
    """Build and return the CLI argument parser."""
    agent = argparse.ArgumentParser(add_help=False)
    agent.add_argument(
        "--source-repo",
        metavar="DIR",
        help="StackRox source checkout containing the agent (env: STACKROX_REPO)",
    )
    agent.add_argument(
        "--service-file",
        metavar="FILE",
        help="systemd unit to install instead of the built-in vm-agent.service",
    )

    parser = argparse.ArgumentParser(
        description=(
            "OpenShift Virtualization install, KubeVirt VM fleet provisioning "
            "and VM agent setup"
        )
    )
    parser.add_argument("--verbose", action="store_true", help="Enable DEBUG logging")
    parser.add_argument(
        "--namespace", help="Namespace of the VMs (env: NAMESPACE, default: openshift-cnv)"
    )
    parser.add_argument("--context", help="kubeconfig context to use")

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    sub.add_parser(
        "install-operator",
        help="Install OpenShift Virtualization (HCO) and enable VSOCK/KVM emulation",
    )

    add = sub.add_parser(
        "add-vms",
        parents=[agent],
        help="Create N VMs named PREFIX-1..PREFIX-N and install the agent in each",
    )
    add.add_argument("count", nargs="?", default="1", help="Number of VMs (default: 1)")
    add.add_argument("--prefix", help="VM name prefix (env: VM_PREFIX, default: rhel9)")
    add.add_argument("--image", help="Container disk image (env: CONTAINER_IMAGE)")
    add.add_argument(
        "--ssh-key-file",
        action="append",
        metavar="FILE",
        help="Public key to authorize in the VMs (repeatable; env: SSH_AUTHORIZED_KEYS)",
    )
    add.add_argument(
        "--skip-setup", action="store_true", help="Only create the VMs, do not install the agent"
    )
    add.add_argument(
        "--strict",
        action="store_true",
        help="Exit non-zero when any VM fails to deploy or set up",
    )
    add.add_argument(
        "--report-dir",
        default=".",
        metavar="DIR",
        help="Directory for the JSON setup report (default: current directory)",
    )

    setup = sub.add_parser(
        "setup-vm",
        parents=[agent],
        help="Build and install the agent in one running VM",
    )
    setup.add_argument("vm", nargs="?", help="VMI name (default: first VMI in the namespace)")

    logs = sub.add_parser("logs", help="Show agent logs or status in a VM")
    logs.add_argument("vm", help="VMI name")
    logs.add_argument(
        "action",
        nargs="?",
        default=DEFAULT_ACTION,
        help="tail (default), follow, status, all or flags",
    )
    return parser


def make_installer(api: KubeRestClient, config: FleetConfig) -> AgentInstaller:
    remote = VirtctlClient(
        namespace=config.namespace,
        user=config.ssh_user,
        connect_timeout=config.ssh_connect_timeout,
    )
    return AgentInstaller(api, remote, AgentBuilder(config), config)


def cmd_install_operator(config: FleetConfig, args) -> int:
    api = KubeRestClient(context=config.kube_context)
    OperatorInstaller(api, config.operator).run()
    return 0


def cmd_add_vms(config: FleetConfig, args) -> int:
    try:
        count = parse_count(args.count)
    except ValueError as e:
        logger.error(f"ERROR: {e}")
        return 1

    banner(logger, "KubeVirt VM Deployment and Configuration")
    logger.info(f"Requesting {count} VM(s) with prefix: {config.vm_prefix}")

    api = KubeRestClient(context=config.kube_context)
    provisioner = FleetProvisioner(api, config)
    provisioner.check_prerequisites()

    installer = make_installer(api, config)
    setup_enabled = not args.skip_setup
    if setup_enabled:
        try:
            installer.builder.check_prerequisites()
            installer.builder.describe_source()
        except PrereqMissing as e:
            logger.warning(f"{e}; VMs will be created but not configured")
            setup_enabled = False

    provisioned = provisioner.provision(count)

    setup_failed = 0
    if setup_enabled:
        logger.info("Waiting for VMs to settle before running setup...")
        time.sleep(config.fleet_settle_delay)
        orchestrator = FleetOrchestrator(installer, report_dir=args.report_dir)
        setup_failed = orchestrator.run(provisioned.ready_names).failed
    else:
        logger.info("Skipping agent setup")

    banner(logger, "All Operations Complete")
    logger.info("VM login credentials:")
    logger.info(f"  Username: {config.ssh_user}")
    logger.info(f"  Password: {config.vm_password}")
    logger.info("To check VM status:")
    logger.info(f"  kubectl get vm,vmi -n {config.namespace}")
    logger.info("To access a VM via SSH:")
    logger.info(f"  virtctl ssh -n {config.namespace} {config.ssh_user}@vmi/{config.vm_prefix}-1")

    if args.strict and (provisioned.failed or setup_failed):
        return 1
    return 0


def cmd_setup_vm(config: FleetConfig, args) -> int:
    banner(logger, "VMI Agent Setup")
    require_executables(["virtctl"])
    api = KubeRestClient(context=config.kube_context)
    api.cluster_version()

    installer = make_installer(api, config)
    installer.builder.check_prerequisites()
    installer.check_ssh_agent()

    vm_name = args.vm or installer.detect_vm()
    logger.info(f"Setting up VMI: {vm_name} in namespace: {config.namespace}")
    installer.validate_running(vm_name)
    installer.remote.forget_host(vm_name)
    installer.builder.describe_source()

    job = installer.install(vm_name)
    if job.service_status:
        for line in job.service_status.splitlines():
            logger.info(line)
    if job.outcome is not JobOutcome.SUCCESS:
        logger.error(f"Setup failed for {vm_name}: {job.error_message}")
        return 1
    banner(logger, "Installation Complete")
    logger.info(f"{config.service_unit} is running on VMI '{vm_name}'")
    return 0


def cmd_logs(config: FleetConfig, args) -> int:
    require_executables(["virtctl"])
    api = KubeRestClient(context=config.kube_context)
    remote = VirtctlClient(
        namespace=config.namespace,
        user=config.ssh_user,
        batch_mode=False,
        command_timeout=None,
    )
    return AgentLogViewer(api, remote, config).show(args.vm, args.action)


COMMANDS: Dict[str, Callable[[FleetConfig, argparse.Namespace], int]] = {
    "install-operator": cmd_install_operator,
    "add-vms": cmd_add_vms,
    "setup-vm": cmd_setup_vm,
    "logs": cmd_logs,
}


def main(argv: List[str] | None = None) -> int:
    """CLI main for console_scripts entry point."""
    parser = build_parser()
    args = parser.parse_args(args=argv)

    setup_logging(verbose=args.verbose, log_file=LOG_FILES[args.command])
    try:
        config = FleetConfig.from_args(args)
    except (OSError, ValueError) as e:
        logger.error(f"ERROR: Cannot read SSH public key: {e}")
        return 1

    try:
        return COMMANDS[args.command](config, args)
    except VirtFleetError as e:
        logger.error(f"ERROR: {e}")
        return 1
    except KeyboardInterrupt:
        logger.error("Interrupted")
        return 130
