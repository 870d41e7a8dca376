"""
Fleet provisioning of KubeVirt VirtualMachines.
"""

import logging
from typing import List

import manifests
from clients import NAMESPACE, VIRTUAL_MACHINE, KubeRestClient
from config import FleetConfig
from errors import PrereqMissing, ResourceNotFound, VirtFleetError
from log_utils import banner
from models import ProvisionOutcome, ProvisionSummary, VMSpec, VMStatus, vm_names
from remote import require_executables

logger = logging.getLogger(__name__)


class FleetProvisioner:
    """Creates or starts VMs named prefix-1..prefix-N."""

    def __init__(self, api: KubeRestClient, config: FleetConfig):
        self.api = api
        self.config = config

    def check_prerequisites(self) -> None:
        """
        Verify virtctl is installed, the cluster is reachable and the target
        namespace exists.

        Raises:
            PrereqMissing: If any prerequisite is not met
        """
        logger.info("Checking prerequisites...")
        require_executables(["virtctl"])
        self.api.cluster_version()
        if not self.api.exists(NAMESPACE, None, self.config.namespace):
            raise PrereqMissing(
                f"Namespace '{self.config.namespace}' does not exist. "
                "Create it or set the NAMESPACE environment variable"
            )
        if not self.config.ssh_keys:
            logger.warning(
                "No SSH public keys configured (SSH_AUTHORIZED_KEYS / --ssh-key-file); "
                "VMs will only accept password logins"
            )
        logger.info("Prerequisites OK")

    def vm_spec(self, name: str) -> VMSpec:
        return VMSpec(
            name=name,
            namespace=self.config.namespace,
            image=self.config.container_image,
            username=self.config.ssh_user,
            password=self.config.vm_password,
            ssh_keys=self.config.ssh_keys,
        )

    def vm_status(self, name: str) -> VMStatus:
        """
        Observed printableStatus of a VM.

        Raises:
            ResourceNotFound: If the VM does not exist
        """
        vm = self.api.get(VIRTUAL_MACHINE, self.config.namespace, name)
        return VMStatus.parse((vm.get("status") or {}).get("printableStatus"))

    def reconcile_vm(self, name: str, index: int, count: int) -> ProvisionOutcome:
        """
        Bring one VM to a running-or-starting state.

        Args:
            name: VM name
            index: 1-based position in the fleet
            count: Fleet size (for progress output)

        Returns:
            What was done for this VM
        """
        logger.info(f"[{index}/{count}] Creating VM: {name}")
        try:
            status = self.vm_status(name)
        except ResourceNotFound:
            return self.create_vm(name)
        except VirtFleetError as e:
            logger.error(f"  ✗ Cannot read VM {name}: {e}")
            return ProvisionOutcome.FAILED

        if status is VMStatus.RUNNING:
            logger.info(f"  ✓ VM {name} is already running, skipping creation")
            return ProvisionOutcome.EXISTING

        if status is VMStatus.STOPPED:
            logger.info(f"  VM {name} already exists (status: Stopped), starting it...")
            try:
                self.api.patch(
                    VIRTUAL_MACHINE,
                    self.config.namespace,
                    name,
                    manifests.run_strategy_patch("Always"),
                )
            except VirtFleetError as e:
                logger.error(f"  ✗ Failed to start VM {name}: {e}")
                return ProvisionOutcome.FAILED
            logger.info(f"  ✓ VM {name} started")
            return ProvisionOutcome.STARTED

        # Any other status, including none reported yet, is left untouched
        logger.info(
            f"  ℹ VM {name} exists (status: {status.value or 'unknown'}), "
            "will continue with existing VM"
        )
        return ProvisionOutcome.EXISTING

    def create_vm(self, name: str) -> ProvisionOutcome:
        try:
            self.api.apply([manifests.virtual_machine(self.vm_spec(name))])
        except VirtFleetError as e:
            logger.error(f"  ✗ Failed to create VM {name}: {e}")
            return ProvisionOutcome.FAILED
        logger.info(f"  ✓ VM {name} created successfully")
        return ProvisionOutcome.CREATED

    def provision(self, count: int) -> ProvisionSummary:
        """
        Create or start `count` VMs. One VM failing never stops the others;
        failures are only reported in the returned summary.

        Args:
            count: Number of VMs

        Returns:
            ProvisionSummary with per-VM outcomes
        """
        names: List[str] = vm_names(self.config.vm_prefix, count)
        banner(logger, "Deploying VMs")
        summary = ProvisionSummary(requested=count)
        for index, name in enumerate(names, start=1):
            summary.record(name, self.reconcile_vm(name, index, count))

        logger.info("")
        logger.info("Deployment Summary:")
        logger.info(f"  Total requested:              {summary.requested}")
        logger.info(f"  Successfully created/started: {summary.created}")
        logger.info(f"  Already existed:              {summary.already_existed}")
        logger.info(f"  Failed:                       {summary.failed}")
        if summary.failed:
            logger.warning(
                f"Some VMs failed to deploy: {', '.join(summary.failed_names)}"
            )
        return summary
