"""
View the agent's journal or service status inside a VM.
"""

import logging
from typing import Dict, List, Tuple

from clients import VIRTUAL_MACHINE_INSTANCE, KubeRestClient
from config import FleetConfig
from errors import ClusterApiError, PrereqMissing
from remote import VirtctlClient

logger = logging.getLogger(__name__)

DEFAULT_ACTION = "tail"

# canonical action -> aliases
ACTION_ALIASES: Dict[str, Tuple[str, ...]] = {
    "tail": ("tail", "t"),
    "follow": ("follow", "f"),
    "status": ("status", "s"),
    "all": ("all", "a"),
    "flags": ("flags", "help-flags"),
}


def resolve_action(action: str) -> str:
    """Map an action or alias to its canonical name; unknown actions mean tail."""
    for canonical, aliases in ACTION_ALIASES.items():
        if action in aliases:
            return canonical
    return DEFAULT_ACTION


# "flags" is not in this set; a VM may be named that
VM_NAME_MISTAKES = frozenset(
    alias
    for canonical in ("tail", "follow", "status", "all")
    for alias in ACTION_ALIASES[canonical]
)


def looks_like_action(value: str) -> bool:
    return value in VM_NAME_MISTAKES


class AgentLogViewer:
    """Shows agent logs/status through virtctl ssh."""

    def __init__(self, api: KubeRestClient, remote: VirtctlClient, config: FleetConfig):
        self.api = api
        self.remote = remote
        self.config = config

    def commands(self) -> Dict[str, Tuple[str, str]]:
        """canonical action -> (headline, remote command)."""
        unit = self.config.service_unit
        binary = f"~/{self.config.binary_name}"
        return {
            "tail": (
                f"Last 50 lines of logs for {self.config.service_name}",
                f"sudo journalctl -u {unit} -n 50 --no-pager",
            ),
            "follow": (
                f"Following logs for {self.config.service_name} (Ctrl+C to stop)",
                f"sudo journalctl -u {unit} -f --no-pager",
            ),
            "status": (
                f"Service status for {self.config.service_name}",
                f"sudo systemctl status {unit} --no-pager",
            ),
            "all": (
                f"All logs for {self.config.service_name}",
                f"sudo journalctl -u {unit} --no-pager",
            ),
            "flags": (
                f"Available {self.config.service_name} command-line flags",
                f"{binary} --help 2>&1 || {binary} -h 2>&1 || echo 'No help output available'",
            ),
        }

    def list_vms(self) -> List[str]:
        """Names of VMIs in the namespace; empty if the cluster can't be queried."""
        try:
            return self.api.list_names(VIRTUAL_MACHINE_INSTANCE, self.config.namespace)
        except ClusterApiError as e:
            logger.debug(f"Cannot list VMIs: {e}")
            return []

    def log_available_vms(self) -> None:
        names = self.list_vms()
        logger.info(f"Available VMs in namespace {self.config.namespace}:")
        if not names:
            logger.info("  (none found or unable to connect to cluster)")
        for name in names:
            logger.info(f"  - {name}")

    def show(self, vm_name: str, action: str = DEFAULT_ACTION) -> int:
        """
        Run the requested log/status command inside the VM.

        Args:
            vm_name: VMI name
            action: tail|t, follow|f, status|s, all|a or flags|help-flags

        Returns:
            Exit status of the remote command

        Raises:
            PrereqMissing: If the VM name looks like an action or the VMI is missing
        """
        if looks_like_action(vm_name):
            self.log_available_vms()
            raise PrereqMissing(f"'{vm_name}' looks like an action, not a VM name")

        if not self.api.exists(VIRTUAL_MACHINE_INSTANCE, self.config.namespace, vm_name):
            self.log_available_vms()
            raise PrereqMissing(
                f"Virtual machine instance '{vm_name}' not found in namespace "
                f"'{self.config.namespace}'"
            )

        headline, command = self.commands()[resolve_action(action)]
        logger.info(f"{headline} on {vm_name}:")
        return self.remote.stream(vm_name, command)
