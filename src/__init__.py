"""
OpenShift Virtualization / KubeVirt VM agent fleet tool.
"""

from agent_installer import AgentBuilder, AgentInstaller
from clients import KubeRestClient
from config import FleetConfig, OperatorConfig
from log_utils import setup_logging
from models import AgentInstallJob, FleetSummary, ProvisionSummary, VMSpec
from operator_installer import OperatorInstaller
from orchestrator import FleetOrchestrator
from provisioner import FleetProvisioner
from remote import VirtctlClient

__all__ = [
    "AgentBuilder",
    "AgentInstaller",
    "KubeRestClient",
    "FleetConfig",
    "OperatorConfig",
    "setup_logging",
    "AgentInstallJob",
    "FleetSummary",
    "ProvisionSummary",
    "VMSpec",
    "OperatorInstaller",
    "FleetOrchestrator",
    "FleetProvisioner",
    "VirtctlClient",
]
