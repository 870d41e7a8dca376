"""
OpenShift Virtualization (HyperConverged) installer.

Installs the operator through OLM and converges the HyperConverged CR to a
healthy state with the configured feature gate and subscription env
override. The workflow is an explicit state machine; every state has one
handler that performs its side effects and returns the next state.

Nothing is rolled back on failure: whatever was applied before the failing
step is left in place for an operator to inspect.
"""

import logging
import time
from enum import Enum
from typing import Callable, Dict, List, Optional

import manifests
from clients import (
    CATALOG_SOURCE,
    CSV,
    HYPERCONVERGED,
    SUBSCRIPTION,
    KubeRestClient,
)
from config import OperatorConfig
from errors import (
    ApplyFailed,
    CapabilityUnhealthy,
    ClusterApiError,
    InstallPlanTimeout,
    InstallTimeout,
    ResourceNotFound,
)
from log_utils import banner
from models import EXPECTED_INSTALL_PHASES, CapabilityConditions, InstallPlanPhase
from poller import poll_until

logger = logging.getLogger(__name__)


class InstallerState(Enum):
    """States of the operator install workflow, in order."""

    CHECK_PREREQS = "CheckPrereqs"
    CHECK_EXISTING = "CheckExisting"
    APPLY_SUBSCRIPTION = "ApplySubscription"
    AWAIT_INSTALL_PLAN = "AwaitInstallPlan"
    AWAIT_INSTALL_SUCCEEDED = "AwaitInstallSucceeded"
    APPLY_CAPABILITY_PATCH = "ApplyCapabilityPatch"
    AWAIT_CAPABILITY_HEALTHY = "AwaitCapabilityHealthy"
    APPLY_ENV_OVERRIDE_PATCH = "ApplyEnvOverridePatch"
    DONE = "Done"


class OperatorInstaller:
    """Drives the one-time install-and-converge workflow for HCO."""

    def __init__(
        self,
        api: KubeRestClient,
        operator: OperatorConfig,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the installer.

        Args:
            api: Cluster REST client
            operator: Operator constants and poll budgets
            sleep: Sleep function used by the pollers
        """
        self.api = api
        self.op = operator
        self.sleep = sleep

        self.history: List[InstallerState] = []
        self.installed_csv: Optional[str] = None
        self.last_conditions: Optional[CapabilityConditions] = None

        self._handlers: Dict[InstallerState, Callable[[], InstallerState]] = {
            InstallerState.CHECK_PREREQS: self.check_prereqs,
            InstallerState.CHECK_EXISTING: self.check_existing,
            InstallerState.APPLY_SUBSCRIPTION: self.apply_subscription,
            InstallerState.AWAIT_INSTALL_PLAN: self.await_install_plan,
            InstallerState.AWAIT_INSTALL_SUCCEEDED: self.await_install_succeeded,
            InstallerState.APPLY_CAPABILITY_PATCH: self.apply_capability_patch,
            InstallerState.AWAIT_CAPABILITY_HEALTHY: self.await_capability_healthy,
            InstallerState.APPLY_ENV_OVERRIDE_PATCH: self.apply_env_override_patch,
        }

    def step(self, state: InstallerState) -> InstallerState:
        """Run the handler for one state and return the next state."""
        self.history.append(state)
        return self._handlers[state]()

    def run(self) -> InstallerState:
        """
        Run the workflow from the first state to Done.

        Returns:
            InstallerState.DONE

        Raises:
            VirtFleetError: Any failure is fatal to the whole workflow
        """
        banner(logger, "OpenShift Virtualization Installer")
        state = InstallerState.CHECK_PREREQS
        while state is not InstallerState.DONE:
            logger.debug(f"Installer state: {state.value}")
            state = self.step(state)
        self.history.append(state)

        banner(logger, "Installation Complete")
        logger.info("OpenShift Virtualization has been installed and configured with:")
        logger.info(f"  - {self.op.feature_gate} feature gate enabled")
        logger.info(f"  - {self.op.env_name}={self.op.env_value}")
        logger.info(
            f"Note: if {self.op.feature_gate} does not take effect, open the "
            f"HyperConverged CR '{self.op.hco_name}' in the OpenShift console and "
            f"save it once without changes (the {manifests.JSONPATCH_ANNOTATION} "
            "annotation is only picked up on an update), then restart the "
            "collector if needed."
        )
        return state

    # -- helpers -------------------------------------------------------------

    def _read_conditions(self) -> CapabilityConditions:
        conditions = CapabilityConditions.from_mapping(
            self.api.get_conditions(HYPERCONVERGED, self.op.namespace, self.op.hco_name)
        )
        self.last_conditions = conditions
        return conditions

    def _installed_csv(self) -> str:
        return (
            self.api.get_field(
                SUBSCRIPTION,
                self.op.namespace,
                self.op.subscription_name,
                "status.installedCSV",
            )
            or ""
        )

    def _csv_phase(self, csv_name: str) -> InstallPlanPhase:
        try:
            phase = self.api.get_field(CSV, self.op.namespace, csv_name, "status.phase")
        except ResourceNotFound:
            return InstallPlanPhase.ABSENT
        phase_enum = InstallPlanPhase.parse(phase)
        if phase_enum not in EXPECTED_INSTALL_PHASES:
            logger.warning(f"Unexpected CSV phase: {phase}")
        return phase_enum

    # -- state handlers ------------------------------------------------------

    def check_prereqs(self) -> InstallerState:
        logger.info("Checking prerequisites...")
        version = self.api.cluster_version()
        logger.info(f"Connected to cluster (version {version.get('gitVersion', 'unknown')})")

        try:
            catalog_found = self.api.exists(
                CATALOG_SOURCE, self.op.catalog_namespace, self.op.catalog_source
            )
        except ClusterApiError as e:
            logger.warning(f"Could not look up catalog source {self.op.catalog_source}: {e}")
            catalog_found = False
        if not catalog_found:
            logger.warning(
                f"{self.op.catalog_source} catalog source not found in "
                f"{self.op.catalog_namespace}; it is required for the operator install"
            )
        logger.info("Prerequisites OK")
        return InstallerState.CHECK_EXISTING

    def check_existing(self) -> InstallerState:
        try:
            conditions = self._read_conditions()
        except ResourceNotFound:
            logger.info("No existing HyperConverged CR found")
            return InstallerState.APPLY_SUBSCRIPTION

        logger.info("HyperConverged CR already exists, checking status...")
        if conditions.is_healthy:
            logger.info(
                "OpenShift Virtualization is already installed and healthy; "
                "re-applying configuration"
            )
        else:
            logger.info(
                f"OpenShift Virtualization exists but is not healthy ({conditions}); "
                "continuing with installation/update"
            )
        return InstallerState.APPLY_SUBSCRIPTION

    def apply_subscription(self) -> InstallerState:
        logger.info(
            f"Installing OpenShift Virtualization (HCO) via OLM in namespace: {self.op.namespace}"
        )
        self.api.apply(manifests.operator_manifests(self.op))
        logger.info("Applied namespace, operator group, and subscription")
        return InstallerState.AWAIT_INSTALL_PLAN

    def await_install_plan(self) -> InstallerState:
        logger.info("Waiting for Subscription to report installedCSV...")
        self.installed_csv = poll_until(
            probe=self._installed_csv,
            predicate=bool,
            interval=self.op.install_plan_interval,
            timeout=self.op.install_plan_timeout,
            what=f"subscription {self.op.subscription_name} to report installedCSV",
            error_cls=InstallPlanTimeout,
            progress_every=30,
            sleep=self.sleep,
        )
        logger.info(f"InstalledCSV: {self.installed_csv}")
        return InstallerState.AWAIT_INSTALL_SUCCEEDED

    def await_install_succeeded(self) -> InstallerState:
        logger.info(f"Waiting for CSV {self.installed_csv} to reach Succeeded phase...")
        poll_until(
            probe=lambda: self._csv_phase(self.installed_csv),
            predicate=lambda phase: phase is InstallPlanPhase.SUCCEEDED,
            interval=self.op.install_interval,
            timeout=self.op.install_timeout,
            what=f"CSV {self.installed_csv} to reach Succeeded",
            error_cls=InstallTimeout,
            progress_every=60,
            describe=lambda phase: f"Phase: {phase.value if phase else 'Unknown'}",
            sleep=self.sleep,
        )
        logger.info("CSV is Succeeded")
        return InstallerState.APPLY_CAPABILITY_PATCH

    def apply_capability_patch(self) -> InstallerState:
        logger.info(
            f"Creating/Updating HyperConverged CR with {self.op.feature_gate} feature gate..."
        )
        try:
            existing = self.api.get_field(
                HYPERCONVERGED,
                self.op.namespace,
                self.op.hco_name,
                "metadata.annotations",
            )
        except ResourceNotFound:
            existing = None
        current = (existing or {}).get(manifests.JSONPATCH_ANNOTATION)

        try:
            annotation = manifests.feature_gate_annotation(current, self.op.feature_gate)
        except ValueError as e:
            raise ApplyFailed(f"Cannot update HyperConverged annotation: {e}") from e

        self.api.apply([manifests.hyperconverged(self.op, annotation)])
        logger.info(f"Applied HyperConverged CR with {self.op.feature_gate} feature gate")
        return InstallerState.AWAIT_CAPABILITY_HEALTHY

    def await_capability_healthy(self) -> InstallerState:
        logger.info(
            "Waiting for HyperConverged to become healthy "
            "(Available=True, Progressing=False, Degraded=False)..."
        )
        poll_until(
            probe=self._read_conditions,
            predicate=lambda conditions: conditions.is_healthy,
            interval=self.op.health_interval,
            timeout=self.op.health_timeout,
            what=f"HyperConverged {self.op.hco_name} to become healthy",
            error_cls=CapabilityUnhealthy,
            progress_every=60,
            describe=lambda conditions: str(conditions or CapabilityConditions()),
            sleep=self.sleep,
        )
        logger.info("HyperConverged is healthy")
        return InstallerState.APPLY_ENV_OVERRIDE_PATCH

    def apply_env_override_patch(self) -> InstallerState:
        env = (
            self.api.get_field(
                SUBSCRIPTION,
                self.op.namespace,
                self.op.subscription_name,
                "spec.config.env",
            )
            or []
        )
        current = next(
            (e.get("value") for e in env if e.get("name") == self.op.env_name), None
        )
        if current == self.op.env_value:
            logger.info(
                f"{self.op.env_name} is already set to '{self.op.env_value}' in subscription"
            )
            return InstallerState.DONE

        logger.info(f"Patching subscription with {self.op.env_name} setting...")
        self.api.patch(
            SUBSCRIPTION,
            self.op.namespace,
            self.op.subscription_name,
            manifests.subscription_env_patch(self.op),
        )
        logger.info("Subscription patched successfully")
        return InstallerState.DONE
