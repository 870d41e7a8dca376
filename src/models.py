"""
Data models for the KubeVirt agent fleet tooling.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple


class ConditionStatus(Enum):
    """Tri-state status of a Kubernetes condition."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ConditionStatus":
        for member in cls:
            if member.value == value:
                return member
        return cls.UNKNOWN


@dataclass(frozen=True)
class CapabilityConditions:
    """Observed Available/Progressing/Degraded conditions of the HyperConverged CR."""

    available: ConditionStatus = ConditionStatus.UNKNOWN
    progressing: ConditionStatus = ConditionStatus.UNKNOWN
    degraded: ConditionStatus = ConditionStatus.UNKNOWN

    @classmethod
    def from_mapping(cls, conditions: Dict[str, str]) -> "CapabilityConditions":
        """Build from a condition-type -> status mapping; missing types are Unknown."""
        return cls(
            available=ConditionStatus.parse(conditions.get("Available")),
            progressing=ConditionStatus.parse(conditions.get("Progressing")),
            degraded=ConditionStatus.parse(conditions.get("Degraded")),
        )

    @property
    def is_healthy(self) -> bool:
        return (
            self.available is ConditionStatus.TRUE
            and self.progressing is ConditionStatus.FALSE
            and self.degraded is ConditionStatus.FALSE
        )

    def __str__(self) -> str:
        return (
            f"Available={self.available.value}, "
            f"Progressing={self.progressing.value}, "
            f"Degraded={self.degraded.value}"
        )


class InstallPlanPhase(Enum):
    """Phase of the ClusterServiceVersion installed by a subscription."""

    ABSENT = ""
    PENDING = "Pending"
    INSTALL_READY = "InstallReady"
    INSTALLING = "Installing"
    SUCCEEDED = "Succeeded"
    OTHER = "Other"

    @classmethod
    def parse(cls, value: Optional[str]) -> "InstallPlanPhase":
        if not value:
            return cls.ABSENT
        for member in cls:
            if member.value == value and member is not cls.OTHER:
                return member
        return cls.OTHER


EXPECTED_INSTALL_PHASES = frozenset(
    {
        InstallPlanPhase.ABSENT,
        InstallPlanPhase.PENDING,
        InstallPlanPhase.INSTALL_READY,
        InstallPlanPhase.INSTALLING,
        InstallPlanPhase.SUCCEEDED,
    }
)


class VMStatus(Enum):
    """printableStatus of a VirtualMachine."""

    ABSENT = ""
    STOPPED = "Stopped"
    STARTING = "Starting"
    RUNNING = "Running"
    OTHER = "Other"

    @classmethod
    def parse(cls, value: Optional[str]) -> "VMStatus":
        if not value:
            return cls.ABSENT
        for member in cls:
            if member.value == value and member is not cls.OTHER:
                return member
        return cls.OTHER


class VMIPhase(Enum):
    """status.phase of a VirtualMachineInstance."""

    ABSENT = ""
    SCHEDULED = "Scheduled"
    RUNNING = "Running"
    FAILED = "Failed"
    OTHER = "Other"

    @classmethod
    def parse(cls, value: Optional[str]) -> "VMIPhase":
        if not value:
            return cls.ABSENT
        for member in cls:
            if member.value == value and member is not cls.OTHER:
                return member
        return cls.OTHER


@dataclass(frozen=True)
class VMSpec:
    """Desired state of one VirtualMachine."""

    name: str
    namespace: str
    image: str
    username: str
    password: str
    ssh_keys: Tuple[str, ...] = ()
    cpu_cores: int = 1
    memory: str = "2Gi"
    cpu_request: str = "100m"
    run_strategy: str = "Always"


def vm_names(prefix: str, count: int) -> List[str]:
    """Return the deterministic VM names prefix-1 .. prefix-count."""
    if count < 1:
        raise ValueError(f"VM count must be a positive integer, got {count}")
    return [f"{prefix}-{index}" for index in range(1, count + 1)]


class ProvisionOutcome(Enum):
    """What the provisioner did for one VM."""

    CREATED = "created"
    STARTED = "started"
    EXISTING = "existing"
    FAILED = "failed"


@dataclass
class ProvisionSummary:
    """Aggregate result of provisioning a fleet."""

    requested: int = 0
    outcomes: Dict[str, ProvisionOutcome] = field(default_factory=dict)

    def record(self, vm_name: str, outcome: ProvisionOutcome) -> None:
        self.outcomes[vm_name] = outcome

    @property
    def created(self) -> int:
        """VMs created from scratch or started from Stopped."""
        return sum(
            1
            for o in self.outcomes.values()
            if o in (ProvisionOutcome.CREATED, ProvisionOutcome.STARTED)
        )

    @property
    def already_existed(self) -> int:
        return sum(1 for o in self.outcomes.values() if o is ProvisionOutcome.EXISTING)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes.values() if o is ProvisionOutcome.FAILED)

    @property
    def failed_names(self) -> List[str]:
        return [n for n, o in self.outcomes.items() if o is ProvisionOutcome.FAILED]

    @property
    def ready_names(self) -> List[str]:
        """VMs that were not marked failed, in provisioning order."""
        return [n for n, o in self.outcomes.items() if o is not ProvisionOutcome.FAILED]


class JobOutcome(Enum):
    """Outcome of a per-VM agent install job."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class AgentInstallJob:
    """Per-VM agent install workflow state."""

    vm_name: str
    index: int
    outcome: JobOutcome = JobOutcome.PENDING
    error_message: Optional[str] = None
    service_status: Optional[str] = None
    start_time: Optional[float] = None
    end_time: Optional[float] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.start_time is None or self.end_time is None:
            return None
        return self.end_time - self.start_time


@dataclass
class FleetSummary:
    """Aggregate result of installing the agent across a fleet."""

    jobs: Dict[str, AgentInstallJob] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.jobs)

    @property
    def success(self) -> int:
        return sum(1 for j in self.jobs.values() if j.outcome is JobOutcome.SUCCESS)

    @property
    def failed(self) -> int:
        return sum(1 for j in self.jobs.values() if j.outcome is not JobOutcome.SUCCESS)

    @property
    def failed_names(self) -> List[str]:
        failed = [j for j in self.jobs.values() if j.outcome is not JobOutcome.SUCCESS]
        return [j.vm_name for j in sorted(failed, key=lambda j: j.index)]


@dataclass(frozen=True)
class ExecResult:
    """Captured result of a local or remote command."""

    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return self.stdout + self.stderr
