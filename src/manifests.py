"""
Builders for the Kubernetes documents applied by this tool.

Every manifest is built as a plain dict and serialized by the client, so no
value is ever interpolated into YAML text by hand.
"""

import json
from typing import Any, Dict, List, Optional

import yaml

from config import OperatorConfig
from models import VMSpec

JSONPATCH_ANNOTATION = "kubevirt.kubevirt.io/jsonpatch"
FEATURE_GATES_PATH = "/spec/configuration/developerConfiguration/featureGates/-"

Manifest = Dict[str, Any]


def namespace(name: str) -> Manifest:
    return {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": name}}


def operator_group(op: OperatorConfig) -> Manifest:
    return {
        "apiVersion": "operators.coreos.com/v1",
        "kind": "OperatorGroup",
        "metadata": {"name": op.namespace, "namespace": op.namespace},
        "spec": {"targetNamespaces": [op.namespace]},
    }


def subscription(op: OperatorConfig) -> Manifest:
    return {
        "apiVersion": "operators.coreos.com/v1alpha1",
        "kind": "Subscription",
        "metadata": {"name": op.subscription_name, "namespace": op.namespace},
        "spec": {
            "channel": op.channel,
            "name": op.package_name,
            "source": op.catalog_source,
            "sourceNamespace": op.catalog_namespace,
            "installPlanApproval": "Automatic",
        },
    }


def operator_manifests(op: OperatorConfig) -> List[Manifest]:
    """Namespace, OperatorGroup and Subscription, in apply order."""
    return [namespace(op.namespace), operator_group(op), subscription(op)]


def feature_gate_op(gate: str) -> Dict[str, str]:
    return {"op": "add", "path": FEATURE_GATES_PATH, "value": gate}


def feature_gate_annotation(existing: Optional[str], gate: str) -> str:
    """
    Append a feature-gate "add" op to the HCO jsonpatch annotation.

    The op is appended only if an identical op is not already present, so
    re-running the installer never accumulates duplicate entries.

    Args:
        existing: Current annotation value (JSON list), or None
        gate: Feature gate name to enable

    Returns:
        New annotation value

    Raises:
        ValueError: If the existing annotation is not a JSON list
    """
    ops: List[Dict[str, Any]] = []
    if existing and existing.strip():
        try:
            ops = json.loads(existing)
        except json.JSONDecodeError as e:
            raise ValueError(f"{JSONPATCH_ANNOTATION} is not valid JSON: {e}") from e
        if not isinstance(ops, list):
            raise ValueError(f"{JSONPATCH_ANNOTATION} must be a JSON list")

    op = feature_gate_op(gate)
    if op not in ops:
        ops.append(op)
    return json.dumps(ops, indent=2)


def hyperconverged(op: OperatorConfig, annotation: str) -> Manifest:
    return {
        "apiVersion": "hco.kubevirt.io/v1beta1",
        "kind": "HyperConverged",
        "metadata": {
            "name": op.hco_name,
            "namespace": op.namespace,
            "annotations": {JSONPATCH_ANNOTATION: annotation},
        },
        "spec": {},
    }


def subscription_env_patch(op: OperatorConfig) -> Manifest:
    """Merge patch pinning the operator env override on the subscription."""
    return {
        "spec": {
            "config": {
                "selector": {"matchLabels": {"name": op.operator_selector}},
                "env": [{"name": op.env_name, "value": op.env_value}],
            }
        }
    }


def run_strategy_patch(strategy: str = "Always") -> Manifest:
    return {"spec": {"runStrategy": strategy}}


def cloud_init_user_data(spec: VMSpec) -> str:
    """Render the #cloud-config document for a VM."""
    document = {
        "user": spec.username,
        "password": spec.password,
        "chpasswd": {"expire": False},
        "ssh_pwauth": True,
        "ssh_authorized_keys": list(spec.ssh_keys),
    }
    return "#cloud-config\n" + yaml.safe_dump(
        document, default_flow_style=False, sort_keys=False
    )


def virtual_machine(spec: VMSpec) -> Manifest:
    """Full VirtualMachine manifest with a container disk and cloud-init."""
    return {
        "apiVersion": "kubevirt.io/v1",
        "kind": "VirtualMachine",
        "metadata": {"name": spec.name, "namespace": spec.namespace},
        "spec": {
            "runStrategy": spec.run_strategy,
            "template": {
                "metadata": {
                    "labels": {
                        "kubevirt.io/size": "small",
                        "kubevirt.io/domain": spec.name,
                    }
                },
                "spec": {
                    "domain": {
                        "cpu": {"cores": spec.cpu_cores, "sockets": 1, "threads": 1},
                        "devices": {
                            "autoattachVSOCK": True,
                            "disks": [
                                {
                                    "name": "containerdisk",
                                    "bootOrder": 1,
                                    "disk": {"bus": "virtio"},
                                },
                                {
                                    "name": "cloudinitdisk",
                                    "bootOrder": 2,
                                    "disk": {"bus": "virtio"},
                                },
                            ],
                            "interfaces": [{"name": "default", "masquerade": {}}],
                        },
                        "memory": {"guest": spec.memory},
                        "resources": {
                            "requests": {
                                "memory": spec.memory,
                                "cpu": spec.cpu_request,
                            }
                        },
                    },
                    "networks": [{"name": "default", "pod": {}}],
                    "volumes": [
                        {
                            "name": "containerdisk",
                            "containerDisk": {"image": spec.image},
                        },
                        {
                            "name": "cloudinitdisk",
                            "cloudInitNoCloud": {
                                "userData": cloud_init_user_data(spec)
                            },
                        },
                    ],
                },
            },
        },
    }


def agent_service_unit(service_name: str, binary_path: str) -> str:
    """systemd unit that supervises the agent binary."""
    return (
        "[Unit]\n"
        f"Description={service_name} monitoring agent\n"
        "After=network-online.target\n"
        "Wants=network-online.target\n"
        "\n"
        "[Service]\n"
        "Type=simple\n"
        f"ExecStart={binary_path}\n"
        "Restart=always\n"
        "RestartSec=5\n"
        "\n"
        "[Install]\n"
        "WantedBy=multi-user.target\n"
    )
