"""
Unit tests for configuration module.
"""

import os
import tempfile
import unittest
from argparse import Namespace

from config import (
    DEFAULT_CONTAINER_IMAGE,
    DEFAULT_NAMESPACE,
    DEFAULT_VM_PREFIX,
    FleetConfig,
    OperatorConfig,
    read_public_key,
)


class TestFleetConfig(unittest.TestCase):
    """Test FleetConfig dataclass."""

    def test_defaults(self):
        """Test default values."""
        config = FleetConfig()

        self.assertEqual(config.namespace, "openshift-cnv")
        self.assertEqual(config.vm_prefix, "rhel9")
        self.assertEqual(config.ssh_user, "cloud-user")
        self.assertEqual(config.ssh_keys, ())
        self.assertEqual(config.vmi_ready_timeout, 300)
        self.assertEqual(config.ssh_retry_interval, 10)
        self.assertEqual(config.ssh_max_attempts, 30)
        self.assertIsInstance(config.operator, OperatorConfig)

    def test_derived_paths(self):
        config = FleetConfig(
            ssh_user="fedora",
            source_repo="/src/stackrox",
            agent_subdir="agent",
            service_name="roxagent",
        )

        self.assertEqual(config.service_unit, "roxagent.service")
        self.assertEqual(config.remote_binary_path, "/home/fedora/vm-agent-amd64")
        self.assertEqual(config.agent_dir, os.path.join("/src/stackrox", "agent"))

    def test_config_is_immutable(self):
        config = FleetConfig()
        with self.assertRaises(Exception):
            config.namespace = "other"

    def test_from_env(self):
        """Test configuration is read from environment variables."""
        environ = {
            "NAMESPACE": "vms",
            "VM_PREFIX": "test",
            "SSH_USER": "fedora",
            "VM_PASSWORD": "secret",
            "CONTAINER_IMAGE": "quay.io/containerdisks/fedora:latest",
            "STACKROX_REPO": "/work/stackrox",
            "SSH_AUTHORIZED_KEYS": "ssh-ed25519 AAAA one\n\nssh-rsa BBBB two\n",
        }

        config = FleetConfig.from_env(environ)

        self.assertEqual(config.namespace, "vms")
        self.assertEqual(config.vm_prefix, "test")
        self.assertEqual(config.ssh_user, "fedora")
        self.assertEqual(config.vm_password, "secret")
        self.assertEqual(config.container_image, "quay.io/containerdisks/fedora:latest")
        self.assertEqual(config.source_repo, "/work/stackrox")
        self.assertEqual(config.ssh_keys, ("ssh-ed25519 AAAA one", "ssh-rsa BBBB two"))

    def test_from_env_empty_values_keep_defaults(self):
        config = FleetConfig.from_env({"NAMESPACE": "", "VM_PREFIX": ""})

        self.assertEqual(config.namespace, DEFAULT_NAMESPACE)
        self.assertEqual(config.vm_prefix, DEFAULT_VM_PREFIX)
        self.assertEqual(config.container_image, DEFAULT_CONTAINER_IMAGE)

    def test_from_args_overrides_environment(self):
        """Test flags win over environment values; unset flags keep them."""
        args = Namespace(
            namespace="cli-ns",
            prefix=None,
            image=None,
            source_repo=None,
            service_file="/tmp/custom.service",
            context="admin",
            ssh_key_file=None,
            verbose=True,
        )

        config = FleetConfig.from_args(args, {"NAMESPACE": "env-ns", "VM_PREFIX": "env"})

        self.assertEqual(config.namespace, "cli-ns")
        self.assertEqual(config.vm_prefix, "env")
        self.assertEqual(config.service_file, "/tmp/custom.service")
        self.assertEqual(config.kube_context, "admin")
        self.assertTrue(config.verbose)

    def test_from_args_missing_attributes(self):
        """Subcommands without a flag simply don't set it."""
        config = FleetConfig.from_args(Namespace(verbose=False), {})

        self.assertEqual(config.namespace, DEFAULT_NAMESPACE)
        self.assertIsNone(config.service_file)
        self.assertFalse(config.verbose)

    def test_from_args_reads_key_files(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "id_ed25519.pub")
            with open(path, "w") as f:
                f.write("\nssh-ed25519 AAAA me@host\n")

            config = FleetConfig.from_args(
                Namespace(ssh_key_file=[path], verbose=False),
                {"SSH_AUTHORIZED_KEYS": "ssh-rsa BBBB env"},
            )

        self.assertEqual(config.ssh_keys, ("ssh-rsa BBBB env", "ssh-ed25519 AAAA me@host"))


class TestReadPublicKey(unittest.TestCase):
    def test_empty_file_raises(self):
        with tempfile.NamedTemporaryFile("w", suffix=".pub", delete=False) as f:
            f.write("\n\n")
        try:
            with self.assertRaises(ValueError):
                read_public_key(f.name)
        finally:
            os.unlink(f.name)

    def test_missing_file_raises(self):
        with self.assertRaises(OSError):
            read_public_key("/nonexistent/id_rsa.pub")


class TestOperatorConfig(unittest.TestCase):
    def test_defaults(self):
        op = OperatorConfig()

        self.assertEqual(op.namespace, "openshift-cnv")
        self.assertEqual(op.subscription_name, "kubevirt-hyperconverged")
        self.assertEqual(op.catalog_source, "redhat-operators")
        self.assertEqual(op.channel, "stable")
        self.assertEqual(op.feature_gate, "VSOCK")
        self.assertEqual((op.install_plan_interval, op.install_plan_timeout), (5, 300))
        self.assertEqual((op.install_interval, op.install_timeout), (5, 900))
        self.assertEqual((op.health_interval, op.health_timeout), (10, 1800))


if __name__ == "__main__":
    unittest.main()
