"""
Unit tests for KubeRestClient.
"""

import json
import threading
import unittest
from unittest.mock import MagicMock, patch

import requests
from kubernetes.config import ConfigException

import manifests
from clients import (
    HYPERCONVERGED,
    NAMESPACE,
    SUBSCRIPTION,
    VIRTUAL_MACHINE,
    VIRTUAL_MACHINE_INSTANCE,
    KubeRestClient,
    get_path,
    kind_for_manifest,
)
from config import OperatorConfig
from errors import ApplyFailed, ClusterApiError, PrereqMissing, ResourceNotFound

HOST = "https://api.cluster.example:6443"


def make_response(status_code=200, body=None, headers=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.headers = headers or {}
    resp.json.return_value = body if body is not None else {}
    resp.text = json.dumps(body or {})
    return resp


class TestKubeRestClient(unittest.TestCase):
    """Test KubeRestClient REST API interactions."""

    def setUp(self):
        """Set up test fixtures."""
        self.session = MagicMock()
        self.client = KubeRestClient(host=HOST + "/", session=self.session)

    def test_client_initialization(self):
        """Test client is properly initialised."""
        self.assertEqual(self.client.host, HOST)
        self.assertEqual(self.client.timeout_s, 30)
        self.assertEqual(self.client.max_retries, 3)
        self.assertEqual(self.client.base_delay, 2.0)

    def test_resource_paths(self):
        self.assertEqual(
            self.client._resource_path(VIRTUAL_MACHINE, "vms", "rhel9-1"),
            "apis/kubevirt.io/v1/namespaces/vms/virtualmachines/rhel9-1",
        )
        self.assertEqual(
            self.client._resource_path(NAMESPACE, None, "vms"), "api/v1/namespaces/vms"
        )
        self.assertEqual(
            self.client._resource_path(SUBSCRIPTION, "openshift-cnv"),
            "apis/operators.coreos.com/v1alpha1/namespaces/openshift-cnv/subscriptions",
        )

    def test_namespaced_kind_requires_namespace(self):
        with self.assertRaises(ValueError):
            self.client._resource_path(VIRTUAL_MACHINE, None, "rhel9-1")

    def test_get_success(self):
        self.session.request.return_value = make_response(
            200, {"metadata": {"name": "rhel9-1"}}
        )

        vm = self.client.get(VIRTUAL_MACHINE, "vms", "rhel9-1")

        self.assertEqual(vm["metadata"]["name"], "rhel9-1")
        self.session.request.assert_called_once_with(
            "GET",
            f"{HOST}/apis/kubevirt.io/v1/namespaces/vms/virtualmachines/rhel9-1",
            timeout=30,
        )

    def test_get_not_found(self):
        self.session.request.return_value = make_response(404, {"message": "not found"})

        with self.assertRaises(ResourceNotFound) as cm:
            self.client.get(VIRTUAL_MACHINE, "vms", "missing")
        self.assertEqual(cm.exception.status_code, 404)
        self.assertFalse(self.client.exists(VIRTUAL_MACHINE, "vms", "missing"))

    def test_get_forbidden_is_not_not_found(self):
        self.session.request.return_value = make_response(403, {"message": "forbidden"})

        with self.assertRaises(ClusterApiError) as cm:
            self.client.get(VIRTUAL_MACHINE, "vms", "rhel9-1")
        self.assertNotIsInstance(cm.exception, ResourceNotFound)
        self.assertEqual(cm.exception.status_code, 403)
        self.assertIn("forbidden", str(cm.exception))

    @patch("clients.time.sleep")
    def test_retry_on_throttling_honors_retry_after(self, mock_sleep):
        """Test 429 responses are retried after the Retry-After delay."""
        self.session.request.side_effect = [
            make_response(429, {"message": "slow down"}, {"Retry-After": "3"}),
            make_response(200, {"metadata": {"name": "rhel9-1"}}),
        ]

        self.client.get(VIRTUAL_MACHINE, "vms", "rhel9-1")

        self.assertEqual(self.session.request.call_count, 2)
        mock_sleep.assert_called_once_with(3.0)

    @patch("clients.time.sleep")
    def test_retry_on_connection_error(self, mock_sleep):
        self.session.request.side_effect = [
            requests.ConnectionError("connection refused"),
            make_response(200, {"items": []}),
        ]

        self.assertEqual(self.client.list_names(VIRTUAL_MACHINE_INSTANCE, "vms"), [])
        self.assertEqual(mock_sleep.call_count, 1)

    @patch("clients.time.sleep")
    def test_max_retries_exceeded(self, mock_sleep):
        self.session.request.return_value = make_response(503, {"message": "unavailable"})

        with self.assertRaises(ClusterApiError) as cm:
            self.client.get(VIRTUAL_MACHINE, "vms", "rhel9-1")

        self.assertIn("Max retries exceeded", str(cm.exception))
        self.assertEqual(self.session.request.call_count, 4)
        self.assertEqual(mock_sleep.call_count, 4)

    def test_calculate_delay_is_capped(self):
        self.assertLessEqual(self.client._calculate_delay(10), 60.0)
        delay = self.client._calculate_delay(1)
        self.assertGreaterEqual(delay, 4.0 * 0.9)
        self.assertLessEqual(delay, 4.0 * 1.1)

    def test_cluster_version_unreachable(self):
        self.session.request.return_value = make_response(401, {"message": "Unauthorized"})

        with self.assertRaises(PrereqMissing):
            self.client.cluster_version()

    def test_list_names(self):
        self.session.request.return_value = make_response(
            200,
            {"items": [{"metadata": {"name": "test-1"}}, {"metadata": {"name": "test-2"}}]},
        )

        self.assertEqual(
            self.client.list_names(VIRTUAL_MACHINE_INSTANCE, "vms"), ["test-1", "test-2"]
        )

    def test_get_conditions(self):
        self.session.request.return_value = make_response(
            200,
            {
                "status": {
                    "conditions": [
                        {"type": "Available", "status": "True"},
                        {"type": "Progressing", "status": "False"},
                        {"type": "Degraded"},
                    ]
                }
            },
        )

        conditions = self.client.get_conditions(
            HYPERCONVERGED, "openshift-cnv", "kubevirt-hyperconverged"
        )

        self.assertEqual(
            conditions,
            {"Available": "True", "Progressing": "False", "Degraded": "Unknown"},
        )

    def test_get_conditions_without_status(self):
        self.session.request.return_value = make_response(200, {"metadata": {}})
        self.assertEqual(self.client.get_conditions(HYPERCONVERGED, "ns", "hco"), {})

    def test_apply_uses_server_side_apply(self):
        """Test each manifest is applied with a fixed field manager."""
        self.session.request.return_value = make_response(200, {})
        manifest_list = [
            {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "openshift-cnv"}},
            {
                "apiVersion": "kubevirt.io/v1",
                "kind": "VirtualMachine",
                "metadata": {"name": "rhel9-1", "namespace": "vms"},
            },
        ]

        self.client.apply(manifest_list)

        self.assertEqual(self.session.request.call_count, 2)
        first, second = self.session.request.call_args_list
        self.assertEqual(first.args, ("PATCH", f"{HOST}/api/v1/namespaces/openshift-cnv"))
        self.assertEqual(
            second.args,
            ("PATCH", f"{HOST}/apis/kubevirt.io/v1/namespaces/vms/virtualmachines/rhel9-1"),
        )
        self.assertEqual(
            second.kwargs["params"], {"fieldManager": "virt-fleet", "force": "true"}
        )
        self.assertEqual(
            second.kwargs["headers"], {"Content-Type": "application/apply-patch+yaml"}
        )
        self.assertEqual(json.loads(second.kwargs["data"]), manifest_list[1])

    def test_reapplying_operator_manifests_sends_identical_patches(self):
        self.session.request.return_value = make_response(200, {})
        op = OperatorConfig()

        self.client.apply(manifests.operator_manifests(op))
        first_run = list(self.session.request.call_args_list)
        self.session.request.reset_mock()
        self.client.apply(manifests.operator_manifests(op))
        second_run = list(self.session.request.call_args_list)

        self.assertEqual(len(first_run), 3)
        self.assertEqual(first_run, second_run)
        self.assertEqual({c.args[0] for c in first_run + second_run}, {"PATCH"})

    def test_apply_rejected(self):
        self.session.request.return_value = make_response(422, {"message": "invalid spec"})

        with self.assertRaises(ApplyFailed) as cm:
            self.client.apply(
                [
                    {
                        "apiVersion": "kubevirt.io/v1",
                        "kind": "VirtualMachine",
                        "metadata": {"name": "rhel9-1", "namespace": "vms"},
                    }
                ]
            )
        self.assertIn("invalid spec", str(cm.exception))

    def test_patch_merge(self):
        self.session.request.return_value = make_response(200, {"spec": {"runStrategy": "Always"}})

        result = self.client.patch(
            VIRTUAL_MACHINE, "vms", "rhel9-1", {"spec": {"runStrategy": "Always"}}
        )

        self.assertEqual(result["spec"]["runStrategy"], "Always")
        kwargs = self.session.request.call_args.kwargs
        self.assertEqual(kwargs["headers"], {"Content-Type": "application/merge-patch+json"})
        self.assertNotIn("params", kwargs)

    def test_patch_json(self):
        self.session.request.return_value = make_response(200, {})

        self.client.patch(VIRTUAL_MACHINE, "vms", "rhel9-1", [], patch_type="json")

        kwargs = self.session.request.call_args.kwargs
        self.assertEqual(kwargs["headers"], {"Content-Type": "application/json-patch+json"})

    def test_patch_not_found(self):
        self.session.request.return_value = make_response(404, {})

        with self.assertRaises(ApplyFailed):
            self.client.patch(VIRTUAL_MACHINE, "vms", "missing", {})


class TestKubeconfigLoading(unittest.TestCase):
    """Test credential resolution through the kubernetes config loader."""

    @patch("clients.kube_config")
    def test_falls_back_to_kubeconfig(self, mock_config):
        mock_config.ConfigException = ConfigException
        mock_config.load_incluster_config.side_effect = ConfigException("not in cluster")

        def load_kube_config(context=None, client_configuration=None):
            client_configuration.host = HOST
            client_configuration.api_key = {"authorization": "sha256~token"}
            client_configuration.api_key_prefix = {"authorization": "Bearer"}

        mock_config.load_kube_config.side_effect = load_kube_config

        client = KubeRestClient(context="admin")

        self.assertEqual(client.host, HOST)
        self.assertEqual(client.session.headers["Authorization"], "Bearer sha256~token")
        self.assertEqual(
            mock_config.load_kube_config.call_args.kwargs["context"], "admin"
        )

    @patch("clients.kube_config")
    def test_each_thread_gets_its_own_session(self, mock_config):
        mock_config.ConfigException = ConfigException

        def load_incluster_config(client_configuration=None):
            client_configuration.host = HOST

        mock_config.load_incluster_config.side_effect = load_incluster_config
        client = KubeRestClient()
        sessions = []

        worker = threading.Thread(target=lambda: sessions.append(client.session))
        worker.start()
        worker.join()

        self.assertIs(client.session, client.session)
        self.assertIsNot(client.session, sessions[0])
        self.assertIsInstance(sessions[0], requests.Session)

    def test_injected_session_is_shared(self):
        session = MagicMock()
        client = KubeRestClient(host=HOST, session=session)
        sessions = []

        worker = threading.Thread(target=lambda: sessions.append(client.session))
        worker.start()
        worker.join()

        self.assertIs(sessions[0], session)
        self.assertIs(client.session, session)

    @patch("clients.kube_config")
    def test_no_configuration(self, mock_config):
        mock_config.ConfigException = ConfigException
        mock_config.load_incluster_config.side_effect = ConfigException("not in cluster")
        mock_config.load_kube_config.side_effect = ConfigException("Invalid kube-config file")

        with self.assertRaises(PrereqMissing):
            KubeRestClient()


class TestHelpers(unittest.TestCase):
    def test_kind_for_manifest(self):
        self.assertIs(
            kind_for_manifest({"apiVersion": "hco.kubevirt.io/v1beta1", "kind": "HyperConverged"}),
            HYPERCONVERGED,
        )
        with self.assertRaises(ValueError):
            kind_for_manifest({"apiVersion": "apps/v1", "kind": "Deployment"})

    def test_get_path(self):
        obj = {"status": {"installedCSV": "kubevirt-hyperconverged-operator.v4.15.0"}}

        self.assertEqual(
            get_path(obj, "status.installedCSV"), "kubevirt-hyperconverged-operator.v4.15.0"
        )
        self.assertIsNone(get_path(obj, "status.phase"))
        self.assertEqual(get_path(obj, "spec.config.env", []), [])


if __name__ == "__main__":
    unittest.main()
