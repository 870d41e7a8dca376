"""
REST client for the Kubernetes / OpenShift API server.
"""

import json
import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import requests
from kubernetes import client as kube_client
from kubernetes import config as kube_config

from errors import ApplyFailed, ClusterApiError, PrereqMissing, ResourceNotFound

logger = logging.getLogger(__name__)

FIELD_MANAGER = "virt-fleet"


@dataclass(frozen=True)
class ResourceKind:
    """Where a resource kind lives in the API."""

    kind: str
    group: str
    version: str
    plural: str
    namespaced: bool = True

    @property
    def api_prefix(self) -> str:
        if self.group:
            return f"apis/{self.group}/{self.version}"
        return f"api/{self.version}"


NAMESPACE = ResourceKind("Namespace", "", "v1", "namespaces", namespaced=False)
CATALOG_SOURCE = ResourceKind(
    "CatalogSource", "operators.coreos.com", "v1alpha1", "catalogsources"
)
OPERATOR_GROUP = ResourceKind(
    "OperatorGroup", "operators.coreos.com", "v1", "operatorgroups"
)
SUBSCRIPTION = ResourceKind(
    "Subscription", "operators.coreos.com", "v1alpha1", "subscriptions"
)
CSV = ResourceKind(
    "ClusterServiceVersion",
    "operators.coreos.com",
    "v1alpha1",
    "clusterserviceversions",
)
HYPERCONVERGED = ResourceKind(
    "HyperConverged", "hco.kubevirt.io", "v1beta1", "hyperconvergeds"
)
VIRTUAL_MACHINE = ResourceKind("VirtualMachine", "kubevirt.io", "v1", "virtualmachines")
VIRTUAL_MACHINE_INSTANCE = ResourceKind(
    "VirtualMachineInstance", "kubevirt.io", "v1", "virtualmachineinstances"
)

KINDS: Dict[Tuple[str, str], ResourceKind] = {
    (k.kind, f"{k.group}/{k.version}" if k.group else k.version): k
    for k in (
        NAMESPACE,
        CATALOG_SOURCE,
        OPERATOR_GROUP,
        SUBSCRIPTION,
        CSV,
        HYPERCONVERGED,
        VIRTUAL_MACHINE,
        VIRTUAL_MACHINE_INSTANCE,
    )
}

PATCH_CONTENT_TYPES = {
    "merge": "application/merge-patch+json",
    "json": "application/json-patch+json",
}


def kind_for_manifest(manifest: Dict[str, Any]) -> ResourceKind:
    """Look up the ResourceKind of a manifest from its apiVersion/kind."""
    key = (manifest.get("kind", ""), manifest.get("apiVersion", ""))
    try:
        return KINDS[key]
    except KeyError:
        raise ValueError(f"Unsupported manifest kind: {key[1]}/{key[0]}") from None


def get_path(obj: Any, path: str, default: Any = None) -> Any:
    """Walk a dotted path (e.g. 'status.installedCSV') through nested dicts."""
    current = obj
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


class KubeRestClient:
    """REST client for the cluster API (core, OLM, HCO and KubeVirt resources)."""

    RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

    def __init__(
        self,
        host: Optional[str] = None,
        session: Optional[requests.Session] = None,
        context: Optional[str] = None,
        timeout_s: int = 30,
        max_retries: int = 3,
        base_delay: float = 2.0,
    ):
        """
        Initialize the cluster REST client.

        Args:
            host: API server URL; resolved from kubeconfig when omitted
            session: Pre-authenticated session; built from kubeconfig when omitted
            context: kubeconfig context to use
            timeout_s: Request timeout in seconds
            max_retries: Maximum number of retries for transient errors
            base_delay: Base delay for exponential backoff

        Raises:
            PrereqMissing: If no usable cluster configuration is found
        """
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.base_delay = base_delay

        if host is None or session is None:
            cfg = self._load_kube_configuration(context)
            host = cfg.host
            self._new_session: Callable[[], requests.Session] = lambda: self._session_for(cfg)
        else:
            self._new_session = lambda: session
        self.host = host.rstrip("/")
        self._local = threading.local()

    @property
    def session(self) -> requests.Session:
        """
        Session for the calling thread.

        Sessions built from kubeconfig are one per thread; an injected
        session is shared as is.
        """
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._local.session = self._new_session()
        return session

    @staticmethod
    def _load_kube_configuration(context: Optional[str]) -> kube_client.Configuration:
        """Resolve in-cluster or kubeconfig credentials."""
        cfg = kube_client.Configuration()
        try:
            kube_config.load_incluster_config(client_configuration=cfg)
            logger.debug("Loaded in-cluster Kubernetes config")
        except kube_config.ConfigException:
            try:
                kube_config.load_kube_config(context=context, client_configuration=cfg)
                logger.debug("Loaded local Kubernetes config")
            except (kube_config.ConfigException, OSError) as e:
                raise PrereqMissing(
                    f"Cannot load Kubernetes configuration: {e}. "
                    "Make sure your kubeconfig is set correctly"
                ) from e
        return cfg

    @staticmethod
    def _session_for(cfg: kube_client.Configuration) -> requests.Session:
        """Build an authenticated session from resolved credentials."""
        session = requests.Session()
        token = cfg.get_api_key_with_prefix("authorization")
        if token:
            session.headers["Authorization"] = token
        if cfg.cert_file and cfg.key_file:
            session.cert = (cfg.cert_file, cfg.key_file)
        if not cfg.verify_ssl:
            session.verify = False
        elif cfg.ssl_ca_cert:
            session.verify = cfg.ssl_ca_cert
        return session

    def _url(self, path: str) -> str:
        """Construct full API URL from path."""
        return f"{self.host}/{path.lstrip('/')}"

    def _resource_path(
        self, kind: ResourceKind, namespace: Optional[str], name: Optional[str] = None
    ) -> str:
        parts = [kind.api_prefix]
        if kind.namespaced:
            if not namespace:
                raise ValueError(f"{kind.kind} is namespaced; namespace required")
            parts += ["namespaces", namespace]
        parts.append(kind.plural)
        if name:
            parts.append(name)
        return "/".join(parts)

    def _request_with_retry(self, method: str, url: str, **kwargs) -> requests.Response:
        """
        Execute HTTP request with exponential backoff retry for transient errors.

        Args:
            method: HTTP method (GET, PATCH)
            url: Request URL
            **kwargs: Additional request parameters

        Returns:
            The final response (which may still be a non-2xx status)

        Raises:
            ClusterApiError: If max retries exceeded
        """
        last_error = None

        for attempt in range(self.max_retries + 1):
            try:
                resp = self.session.request(
                    method.upper(), url, timeout=self.timeout_s, **kwargs
                )
            except requests.RequestException as e:
                delay = self._calculate_delay(attempt)
                logger.warning(
                    f"Request error: {e}, attempt {attempt + 1}/{self.max_retries + 1}, waiting {delay:.1f}s..."
                )
                last_error = str(e)
                time.sleep(delay)
                continue

            if resp.status_code in self.RETRYABLE_STATUS_CODES:
                delay = self._calculate_delay(attempt, resp)
                logger.warning(
                    f"Retryable error {resp.status_code} ({self._error_message(resp)}), attempt {attempt + 1}/{self.max_retries + 1}, waiting {delay:.1f}s..."
                )
                last_error = f"HTTP {resp.status_code}: {self._error_message(resp)}"
                time.sleep(delay)
                continue

            return resp

        raise ClusterApiError(f"Max retries exceeded. Last error: {last_error}")

    def _calculate_delay(self, attempt: int, resp=None) -> float:
        """
        Calculate delay with exponential backoff and jitter.

        Args:
            attempt: Current attempt number
            resp: Optional response object (to check Retry-After header)

        Returns:
            Delay in seconds
        """
        if resp is not None and "Retry-After" in resp.headers:
            try:
                return float(resp.headers["Retry-After"])
            except ValueError:
                pass

        delay = self.base_delay * (2**attempt)
        jitter = delay * 0.2 * (random.random() - 0.5)
        return min(delay + jitter, 60.0)

    @staticmethod
    def _error_message(resp: requests.Response) -> str:
        """Extract the Status message from an error response."""
        try:
            return str(resp.json().get("message", ""))
        except ValueError:
            return resp.text[:200]

    def _raise_for_status(self, resp: requests.Response, what: str) -> None:
        if resp.status_code == 404:
            raise ResourceNotFound(f"{what} not found")
        if not 200 <= resp.status_code < 300:
            raise ClusterApiError(
                f"{what} failed ({resp.status_code}): {self._error_message(resp)}",
                status_code=resp.status_code,
            )

    def cluster_version(self) -> Dict[str, Any]:
        """
        Fetch the API server version; used as a connectivity check.

        Raises:
            PrereqMissing: If the cluster cannot be reached
        """
        try:
            resp = self._request_with_retry("GET", self._url("version"))
            self._raise_for_status(resp, "GET /version")
        except ClusterApiError as e:
            raise PrereqMissing(f"Cannot connect to Kubernetes cluster: {e}") from e
        return resp.json()

    def get(self, kind: ResourceKind, namespace: Optional[str], name: str) -> Dict:
        """
        Get a single resource.

        Args:
            kind: Resource kind
            namespace: Namespace (ignored for cluster-scoped kinds)
            name: Resource name

        Returns:
            Resource as dictionary

        Raises:
            ResourceNotFound: If the resource does not exist
            ClusterApiError: If the API call fails
        """
        url = self._url(self._resource_path(kind, namespace, name))
        resp = self._request_with_retry("GET", url)
        self._raise_for_status(resp, f"GET {kind.kind} {namespace}/{name}")
        return resp.json()

    def exists(self, kind: ResourceKind, namespace: Optional[str], name: str) -> bool:
        try:
            self.get(kind, namespace, name)
            return True
        except ResourceNotFound:
            return False

    def list_names(self, kind: ResourceKind, namespace: Optional[str]) -> List[str]:
        """List resource names of a kind in a namespace, in API order."""
        url = self._url(self._resource_path(kind, namespace))
        resp = self._request_with_retry("GET", url)
        self._raise_for_status(resp, f"LIST {kind.kind} in {namespace}")
        return [
            item["metadata"]["name"]
            for item in resp.json().get("items", [])
            if "metadata" in item
        ]

    def get_field(
        self, kind: ResourceKind, namespace: Optional[str], name: str, path: str
    ) -> Any:
        """Return the value at a dotted path of a resource, or None if unset."""
        return get_path(self.get(kind, namespace, name), path)

    def get_conditions(
        self, kind: ResourceKind, namespace: Optional[str], name: str
    ) -> Dict[str, str]:
        """Return status.conditions as a condition-type -> status mapping."""
        conditions = self.get_field(kind, namespace, name, "status.conditions") or []
        return {
            c["type"]: c.get("status", "Unknown")
            for c in conditions
            if isinstance(c, dict) and "type" in c
        }

    def apply(self, manifests: Iterable[Dict[str, Any]]) -> None:
        """
        Server-side apply a set of manifests, in order.

        Re-applying identical manifests leaves the cluster unchanged.

        Args:
            manifests: Manifests to apply

        Raises:
            ApplyFailed: If any manifest is rejected
        """
        for manifest in manifests:
            kind = kind_for_manifest(manifest)
            meta = manifest.get("metadata", {})
            name, namespace = meta["name"], meta.get("namespace")
            url = self._url(self._resource_path(kind, namespace, name))
            try:
                resp = self._request_with_retry(
                    "PATCH",
                    url,
                    params={"fieldManager": FIELD_MANAGER, "force": "true"},
                    data=json.dumps(manifest),
                    headers={"Content-Type": "application/apply-patch+yaml"},
                )
                self._raise_for_status(resp, f"apply {kind.kind} {name}")
            except ClusterApiError as e:
                raise ApplyFailed(str(e)) from e
            logger.debug(f"Applied {kind.kind} {namespace or ''}/{name}")

    def patch(
        self,
        kind: ResourceKind,
        namespace: Optional[str],
        name: str,
        body: Any,
        patch_type: str = "merge",
    ) -> Dict:
        """
        Patch a resource with a merge patch or a JSON patch.

        Args:
            kind: Resource kind
            namespace: Namespace
            name: Resource name
            body: Patch document
            patch_type: "merge" or "json"

        Returns:
            Patched resource as dictionary

        Raises:
            ApplyFailed: If the patch is rejected
        """
        content_type = PATCH_CONTENT_TYPES[patch_type]
        url = self._url(self._resource_path(kind, namespace, name))
        try:
            resp = self._request_with_retry(
                "PATCH",
                url,
                data=json.dumps(body),
                headers={"Content-Type": content_type},
            )
            self._raise_for_status(resp, f"patch {kind.kind} {name}")
        except ClusterApiError as e:
            raise ApplyFailed(str(e)) from e
        return resp.json()
