"""Kubernetes client wrapper using kubectl for provisioning E2E runs."""

import json
import logging
import os
import subprocess

import yaml

from .errors import AlreadyExistsError, ApiError, NotFoundError

logger = logging.getLogger(__name__)

# Short kind names that live outside any namespace
CLUSTER_SCOPED_KINDS = {
    "pv",
    "persistentvolume",
    "persistentvolumes",
    "storageclass",
    "storageclasses",
    "node",
    "nodes",
    "csinode",
    "csinodes",
    "csidriver",
    "csidrivers",
    "volumesnapshotclass",
    "volumesnapshotcontent",
    "namespace",
}


def is_cluster_scoped(kind: str) -> bool:
    return kind.lower() in CLUSTER_SCOPED_KINDS


class K8sClient:
    """Wrapper for kubectl operations with proper error handling."""

    def __init__(self, namespace: str = "default", kubeconfig: str | None = None):
        """Initialize the K8s client.

        Args:
            namespace: Default namespace for operations
            kubeconfig: Path to kubeconfig file (uses KUBECONFIG env or default if None)
        """
        self.namespace = namespace
        self.kubeconfig = kubeconfig or os.environ.get("KUBECONFIG")

    def _kubectl(
        self,
        args: list[str],
        input_data: str | None = None,
        timeout: int = 60,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        """Run kubectl command.

        Args:
            args: kubectl arguments
            input_data: Optional stdin data
            timeout: Command timeout in seconds
            check: Whether to raise on non-zero exit

        Returns:
            CompletedProcess with stdout/stderr
        """
        cmd = ["kubectl"]
        if self.kubeconfig:
            cmd.extend(["--kubeconfig", self.kubeconfig])
        cmd.extend(args)

        logger.debug("running %s", " ".join(cmd))
        result = subprocess.run(
            cmd,
            input=input_data,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
        if check and result.returncode != 0:
            raise subprocess.CalledProcessError(
                result.returncode,
                cmd,
                output=result.stdout,
                stderr=result.stderr,
            )
        return result

    def _scope_args(self, kind: str, namespace: str | None) -> list[str]:
        if is_cluster_scoped(kind):
            return []
        return ["-n", namespace or self.namespace]

    @staticmethod
    def _api_error(
        e: subprocess.CalledProcessError,
        kind: str | None = None,
        name: str | None = None,
        namespace: str | None = None,
    ) -> ApiError:
        """Map a failed kubectl call onto the error taxonomy."""
        stderr = (e.stderr or e.output or "").strip() or f"kubectl exited {e.returncode}"
        lowered = stderr.lower()
        if "(notfound)" in lowered or "not found" in lowered:
            return NotFoundError(stderr, kind, name, namespace)
        if "(alreadyexists)" in lowered or "already exists" in lowered:
            return AlreadyExistsError(stderr, kind, name, namespace)
        return ApiError(stderr, kind, name, namespace)

    def _kubectl_json(
        self,
        args: list[str],
        timeout: int = 60,
        kind: str | None = None,
        name: str | None = None,
    ) -> dict | list | None:
        """Run kubectl command and parse JSON output.

        Args:
            args: kubectl arguments (without -o json)
            timeout: Command timeout

        Returns:
            Parsed JSON or None if resource not found
        """
        try:
            result = self._kubectl(args + ["-o", "json"], timeout=timeout)
        except subprocess.CalledProcessError as e:
            error = self._api_error(e, kind, name)
            if isinstance(error, NotFoundError):
                return None
            raise error from e
        return json.loads(result.stdout)

    # -------------------------------------------------------------------------
    # Generic Resource Operations
    # -------------------------------------------------------------------------

    def create(self, manifest: dict, namespace: str | None = None) -> dict:
        """Create a resource. Unlike apply, this honours metadata.generateName.

        Args:
            manifest: Resource manifest
            namespace: Target namespace (defaults to the client namespace)

        Returns:
            Created resource as returned by the API server

        Raises:
            AlreadyExistsError: If an object with the same name exists
            ApiError: On any other failure
        """
        kind = manifest.get("kind", "")
        metadata = manifest.get("metadata", {})
        name = metadata.get("name") or metadata.get("generateName")
        ns = namespace or metadata.get("namespace") or self.namespace

        try:
            result = self._kubectl(
                self._scope_args(kind, ns) + ["create", "-f", "-", "-o", "json"],
                input_data=yaml.safe_dump(manifest),
            )
        except subprocess.CalledProcessError as e:
            raise self._api_error(e, kind, name, ns) from e
        return json.loads(result.stdout)

    def delete(
        self,
        kind: str,
        name: str,
        namespace: str | None = None,
        ignore_not_found: bool = True,
    ) -> bool:
        """Delete a resource without waiting for finalizers.

        Callers poll for the removal themselves.

        Args:
            kind: Resource kind (e.g., "pvc", "pod")
            name: Resource name
            namespace: Namespace (defaults to the client namespace)
            ignore_not_found: Don't error if resource doesn't exist

        Returns:
            True if a delete was issued, False if the object was already gone

        Raises:
            NotFoundError: If missing and ignore_not_found is False
            ApiError: On any other failure
        """
        args = self._scope_args(kind, namespace) + ["delete", kind, name, "--wait=false"]

        try:
            self._kubectl(args)
            return True
        except subprocess.CalledProcessError as e:
            error = self._api_error(e, kind, name, namespace or self.namespace)
            if ignore_not_found and isinstance(error, NotFoundError):
                return False
            raise error from e

    def get(self, kind: str, name: str, namespace: str | None = None) -> dict | None:
        """Get a resource by name.

        Args:
            kind: Resource kind
            name: Resource name
            namespace: Namespace (ignored for cluster-scoped kinds)

        Returns:
            Resource dict or None if not found
        """
        return self._kubectl_json(
            self._scope_args(kind, namespace) + ["get", kind, name], kind=kind, name=name
        )

    def list_resources(
        self,
        kind: str,
        label_selector: str | None = None,
        namespace: str | None = None,
    ) -> list[dict]:
        """List resources of a kind.

        Args:
            kind: Resource kind
            label_selector: Optional label selector
            namespace: Namespace (ignored for cluster-scoped kinds)

        Returns:
            List of resource dicts
        """
        args = self._scope_args(kind, namespace) + ["get", kind]
        if label_selector:
            args.extend(["-l", label_selector])

        result = self._kubectl_json(args, kind=kind)
        if result and "items" in result:
            return result["items"]
        return []

    def get_raw(self, path: str) -> str:
        """Fetch a raw API path (e.g., "/metrics")."""
        try:
            return self._kubectl(["get", "--raw", path]).stdout
        except subprocess.CalledProcessError as e:
            raise self._api_error(e) from e

    # -------------------------------------------------------------------------
    # Pod Operations
    # -------------------------------------------------------------------------

    def get_pod_logs(self, pod_name: str, namespace: str | None = None) -> str:
        """Get logs from a Pod.

        Args:
            pod_name: Pod name
            namespace: Namespace (defaults to the client namespace)

        Returns:
            Log output

        Raises:
            ApiError: If the logs cannot be fetched
        """
        ns = namespace or self.namespace
        args = ["-n", ns, "logs", pod_name]

        try:
            return self._kubectl(args).stdout
        except subprocess.CalledProcessError as e:
            raise self._api_error(e, "pod", pod_name, ns) from e

    def exec_in_pod(
        self,
        pod_name: str,
        command: list[str],
        namespace: str | None = None,
        timeout: int = 60,
    ) -> tuple[str, str, int]:
        """Execute command in a Pod.

        Args:
            pod_name: Pod name
            command: Command to execute
            namespace: Namespace (defaults to the client namespace)
            timeout: Execution timeout

        Returns:
            Tuple of (stdout, stderr, return_code)
        """
        args = ["-n", namespace or self.namespace, "exec", pod_name, "--"]
        args.extend(command)

        result = self._kubectl(args, timeout=timeout, check=False)
        return result.stdout, result.stderr, result.returncode

    def get_events(self, namespace: str | None = None) -> list[dict]:
        """Get events in the namespace, oldest first.

        Args:
            namespace: Namespace (defaults to the client namespace)

        Returns:
            List of events
        """
        args = ["-n", namespace or self.namespace, "get", "events", "--sort-by=.lastTimestamp"]

        result = self._kubectl_json(args, kind="events")
        if result and "items" in result:
            return result["items"]
        return []

    # -------------------------------------------------------------------------
    # Utility Methods
    # -------------------------------------------------------------------------

    def cluster_info(self) -> bool:
        """Check if cluster is accessible.

        Returns:
            True if cluster is accessible
        """
        try:
            self._kubectl(["cluster-info"], timeout=10)
            return True
        except (subprocess.SubprocessError, OSError):
            return False
