"""kubectl-backed access to cluster objects."""

import json
from typing import Any, Dict, List, Mapping, Optional

from forgeprovisioner.errors import ObjectNotFoundError, ProvisionerError
from forgeprovisioner.services.command_runner import CommandRunner

NOT_FOUND_MARKERS = ("(notfound)", "not found")


def classify_kubectl_error(stderr: str) -> ProvisionerError:
    """Map kubectl stderr to a not-found error or a generic provisioner error."""
    lower = stderr.lower()
    if any(marker in lower for marker in NOT_FOUND_MARKERS):
        return ObjectNotFoundError(stderr.strip())
    return ProvisionerError(stderr.strip() or "kubectl failed without output")


def load_json(output: str) -> Any:
    try:
        return json.loads(output)
    except json.JSONDecodeError as exc:
        raise ProvisionerError(f"kubectl returned invalid JSON: {exc}") from exc


def label_selector(labels: Mapping[str, str]) -> str:
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


class Kubectl:
    """Thin JSON wrapper over the kubectl binary.

    Every call goes through CommandRunner so that timeouts and missing
    binaries surface as ProvisionerError. Objects are exchanged as the
    plain dictionaries kubectl prints with ``-o json``.
    """

    def __init__(
        self,
        command_runner: CommandRunner,
        logger,
        kubectl: str = "kubectl",
        kubeconfig: Optional[str] = None,
        timeout: Optional[float] = 60.0,
        read_retries: int = 2,
        retry_backoff_seconds: float = 1.0,
    ):
        self.command_runner = command_runner
        self.logger = logger
        self.kubectl = kubectl
        self.kubeconfig = kubeconfig
        self.timeout = timeout
        self.read_retries = read_retries
        self.retry_backoff_seconds = retry_backoff_seconds

    def _base_cmd(self, namespace: Optional[str]) -> List[str]:
        cmd = [self.kubectl]
        if self.kubeconfig:
            cmd += ["--kubeconfig", self.kubeconfig]
        if namespace:
            cmd += ["--namespace", namespace]
        return cmd

    def _run(self, cmd: List[str], input_text: Optional[str] = None, retry: bool = False) -> str:
        """Run kubectl; read-only calls pass ``retry`` to survive an unresponsive API server."""
        result = self.command_runner.run(
            cmd,
            capture_output=True,
            timeout=self.timeout,
            input_text=input_text,
            retry_count=self.read_retries if retry else 0,
            retry_backoff_seconds=self.retry_backoff_seconds,
        )
        if result.returncode != 0:
            raise classify_kubectl_error(result.stderr or "")
        return result.stdout or ""

    def get_json(self, kind: str, name: str, namespace: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Return the object, or None when it does not exist."""
        try:
            output = self._run(self._base_cmd(namespace) + ["get", kind, name, "-o", "json"], retry=True)
        except ObjectNotFoundError:
            return None
        return load_json(output)

    def list_json(
        self,
        kind: str,
        namespace: Optional[str] = None,
        labels: Optional[Mapping[str, str]] = None,
        selector: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        cmd = self._base_cmd(namespace) + ["get", kind, "-o", "json"]
        if namespace is None:
            cmd.append("--all-namespaces")
        effective_selector = selector or (label_selector(labels) if labels else None)
        if effective_selector:
            cmd += ["--selector", effective_selector]
        output = self._run(cmd, retry=True)
        return load_json(output).get("items", [])

    def apply_json(self, manifest: Mapping[str, Any]) -> str:
        """Create or update an object; returns created, configured or unchanged."""
        namespace = manifest.get("metadata", {}).get("namespace")
        output = self._run(
            self._base_cmd(namespace) + ["apply", "-f", "-"],
            input_text=json.dumps(manifest),
        )
        words = output.strip().split()
        operation = words[-1] if words else "unchanged"
        self.logger.debug("Applied %s: %s", manifest.get("kind", "object"), output.strip())
        return operation

    def delete(self, kind: str, name: str, namespace: Optional[str] = None, propagation: str = "background"):
        """Delete an object; a missing object counts as deleted."""
        self._run(
            self._base_cmd(namespace)
            + [
                "delete",
                kind,
                name,
                f"--cascade={propagation}",
                "--ignore-not-found=true",
                "--wait=false",
            ]
        )

    def patch_json(
        self,
        kind: str,
        name: str,
        patch: Mapping[str, Any],
        namespace: Optional[str] = None,
        subresource: Optional[str] = None,
    ) -> Dict[str, Any]:
        cmd = self._base_cmd(namespace) + [
            "patch",
            kind,
            name,
            "--type",
            "merge",
            "-p",
            json.dumps(patch),
            "-o",
            "json",
        ]
        if subresource:
            cmd.append(f"--subresource={subresource}")
        return load_json(self._run(cmd))
