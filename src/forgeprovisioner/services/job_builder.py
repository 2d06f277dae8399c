"""Builds the batch/v1 Job manifest that runs one provisioner run."""

from typing import Any, Dict, List, Optional

from forgeprovisioner.constants import (
    CREDENTIALS_HOST_KEY,
    CREDENTIALS_PASSWORD_KEY,
    CREDENTIALS_PORT_KEY,
    CREDENTIALS_PRIVATE_KEY_KEY,
    CREDENTIALS_USERNAME_KEY,
    ENV_BUILD_NAME,
    ENV_PROVISIONER_ID,
    ENV_SCRIPT,
    ENV_SSH_HOST,
    ENV_SSH_PASSWORD,
    ENV_SSH_PORT,
    ENV_SSH_PRIVATE_KEY,
    ENV_SSH_USERNAME,
    MANAGED_BY_LABEL,
    PROVISIONER_NAME,
)
from forgeprovisioner.errors import ProvisionerError
from forgeprovisioner.models import CorrelationKey, ScriptReference


def job_name_for(correlation_id: str) -> str:
    return f"{PROVISIONER_NAME}-{correlation_id}"[:63].rstrip("-")


class ShellJobBuilder:
    """Fluent builder for shell provisioner jobs."""

    def __init__(self):
        self.namespace: Optional[str] = None
        self.build_name: Optional[str] = None
        self.build_namespace: Optional[str] = None
        self.uuid: Optional[str] = None
        self.repo: Optional[str] = None
        self.tag: Optional[str] = None
        self.credentials_secret: Optional[str] = None
        self.script: Optional[str] = None
        self.script_ref: Optional[ScriptReference] = None

    def with_namespace(self, namespace: str) -> "ShellJobBuilder":
        self.namespace = namespace
        return self

    def with_build_name(self, name: str) -> "ShellJobBuilder":
        self.build_name = name
        return self

    def with_build_namespace(self, namespace: str) -> "ShellJobBuilder":
        self.build_namespace = namespace
        return self

    def with_uuid(self, uuid: str) -> "ShellJobBuilder":
        self.uuid = uuid
        return self

    def with_repo(self, repo: str) -> "ShellJobBuilder":
        self.repo = repo
        return self

    def with_tag(self, tag: str) -> "ShellJobBuilder":
        self.tag = tag
        return self

    def with_credentials_secret(self, name: str) -> "ShellJobBuilder":
        self.credentials_secret = name
        return self

    def with_script(self, script: str) -> "ShellJobBuilder":
        self.script = script
        return self

    def with_script_ref(self, ref: ScriptReference) -> "ShellJobBuilder":
        self.script_ref = ref
        return self

    def build(self) -> Dict[str, Any]:
        required = {
            "namespace": self.namespace,
            "build name": self.build_name,
            "build namespace": self.build_namespace,
            "uuid": self.uuid,
            "image repository": self.repo,
            "image tag": self.tag,
            "credentials secret": self.credentials_secret,
        }
        missing = [label for label, value in required.items() if not value]
        if missing:
            raise ProvisionerError(f"Cannot build provisioner job, missing: {', '.join(missing)}")
        if (self.script is None) == (self.script_ref is None):
            raise ProvisionerError("Provisioner job needs exactly one of an inline script or a script reference.")

        key = CorrelationKey(
            build_name=self.build_name,
            build_namespace=self.build_namespace,
            provisioner_id=self.uuid,
        )
        labels = {MANAGED_BY_LABEL: PROVISIONER_NAME}
        labels.update(key.to_labels())

        return {
            "apiVersion": "batch/v1",
            "kind": "Job",
            "metadata": {
                "name": job_name_for(self.uuid),
                "namespace": self.namespace,
                "labels": labels,
            },
            "spec": {
                "backoffLimit": 0,
                "template": {
                    "metadata": {"labels": labels},
                    "spec": {
                        "restartPolicy": "Never",
                        "containers": [
                            {
                                "name": "shell",
                                "image": f"{self.repo}:{self.tag}",
                                "args": ["run"],
                                "env": self._env(),
                            }
                        ],
                    },
                },
            },
        }

    def _env(self) -> List[Dict[str, Any]]:
        def secret_ref(env_name: str, key: str, optional: bool = False) -> Dict[str, Any]:
            ref: Dict[str, Any] = {"name": self.credentials_secret, "key": key}
            if optional:
                ref["optional"] = True
            return {"name": env_name, "valueFrom": {"secretKeyRef": ref}}

        env = [
            {"name": ENV_BUILD_NAME, "value": self.build_name},
            {"name": ENV_PROVISIONER_ID, "value": self.uuid},
            secret_ref(ENV_SSH_HOST, CREDENTIALS_HOST_KEY),
            secret_ref(ENV_SSH_PORT, CREDENTIALS_PORT_KEY, optional=True),
            secret_ref(ENV_SSH_USERNAME, CREDENTIALS_USERNAME_KEY),
            secret_ref(ENV_SSH_PASSWORD, CREDENTIALS_PASSWORD_KEY, optional=True),
            secret_ref(ENV_SSH_PRIVATE_KEY, CREDENTIALS_PRIVATE_KEY_KEY, optional=True),
        ]
        if self.script is not None:
            env.append({"name": ENV_SCRIPT, "value": self.script})
        else:
            env.append(
                {
                    "name": ENV_SCRIPT,
                    "valueFrom": {
                        "configMapKeyRef": {"name": self.script_ref.name, "key": self.script_ref.key}
                    },
                }
            )
        return env
