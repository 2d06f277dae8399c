"""Creates the single job that executes one provisioner run."""

import uuid as uuid_module
from typing import Callable

from forgeprovisioner.constants import (
    FORGE_CORE_NAMESPACE,
    JOB_REQUEUE_AFTER_SECONDS,
    SHELL_PROVISIONER_REPO,
    SHELL_PROVISIONER_TAG,
)
from forgeprovisioner.models import Build, EnsureResult, ProvisionerSpec
from forgeprovisioner.services.job_builder import ShellJobBuilder


class ProvisionerJobOrchestrator:
    """Ensures exactly one job exists for the current run of a provisioner.

    The correlation id is minted once per run. While it is set on the
    provisioner nothing is done here: the job watcher owns the outcome.
    """

    def __init__(
        self,
        kubectl,
        logger,
        namespace: str = FORGE_CORE_NAMESPACE,
        image_repo: str = SHELL_PROVISIONER_REPO,
        image_tag: str = SHELL_PROVISIONER_TAG,
        id_factory: Callable[[], str] = lambda: str(uuid_module.uuid4()),
    ):
        self.kubectl = kubectl
        self.logger = logger
        self.namespace = namespace
        self.image_repo = image_repo
        self.image_tag = image_tag
        self.id_factory = id_factory

    def ensure(self, build: Build, spec: ProvisionerSpec) -> EnsureResult:
        if spec.uuid is not None:
            return EnsureResult()

        correlation_id = self.id_factory()
        builder = (
            ShellJobBuilder()
            .with_namespace(self.namespace)
            .with_build_namespace(build.namespace)
            .with_build_name(build.name)
            .with_uuid(correlation_id)
            .with_repo(self.image_repo)
            .with_tag(self.image_tag)
            .with_credentials_secret(build.connector.credentials_secret)
        )
        if spec.run is not None:
            builder.with_script(spec.run)
        else:
            builder.with_script_ref(spec.run_config_map_ref)

        desired = builder.build()
        operation = self.kubectl.apply_json(desired)
        self.logger.info(
            "Provisioner job %s %s for build %s/%s",
            desired["metadata"]["name"],
            operation,
            build.namespace,
            build.name,
        )
        return EnsureResult(requeue_after=JOB_REQUEUE_AFTER_SECONDS, correlation_id=correlation_id)
