"""Resolves terminal provisioner jobs into outcomes and cleans them up."""

from typing import Any, Dict, List, Mapping

from forgeprovisioner.constants import BATCH_CONTROLLER_UID_LABEL, CONTROLLER_UID_LABEL
from forgeprovisioner.errors import (
    ObjectNotFoundError,
    ProvisionerError,
    UnrecognizedJobConditionError,
)
from forgeprovisioner.errors_catalog import actionable_error
from forgeprovisioner.models import CorrelationKey, FailureRecord, JobOutcome, ReconcileResult

JOB_COMPLETE = "Complete"
JOB_FAILED = "Failed"


def terminated_container_states(pod: Mapping[str, Any]) -> Dict[str, Mapping[str, Any]]:
    """Terminated state per container name, init containers included."""
    states: Dict[str, Mapping[str, Any]] = {}
    status = pod.get("status") or {}
    for container_status in (status.get("initContainerStatuses") or []) + (
        status.get("containerStatuses") or []
    ):
        terminated = (container_status.get("state") or {}).get("terminated")
        if terminated is None:
            continue
        states[container_status.get("name", "")] = terminated
    return states


class JobStatusWatcher:
    """Reconciles provisioner jobs that reached a terminal condition.

    Only the first reported condition is inspected; condition ordering is
    taken as the API server reports it.
    """

    def __init__(self, kubectl, sink, logger):
        self.kubectl = kubectl
        self.sink = sink
        self.logger = logger

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        job = self.kubectl.get_json("job", name, namespace)
        if job is None:
            self.logger.info("Ignoring job %s/%s that must have been deleted", namespace, name)
            return ReconcileResult()

        conditions = (job.get("status") or {}).get("conditions") or []
        if not conditions:
            self.logger.debug("Ignoring job %s/%s without conditions", namespace, name)
            return ReconcileResult()

        condition = conditions[0]
        condition_type = condition.get("type")
        try:
            if condition_type == JOB_COMPLETE:
                self._process_complete(job)
            elif condition_type == JOB_FAILED:
                self._process_failed(job, condition)
            else:
                raise UnrecognizedJobConditionError(
                    actionable_error(
                        "unrecognized_job_condition",
                        condition=condition_type,
                        name=name,
                        namespace=namespace,
                    )
                )
        except ProvisionerError as exc:
            self.logger.error("Failed processing job %s/%s: %s", namespace, name, exc)
            raise

        return ReconcileResult()

    def _process_complete(self, job: Mapping[str, Any]):
        key = self._correlation_key(job)
        self.logger.info(
            "Provisioner %s of build %s/%s completed",
            key.provisioner_id,
            key.build_namespace,
            key.build_name,
        )
        self.sink.record(JobOutcome(key=key, succeeded=True))
        self.delete_job(job)

    def _process_failed(self, job: Mapping[str, Any], condition: Mapping[str, Any]):
        key = self._correlation_key(job)
        self.logger.info(
            "Provisioner %s of build %s/%s failed",
            key.provisioner_id,
            key.build_namespace,
            key.build_name,
        )

        try:
            pods = self.pods_for_job(job)
        except ObjectNotFoundError:
            self.logger.info("Provisioner job %s was deleted concurrently", job["metadata"]["name"])
            pods = []

        failures: List[FailureRecord] = []
        for pod in pods:
            for container, state in terminated_container_states(pod).items():
                exit_code = int(state.get("exitCode", 0))
                if exit_code == 0:
                    continue
                record = FailureRecord(
                    reason=state.get("reason") or "Error",
                    message=state.get("message") or "",
                    container=container,
                    exit_code=exit_code,
                )
                self.logger.error(
                    "Provisioner %s container %s exited with code %s: %s %s",
                    key.provisioner_id,
                    container,
                    exit_code,
                    record.reason,
                    record.message,
                )
                failures.append(record)

        self.sink.record(
            JobOutcome(
                key=key,
                succeeded=False,
                failures=tuple(failures),
                reason=condition.get("reason") or "",
                message=condition.get("message") or "",
            )
        )
        self.delete_job(job)

    def pods_for_job(self, job: Mapping[str, Any]) -> List[Dict[str, Any]]:
        """List the pods backing a job using its authoritative selector."""
        metadata = job["metadata"]
        refreshed = self.kubectl.get_json("job", metadata["name"], metadata["namespace"])
        if refreshed is None:
            raise ObjectNotFoundError(f"Job {metadata['namespace']}/{metadata['name']} not found")

        match_labels = ((refreshed.get("spec") or {}).get("selector") or {}).get("matchLabels") or {}
        label_key = CONTROLLER_UID_LABEL
        label_value = match_labels.get(label_key)
        if not label_value:
            label_key = BATCH_CONTROLLER_UID_LABEL
            label_value = match_labels.get(label_key)
        if not label_value:
            raise ProvisionerError(
                f"Job {metadata['namespace']}/{metadata['name']} has no controller-uid selector"
            )

        return self.kubectl.list_json(
            "pods",
            namespace=metadata["namespace"],
            selector=f"{label_key}={label_value}",
        )

    def delete_job(self, job: Mapping[str, Any]):
        metadata = job["metadata"]
        self.logger.info("Deleting provisioner job %s/%s", metadata["namespace"], metadata["name"])
        try:
            self.kubectl.delete("job", metadata["name"], metadata["namespace"], propagation="background")
        except ObjectNotFoundError:
            return

    @staticmethod
    def _correlation_key(job: Mapping[str, Any]) -> CorrelationKey:
        return CorrelationKey.from_labels((job.get("metadata") or {}).get("labels") or {})
