"""Applies provisioner outcomes to Build objects.

Reconcile steps work on read-only Build snapshots and return results;
the functions here turn a snapshot plus a result into the next snapshot,
and ``BuildRepository`` is the only place that writes it back.
"""

import threading
from collections import Counter
from dataclasses import replace
from typing import Dict, Optional, Tuple

from forgeprovisioner.constants import BUILD_RESOURCE
from forgeprovisioner.models import (
    Build,
    BuildStatus,
    EnsureResult,
    JobOutcome,
    ProvisionerSpec,
    ProvisionerStatus,
)


def derive_build_status(build: Build) -> BuildStatus:
    provisioners_ready = all(provisioner.succeeded for provisioner in build.provisioners)
    connected = build.status.connected or any(
        provisioner.status == ProvisionerStatus.COMPLETED for provisioner in build.provisioners
    )
    return replace(
        build.status,
        connected=connected,
        provisioners_ready=provisioners_ready,
        ready=build.status.machine_ready and provisioners_ready,
    )


def apply_ensure_result(spec: ProvisionerSpec, result: EnsureResult) -> ProvisionerSpec:
    if result.correlation_id is None:
        return spec
    return replace(spec, uuid=result.correlation_id, status=ProvisionerStatus.RUNNING)


def failure_summary(outcome: JobOutcome) -> Tuple[str, str]:
    if outcome.failures:
        first = outcome.failures[0]
        message = f"container {first.container} exited with code {first.exit_code}"
        if first.message:
            message = f"{message}: {first.message}"
        return first.reason, message
    return outcome.reason or "JobFailed", outcome.message or "provisioner job failed"


def apply_outcome(spec: ProvisionerSpec, outcome: JobOutcome) -> ProvisionerSpec:
    if outcome.succeeded:
        return replace(
            spec,
            status=ProvisionerStatus.COMPLETED,
            failure_reason=None,
            failure_message=None,
        )

    if spec.retries > 0:
        # A retry is a new run: the next ensure mints a new correlation id.
        return replace(
            spec,
            retries=spec.retries - 1,
            uuid=None,
            status=ProvisionerStatus.PENDING,
            failure_reason=None,
            failure_message=None,
        )

    reason, message = failure_summary(outcome)
    return replace(
        spec,
        status=ProvisionerStatus.FAILED,
        failure_reason=reason,
        failure_message=message,
    )


class BuildRepository:
    """Reads and persists Build objects through kubectl."""

    def __init__(self, kubectl, logger):
        self.kubectl = kubectl
        self.logger = logger

    def get_build(self, namespace: str, name: str) -> Optional[Build]:
        data = self.kubectl.get_json(BUILD_RESOURCE, name, namespace)
        if data is None:
            return None
        return Build.from_dict(data)

    def save(self, build: Build):
        self.kubectl.patch_json(
            BUILD_RESOURCE,
            build.name,
            {"spec": {"provisioners": [provisioner.to_dict() for provisioner in build.provisioners]}},
            namespace=build.namespace,
        )
        status = build.status.to_dict()
        status.pop("machineReady")
        self.kubectl.patch_json(
            BUILD_RESOURCE,
            build.name,
            {"status": status},
            namespace=build.namespace,
            subresource="status",
        )
        self.logger.debug("Saved build %s/%s", build.namespace, build.name)


class OutcomeCounters:
    """Thread-safe totals of recorded outcomes."""

    def __init__(self):
        self._lock = threading.Lock()
        self._totals: Counter = Counter()

    def observe(self, outcome: JobOutcome):
        with self._lock:
            self._totals["succeeded" if outcome.succeeded else "failed"] += 1
            self._totals["failure_records"] += len(outcome.failures)

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._totals)


class BuildOutcomeRecorder:
    """Outcome sink that writes job results back onto the owning Build."""

    def __init__(self, repository: BuildRepository, logger, counters: Optional[OutcomeCounters] = None):
        self.repository = repository
        self.logger = logger
        self.counters = counters or OutcomeCounters()

    def record(self, outcome: JobOutcome):
        self.counters.observe(outcome)
        key = outcome.key

        build = self.repository.get_build(key.build_namespace, key.build_name)
        if build is None:
            self.logger.info("Build %s/%s no longer exists", key.build_namespace, key.build_name)
            return

        index = build.find_provisioner(key.provisioner_id)
        if index is None:
            self.logger.info(
                "Build %s/%s has no provisioner run %s",
                key.build_namespace,
                key.build_name,
                key.provisioner_id,
            )
            return

        provisioner = apply_outcome(build.provisioners[index], outcome)
        updated = build.with_provisioner(index, provisioner)
        updated = replace(updated, status=derive_build_status(updated))
        self.repository.save(updated)
        self.logger.info(
            "Provisioner %s of build %s/%s is now %s",
            index,
            build.namespace,
            build.name,
            provisioner.status.value,
        )
