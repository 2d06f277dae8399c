import logging
import threading
from dataclasses import replace
from typing import List, Optional

from rich.console import Console

from .constants import (
    BUILD_RESOURCE,
    FORGE_CORE_NAMESPACE,
    MANAGED_BY_LABEL,
    PROVISIONER_NAME,
    SHELL_PROVISIONER_REPO,
    SHELL_PROVISIONER_TAG,
)
from .errors import ProvisionerError
from .models import ProvisionerStatus, ProvisionerType, ReconcileResult
from .services.command_runner import CommandRunner
from .services.informer import ResourcePoller
from .services.job_builder import job_name_for
from .services.job_watcher import JobStatusWatcher
from .services.kubectl import Kubectl
from .services.orchestrator import ProvisionerJobOrchestrator
from .services.outcome import (
    BuildOutcomeRecorder,
    BuildRepository,
    OutcomeCounters,
    apply_ensure_result,
    derive_build_status,
)
from .services.predicates import shell_job_filter
from .services.work_queue import ReconcileQueue

console = Console()
logger = logging.getLogger("forgeprovisioner")

INVALID_SCRIPT_SOURCE_REASON = "InvalidScriptSource"


class BuildReconciler:
    """Advances the provisioner sequence of one Build by at most one step."""

    def __init__(self, repository: BuildRepository, orchestrator: ProvisionerJobOrchestrator, logger):
        self.repository = repository
        self.orchestrator = orchestrator
        self.logger = logger

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        build = self.repository.get_build(namespace, name)
        if build is None:
            self.logger.debug("Build %s/%s not found; nothing to do", namespace, name)
            return ReconcileResult()

        for index, spec in enumerate(build.provisioners):
            if spec.settled:
                if spec.status == ProvisionerStatus.FAILED and not spec.allow_fail:
                    self.logger.info(
                        "Build %s/%s stopped at failed provisioner %s: %s",
                        namespace,
                        name,
                        index,
                        spec.failure_reason or "unknown reason",
                    )
                    break
                continue

            if spec.type != ProvisionerType.BUILTIN_SHELL:
                self.logger.debug("Build %s/%s waits on %s provisioner %s", namespace, name, spec.type.value, index)
                return ReconcileResult()

            try:
                spec.validate()
            except ProvisionerError as exc:
                self.logger.warning("Build %s/%s provisioner %s is invalid: %s", namespace, name, index, exc)
                invalid = replace(
                    spec,
                    status=ProvisionerStatus.FAILED,
                    failure_reason=INVALID_SCRIPT_SOURCE_REASON,
                    failure_message=str(exc),
                )
                updated = build.with_provisioner(index, invalid)
                self.repository.save(replace(updated, status=derive_build_status(updated)))
                return ReconcileResult()

            result = self.orchestrator.ensure(build, spec)
            if result.correlation_id is not None:
                updated = build.with_provisioner(index, apply_ensure_result(spec, result))
                updated = replace(updated, status=derive_build_status(updated))
                try:
                    self.repository.save(updated)
                except ProvisionerError:
                    # The next pass mints a new run id; this job is never correlated again.
                    self.logger.warning(
                        "Could not record run %s on build %s/%s; job %s is orphaned",
                        result.correlation_id,
                        namespace,
                        name,
                        job_name_for(result.correlation_id),
                    )
                    raise
            return ReconcileResult(requeue_after=result.requeue_after)

        status = derive_build_status(build)
        if status != build.status:
            self.repository.save(replace(build, status=status))
        return ReconcileResult()


class ShellProvisionerController:
    """Runs the build reconciler and the job watcher until stopped."""

    def __init__(
        self,
        namespace: str = FORGE_CORE_NAMESPACE,
        image_repo: str = SHELL_PROVISIONER_REPO,
        image_tag: str = SHELL_PROVISIONER_TAG,
        poll_interval_seconds: float = 5.0,
        workers: int = 4,
        kubectl: Optional[Kubectl] = None,
        kubectl_binary: str = "kubectl",
        kubeconfig: Optional[str] = None,
    ):
        self.namespace = namespace
        self.kubectl = kubectl or Kubectl(
            CommandRunner(logger=logger),
            logger=logger,
            kubectl=kubectl_binary,
            kubeconfig=kubeconfig,
        )
        self.counters = OutcomeCounters()
        self.repository = BuildRepository(self.kubectl, logger=logger)
        self.orchestrator = ProvisionerJobOrchestrator(
            self.kubectl,
            logger=logger,
            namespace=namespace,
            image_repo=image_repo,
            image_tag=image_tag,
        )
        self.recorder = BuildOutcomeRecorder(self.repository, logger=logger, counters=self.counters)
        self.reconciler = BuildReconciler(self.repository, self.orchestrator, logger=logger)
        self.watcher = JobStatusWatcher(self.kubectl, sink=self.recorder, logger=logger)

        self.build_queue = ReconcileQueue(
            "builds",
            lambda key: self.reconciler.reconcile(*key),
            logger=logger,
            workers=workers,
        )
        self.job_queue = ReconcileQueue(
            "jobs",
            lambda key: self.watcher.reconcile(*key),
            logger=logger,
            workers=workers,
        )
        self.pollers = [
            ResourcePoller(
                "builds",
                lambda: self.kubectl.list_json(BUILD_RESOURCE),
                self.build_queue,
                logger=logger,
                interval=poll_interval_seconds,
            ),
            ResourcePoller(
                "jobs",
                lambda: self.kubectl.list_json(
                    "jobs",
                    namespace=namespace,
                    labels={MANAGED_BY_LABEL: PROVISIONER_NAME},
                ),
                self.job_queue,
                logger=logger,
                predicate=shell_job_filter(namespace),
                interval=poll_interval_seconds,
            ),
        ]

        self._stop_event = threading.Event()
        self._stopped = False
        self._lock = threading.Lock()
        self._threads: List[threading.Thread] = []

    def start(self):
        console.print(f"[bold blue]Watching provisioner jobs in namespace {self.namespace}[/bold blue]")
        self.build_queue.start()
        self.job_queue.start()
        for poller in self.pollers:
            thread = threading.Thread(
                target=poller.run,
                args=(self._stop_event,),
                name=f"{poller.name}-poller",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def run(self):
        """Start everything and block until ``stop`` is called."""
        self.start()
        try:
            self._stop_event.wait()
        except KeyboardInterrupt:
            logger.info("Interrupted; shutting down")
        finally:
            self.stop()

    def stop(self, timeout: Optional[float] = 10.0):
        with self._lock:
            if self._stopped:
                return
            self._stopped = True

        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout)
        self.build_queue.shutdown(timeout)
        self.job_queue.shutdown(timeout)

        totals = self.counters.snapshot()
        logger.info(
            "Controller stopped: %s succeeded, %s failed provisioner runs",
            totals.get("succeeded", 0),
            totals.get("failed", 0),
        )
