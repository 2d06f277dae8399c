from forgeprovisioner.models import (
    Build,
    ConnectorSpec,
    ProvisionerSpec,
    ProvisionerStatus,
    ScriptReference,
)
from forgeprovisioner.services.orchestrator import ProvisionerJobOrchestrator


class DummyLogger:
    def info(self, *_args, **_kwargs):
        return None


class FakeKubectl:
    def __init__(self):
        self.applied = []

    def apply_json(self, manifest):
        self.applied.append(manifest)
        return "created"


def build_with(spec):
    return Build(
        name="ubuntu-image",
        namespace="team-a",
        connector=ConnectorSpec(credentials_secret="ubuntu-image-ssh"),
        provisioners=(spec,),
    )


def make_orchestrator(kubectl):
    return ProvisionerJobOrchestrator(
        kubectl,
        logger=DummyLogger(),
        namespace="forge-core",
        id_factory=lambda: "run-1",
    )


def test_ensure_creates_job_and_returns_new_correlation_id():
    kubectl = FakeKubectl()
    spec = ProvisionerSpec(run="apt-get update")

    result = make_orchestrator(kubectl).ensure(build_with(spec), spec)

    assert result.correlation_id == "run-1"
    assert result.requeue_after == 2.0
    assert len(kubectl.applied) == 1
    manifest = kubectl.applied[0]
    assert manifest["metadata"]["name"] == "forge-provisioner-shell-run-1"
    assert manifest["metadata"]["labels"]["forge.build/build-namespace"] == "team-a"


def test_ensure_uses_config_map_reference():
    kubectl = FakeKubectl()
    spec = ProvisionerSpec(run_config_map_ref=ScriptReference(name="setup"))

    make_orchestrator(kubectl).ensure(build_with(spec), spec)

    container = kubectl.applied[0]["spec"]["template"]["spec"]["containers"][0]
    script_env = [entry for entry in container["env"] if entry["name"] == "FORGE_SCRIPT"][0]
    assert script_env["valueFrom"]["configMapKeyRef"] == {"name": "setup", "key": "script"}


def test_ensure_is_noop_while_run_is_in_flight():
    kubectl = FakeKubectl()
    spec = ProvisionerSpec(run="apt-get update", uuid="run-0", status=ProvisionerStatus.RUNNING)

    result = make_orchestrator(kubectl).ensure(build_with(spec), spec)

    assert result.correlation_id is None
    assert result.requeue_after == 0.0
    assert kubectl.applied == []
