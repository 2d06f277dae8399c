"""Shared domain models for forge-provisioner-shell."""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from forgeprovisioner.constants import (
    BUILD_NAME_LABEL,
    BUILD_NAMESPACE_LABEL,
    PROVISIONER_ID_LABEL,
    SCRIPT_CONFIG_MAP_DEFAULT_KEY,
)
from forgeprovisioner.errors import ProvisionerError
from forgeprovisioner.errors_catalog import actionable_error


class ProvisionerType(str, Enum):
    BUILTIN_SHELL = "built-in/shell"
    EXTERNAL = "external"


class ProvisionerStatus(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class ScriptReference:
    """Config map, in the job namespace, holding the script a provisioner runs."""

    name: str
    key: str = SCRIPT_CONFIG_MAP_DEFAULT_KEY

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ScriptReference":
        return cls(
            name=data["name"],
            key=data.get("key") or SCRIPT_CONFIG_MAP_DEFAULT_KEY,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "key": self.key}


@dataclass(frozen=True)
class ProvisionerSpec:
    """One provisioning step of a Build, as persisted on the Build object.

    ``raw`` keeps the entry exactly as read so that saving writes back every
    field the user set, with only the run-state fields overlaid.
    """

    type: ProvisionerType = ProvisionerType.BUILTIN_SHELL
    run: Optional[str] = None
    run_config_map_ref: Optional[ScriptReference] = None
    uuid: Optional[str] = None
    status: ProvisionerStatus = ProvisionerStatus.PENDING
    retries: int = 0
    allow_fail: bool = False
    failure_reason: Optional[str] = None
    failure_message: Optional[str] = None
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    def validate(self):
        """Shell provisioners need exactly one script source; external ones carry their own ``ref``."""
        if self.type != ProvisionerType.BUILTIN_SHELL:
            return
        if (self.run is None) == (self.run_config_map_ref is None):
            raise ProvisionerError(actionable_error("invalid_script_source"))

    @property
    def settled(self) -> bool:
        return self.status in (ProvisionerStatus.COMPLETED, ProvisionerStatus.FAILED)

    @property
    def succeeded(self) -> bool:
        if self.status == ProvisionerStatus.COMPLETED:
            return True
        return self.status == ProvisionerStatus.FAILED and self.allow_fail

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ProvisionerSpec":
        ref = data.get("runConfigMapRef")
        return cls(
            type=ProvisionerType(data.get("type", ProvisionerType.BUILTIN_SHELL.value)),
            run=data.get("run"),
            run_config_map_ref=ScriptReference.from_dict(ref) if ref else None,
            uuid=data.get("uuid") or None,
            status=ProvisionerStatus(data.get("status") or ProvisionerStatus.PENDING.value),
            retries=int(data.get("retries") or 0),
            allow_fail=bool(data.get("allowFail", False)),
            failure_reason=data.get("failureReason") or None,
            failure_message=data.get("failureMessage") or None,
            raw=dict(data),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self.raw)
        if not data:
            data["type"] = self.type.value
            data["allowFail"] = self.allow_fail
            if self.run is not None:
                data["run"] = self.run
            if self.run_config_map_ref is not None:
                data["runConfigMapRef"] = self.run_config_map_ref.to_dict()

        data["status"] = self.status.value
        data["retries"] = self.retries
        for key, value in (
            ("uuid", self.uuid),
            ("failureReason", self.failure_reason),
            ("failureMessage", self.failure_message),
        ):
            if value:
                data[key] = value
            else:
                data.pop(key, None)
        return data


@dataclass(frozen=True)
class ConnectorSpec:
    credentials_secret: str

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ConnectorSpec":
        credentials = data.get("credentials") or {}
        return cls(credentials_secret=credentials.get("name", ""))


@dataclass(frozen=True)
class BuildStatus:
    machine_ready: bool = False
    connected: bool = False
    provisioners_ready: bool = False
    ready: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BuildStatus":
        return cls(
            machine_ready=bool(data.get("machineReady", False)),
            connected=bool(data.get("connected", False)),
            provisioners_ready=bool(data.get("provisionersReady", False)),
            ready=bool(data.get("ready", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "machineReady": self.machine_ready,
            "connected": self.connected,
            "provisionersReady": self.provisioners_ready,
            "ready": self.ready,
        }


@dataclass(frozen=True)
class Build:
    """Read-only snapshot of a Build object."""

    name: str
    namespace: str
    connector: ConnectorSpec
    provisioners: Tuple[ProvisionerSpec, ...] = ()
    status: BuildStatus = field(default_factory=BuildStatus)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Build":
        metadata = data.get("metadata") or {}
        spec = data.get("spec") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            connector=ConnectorSpec.from_dict(spec.get("connector") or {}),
            provisioners=tuple(
                ProvisionerSpec.from_dict(item) for item in spec.get("provisioners") or []
            ),
            status=BuildStatus.from_dict(data.get("status") or {}),
        )

    def find_provisioner(self, provisioner_id: str) -> Optional[int]:
        for index, provisioner in enumerate(self.provisioners):
            if provisioner.uuid == provisioner_id:
                return index
        return None

    def with_provisioner(self, index: int, provisioner: ProvisionerSpec) -> "Build":
        provisioners = list(self.provisioners)
        provisioners[index] = provisioner
        return replace(self, provisioners=tuple(provisioners))


@dataclass(frozen=True)
class CorrelationKey:
    """Links an execution unit back to the provisioner run that owns it."""

    build_name: str
    build_namespace: str
    provisioner_id: str

    @classmethod
    def from_labels(cls, labels: Mapping[str, str]) -> "CorrelationKey":
        return cls(
            build_name=labels.get(BUILD_NAME_LABEL, ""),
            build_namespace=labels.get(BUILD_NAMESPACE_LABEL, ""),
            provisioner_id=labels.get(PROVISIONER_ID_LABEL, ""),
        )

    def to_labels(self) -> Dict[str, str]:
        return {
            BUILD_NAME_LABEL: self.build_name,
            BUILD_NAMESPACE_LABEL: self.build_namespace,
            PROVISIONER_ID_LABEL: self.provisioner_id,
        }


@dataclass(frozen=True)
class EnsureResult:
    requeue_after: float = 0.0
    correlation_id: Optional[str] = None


@dataclass(frozen=True)
class ReconcileResult:
    requeue_after: float = 0.0


@dataclass(frozen=True)
class FailureRecord:
    reason: str
    message: str
    container: str
    exit_code: int


@dataclass(frozen=True)
class JobOutcome:
    """Terminal result of one provisioner job, as handed to an outcome sink."""

    key: CorrelationKey
    succeeded: bool
    failures: Tuple[FailureRecord, ...] = ()
    reason: str = ""
    message: str = ""
