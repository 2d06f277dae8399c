"""Pure event filters over job objects."""

from typing import Any, Callable, Mapping

from forgeprovisioner.constants import MANAGED_BY_LABEL, PROVISIONER_NAME
from forgeprovisioner.models import CorrelationKey

Predicate = Callable[[Mapping[str, Any]], bool]


def _labels(obj: Mapping[str, Any]) -> Mapping[str, str]:
    return (obj.get("metadata") or {}).get("labels") or {}


def managed_by_shell(obj: Mapping[str, Any]) -> bool:
    return _labels(obj).get(MANAGED_BY_LABEL) == PROVISIONER_NAME


def in_namespace(namespace: str) -> Predicate:
    def predicate(obj: Mapping[str, Any]) -> bool:
        return (obj.get("metadata") or {}).get("namespace") == namespace

    return predicate


def has_any_condition(obj: Mapping[str, Any]) -> bool:
    return bool((obj.get("status") or {}).get("conditions"))


def has_build_name_label(obj: Mapping[str, Any]) -> bool:
    return bool(CorrelationKey.from_labels(_labels(obj)).build_name)


def has_provisioner_id_label(obj: Mapping[str, Any]) -> bool:
    return bool(CorrelationKey.from_labels(_labels(obj)).provisioner_id)


def all_of(*predicates: Predicate) -> Predicate:
    def predicate(obj: Mapping[str, Any]) -> bool:
        return all(check(obj) for check in predicates)

    return predicate


def shell_job_filter(namespace: str) -> Predicate:
    """Jobs the watcher reconciles: ours, in our namespace, terminal-capable and correlated."""
    return all_of(
        managed_by_shell,
        in_namespace(namespace),
        has_any_condition,
        has_build_name_label,
        has_provisioner_id_label,
    )
