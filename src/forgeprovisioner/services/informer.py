"""Poll-based change feed feeding a reconcile queue."""

import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from forgeprovisioner.errors import ProvisionerError

ObjectKey = Tuple[str, str]


def object_key(obj: Mapping[str, Any]) -> ObjectKey:
    metadata = obj.get("metadata") or {}
    return metadata.get("namespace", ""), metadata.get("name", "")


class ResourcePoller:
    """Lists objects on an interval and enqueues the ones whose resourceVersion changed.

    Objects rejected by ``predicate`` are remembered too, so they are only
    evaluated again once they change.
    """

    def __init__(
        self,
        name: str,
        list_objects: Callable[[], List[Dict[str, Any]]],
        queue,
        logger,
        predicate: Optional[Callable[[Mapping[str, Any]], bool]] = None,
        interval: float = 5.0,
    ):
        self.name = name
        self.list_objects = list_objects
        self.queue = queue
        self.logger = logger
        self.predicate = predicate
        self.interval = interval
        self._versions: Dict[ObjectKey, str] = {}

    def poll_once(self) -> int:
        objects = self.list_objects()
        seen = set()
        enqueued = 0
        for obj in objects:
            key = object_key(obj)
            seen.add(key)
            version = (obj.get("metadata") or {}).get("resourceVersion", "")
            if self._versions.get(key) == version:
                continue
            self._versions[key] = version
            if self.predicate is not None and not self.predicate(obj):
                continue
            self.queue.add(key)
            enqueued += 1

        for key in set(self._versions) - seen:
            del self._versions[key]

        if enqueued:
            self.logger.debug("%s: %s changed objects enqueued", self.name, enqueued)
        return enqueued

    def run(self, stop: threading.Event):
        while not stop.is_set():
            try:
                self.poll_once()
            except ProvisionerError as exc:
                self.logger.warning("%s: listing failed: %s", self.name, exc)
            stop.wait(self.interval)
