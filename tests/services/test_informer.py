import threading

from forgeprovisioner.errors import ProvisionerError
from forgeprovisioner.services.informer import ResourcePoller, object_key


class DummyLogger:
    def __init__(self):
        self.warnings = []

    def debug(self, *_args, **_kwargs):
        return None

    def warning(self, message, *args):
        self.warnings.append(message % args)


class RecordingQueue:
    def __init__(self):
        self.keys = []

    def add(self, key):
        self.keys.append(key)


def make_obj(name, version, namespace="forge-core", ready=True):
    return {
        "metadata": {"name": name, "namespace": namespace, "resourceVersion": version},
        "ready": ready,
    }


def test_object_key_is_namespace_and_name():
    assert object_key(make_obj("job-a", "1")) == ("forge-core", "job-a")


def test_poll_once_enqueues_only_changed_objects():
    listing = [make_obj("a", "1"), make_obj("b", "1")]
    queue = RecordingQueue()
    poller = ResourcePoller("jobs", lambda: listing, queue, DummyLogger())

    assert poller.poll_once() == 2
    assert poller.poll_once() == 0

    listing[1] = make_obj("b", "2")
    assert poller.poll_once() == 1
    assert queue.keys == [("forge-core", "a"), ("forge-core", "b"), ("forge-core", "b")]


def test_poll_once_applies_predicate():
    listing = [make_obj("a", "1", ready=False), make_obj("b", "1")]
    queue = RecordingQueue()
    poller = ResourcePoller("jobs", lambda: listing, queue, DummyLogger(), predicate=lambda obj: obj["ready"])

    poller.poll_once()
    listing[0] = make_obj("a", "2", ready=True)
    poller.poll_once()

    assert queue.keys == [("forge-core", "b"), ("forge-core", "a")]


def test_deleted_objects_are_forgotten():
    listing = [make_obj("a", "1")]
    queue = RecordingQueue()
    poller = ResourcePoller("jobs", lambda: listing, queue, DummyLogger())

    poller.poll_once()
    listing.clear()
    poller.poll_once()
    listing.append(make_obj("a", "1"))
    poller.poll_once()

    assert queue.keys == [("forge-core", "a"), ("forge-core", "a")]


def test_run_logs_listing_failures_and_stops():
    stop = threading.Event()
    logger = DummyLogger()
    calls = []

    def failing_list():
        calls.append(1)
        stop.set()
        raise ProvisionerError("kubectl timed out")

    ResourcePoller("builds", failing_list, RecordingQueue(), logger, interval=0.01).run(stop)

    assert calls == [1]
    assert logger.warnings == ["builds: listing failed: kubectl timed out"]
