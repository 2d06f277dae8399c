"""Single-file copy protocol spoken by ``scp -t`` / ``scp -f`` over a shell channel."""

import queue
import re
import threading
from typing import Callable, List, Optional, Tuple

from forgeprovisioner.errors import InvalidMessageLengthError
from forgeprovisioner.errors_catalog import actionable_error

ACK = b"\x00"
# One ack to initiate, one for the header, one for the data.
DOWNLOAD_ACKS = ACK * 3

_LENGTH_PATTERN = re.compile(r"[0-9]+")
_MODE_PATTERN = re.compile(r"[0-7]{4}")


def format_header(mode: int, length: int, name: str) -> bytes:
    """Build the ``C<mode> <length> <name>`` line announcing a file."""
    return f"C{mode & 0o7777:04o} {length} {name}\n".encode("utf-8")


def parse_header(line: bytes) -> Tuple[int, int, str]:
    """Parse a file header line into (mode, length, name).

    Only single regular files are supported, so anything that is not
    exactly three fields with a five character ``C`` record is rejected.
    """
    text = line.decode("utf-8", errors="replace")
    fields = text.split(" ")

    if len(fields) != 3 or len(fields[0]) != 5 or not fields[0].startswith("C"):
        raise InvalidMessageLengthError(actionable_error("invalid_message_length", header=text.strip()))

    if not _MODE_PATTERN.fullmatch(fields[0][1:]) or not _LENGTH_PATTERN.fullmatch(fields[1]):
        raise InvalidMessageLengthError(actionable_error("invalid_message_length", header=text.strip()))

    return int(fields[0][1:], 8), int(fields[1]), fields[2].rstrip("\r\n")


class TaskPipeline:
    """Runs a fixed set of named tasks concurrently and joins them all.

    Failures are collected in a queue sized to the number of tasks, so a
    failing task never blocks; the first failure queued is raised from
    ``run`` once every task has finished. ``on_error`` is invoked for each
    failure and is expected to unblock the sibling tasks.
    """

    def __init__(self, name: str, logger, on_error: Optional[Callable[[BaseException], None]] = None):
        self.name = name
        self.logger = logger
        self.on_error = on_error
        self.tasks: List[Tuple[str, Callable[[], None]]] = []

    def add(self, task_name: str, func: Callable[[], None]) -> "TaskPipeline":
        self.tasks.append((task_name, func))
        return self

    def run(self):
        errors: "queue.Queue[BaseException]" = queue.Queue(maxsize=len(self.tasks))
        threads = [
            threading.Thread(
                target=self._run_task,
                args=(task_name, func, errors),
                name=f"{self.name}-{task_name}",
                daemon=True,
            )
            for task_name, func in self.tasks
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        try:
            first_error = errors.get_nowait()
        except queue.Empty:
            return
        raise first_error

    def _run_task(self, task_name: str, func: Callable[[], None], errors: "queue.Queue[BaseException]"):
        try:
            func()
        except Exception as exc:
            self.logger.debug("%s: task '%s' failed: %s", self.name, task_name, exc)
            errors.put_nowait(exc)
            if self.on_error is not None:
                self.on_error(exc)
