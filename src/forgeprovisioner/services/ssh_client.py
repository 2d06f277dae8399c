"""SSH command execution and single-file transfer against one target machine."""

import io
import logging
import os
import posixpath
import shlex
import threading
import time
from dataclasses import dataclass
from typing import BinaryIO, Dict, Optional

import paramiko

from forgeprovisioner.constants import (
    PTY_HEIGHT,
    PTY_WIDTH,
    SCP_BINARY,
    SSH_DIAL_TIMEOUT_SECONDS,
    SSH_KEEPALIVE_REQUEST,
    SSH_PORT,
    SSH_RETRY_INTERVAL_SECONDS,
)
from forgeprovisioner.errors import (
    InvalidAuthError,
    InvalidUsernameError,
    ProvisionerError,
    RemoteCommandError,
    SSHTimeoutError,
)
from forgeprovisioner.errors_catalog import actionable_error
from forgeprovisioner.services.copy_protocol import (
    ACK,
    DOWNLOAD_ACKS,
    TaskPipeline,
    format_header,
    parse_header,
)

BUFFER_SIZE = 32768
OUTPUT_POLL_SECONDS = 0.05
KEY_TYPES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)

CONNECT_ERRORS = (ProvisionerError, paramiko.SSHException, OSError, EOFError)


def read_private_key(key: str) -> paramiko.PKey:
    """Parse PEM/OpenSSH private key material of any supported type."""
    last_error: Optional[Exception] = None
    for key_type in KEY_TYPES:
        try:
            return key_type.from_private_key(io.StringIO(key))
        except paramiko.SSHException as exc:
            last_error = exc
    raise paramiko.SSHException(f"Unable to parse private key: {last_error}")


def dial(
    address: str,
    port: int,
    username: str,
    timeout: float,
    password: Optional[str] = None,
    pkey: Optional[paramiko.PKey] = None,
) -> paramiko.SSHClient:
    client = paramiko.SSHClient()
    # Build machines are ephemeral; their host keys are never known in advance.
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    try:
        client.connect(
            hostname=address,
            port=port,
            username=username,
            password=password,
            pkey=pkey,
            timeout=timeout,
            banner_timeout=timeout,
            auth_timeout=timeout,
            allow_agent=False,
            look_for_keys=False,
        )
    except Exception:
        client.close()
        raise
    return client


class Credentials:
    """SSH credentials for one target machine.

    The password and private key can be rotated while a session is open,
    concurrently with the keepalive thread reading them. All access goes
    through the accessors, which serialize on an internal lock; the
    username is fixed at construction.
    """

    def __init__(self, username: str = "", password: str = "", private_key: str = ""):
        self._lock = threading.Lock()
        self.username = username
        self._password = password
        self._private_key = private_key

    def get_password(self) -> str:
        with self._lock:
            return self._password

    def set_password(self, password: str):
        with self._lock:
            self._password = password

    def get_private_key(self) -> str:
        with self._lock:
            return self._private_key

    def set_private_key(self, private_key: str):
        with self._lock:
            self._private_key = private_key


@dataclass(frozen=True)
class SSHOptions:
    keepalive_seconds: float = 0
    pty: bool = False
    dial_timeout: float = SSH_DIAL_TIMEOUT_SECONDS


class RemoteExecutionClient:
    """Authenticated SSH session to a single build machine.

    One connect/disconnect bracket is expected at a time. ``upload`` and
    ``download`` speak the scp sink/source protocol directly over a shell
    channel, so the target only needs ``/usr/bin/scp`` installed.
    """

    def __init__(
        self,
        credentials: Credentials,
        address: str,
        port: int = SSH_PORT,
        options: Optional[SSHOptions] = None,
        logger=None,
    ):
        self.credentials = credentials
        self.address = address
        self.port = port or SSH_PORT
        self.options = options or SSHOptions()
        self.logger = logger or logging.getLogger("forgeprovisioner")
        self._client: Optional[paramiko.SSHClient] = None
        self._stop: Optional[threading.Event] = None
        self._close_lock = threading.Lock()

    @property
    def connected(self) -> bool:
        return self._client is not None

    def validate(self):
        if not self.credentials.username:
            raise InvalidUsernameError(actionable_error("invalid_username"))
        if not self.credentials.get_password() and not self.credentials.get_private_key():
            raise InvalidAuthError(actionable_error("invalid_auth"))

    def connect(self):
        """Open a session; an already open one is closed first."""
        self.validate()
        if self.connected:
            self.logger.debug("Replacing open session to %s:%s", self.address, self.port)
            self.disconnect()

        auth: Dict[str, object] = {}
        private_key = self.credentials.get_private_key()
        if private_key:
            auth["pkey"] = read_private_key(private_key)
        else:
            auth["password"] = self.credentials.get_password()

        self.logger.debug(
            "Connecting to %s:%s as %s using %s auth",
            self.address,
            self.port,
            self.credentials.username,
            "key" if "pkey" in auth else "password",
        )
        client = dial(
            self.address,
            self.port,
            self.credentials.username,
            timeout=self.options.dial_timeout,
            **auth,
        )

        with self._close_lock:
            self._client = client
            self._stop = threading.Event()
            if self.options.keepalive_seconds > 0:
                threading.Thread(
                    target=self._keepalive,
                    args=(client, self._stop),
                    name=f"ssh-keepalive-{self.address}",
                    daemon=True,
                ).start()

    def _keepalive(self, client: paramiko.SSHClient, stop: threading.Event):
        while not stop.wait(self.options.keepalive_seconds):
            transport = client.get_transport()
            if transport is None or not transport.is_active():
                return
            try:
                transport.global_request(SSH_KEEPALIVE_REQUEST, wait=True)
            except (paramiko.SSHException, EOFError, OSError) as exc:
                self.logger.debug("Keepalive to %s stopped: %s", self.address, exc)
                return

    def disconnect(self):
        with self._close_lock:
            stop, client = self._stop, self._client
            self._stop = None
            self._client = None

        if stop is None:
            return
        stop.set()
        if client is not None:
            client.close()

    def _open_channel(self) -> paramiko.Channel:
        client = self._client
        if client is None:
            raise ProvisionerError(f"Not connected to {self.address}; call connect() first.")
        transport = client.get_transport()
        if transport is None or not transport.is_active():
            raise ProvisionerError(f"SSH connection to {self.address} is closed.")
        return transport.open_session(timeout=self.options.dial_timeout)

    def run(self, command: str, stdout: Optional[BinaryIO] = None, stderr: Optional[BinaryIO] = None):
        """Run a command and stream its output; non-zero exit raises RemoteCommandError."""
        channel = self._open_channel()
        try:
            if self.options.pty:
                channel.get_pty(
                    term=os.environ.get("TERM") or "vt100",
                    width=PTY_WIDTH,
                    height=PTY_HEIGHT,
                )
            channel.exec_command(command)
            self._pump_output(channel, stdout, stderr)
            exit_status = channel.recv_exit_status()
        finally:
            channel.close()

        if exit_status != 0:
            raise RemoteCommandError(command, exit_status)

    @staticmethod
    def _pump_output(channel: paramiko.Channel, stdout: Optional[BinaryIO], stderr: Optional[BinaryIO]):
        while True:
            idle = True
            if channel.recv_ready():
                data = channel.recv(BUFFER_SIZE)
                if stdout is not None:
                    stdout.write(data)
                idle = False
            if channel.recv_stderr_ready():
                data = channel.recv_stderr(BUFFER_SIZE)
                if stderr is not None:
                    stderr.write(data)
                idle = False
            if not idle:
                continue
            if channel.exit_status_ready() and not channel.recv_ready() and not channel.recv_stderr_ready():
                return
            time.sleep(OUTPUT_POLL_SECONDS)

    def upload(self, content: BinaryIO, destination: str, mode: int):
        """Copy ``content`` to ``destination`` on the target with ``mode``.

        The remote ``scp -t`` blocks reading its stdin while waiting for it
        to exit blocks the invoking side, so the writer and the invoker run
        as separate tasks. A failure part way through may leave a partial
        file behind.
        """
        data = content.read()
        if isinstance(data, str):
            data = data.encode("utf-8")

        remote_dir = posixpath.dirname(destination) or "."
        remote_name = posixpath.basename(destination)
        command = f"{SCP_BINARY} -t {shlex.quote(remote_dir)}"

        channel = self._open_channel()
        started = threading.Event()

        def write_file():
            started.wait()
            if channel.closed:
                return
            try:
                channel.sendall(format_header(mode, len(data), remote_name))
                channel.sendall(data)
                channel.sendall(ACK)
            finally:
                channel.shutdown_write()

        def invoke_receiver():
            try:
                channel.exec_command(command)
            finally:
                started.set()
            exit_status = channel.recv_exit_status()
            if exit_status != 0:
                raise RemoteCommandError(command, exit_status)

        self.logger.debug("Uploading %s bytes to %s:%s", len(data), self.address, destination)
        try:
            (
                TaskPipeline("upload", self.logger, on_error=lambda _exc: channel.close())
                .add("writer", write_file)
                .add("invoker", invoke_receiver)
                .run()
            )
        finally:
            channel.close()

    def download(self, destination: BinaryIO, remote_path: str) -> int:
        """Copy ``remote_path`` into ``destination`` and return the remote file mode.

        ``destination`` is closed whether or not the transfer succeeds.
        """
        received: Dict[str, int] = {}
        try:
            channel = self._open_channel()
            try:
                stream = channel.makefile("rb")
                started = threading.Event()
                command = f"{SCP_BINARY} -f {shlex.quote(remote_path)}"

                def send_acks():
                    started.wait()
                    if channel.closed:
                        return
                    try:
                        channel.sendall(DOWNLOAD_ACKS)
                    finally:
                        channel.shutdown_write()

                def read_file():
                    started.wait()
                    mode, length, _name = parse_header(stream.readline())
                    remaining = length
                    while remaining > 0:
                        chunk = stream.read(min(BUFFER_SIZE, remaining))
                        if not chunk:
                            raise ProvisionerError(
                                f"Unexpected end of stream downloading {remote_path}: {remaining} bytes missing."
                            )
                        destination.write(chunk)
                        remaining -= len(chunk)
                    received["mode"] = mode

                def invoke_sender():
                    try:
                        channel.exec_command(command)
                    finally:
                        started.set()
                    exit_status = channel.recv_exit_status()
                    if exit_status != 0:
                        raise RemoteCommandError(command, exit_status)

                (
                    TaskPipeline("download", self.logger, on_error=lambda _exc: channel.close())
                    .add("ack-writer", send_acks)
                    .add("reader", read_file)
                    .add("invoker", invoke_sender)
                    .run()
                )
            finally:
                channel.close()
        finally:
            destination.close()

        return received["mode"]

    def wait_for_ssh(self, max_wait: float):
        """Block until sshd accepts a connection or ``max_wait`` seconds elapse.

        Only reachability is checked: the trial connection is closed before
        returning.
        """
        start = time.monotonic()
        attempts = 0
        while True:
            attempts += 1
            try:
                self.connect()
            except CONNECT_ERRORS as exc:
                self.logger.debug(
                    "SSH attempt %s to %s:%s failed: %s", attempts, self.address, self.port, exc
                )
            else:
                self.disconnect()
                self.logger.info("sshd on %s:%s is reachable", self.address, self.port)
                return

            if time.monotonic() - start >= max_wait:
                break
            time.sleep(SSH_RETRY_INTERVAL_SECONDS)
            if time.monotonic() - start >= max_wait:
                break

        raise SSHTimeoutError(
            actionable_error("ssh_timeout", address=self.address, seconds=max_wait, port=self.port)
        )
