import io
import threading

import paramiko
import pytest

import forgeprovisioner.services.ssh_client as ssh_client_module
from forgeprovisioner.errors import (
    InvalidAuthError,
    InvalidMessageLengthError,
    InvalidUsernameError,
    ProvisionerError,
    RemoteCommandError,
    SSHTimeoutError,
)
from forgeprovisioner.services.ssh_client import Credentials, RemoteExecutionClient, SSHOptions


class DummyLogger:
    def debug(self, *_args, **_kwargs):
        return None

    def info(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None


class FakeChannel:
    def __init__(self, stdout=b"", stderr=b"", exit_status=0, download_stream=b""):
        self.stdout = stdout
        self.stderr = stderr
        self.exit_status = exit_status
        self.download_stream = download_stream
        self.command = None
        self.pty = None
        self.sent = b""
        self.closed = False
        self.write_closed = threading.Event()

    def get_pty(self, term, width, height):
        self.pty = (term, width, height)

    def exec_command(self, command):
        self.command = command

    def recv_ready(self):
        return bool(self.stdout)

    def recv(self, size):
        data, self.stdout = self.stdout[:size], self.stdout[size:]
        return data

    def recv_stderr_ready(self):
        return bool(self.stderr)

    def recv_stderr(self, size):
        data, self.stderr = self.stderr[:size], self.stderr[size:]
        return data

    def exit_status_ready(self):
        return True

    def recv_exit_status(self):
        if self.command is not None and " -t " in self.command:
            # The sink exits once its stdin is closed.
            self.write_closed.wait(5)
        return self.exit_status

    def sendall(self, data):
        self.sent += data

    def shutdown_write(self):
        self.write_closed.set()

    def makefile(self, _mode):
        return io.BytesIO(self.download_stream)

    def close(self):
        self.closed = True


class FakeTransport:
    def __init__(self, channels=None):
        self.channels = list(channels or [])
        self.global_requests = []
        self.requested = threading.Event()

    def is_active(self):
        return True

    def open_session(self, timeout=None):
        return self.channels.pop(0)

    def global_request(self, kind, wait=True):
        self.global_requests.append((kind, wait))
        self.requested.set()


class FakeSSHClient:
    def __init__(self, transport=None):
        self.transport = transport or FakeTransport()
        self.close_calls = 0

    def get_transport(self):
        return self.transport

    def close(self):
        self.close_calls += 1


def build_client(username="forge", password="secret", private_key="", options=None):
    credentials = Credentials(username=username, password=password, private_key=private_key)
    return RemoteExecutionClient(credentials, "10.0.0.5", port=2222, options=options, logger=DummyLogger())


def connect_with(monkeypatch, client, fake_client):
    monkeypatch.setattr(ssh_client_module, "dial", lambda *_args, **_kwargs: fake_client)
    client.connect()
    return fake_client


def test_validate_requires_username():
    with pytest.raises(InvalidUsernameError, match="username"):
        build_client(username="").validate()


def test_validate_requires_password_or_key():
    with pytest.raises(InvalidAuthError, match="missing password or key"):
        build_client(password="", private_key="").validate()


def test_connect_prefers_private_key_over_password(monkeypatch):
    captured = {}

    def fake_dial(address, port, username, timeout, password=None, pkey=None):
        captured.update(address=address, port=port, username=username, password=password, pkey=pkey)
        return FakeSSHClient()

    monkeypatch.setattr(ssh_client_module, "read_private_key", lambda key: f"parsed:{key}")
    monkeypatch.setattr(ssh_client_module, "dial", fake_dial)

    client = build_client(password="secret", private_key="KEY")
    client.connect()

    assert captured == {
        "address": "10.0.0.5",
        "port": 2222,
        "username": "forge",
        "password": None,
        "pkey": "parsed:KEY",
    }
    assert client.connected


def test_connect_uses_password_without_key(monkeypatch):
    captured = {}

    def fake_dial(address, port, username, timeout, password=None, pkey=None):
        captured.update(password=password, pkey=pkey)
        return FakeSSHClient()

    monkeypatch.setattr(ssh_client_module, "dial", fake_dial)

    build_client(password="secret").connect()

    assert captured == {"password": "secret", "pkey": None}


def test_read_private_key_rejects_garbage():
    with pytest.raises(paramiko.SSHException, match="Unable to parse private key"):
        ssh_client_module.read_private_key("not a key")


def test_credentials_can_be_rotated():
    credentials = Credentials(username="forge", password="old")

    credentials.set_password("new")
    credentials.set_private_key("KEY")

    assert credentials.get_password() == "new"
    assert credentials.get_private_key() == "KEY"


def test_disconnect_is_safe_to_call_twice(monkeypatch):
    client = build_client()
    fake_client = connect_with(monkeypatch, client, FakeSSHClient())

    client.disconnect()
    client.disconnect()

    assert fake_client.close_calls == 1
    assert not client.connected


def test_connect_twice_closes_previous_session(monkeypatch):
    client = build_client()
    first = connect_with(monkeypatch, client, FakeSSHClient())
    second = connect_with(monkeypatch, client, FakeSSHClient())

    assert first.close_calls == 1
    assert second.close_calls == 0
    assert client.connected

    client.disconnect()
    assert second.close_calls == 1


def test_disconnect_without_connect_is_noop():
    build_client().disconnect()


def test_keepalive_sends_global_requests_until_disconnect(monkeypatch):
    client = build_client(options=SSHOptions(keepalive_seconds=0.01))
    fake_client = connect_with(monkeypatch, client, FakeSSHClient())

    assert fake_client.transport.requested.wait(2)
    client.disconnect()

    assert fake_client.transport.global_requests[0] == ("forge-ssh", True)


def test_run_streams_output(monkeypatch):
    channel = FakeChannel(stdout=b"hello\n", stderr=b"warn\n", exit_status=0)
    client = build_client()
    connect_with(monkeypatch, client, FakeSSHClient(FakeTransport([channel])))

    stdout = io.BytesIO()
    stderr = io.BytesIO()
    client.run("echo hello", stdout, stderr)

    assert channel.command == "echo hello"
    assert stdout.getvalue() == b"hello\n"
    assert stderr.getvalue() == b"warn\n"
    assert channel.pty is None
    assert channel.closed


def test_run_requests_pty_when_enabled(monkeypatch):
    monkeypatch.setenv("TERM", "xterm")
    channel = FakeChannel()
    client = build_client(options=SSHOptions(pty=True))
    connect_with(monkeypatch, client, FakeSSHClient(FakeTransport([channel])))

    client.run("true")

    assert channel.pty == ("xterm", 80, 40)


def test_run_raises_on_non_zero_exit(monkeypatch):
    channel = FakeChannel(exit_status=7)
    client = build_client()
    connect_with(monkeypatch, client, FakeSSHClient(FakeTransport([channel])))

    with pytest.raises(RemoteCommandError) as exc_info:
        client.run("false")

    assert exc_info.value.exit_status == 7


def test_run_requires_connection():
    with pytest.raises(ProvisionerError, match="Not connected"):
        build_client().run("true")


def test_upload_sends_header_data_and_terminator(monkeypatch):
    channel = FakeChannel()
    client = build_client()
    connect_with(monkeypatch, client, FakeSSHClient(FakeTransport([channel])))

    client.upload(io.BytesIO(b"echo forge\n"), "/tmp/forge.sh", 0o755)

    assert channel.command == "/usr/bin/scp -t /tmp"
    assert channel.sent == b"C0755 11 forge.sh\necho forge\n\x00"
    assert channel.write_closed.is_set()
    assert channel.closed


def test_upload_raises_when_sink_fails(monkeypatch):
    channel = FakeChannel(exit_status=1)
    client = build_client()
    connect_with(monkeypatch, client, FakeSSHClient(FakeTransport([channel])))

    with pytest.raises(RemoteCommandError):
        client.upload(io.BytesIO(b"data"), "/root/forge.sh", 0o644)

    assert channel.closed


def test_download_writes_file_and_returns_mode(monkeypatch, tmp_path):
    channel = FakeChannel(download_stream=b"C0640 6 app.log\nline\n\n\x00")
    client = build_client()
    connect_with(monkeypatch, client, FakeSSHClient(FakeTransport([channel])))

    destination_path = tmp_path / "app.log"
    mode = client.download(open(destination_path, "wb"), "/var/log/app.log")

    assert mode == 0o640
    assert destination_path.read_bytes() == b"line\n\n"
    assert channel.command == "/usr/bin/scp -f /var/log/app.log"
    assert channel.sent == b"\x00\x00\x00"


def test_download_rejects_malformed_header_and_closes_destination(monkeypatch):
    channel = FakeChannel(download_stream=b"D0755 0 logs\n")
    client = build_client()
    connect_with(monkeypatch, client, FakeSSHClient(FakeTransport([channel])))

    destination = io.BytesIO()
    with pytest.raises(InvalidMessageLengthError):
        client.download(destination, "/var/log")

    assert destination.closed
    assert channel.closed


def test_download_detects_truncated_stream(monkeypatch):
    channel = FakeChannel(download_stream=b"C0644 10 data.bin\nabcd")
    client = build_client()
    connect_with(monkeypatch, client, FakeSSHClient(FakeTransport([channel])))

    with pytest.raises(ProvisionerError, match="Unexpected end of stream"):
        client.download(io.BytesIO(), "/data.bin")


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def monotonic(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def test_wait_for_ssh_times_out_after_bounded_attempts(monkeypatch):
    clock = FakeClock()
    attempts = []

    def failing_dial(*_args, **_kwargs):
        attempts.append(clock.now)
        raise OSError("connection refused")

    monkeypatch.setattr(ssh_client_module, "time", clock)
    monkeypatch.setattr(ssh_client_module, "dial", failing_dial)

    with pytest.raises(SSHTimeoutError, match="Timed out waiting for sshd on 10.0.0.5"):
        build_client().wait_for_ssh(5)

    assert len(attempts) == 3
    assert clock.sleeps == [2.0, 2.0, 2.0]


def test_wait_for_ssh_returns_once_reachable(monkeypatch):
    clock = FakeClock()
    fake_client = FakeSSHClient()
    attempts = []

    def flaky_dial(*_args, **_kwargs):
        attempts.append(clock.now)
        if len(attempts) < 3:
            raise paramiko.SSHException("banner timeout")
        return fake_client

    monkeypatch.setattr(ssh_client_module, "time", clock)
    monkeypatch.setattr(ssh_client_module, "dial", flaky_dial)

    client = build_client()
    client.wait_for_ssh(60)

    assert len(attempts) == 3
    assert fake_client.close_calls == 1
    assert not client.connected


def test_upload_then_download_preserves_content_and_mode(monkeypatch, tmp_path):
    content = b"#!/bin/sh\necho forge\n\x00binary\xff"
    upload_channel = FakeChannel()
    client = build_client()
    connect_with(monkeypatch, client, FakeSSHClient(FakeTransport([upload_channel])))
    client.upload(io.BytesIO(content), "/opt/forge/tool", 0o644)

    # The remote side stores exactly what the sink received and replays it to a source request.
    download_channel = FakeChannel(download_stream=upload_channel.sent)
    client._client.transport.channels.append(download_channel)
    destination_path = tmp_path / "tool"
    mode = client.download(open(destination_path, "wb"), "/opt/forge/tool")

    assert mode == 0o644
    assert destination_path.read_bytes() == content
