"""Runtime of the provisioner job container."""

import io
import os
import shlex
from typing import BinaryIO, Mapping, Optional

from forgeprovisioner.constants import (
    ENV_PROVISIONER_ID,
    ENV_SCRIPT,
    ENV_SSH_HOST,
    ENV_SSH_PASSWORD,
    ENV_SSH_PORT,
    ENV_SSH_PRIVATE_KEY,
    ENV_SSH_USERNAME,
    SCRIPT_MODE,
    SSH_PORT,
    SSH_WAIT_SECONDS,
)
from forgeprovisioner.errors import ProvisionerError, RemoteCommandError
from forgeprovisioner.services.ssh_client import Credentials, RemoteExecutionClient, SSHOptions


def remote_script_path(provisioner_id: str) -> str:
    return f"/tmp/forge-provisioner-{provisioner_id or 'script'}.sh"


class ScriptRunner:
    """Connects to the build machine and runs a provisioner script or moves a file."""

    def __init__(self, client: RemoteExecutionClient, logger, console, ssh_wait_seconds: float = SSH_WAIT_SECONDS):
        self.client = client
        self.logger = logger
        self.console = console
        self.ssh_wait_seconds = ssh_wait_seconds

    @classmethod
    def from_environment(
        cls,
        environ: Mapping[str, str],
        logger,
        console,
        options: Optional[SSHOptions] = None,
        ssh_wait_seconds: float = SSH_WAIT_SECONDS,
    ) -> "ScriptRunner":
        host = environ.get(ENV_SSH_HOST)
        if not host:
            raise ProvisionerError(f"{ENV_SSH_HOST} is not set; the credentials secret must provide `host`.")

        raw_port = environ.get(ENV_SSH_PORT) or str(SSH_PORT)
        try:
            port = int(raw_port)
        except ValueError as exc:
            raise ProvisionerError(f"{ENV_SSH_PORT} must be an integer, got {raw_port!r}") from exc

        credentials = Credentials(
            username=environ.get(ENV_SSH_USERNAME, ""),
            password=environ.get(ENV_SSH_PASSWORD, ""),
            private_key=environ.get(ENV_SSH_PRIVATE_KEY, ""),
        )
        client = RemoteExecutionClient(credentials, host, port=port, options=options, logger=logger)
        return cls(client, logger=logger, console=console, ssh_wait_seconds=ssh_wait_seconds)

    def _connect(self):
        self.client.validate()
        self.console.print(f"[blue]Waiting for SSH on {self.client.address}:{self.client.port}...[/blue]")
        self.client.wait_for_ssh(self.ssh_wait_seconds)
        self.client.connect()

    def run_script(self, script: str, provisioner_id: str, stdout: BinaryIO, stderr: BinaryIO) -> int:
        """Upload and execute ``script``; returns the remote exit status."""
        remote_path = remote_script_path(provisioner_id)
        self._connect()
        try:
            self.client.upload(io.BytesIO(script.encode("utf-8")), remote_path, SCRIPT_MODE)
            self.logger.info("Running provisioner script %s on %s", remote_path, self.client.address)
            try:
                self.client.run(f"/bin/sh {shlex.quote(remote_path)}", stdout, stderr)
            except RemoteCommandError as exc:
                self.console.print(f"[bold red]Provisioner script exited with status {exc.exit_status}[/bold red]")
                return exc.exit_status if exc.exit_status > 0 else 1
            finally:
                self._remove(remote_path)
        finally:
            self.client.disconnect()

        self.console.print("[green]Provisioner script completed.[/green]")
        return 0

    def run_from_environment(self, environ: Mapping[str, str], stdout: BinaryIO, stderr: BinaryIO) -> int:
        script = environ.get(ENV_SCRIPT)
        if not script:
            raise ProvisionerError(f"{ENV_SCRIPT} is not set; nothing to provision.")
        return self.run_script(script, environ.get(ENV_PROVISIONER_ID, ""), stdout, stderr)

    def _remove(self, remote_path: str):
        try:
            self.client.run(f"rm -f {shlex.quote(remote_path)}")
        except ProvisionerError as exc:
            self.logger.warning("Could not remove %s: %s", remote_path, exc)

    def copy_to(self, local_path: str, remote_path: str, mode: Optional[int] = None):
        if mode is None:
            mode = os.stat(local_path).st_mode & 0o777
        self._connect()
        try:
            with open(local_path, "rb") as file_obj:
                self.client.upload(file_obj, remote_path, mode)
        finally:
            self.client.disconnect()
        self.console.print(f"[green]Uploaded {local_path} to {remote_path}.[/green]")

    def copy_from(self, remote_path: str, local_path: str):
        self._connect()
        try:
            mode = self.client.download(open(local_path, "wb"), remote_path)
        finally:
            self.client.disconnect()
        os.chmod(local_path, mode)
        self.console.print(f"[green]Downloaded {remote_path} to {local_path}.[/green]")
