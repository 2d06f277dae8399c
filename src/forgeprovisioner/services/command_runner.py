"""Subprocess execution service for forge-provisioner-shell."""

import subprocess
import time
from typing import List, Optional

from forgeprovisioner.errors import ProvisionerError
from forgeprovisioner.errors_catalog import actionable_error


class CommandRunner:
    """Runs external commands with consistent error handling.

    A non-zero exit is returned to the caller, which knows how to read the
    tool's stderr. Only timeouts are retried, since the command may simply
    not have been answered yet.
    """

    def __init__(self, logger, default_timeout: Optional[float] = None):
        self.logger = logger
        self.default_timeout = default_timeout

    def run(
        self,
        cmd: List[str],
        capture_output: bool = True,
        timeout: Optional[float] = None,
        input_text: Optional[str] = None,
        retry_count: int = 0,
        retry_backoff_seconds: float = 0.0,
    ) -> subprocess.CompletedProcess:
        cmd_str = " ".join(cmd)
        self.logger.debug("Executing: %s", cmd_str)

        effective_timeout = timeout if timeout is not None else self.default_timeout
        max_attempts = max(1, retry_count + 1)

        attempt = 0
        while True:
            attempt += 1
            try:
                result = subprocess.run(
                    cmd,
                    text=True,
                    input=input_text,
                    capture_output=capture_output,
                    timeout=effective_timeout,
                )
            except FileNotFoundError as exc:
                raise ProvisionerError(actionable_error("kubectl_not_found", command=cmd[0])) from exc
            except subprocess.TimeoutExpired as exc:
                if attempt < max_attempts:
                    self.logger.warning(
                        "Command timed out on attempt %s/%s. Retrying in %.1fs: %s",
                        attempt,
                        max_attempts,
                        retry_backoff_seconds,
                        cmd_str,
                    )
                    time.sleep(retry_backoff_seconds)
                    continue
                raise ProvisionerError(
                    f"Command timed out after {effective_timeout}s: {cmd_str}"
                ) from exc
            except OSError as exc:
                raise ProvisionerError(f"Failed to execute command: {cmd_str}. {exc}") from exc

            if capture_output and result.stdout:
                self.logger.debug("Command output: %s", result.stdout.strip())
            if result.returncode != 0:
                self.logger.debug("Command failed (%s): %s", result.returncode, cmd_str)
            return result
