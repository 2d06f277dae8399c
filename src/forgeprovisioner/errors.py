"""Domain errors for forge-provisioner-shell."""


class ProvisionerError(RuntimeError):
    """Raised when provisioning cannot continue safely."""


class InvalidUsernameError(ProvisionerError):
    """A valid SSH username must be supplied."""


class InvalidAuthError(ProvisionerError):
    """Neither a password nor a private key was supplied."""


class InvalidMessageLengthError(ProvisionerError):
    """The remote copy header does not have the expected shape."""


class SSHTimeoutError(ProvisionerError):
    """sshd did not respond before the wait deadline."""


class RemoteCommandError(ProvisionerError):
    """A remote command exited with a non-zero status."""

    def __init__(self, command: str, exit_status: int):
        super().__init__(f"Remote command exited with status {exit_status}: {command}")
        self.command = command
        self.exit_status = exit_status


class UnrecognizedJobConditionError(ProvisionerError):
    """A job reported a terminal condition this provisioner does not handle."""


class ObjectNotFoundError(ProvisionerError):
    """The requested cluster object does not exist."""
