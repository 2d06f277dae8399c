"""Actionable error catalog for forge-provisioner-shell."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "invalid_username": {
        "what": "A valid SSH username must be supplied.",
        "next": "Set `username` in the credentials secret referenced by the Build connector.",
    },
    "invalid_auth": {
        "what": "Invalid SSH authorization method: missing password or key.",
        "next": "Add `password` or `privateKey` to the credentials secret.",
    },
    "invalid_message_length": {
        "what": "Invalid copy protocol header received: {header}",
        "next": "Check that the remote path is a regular file and that `/usr/bin/scp` exists on the target.",
    },
    "ssh_timeout": {
        "what": "Timed out waiting for sshd on {address} to respond after {seconds}s.",
        "next": "Verify the machine is running and that port {port} is reachable from the cluster.",
    },
    "kubectl_not_found": {
        "what": "Required command not found: {command}",
        "next": "Install kubectl in the controller image or pass `--kubectl` with its path.",
    },
    "unrecognized_job_condition": {
        "what": "Unrecognized provisioner job condition: {condition}",
        "next": "Inspect the job with `kubectl describe job {name} -n {namespace}`.",
    },
    "invalid_script_source": {
        "what": "Provisioner must define exactly one of `run` or `runConfigMapRef`.",
        "next": "Remove one of the script sources from the Build provisioner entry.",
    },
}


def actionable_error(code: str, **kwargs: object) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
