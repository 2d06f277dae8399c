import logging
import os

import click
from rich.logging import RichHandler

from .constants import (
    FORGE_CORE_NAMESPACE,
    SHELL_PROVISIONER_REPO,
    SHELL_PROVISIONER_TAG,
    SSH_DIAL_TIMEOUT_SECONDS,
    SSH_WAIT_SECONDS,
)
from .core import ShellProvisionerController, console
from .errors import ProvisionerError
from .services.config_loader import ConfigLoader
from .services.entrypoint import ScriptRunner
from .services.ssh_client import SSHOptions

DEFAULT_CONFIG_FILE = ".forge-provisioner.yml"


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in config:
        return config[key]
    return default


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


def _configure_logging(verbose: bool, log_file):
    logger = logging.getLogger("forgeprovisioner")
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)
    return logger


def _script_runner(config_values, keepalive_seconds, ssh_wait_seconds, ssh_timeout_seconds, pty):
    logger = logging.getLogger("forgeprovisioner")
    options = SSHOptions(
        keepalive_seconds=float(
            _resolve_option(keepalive_seconds, config_values, "keepalive_seconds", default=0.0)
        ),
        pty=bool(_resolve_option(pty, config_values, "pty", default=False)),
        dial_timeout=float(
            _resolve_option(
                ssh_timeout_seconds,
                config_values,
                "ssh_timeout_seconds",
                default=SSH_DIAL_TIMEOUT_SECONDS,
            )
        ),
    )
    wait_seconds = float(
        _resolve_option(ssh_wait_seconds, config_values, "ssh_wait_seconds", default=SSH_WAIT_SECONDS)
    )
    return ScriptRunner.from_environment(
        os.environ,
        logger=logger,
        console=console,
        options=options,
        ssh_wait_seconds=wait_seconds,
    )


def ssh_options(func):
    func = click.option(
        "--pty", is_flag=True, default=None, help="Request a pseudo-terminal for remote commands."
    )(func)
    func = click.option(
        "--ssh-timeout-seconds",
        type=float,
        default=None,
        help="Timeout for each SSH connection attempt (default: 60).",
    )(func)
    func = click.option(
        "--ssh-wait-seconds",
        type=float,
        default=None,
        help="How long to wait for sshd on the target to accept connections (default: 300).",
    )(func)
    func = click.option(
        "--keepalive-seconds",
        type=float,
        default=None,
        help="Interval between SSH keepalive requests; 0 disables them.",
    )(func)
    return func


@click.group()
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    help=f"Path to a YAML configuration file. Defaults to {DEFAULT_CONFIG_FILE} if present.",
)
@click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging")
@click.option("--log-file", type=click.Path(), help="Path to log file")
@click.version_option(package_name="forge-provisioner-shell")
@click.pass_context
def main(ctx, config, verbose, log_file):
    """Run shell provisioners against Forge build machines."""
    try:
        config_loader = ConfigLoader()
        resolved_config = config
        if resolved_config is None:
            default_config_path = os.path.join(os.getcwd(), DEFAULT_CONFIG_FILE)
            if os.path.exists(default_config_path):
                resolved_config = default_config_path

        config_values = config_loader.load(resolved_config)
    except ProvisionerError as exc:
        raise click.ClickException(str(exc)) from exc

    verbose = bool(_resolve_option(verbose, config_values, "verbose", default=False))
    log_file = _resolve_option(log_file, config_values, "log_file")
    _configure_logging(verbose, log_file)

    ctx.obj = config_values


@main.command()
@click.option("--namespace", required=False, help=f"Namespace provisioner jobs run in (default: {FORGE_CORE_NAMESPACE}).")
@click.option("--image-repo", required=False, help="Image repository of the provisioner job.")
@click.option("--image-tag", required=False, help="Image tag of the provisioner job.")
@click.option(
    "--poll-interval-seconds",
    type=float,
    default=None,
    help="Interval between listings of builds and jobs (default: 5).",
)
@click.option("--workers", type=int, default=None, help="Concurrent reconciles per queue (default: 4).")
@click.option("--kubectl", "kubectl_binary", required=False, help="Path to the kubectl binary.")
@click.option("--kubeconfig", type=click.Path(), required=False, help="Path to a kubeconfig file.")
@click.pass_obj
def controller(config_values, namespace, image_repo, image_tag, poll_interval_seconds, workers, kubectl_binary, kubeconfig):
    """Reconcile Builds and watch provisioner jobs until interrupted."""
    try:
        service = ShellProvisionerController(
            namespace=_resolve_option(namespace, config_values, "namespace", default=FORGE_CORE_NAMESPACE),
            image_repo=_resolve_option(image_repo, config_values, "image_repo", default=SHELL_PROVISIONER_REPO),
            image_tag=str(_resolve_option(image_tag, config_values, "image_tag", default=SHELL_PROVISIONER_TAG)),
            poll_interval_seconds=float(
                _resolve_option(poll_interval_seconds, config_values, "poll_interval_seconds", default=5.0)
            ),
            workers=int(_resolve_option(workers, config_values, "workers", default=4)),
            kubectl_binary=_resolve_option(kubectl_binary, config_values, "kubectl", default="kubectl"),
            kubeconfig=_resolve_option(kubeconfig, config_values, "kubeconfig"),
        )
        service.run()
    except ProvisionerError as exc:
        raise click.ClickException(str(exc)) from exc


@main.command()
@ssh_options
@click.pass_obj
def run(config_values, keepalive_seconds, ssh_wait_seconds, ssh_timeout_seconds, pty):
    """Run the provisioner script from the job environment on the target machine."""
    try:
        runner = _script_runner(config_values, keepalive_seconds, ssh_wait_seconds, ssh_timeout_seconds, pty)
        exit_code = runner.run_from_environment(
            os.environ,
            click.get_binary_stream("stdout"),
            click.get_binary_stream("stderr"),
        )
    except ProvisionerError as exc:
        raise click.ClickException(str(exc)) from exc

    raise SystemExit(exit_code)


def _parse_mode(_ctx, _param, value):
    if value is None:
        return None
    try:
        return int(value, 8)
    except ValueError as exc:
        raise click.BadParameter(f"'{value}' is not an octal file mode") from exc


@main.command()
@click.argument("local_path", type=click.Path(exists=True, dir_okay=False))
@click.argument("remote_path")
@click.option("--mode", callback=_parse_mode, help="Octal mode of the remote file (default: the local file's).")
@ssh_options
@click.pass_obj
def upload(config_values, local_path, remote_path, mode, keepalive_seconds, ssh_wait_seconds, ssh_timeout_seconds, pty):
    """Copy a local file to the target machine."""
    try:
        runner = _script_runner(config_values, keepalive_seconds, ssh_wait_seconds, ssh_timeout_seconds, pty)
        runner.copy_to(local_path, remote_path, mode)
    except ProvisionerError as exc:
        raise click.ClickException(str(exc)) from exc


@main.command()
@click.argument("remote_path")
@click.argument("local_path", type=click.Path(dir_okay=False))
@ssh_options
@click.pass_obj
def download(config_values, remote_path, local_path, keepalive_seconds, ssh_wait_seconds, ssh_timeout_seconds, pty):
    """Copy a file from the target machine."""
    try:
        runner = _script_runner(config_values, keepalive_seconds, ssh_wait_seconds, ssh_timeout_seconds, pty)
        runner.copy_from(remote_path, local_path)
    except ProvisionerError as exc:
        raise click.ClickException(str(exc)) from exc


if __name__ == "__main__":
    main()
