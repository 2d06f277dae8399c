"""Shared constants for forge-provisioner-shell."""

PROVISIONER_NAME = "forge-provisioner-shell"

SHELL_PROVISIONER_REPO = "ghcr.io/forge-build/forge-provisioner-shell"
SHELL_PROVISIONER_TAG = "latest"
FORGE_CORE_NAMESPACE = "forge-core"

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
BUILD_NAME_LABEL = "forge.build/build-name"
BUILD_NAMESPACE_LABEL = "forge.build/build-namespace"
PROVISIONER_ID_LABEL = "forge.build/provisioner-id"

CONTROLLER_UID_LABEL = "controller-uid"
# Kubernetes 1.27 and above
BATCH_CONTROLLER_UID_LABEL = "batch.kubernetes.io/controller-uid"

BUILD_RESOURCE = "builds.forge.build"
JOB_REQUEUE_AFTER_SECONDS = 2.0

SSH_PORT = 22
SSH_DIAL_TIMEOUT_SECONDS = 60.0
SSH_RETRY_INTERVAL_SECONDS = 2.0
SSH_KEEPALIVE_REQUEST = "forge-ssh"
PTY_WIDTH = 80
PTY_HEIGHT = 40

SCP_BINARY = "/usr/bin/scp"
SCRIPT_MODE = 0o755

CREDENTIALS_USERNAME_KEY = "username"
CREDENTIALS_PASSWORD_KEY = "password"
CREDENTIALS_PRIVATE_KEY_KEY = "privateKey"
CREDENTIALS_HOST_KEY = "host"
CREDENTIALS_PORT_KEY = "port"
SCRIPT_CONFIG_MAP_DEFAULT_KEY = "script"

ENV_SSH_HOST = "FORGE_SSH_HOST"
ENV_SSH_PORT = "FORGE_SSH_PORT"
ENV_SSH_USERNAME = "FORGE_SSH_USERNAME"
ENV_SSH_PASSWORD = "FORGE_SSH_PASSWORD"
ENV_SSH_PRIVATE_KEY = "FORGE_SSH_PRIVATE_KEY"
ENV_SCRIPT = "FORGE_SCRIPT"
ENV_PROVISIONER_ID = "FORGE_PROVISIONER_ID"
ENV_BUILD_NAME = "FORGE_BUILD_NAME"
SSH_WAIT_SECONDS = 300.0
